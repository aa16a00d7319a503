"""Image decoding, resize policy, class recoloring and response encoding."""

from __future__ import annotations

import io
import tempfile
from dataclasses import dataclass
from typing import IO, Iterator

import numpy as np
from PIL import Image, UnidentifiedImageError

MEDIA_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
}

# per-channel multipliers used to spread class ids over the RGB cube
_PALETTE_BASE = np.array([2**25 - 1, 2**15 - 1, 2**21 - 1], dtype=np.int64)


class ImageDecodeError(ValueError):
    """Raised when uploaded bytes cannot be decoded as an image."""


class ImageTooLargeError(ImageDecodeError):
    """Raised when an image has more pixels than the decoder accepts."""


def decode_image(data: bytes, max_pixels: int | None = None) -> Image.Image:
    """Decode raw bytes into an RGB image.

    Images with more than ``max_pixels`` pixels are rejected from their header,
    before any pixel data is decoded.
    """
    if not data:
        raise ImageDecodeError("empty image payload")
    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            if max_pixels is not None and width * height > max_pixels:
                raise ImageTooLargeError(f"image is {width}x{height}, above the {max_pixels} pixel limit")
            img.load()
            return img.convert("RGB")
    except Image.DecompressionBombError as e:
        raise ImageTooLargeError(f"image is too large to decode: {e}") from e
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ImageDecodeError(f"cannot decode image: {e}") from e


def scale_factor(width: int, height: int, max_size: int) -> float:
    """Return the factor that fits (width, height) inside max_size.

    Images that already fit are never upscaled, so the factor is at most 1.0.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"invalid image size {width}x{height}")
    if max_size <= 0:
        raise ValueError(f"max_size must be positive, got {max_size}")
    return min(max_size / width, max_size / height, 1.0)


def downscale(image: Image.Image, max_size: int) -> Image.Image:
    """Shrink an image so its longer side is at most max_size, keeping aspect ratio."""
    width, height = image.size
    factor = scale_factor(width, height, max_size)
    if factor >= 1.0:
        return image
    new_size = (max(1, round(width * factor)), max(1, round(height * factor)))
    return image.resize(new_size, Image.Resampling.BILINEAR)


def aspect_class(width: int, height: int) -> str:
    if width == height:
        return "square"
    return "landscape" if width > height else "portrait"


def class_palette(num_classes: int = 256) -> list[int]:
    """Flat RGB palette where class 0 (background) is black."""
    ids = np.arange(num_classes, dtype=np.int64)[:, None]
    colors = (ids * _PALETTE_BASE) % 255
    return colors.astype("uint8").flatten().tolist()


def colorize(label_map: Image.Image, size: tuple[int, int] | None = None) -> Image.Image:
    """Turn an L-mode class map into a palettized image of the requested size."""
    if label_map.mode != "L":
        label_map = label_map.convert("L")
    if size is not None and label_map.size != tuple(size):
        label_map = label_map.resize(size, Image.Resampling.NEAREST)
    colored = Image.frombytes("P", label_map.size, label_map.tobytes())
    colored.putpalette(class_palette())
    return colored


@dataclass
class EncodedImage:
    """An encoded image held in a spooled temporary buffer.

    The buffer stays in memory up to the spool threshold and then moves to an
    anonymous temporary file. ``close()`` releases it either way.
    """

    buffer: IO[bytes]
    media_type: str
    size: int
    extension: str

    def iter_chunks(self, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        self.buffer.seek(0)
        while True:
            chunk = self.buffer.read(chunk_size)
            if not chunk:
                break
            yield chunk

    def read_all(self) -> bytes:
        self.buffer.seek(0)
        return self.buffer.read()

    @property
    def closed(self) -> bool:
        return self.buffer.closed

    def close(self) -> None:
        self.buffer.close()


def encode_image(image: Image.Image, fmt: str = "PNG", spool_max_bytes: int = 8 * 1024 * 1024) -> EncodedImage:
    """Serialize an image into a spooled temp buffer, closing it on failure."""
    fmt = fmt.upper()
    if fmt not in MEDIA_TYPES:
        raise ValueError(f"unsupported output format: {fmt}")
    if fmt == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")

    buf = tempfile.SpooledTemporaryFile(max_size=spool_max_bytes, mode="w+b")
    try:
        image.save(buf, format=fmt)
        size = buf.tell()
        buf.seek(0)
    except Exception:
        buf.close()
        raise
    return EncodedImage(
        buffer=buf,
        media_type=MEDIA_TYPES[fmt],
        size=size,
        extension="jpg" if fmt == "JPEG" else fmt.lower(),
    )
