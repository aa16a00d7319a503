"""Upload validation.

Every request goes through :func:`validate_upload` exactly once before any
processing. The result is exactly one outcome; only :class:`ValidRequest`
carries a decoded image, so the rest of the pipeline never sees raw bytes.
"""

from dataclasses import dataclass
from typing import Union

from PIL import Image

from ..imaging import ImageDecodeError, ImageTooLargeError, decode_image


@dataclass(frozen=True)
class ValidRequest:
    image: Image.Image
    filename: str
    content_type: str
    size: int


@dataclass(frozen=True)
class MissingFile:
    reason: str = "No file uploaded"


@dataclass(frozen=True)
class UndecodableImage:
    reason: str


@dataclass(frozen=True)
class PayloadTooLarge:
    size: int
    limit: int

    @property
    def reason(self) -> str:
        return f"Upload exceeds the {self.limit} byte limit"


@dataclass(frozen=True)
class ImageTooLarge:
    reason: str


Rejection = Union[MissingFile, UndecodableImage, PayloadTooLarge, ImageTooLarge]
UploadOutcome = Union[ValidRequest, Rejection]


def validate_upload(
    data: bytes | None,
    filename: str | None = None,
    content_type: str | None = None,
    max_bytes: int | None = None,
    max_pixels: int | None = None,
) -> UploadOutcome:
    if not data:
        return MissingFile()
    if max_bytes is not None and len(data) > max_bytes:
        return PayloadTooLarge(size=len(data), limit=max_bytes)
    try:
        image = decode_image(data, max_pixels=max_pixels)
    except ImageTooLargeError as e:
        return ImageTooLarge(reason=str(e))
    except ImageDecodeError as e:
        return UndecodableImage(reason=str(e))
    return ValidRequest(
        image=image,
        filename=filename or "upload",
        content_type=content_type or "application/octet-stream",
        size=len(data),
    )


def status_code_for(outcome: Rejection) -> int:
    if isinstance(outcome, (PayloadTooLarge, ImageTooLarge)):
        return 413
    return 400
