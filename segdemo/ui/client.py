"""Client for calling the segmentation API.

One POST per user action, no retries. Failures are mapped onto a small
exception hierarchy so the UI can tell transient network problems apart from
rejected input and server-side errors.
"""

import io
import logging
from dataclasses import dataclass

import httpx
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

UPLOAD_FIELD = "file"
SEGMENTATION_PATH = "/segmentation"


class SegmentationClientError(Exception):
    """Base class for every failure surfaced to the user."""

    user_message = "Segmentation failed."

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ApiUnavailableError(SegmentationClientError):
    """The API could not be reached or did not answer in time."""

    user_message = "The segmentation service is unavailable right now. Please try again in a moment."


class ApiRejectedError(SegmentationClientError):
    """The API rejected the upload (4xx)."""

    user_message = "The image was rejected."


class ApiFailedError(SegmentationClientError):
    """The API failed while processing the image (5xx)."""

    user_message = "The segmentation service failed to process this image. Please submit it again."


class InvalidResponseError(SegmentationClientError):
    """The API answered 2xx but the body is not an image."""

    user_message = "The segmentation service returned an unreadable result."


@dataclass(frozen=True)
class SegmentedImage:
    content: bytes
    media_type: str
    width: int
    height: int
    request_id: str | None = None
    working_size: str | None = None


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    detail = body.get("detail") if isinstance(body, dict) else None
    if detail is None:
        return response.text or response.reason_phrase
    return detail if isinstance(detail, str) else str(detail)


class SegmentationClient:
    """Client for the segmentation API.

    Args:
        base_url: Base URL of the API process, e.g. ``http://api:8000``.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(self, base_url: str, timeout: float = 15.0, transport: httpx.BaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)
        logger.info(f"SegmentationClient initialized: url={self.base_url}, timeout={timeout}s")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self) -> None:
        self.client.close()

    def health_check(self) -> bool:
        """Return True if the API answers its health endpoint."""
        try:
            response = self.client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Health check failed: {e}")
            return False

    def segment(self, data: bytes, filename: str = "upload", content_type: str | None = None) -> SegmentedImage:
        """Send one image to the API and return the decoded segmentation."""
        files = {UPLOAD_FIELD: (filename, data, content_type or "application/octet-stream")}
        try:
            response = self.client.post(SEGMENTATION_PATH, files=files)
        except httpx.TimeoutException as e:
            logger.error(f"Segmentation request timed out after {self.timeout}s: {e}")
            raise ApiUnavailableError(f"Request timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            logger.error(f"Cannot reach segmentation API at {self.base_url}: {e}")
            raise ApiUnavailableError(f"Cannot reach {self.base_url}: {e}") from e

        if 400 <= response.status_code < 500:
            detail = _error_detail(response)
            logger.warning(f"Segmentation rejected ({response.status_code}): {detail}")
            raise ApiRejectedError(detail, status_code=response.status_code)
        if response.status_code >= 500:
            detail = _error_detail(response)
            logger.error(f"Segmentation failed ({response.status_code}): {detail}")
            raise ApiFailedError(detail, status_code=response.status_code)
        if not response.is_success:
            raise InvalidResponseError(f"Unexpected status {response.status_code}", status_code=response.status_code)

        content = response.content
        try:
            with Image.open(io.BytesIO(content)) as img:
                img.load()
                width, height = img.size
        except (UnidentifiedImageError, OSError) as e:
            raise InvalidResponseError(f"Response body is not an image: {e}", status_code=response.status_code) from e

        return SegmentedImage(
            content=content,
            media_type=response.headers.get("content-type", "image/png"),
            width=width,
            height=height,
            request_id=response.headers.get("x-request-id"),
            working_size=response.headers.get("x-working-size"),
        )
