"""Process configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _load_env_file(path: str = ".env") -> None:
    """Populate os.environ from the provided .env file if it exists."""

    env_path = Path(path)
    if not env_path.exists():
        return

    for line in env_path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip().strip('"'))


@dataclass(frozen=True, slots=True)
class Settings:
    """Settings shared by the API and UI processes."""

    log_level: str = "INFO"

    api_host: str = "0.0.0.0"
    api_port: int = 8000
    ui_host: str = "0.0.0.0"
    ui_port: int = 8501

    # where the UI process sends uploads
    api_url: str = "http://127.0.0.1:8000"
    request_timeout: float = 15.0

    segmenter_backend: str = "ultralytics"
    model_path: str = "yolov8n-seg.pt"
    device: str = "cpu"
    confidence: float = 0.25

    max_size: int = 512
    max_upload_bytes: int = 20 * 1024 * 1024
    max_pixels: int = 50_000_000
    max_concurrent_inferences: int = 1
    spool_max_bytes: int = 8 * 1024 * 1024
    output_format: str = "PNG"

    def __post_init__(self) -> None:
        if self.max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {self.max_size}")
        if self.max_upload_bytes < 1:
            raise ValueError(f"max_upload_bytes must be >= 1, got {self.max_upload_bytes}")
        if self.max_pixels < 1:
            raise ValueError(f"max_pixels must be >= 1, got {self.max_pixels}")
        if self.max_concurrent_inferences < 1:
            raise ValueError(
                f"max_concurrent_inferences must be >= 1, got {self.max_concurrent_inferences}"
            )
        if self.request_timeout <= 0:
            raise ValueError(f"request_timeout must be positive, got {self.request_timeout}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")


def _build_settings() -> Settings:
    _load_env_file()

    return Settings(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        api_host=os.getenv("API_HOST", "0.0.0.0"),
        api_port=int(os.getenv("API_PORT", "8000")),
        ui_host=os.getenv("UI_HOST", "0.0.0.0"),
        ui_port=int(os.getenv("UI_PORT", "8501")),
        api_url=os.getenv("SEGMENTATION_API_URL", "http://127.0.0.1:8000").rstrip("/"),
        request_timeout=float(os.getenv("SEGMENTATION_TIMEOUT", "15.0")),
        segmenter_backend=os.getenv("SEGMENTER_BACKEND", "ultralytics").lower(),
        model_path=os.getenv("MODEL_PATH", "yolov8n-seg.pt"),
        device=os.getenv("MODEL_DEVICE", "cpu"),
        confidence=float(os.getenv("MODEL_CONFIDENCE", "0.25")),
        max_size=int(os.getenv("MAX_IMAGE_SIZE", "512")),
        max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", str(20 * 1024 * 1024))),
        max_pixels=int(os.getenv("MAX_IMAGE_PIXELS", "50000000")),
        max_concurrent_inferences=int(os.getenv("MAX_CONCURRENT_INFERENCES", "1")),
        spool_max_bytes=int(os.getenv("SPOOL_MAX_BYTES", str(8 * 1024 * 1024))),
        output_format=os.getenv("OUTPUT_FORMAT", "PNG").upper(),
    )


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance to avoid re-reading configuration."""

    return _build_settings()
