import io

import pytest
from PIL import Image

from segdemo.config import Settings, get_settings


def make_image_bytes(width: int, height: int, color=(200, 30, 30), fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def stub_settings() -> Settings:
    return Settings(segmenter_backend="stub", max_size=512, max_concurrent_inferences=2)


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
