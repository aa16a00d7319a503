import pytest
from pydantic import ValidationError

from segdemo.server.schemas import HealthResponse, SegmentationOptions


def test_segmentation_options_defaults():
    opts = SegmentationOptions()
    assert opts.confidence is None
    assert opts.max_size is None


def test_segmentation_options_from_json():
    opts = SegmentationOptions.model_validate_json('{"confidence": 0.4, "max_size": 256}')
    assert opts.confidence == 0.4
    assert opts.max_size == 256


@pytest.mark.parametrize("payload", ['{"confidence": 1.2}', '{"max_size": 0}', "not json"])
def test_segmentation_options_rejects_bad_values(payload):
    with pytest.raises(ValidationError):
        SegmentationOptions.model_validate_json(payload)


def test_health_response_defaults():
    assert HealthResponse().model_dump() == {"status": "ok", "model_loaded": False}
