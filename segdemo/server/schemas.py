from pydantic import BaseModel, Field
from typing import List, Optional


class SegmentationOptions(BaseModel):
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    max_size: Optional[int] = Field(None, ge=1)


class ImageSize(BaseModel):
    width: int
    height: int


class DetectionResult(BaseModel):
    class_id: int
    label: str
    score: Optional[float] = None
    bbox: Optional[List[int]] = None
    area: int = 0


class SegmentationSummary(BaseModel):
    request_id: str
    image_size: ImageSize
    working_size: ImageSize
    detections: List[DetectionResult]
    processing_time_ms: float = 0.0
    overall_confidence: float | None = None


class ModelInfo(BaseModel):
    backend: str
    details: dict = Field(default_factory=dict)
    max_size: int


class HealthResponse(BaseModel):
    status: str = "ok"
    model_loaded: bool = False
