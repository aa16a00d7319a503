import abc
import logging
from dataclasses import dataclass, field
from typing import Any, List

import numpy as np
from PIL import Image, ImageDraw

from ..config import Settings

logger = logging.getLogger(__name__)


class SegmentationError(RuntimeError):
    """The inference collaborator failed on an otherwise valid image."""


@dataclass(frozen=True)
class Detection:
    class_id: int
    label: str
    score: float | None = None
    bbox: List[int] | None = None
    area: int = 0


@dataclass(frozen=True)
class Segmentation:
    """Per-pixel class map (0 = background, k = class k - 1) plus instance details."""

    label_map: Image.Image
    detections: List[Detection] = field(default_factory=list)


def _to_numpy(value: Any) -> np.ndarray | None:
    if value is None:
        return None
    if hasattr(value, "cpu"):
        return value.cpu().numpy()
    return np.asarray(value)


class BaseSegmenter(abc.ABC):
    """A loaded, read-only predictor shared by every request of the process."""

    name = "base"

    @abc.abstractmethod
    def segment(self, image: Image.Image, confidence: float | None = None) -> Segmentation:
        """Map an RGB image to a class map of the same size."""
        raise NotImplementedError

    def info(self) -> dict:
        return {"backend": self.name}


class UltralyticsSegmenter(BaseSegmenter):
    """Wrapper around an Ultralytics YOLO segmentation model.

    `ultralytics` is imported when the segmenter is built, not at module import,
    so the API process can start and report a helpful error if it is missing.
    """

    name = "ultralytics"

    def __init__(self, model_path: str, device: str = "cpu", confidence: float = 0.25, model: Any = None):
        if model is None:
            from ultralytics import YOLO

            logger.info(f"Loading segmentation model {model_path} on {device}")
            model = YOLO(model_path)
        self._model = model
        self._names = dict(getattr(model, "names", None) or {})
        self.model_path = model_path
        self.device = device
        self.confidence = confidence

    def info(self) -> dict:
        return {
            "backend": self.name,
            "model_path": self.model_path,
            "device": self.device,
            "confidence": self.confidence,
            "num_classes": len(self._names),
        }

    def segment(self, image: Image.Image, confidence: float | None = None) -> Segmentation:
        conf = self.confidence if confidence is None else confidence
        try:
            results = self._model.predict(image, conf=conf, device=self.device, verbose=False)
        except Exception as e:
            raise SegmentationError(str(e)) from e

        width, height = image.size
        label_map = Image.new("L", (width, height), 0)
        detections: List[Detection] = []

        # one Results object per input image
        iter_results = results if isinstance(results, (list, tuple)) else [results]
        for r in iter_results:
            masks = getattr(r, "masks", None)
            boxes = getattr(r, "boxes", None)
            polygons = list(getattr(masks, "xy", None) or []) if masks is not None else []
            classes = _to_numpy(getattr(boxes, "cls", None)) if boxes is not None else None
            scores = _to_numpy(getattr(boxes, "conf", None)) if boxes is not None else None
            xyxy = _to_numpy(getattr(boxes, "xyxy", None)) if boxes is not None else None

            # paint low-confidence instances first so stronger ones end up on top
            order = list(range(len(polygons)))
            if scores is not None and len(scores) >= len(polygons):
                order.sort(key=lambda i: float(scores[i]))

            for i in order:
                class_id = int(classes[i]) if classes is not None and i < len(classes) else 0
                points = [(float(x), float(y)) for x, y in np.asarray(polygons[i]).reshape(-1, 2)]
                if len(points) < 3:
                    continue

                instance = Image.new("L", (width, height), 0)
                ImageDraw.Draw(instance).polygon(points, fill=255)
                label_map.paste(min(class_id + 1, 255), (0, 0, width, height), instance)

                bbox = None
                if xyxy is not None and i < len(xyxy):
                    bbox = [int(v) for v in xyxy[i][:4]]
                detections.append(Detection(
                    class_id=class_id,
                    label=str(self._names.get(class_id, class_id)),
                    score=float(scores[i]) if scores is not None and i < len(scores) else None,
                    bbox=bbox,
                    area=int(np.count_nonzero(np.asarray(instance))),
                ))

        detections.sort(key=lambda d: d.score or 0.0, reverse=True)
        return Segmentation(label_map=label_map, detections=detections)


class StubSegmenter(BaseSegmenter):
    """Deterministic segmenter for local development without model weights.

    Labels a centered box covering half of each side as class 1.
    """

    name = "stub"

    def segment(self, image: Image.Image, confidence: float | None = None) -> Segmentation:
        w, h = image.size
        bw = max(1, int(w * 0.5))
        bh = max(1, int(h * 0.5))
        x0 = (w - bw) // 2
        y0 = (h - bh) // 2
        x1 = x0 + bw
        y1 = y0 + bh

        label_map = Image.new("L", (w, h), 0)
        label_map.paste(1, (x0, y0, x1, y1))
        detection = Detection(class_id=0, label="object", score=1.0, bbox=[x0, y0, x1, y1], area=bw * bh)
        return Segmentation(label_map=label_map, detections=[detection])


def load_segmenter(settings: Settings) -> BaseSegmenter:
    backend = settings.segmenter_backend.lower()
    if backend == "ultralytics":
        return UltralyticsSegmenter(settings.model_path, device=settings.device, confidence=settings.confidence)
    if backend == "stub":
        logger.warning("Using stub segmenter, predictions are synthetic")
        return StubSegmenter()
    raise ValueError(f"Unknown segmenter backend: {settings.segmenter_backend}")
