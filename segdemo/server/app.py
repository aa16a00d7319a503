"""API process: a single segmentation endpoint around a shared, read-only model.

The model is loaded once (or injected by the caller) and kept on ``app.state``.
Routes are plain functions so FastAPI runs the blocking inference call in its
threadpool; nothing mutable is shared between requests.
"""

import logging
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse
from PIL import Image
from pydantic import ValidationError
from starlette.background import BackgroundTask

from ..config import Settings, get_settings
from ..imaging import colorize, downscale, encode_image
from ..log import configure_logging
from .schemas import (
    DetectionResult,
    HealthResponse,
    ImageSize,
    ModelInfo,
    SegmentationOptions,
    SegmentationSummary,
)
from .segmenter import BaseSegmenter, Segmentation, SegmentationError, load_segmenter
from .validation import ValidRequest, status_code_for, validate_upload

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    request_id: str
    input_size: tuple[int, int]
    working_size: tuple[int, int]
    segmentation: Segmentation
    elapsed_ms: float


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_segmenter(request: Request) -> BaseSegmenter | None:
    return request.app.state.segmenter


def _parse_options(options: str | None) -> SegmentationOptions:
    if not options:
        return SegmentationOptions()
    try:
        return SegmentationOptions.model_validate_json(options)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid options JSON: {e}")


def _read_upload(file: UploadFile | None, limit: int) -> tuple[bytes | None, str | None, str | None]:
    if file is None:
        return None, None, None
    # read one byte past the limit so oversized uploads are detected without buffering them whole
    data = file.file.read(limit + 1)
    return data, file.filename, file.content_type


def _run_pipeline(
    request: Request,
    file: UploadFile | None,
    options: str | None,
    settings: Settings,
    segmenter: BaseSegmenter | None,
) -> PipelineResult:
    request_id = str(uuid4())
    started = time.perf_counter()

    data, filename, content_type = _read_upload(file, settings.max_upload_bytes)
    outcome = validate_upload(
        data, filename, content_type, max_bytes=settings.max_upload_bytes, max_pixels=settings.max_pixels
    )
    if not isinstance(outcome, ValidRequest):
        logger.warning(f"[{request_id}] rejected upload: {outcome.reason}")
        raise HTTPException(status_code=status_code_for(outcome), detail=outcome.reason)

    opts = _parse_options(options)

    model_error = getattr(request.app.state, "model_error", None)
    if model_error:
        raise HTTPException(status_code=500, detail={"model_error": model_error})
    if segmenter is None:
        raise HTTPException(status_code=500, detail="Model not initialized")

    # a per-request max_size can only tighten the configured bound
    max_size = min(opts.max_size, settings.max_size) if opts.max_size else settings.max_size
    working = downscale(outcome.image, max_size)
    logger.info(
        f"[{request_id}] {outcome.filename}: {outcome.image.width}x{outcome.image.height} "
        f"-> {working.width}x{working.height}"
    )

    try:
        with request.app.state.inference_slots:
            segmentation = segmenter.segment(working, confidence=opts.confidence)
    except SegmentationError as e:
        logger.exception(f"[{request_id}] inference failed")
        raise HTTPException(status_code=500, detail=f"Inference error: {e}")

    elapsed_ms = (time.perf_counter() - started) * 1000.0
    logger.info(f"[{request_id}] {len(segmentation.detections)} detections in {elapsed_ms:.1f} ms")
    return PipelineResult(
        request_id=request_id,
        input_size=outcome.image.size,
        working_size=working.size,
        segmentation=segmentation,
        elapsed_ms=elapsed_ms,
    )


def create_app(settings: Settings | None = None, segmenter: BaseSegmenter | None = None) -> FastAPI:
    """Build the API application.

    Args:
        settings: Configuration; defaults to the environment.
        segmenter: Pre-built segmenter. When omitted the model is loaded on
            startup from ``settings``.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.segmenter is None:
            try:
                app.state.segmenter = load_segmenter(settings)
                logger.info(f"Segmenter ready: {app.state.segmenter.info()}")
            except Exception as e:
                # keep serving so endpoints can return a helpful message
                logger.exception("Failed to load segmentation model")
                app.state.model_error = str(e)
        yield
        app.state.segmenter = None

    app = FastAPI(
        title="Segmentation API",
        description="Returns a per-class recolored segmentation of an uploaded image",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.segmenter = segmenter
    app.state.model_error = None
    app.state.inference_slots = threading.BoundedSemaphore(settings.max_concurrent_inferences)

    @app.post("/segmentation")
    def segmentation(
        request: Request,
        file: UploadFile = File(None),
        options: str | None = Form(None),
        settings: Settings = Depends(get_settings_dep),
        segmenter: BaseSegmenter | None = Depends(get_segmenter),
    ):
        result = _run_pipeline(request, file, options, settings, segmenter)

        # recolor at the original input size
        colored: Image.Image = colorize(result.segmentation.label_map, size=result.input_size)
        encoded = encode_image(colored, settings.output_format, settings.spool_max_bytes)
        headers = {
            "Content-Length": str(encoded.size),
            "Content-Disposition": f'inline; filename="segmentation-{result.request_id}.{encoded.extension}"',
            "X-Request-ID": result.request_id,
            "X-Working-Size": f"{result.working_size[0]}x{result.working_size[1]}",
        }
        return StreamingResponse(
            encoded.iter_chunks(),
            media_type=encoded.media_type,
            headers=headers,
            background=BackgroundTask(encoded.close),
        )

    @app.post("/segmentation/summary", response_model=SegmentationSummary)
    def segmentation_summary(
        request: Request,
        file: UploadFile = File(None),
        options: str | None = Form(None),
        settings: Settings = Depends(get_settings_dep),
        segmenter: BaseSegmenter | None = Depends(get_segmenter),
    ):
        result = _run_pipeline(request, file, options, settings, segmenter)
        detections = [
            DetectionResult(class_id=d.class_id, label=d.label, score=d.score, bbox=d.bbox, area=d.area)
            for d in result.segmentation.detections
        ]
        scores = [d.score for d in detections if d.score is not None]
        return SegmentationSummary(
            request_id=result.request_id,
            image_size=ImageSize(width=result.input_size[0], height=result.input_size[1]),
            working_size=ImageSize(width=result.working_size[0], height=result.working_size[1]),
            detections=detections,
            processing_time_ms=round(result.elapsed_ms, 3),
            overall_confidence=max(scores) if scores else None,
        )

    @app.get("/health", response_model=HealthResponse)
    def health():
        return HealthResponse(status="ok", model_loaded=app.state.segmenter is not None)

    @app.get("/model-info", response_model=ModelInfo)
    def model_info():
        if app.state.segmenter is None:
            raise HTTPException(status_code=503, detail=app.state.model_error or "No model loaded")
        return ModelInfo(
            backend=app.state.segmenter.name,
            details=app.state.segmenter.info(),
            max_size=settings.max_size,
        )

    return app


app = create_app()


def main():
    """Command-line entry point for the API process."""
    import argparse
    import uvicorn

    defaults = get_settings()
    parser = argparse.ArgumentParser(description="Image segmentation API")
    parser.add_argument("--host", type=str, default=defaults.api_host, help="Host to bind to (API_HOST)")
    parser.add_argument("--port", type=int, default=defaults.api_port, help="Port to bind to (API_PORT)")
    parser.add_argument(
        "--backend",
        type=str,
        default=defaults.segmenter_backend,
        choices=["ultralytics", "stub"],
        help="Segmenter backend (SEGMENTER_BACKEND)",
    )
    parser.add_argument("--model-path", type=str, default=defaults.model_path, help="Model weights (MODEL_PATH)")
    parser.add_argument("--max-size", type=int, default=defaults.max_size, help="Longest side fed to the model (MAX_IMAGE_SIZE)")
    parser.add_argument(
        "--log-level",
        type=str,
        default=defaults.log_level.lower(),
        choices=["debug", "info", "warning", "error"],
        help="Logging level (LOG_LEVEL)",
    )
    args = parser.parse_args()

    settings = replace(
        defaults,
        api_host=args.host,
        api_port=args.port,
        segmenter_backend=args.backend,
        model_path=args.model_path,
        max_size=args.max_size,
        log_level=args.log_level,
    )
    configure_logging(settings.log_level)
    logger.info(f"Starting segmentation API on {settings.api_host}:{settings.api_port}")

    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port, log_level=args.log_level)


if __name__ == "__main__":
    main()
