"""UI process: upload form that forwards images to the segmentation API."""

import base64
import html
import logging
from contextlib import asynccontextmanager
from dataclasses import replace

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.responses import HTMLResponse

from ..config import Settings, get_settings
from ..log import configure_logging
from .client import SegmentationClient, SegmentationClientError, SegmentedImage

logger = logging.getLogger(__name__)

PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Image segmentation</title>
  <style>
    body {{ font-family: sans-serif; margin: 2rem; }}
    .row {{ display: flex; gap: 2rem; flex-wrap: wrap; }}
    .row figure {{ margin: 0; }}
    .row img {{ max-width: 45vw; }}
    .error {{ color: #a00; }}
    .meta {{ color: #555; font-size: 0.9rem; }}
  </style>
</head>
<body>
  <h1>Image segmentation</h1>
  <p>Upload an image and press <em>Segment</em>. The result is computed by the segmentation API.</p>
  <form method="post" action="/" enctype="multipart/form-data">
    <input type="file" name="file" accept="image/*">
    <button type="submit">Segment</button>
  </form>
  {body}
</body>
</html>
"""


def _data_uri(content: bytes, media_type: str) -> str:
    return f"data:{media_type};base64,{base64.b64encode(content).decode('ascii')}"


def render_page(body: str = "") -> str:
    return PAGE_TEMPLATE.format(body=body)


def render_error(message: str, detail: str | None = None) -> str:
    text = html.escape(message)
    if detail:
        text += f"<br><span class=\"meta\">{html.escape(detail)}</span>"
    return f'<p class="error">{text}</p>'


def render_result(original: bytes, original_type: str, result: SegmentedImage) -> str:
    meta = f"{result.width}x{result.height}"
    if result.working_size:
        meta += f", model input {html.escape(result.working_size)}"
    if result.request_id:
        meta += f", request {html.escape(result.request_id)}"
    return (
        '<div class="row">'
        f'<figure><img src="{_data_uri(original, original_type)}" alt="original">'
        "<figcaption>Original</figcaption></figure>"
        f'<figure><img src="{_data_uri(result.content, result.media_type)}" alt="segmentation">'
        "<figcaption>Segmentation</figcaption></figure>"
        "</div>"
        f'<p class="meta">{meta}</p>'
    )


def create_app(settings: Settings | None = None, client: SegmentationClient | None = None) -> FastAPI:
    settings = settings or get_settings()
    client = client or SegmentationClient(settings.api_url, timeout=settings.request_timeout)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.client.close()

    app = FastAPI(title="Segmentation UI", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.client = client

    @app.get("/", response_class=HTMLResponse)
    def index():
        return render_page()

    @app.post("/", response_class=HTMLResponse)
    def submit(request: Request, file: UploadFile = File(None)):
        limit = request.app.state.settings.max_upload_bytes
        data = file.file.read(limit + 1) if file is not None else b""
        if not data:
            return render_page(render_error("Please choose an image first."))
        if len(data) > limit:
            logger.warning(f"Refusing upload {file.filename} above the {limit} byte limit")
            return render_page(render_error("The image is too large.", f"Uploads are limited to {limit} bytes."))

        filename = file.filename or "upload"
        content_type = file.content_type or "application/octet-stream"
        try:
            result = request.app.state.client.segment(data, filename=filename, content_type=content_type)
        except SegmentationClientError as e:
            logger.warning(f"Segmentation of {filename} failed: {type(e).__name__}: {e}")
            return render_page(render_error(e.user_message, str(e)))

        original_type = content_type if content_type.startswith("image/") else "image/png"
        return render_page(render_result(data, original_type, result))

    @app.get("/health")
    def health(request: Request):
        return {"status": "ok", "api_reachable": request.app.state.client.health_check()}

    return app


def main():
    """Command-line entry point for the UI process."""
    import argparse
    import uvicorn

    defaults = get_settings()
    parser = argparse.ArgumentParser(description="Web UI for the segmentation API")
    parser.add_argument("--host", type=str, default=defaults.ui_host, help="Host to bind to (UI_HOST)")
    parser.add_argument("--port", type=int, default=defaults.ui_port, help="Port to bind to (UI_PORT)")
    parser.add_argument("--api-url", type=str, default=defaults.api_url, help="Segmentation API URL (SEGMENTATION_API_URL)")
    parser.add_argument("--timeout", type=float, default=defaults.request_timeout, help="API timeout in seconds (SEGMENTATION_TIMEOUT)")
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
        ui_host=args.host,
        ui_port=args.port,
        api_url=args.api_url.rstrip("/"),
        request_timeout=args.timeout,
        log_level=args.log_level,
    )
    configure_logging(settings.log_level)
    logger.info(f"Starting UI on {settings.ui_host}:{settings.ui_port}, API at {settings.api_url}")

    uvicorn.run(create_app(settings), host=settings.ui_host, port=settings.ui_port, log_level=args.log_level)


if __name__ == "__main__":
    main()
