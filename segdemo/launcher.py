"""Start the API process and the UI process together for local development.

The UI is started only after the API answers its health check. This mirrors
the ``depends_on`` ordering of docker-compose.yml; it is advisory, since the
UI copes with the API being unreachable on a per-request basis.
"""

import argparse
import logging
import subprocess
import sys
import time

import httpx

from .config import get_settings
from .log import configure_logging

logger = logging.getLogger(__name__)


def wait_for_service(url: str, timeout: float = 30.0, interval: float = 0.5) -> bool:
    """
    Wait for a service to become available.

    Args:
        url: Health URL to poll
        timeout: Maximum time to wait in seconds
        interval: Delay between attempts in seconds

    Returns:
        True if the service answered 200 before the deadline
    """
    deadline = time.monotonic() + timeout

    while time.monotonic() < deadline:
        try:
            response = httpx.get(url, timeout=2.0)
            if response.status_code == 200:
                return True
        except httpx.HTTPError:
            pass
        time.sleep(interval)

    return False


def _stop(processes: list) -> None:
    for proc in processes:
        proc.terminate()
    try:
        for proc in processes:
            proc.wait(timeout=3)
    except subprocess.TimeoutExpired:
        logger.warning("Forcing shutdown...")
        for proc in processes:
            proc.kill()


def main():
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Start the segmentation API and UI")
    parser.add_argument("--api-host", type=str, default="127.0.0.1", help="Host for the API process")
    parser.add_argument("--api-port", type=int, default=settings.api_port, help="Port for the API process")
    parser.add_argument("--ui-host", type=str, default="127.0.0.1", help="Host for the UI process")
    parser.add_argument("--ui-port", type=int, default=settings.ui_port, help="Port for the UI process")
    parser.add_argument("--backend", type=str, default=settings.segmenter_backend, choices=["ultralytics", "stub"])
    parser.add_argument("--startup-timeout", type=float, default=60.0, help="Seconds to wait for the API")
    parser.add_argument(
        "--no-api",
        action="store_true",
        help="Skip starting the API process (useful if running separately)",
    )
    args = parser.parse_args()
    configure_logging(settings.log_level)

    api_url = f"http://{args.api_host}:{args.api_port}"
    processes = []

    if not args.no_api:
        logger.info(f"Starting segmentation API on {args.api_host}:{args.api_port}...")
        processes.append(subprocess.Popen([
            sys.executable, "-m", "segdemo.server.app",
            "--host", args.api_host,
            "--port", str(args.api_port),
            "--backend", args.backend,
        ]))

        logger.info("Waiting for the API to become ready (first run may download model weights)...")
        if not wait_for_service(f"{api_url}/health", timeout=args.startup_timeout):
            logger.error(f"API did not become ready within {args.startup_timeout}s")
            _stop(processes)
            sys.exit(1)
        logger.info("API is ready")

    logger.info(f"Starting UI on {args.ui_host}:{args.ui_port}...")
    processes.append(subprocess.Popen([
        sys.executable, "-m", "segdemo.ui.app",
        "--host", args.ui_host,
        "--port", str(args.ui_port),
        "--api-url", api_url,
    ]))

    logger.info(f"UI:  http://{args.ui_host}:{args.ui_port}")
    logger.info(f"API: {api_url}")
    logger.info("Press Ctrl+C to stop")

    try:
        for proc in processes:
            proc.wait()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        _stop(processes)


if __name__ == "__main__":
    main()
