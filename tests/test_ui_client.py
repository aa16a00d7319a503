"""Tests for the UI-side segmentation API client."""

import httpx
import pytest
from fastapi.testclient import TestClient

from segdemo.server.app import create_app as create_api_app
from segdemo.server.segmenter import StubSegmenter
from segdemo.ui.client import (
    ApiFailedError,
    ApiRejectedError,
    ApiUnavailableError,
    InvalidResponseError,
    SegmentationClient,
)

from conftest import make_image_bytes


def _client(handler) -> SegmentationClient:
    return SegmentationClient("http://api.test/", timeout=2.0, transport=httpx.MockTransport(handler))


def test_segment_sends_one_multipart_file_field():
    seen = []
    png = make_image_bytes(12, 8)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            content=png,
            headers={"content-type": "image/png", "x-request-id": "abc", "x-working-size": "12x8"},
        )

    with _client(handler) as client:
        result = client.segment(b"raw-bytes", filename="cat.png", content_type="image/png")

    assert len(seen) == 1
    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "http://api.test/segmentation"
    assert request.headers["content-type"].startswith("multipart/form-data")
    body = request.read()
    assert b'name="file"; filename="cat.png"' in body
    assert b"raw-bytes" in body

    assert (result.width, result.height) == (12, 8)
    assert result.media_type == "image/png"
    assert result.request_id == "abc"
    assert result.working_size == "12x8"
    assert result.content == png


def test_client_error_carries_detail():
    def handler(request):
        return httpx.Response(400, json={"detail": "No file uploaded"})

    with pytest.raises(ApiRejectedError) as excinfo:
        _client(handler).segment(b"x")

    assert excinfo.value.status_code == 400
    assert str(excinfo.value) == "No file uploaded"


def test_server_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, json={"detail": "Inference error: boom"})

    with pytest.raises(ApiFailedError):
        _client(handler).segment(b"x")

    assert len(calls) == 1


@pytest.mark.parametrize(
    "exc",
    [
        httpx.ConnectError("connection refused"),
        httpx.ReadTimeout("timed out"),
    ],
)
def test_network_failures_are_transient(exc):
    def handler(request):
        raise exc

    with pytest.raises(ApiUnavailableError) as excinfo:
        _client(handler).segment(b"x")

    assert "try again" in excinfo.value.user_message


def test_non_image_success_body():
    def handler(request):
        return httpx.Response(200, content=b"<html>oops</html>", headers={"content-type": "text/html"})

    with pytest.raises(InvalidResponseError):
        _client(handler).segment(b"x")


def test_health_check():
    assert _client(lambda request: httpx.Response(200, json={"status": "ok"})).health_check() is True

    def down(request):
        raise httpx.ConnectError("connection refused")

    assert _client(down).health_check() is False


def test_against_api_app(stub_settings):
    """Round trip through the real API application."""
    api = TestClient(create_api_app(stub_settings, segmenter=StubSegmenter()))

    def forward(request: httpx.Request) -> httpx.Response:
        response = api.request(
            request.method,
            request.url.path,
            content=request.read(),
            headers={"content-type": request.headers["content-type"]},
        )
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)

    client = _client(forward)

    result = client.segment(make_image_bytes(1024, 768), filename="big.png", content_type="image/png")
    assert (result.width, result.height) == (1024, 768)
    assert result.working_size == "512x384"

    with pytest.raises(ApiRejectedError) as excinfo:
        client.segment(b"not an image")
    assert excinfo.value.status_code == 400
