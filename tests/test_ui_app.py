from dataclasses import replace

from fastapi.testclient import TestClient

from segdemo.ui.app import create_app
from segdemo.ui.client import ApiFailedError, ApiRejectedError, ApiUnavailableError, SegmentedImage

from conftest import make_image_bytes


class FakeClient:
    def __init__(self, result=None, error=None, healthy=True):
        self.result = result
        self.error = error
        self.healthy = healthy
        self.calls = []
        self.closed = False

    def segment(self, data, filename="upload", content_type=None):
        self.calls.append((data, filename, content_type))
        if self.error is not None:
            raise self.error
        return self.result

    def health_check(self):
        return self.healthy

    def close(self):
        self.closed = True


def _result():
    return SegmentedImage(
        content=make_image_bytes(20, 10),
        media_type="image/png",
        width=20,
        height=10,
        request_id="req-1",
        working_size="20x10",
    )


def _ui(stub_settings, fake):
    return TestClient(create_app(stub_settings, client=fake))


def test_index_renders_upload_form(stub_settings):
    r = _ui(stub_settings, FakeClient()).get("/")
    assert r.status_code == 200
    assert 'type="file" name="file"' in r.text
    assert 'enctype="multipart/form-data"' in r.text


def test_submit_renders_original_and_result(stub_settings):
    fake = FakeClient(result=_result())
    original = make_image_bytes(20, 10)

    r = _ui(stub_settings, fake).post("/", files={"file": ("photo.png", original, "image/png")})

    assert r.status_code == 200
    assert r.text.count("data:image/png;base64,") == 2
    assert "Segmentation" in r.text
    assert "req-1" in r.text
    assert fake.calls == [(original, "photo.png", "image/png")]


def test_submit_without_file_prompts_user(stub_settings):
    fake = FakeClient(result=_result())

    r = _ui(stub_settings, fake).post("/", files={"file": ("", b"", "application/octet-stream")})

    assert r.status_code == 200
    assert "Please choose an image first." in r.text
    assert fake.calls == []


def test_rejection_is_shown_to_the_user(stub_settings):
    fake = FakeClient(error=ApiRejectedError("cannot decode image", status_code=400))

    r = _ui(stub_settings, fake).post("/", files={"file": ("notes.txt", b"hello", "text/plain")})

    assert r.status_code == 200
    assert "The image was rejected." in r.text
    assert "cannot decode image" in r.text


def test_unreachable_api_is_a_transient_message(stub_settings):
    fake = FakeClient(error=ApiUnavailableError("Cannot reach http://api:8000"))

    r = _ui(stub_settings, fake).post("/", files={"file": ("a.png", make_image_bytes(4, 4), "image/png")})

    assert r.status_code == 200
    assert "unavailable right now" in r.text


def test_server_failure_asks_for_resubmission(stub_settings):
    fake = FakeClient(error=ApiFailedError("Inference error: <boom>", status_code=500))

    r = _ui(stub_settings, fake).post("/", files={"file": ("a.png", make_image_bytes(4, 4), "image/png")})

    assert "Please submit it again." in r.text
    # API error details are escaped
    assert "&lt;boom&gt;" in r.text


def test_health_reports_api_reachability(stub_settings):
    assert _ui(stub_settings, FakeClient(healthy=False)).get("/health").json() == {
        "status": "ok",
        "api_reachable": False,
    }


def test_client_closed_on_shutdown(stub_settings):
    fake = FakeClient()
    with TestClient(create_app(stub_settings, client=fake)) as client:
        client.get("/")
    assert fake.closed


def test_oversized_upload_is_refused_locally(stub_settings):
    fake = FakeClient(result=_result())
    settings = replace(stub_settings, max_upload_bytes=16)

    r = TestClient(create_app(settings, client=fake)).post(
        "/", files={"file": ("big.png", make_image_bytes(20, 10), "image/png")}
    )

    assert r.status_code == 200
    assert "The image is too large." in r.text
    assert fake.calls == []
