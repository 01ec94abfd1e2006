from datetime import date

import pytest
from fastapi.testclient import TestClient

import app as app_module
from camreview.config import AppConfig
from camreview.service import ReviewService

from helpers import FakeFfmpeg, VisionBackend

SESSION_DATE = date(2024, 1, 1)


@pytest.fixture(autouse=True)
def _quiet_env(monkeypatch):
    """Keep host configuration out of the tests."""
    for name in (
        "CAMREVIEW_CONFIG_PATH",
        "CAMREVIEW_DATA_PATH",
        "MEDIA_ROOT",
        "OPENROUTER_API_KEY",
        "OPENROUTER_MODEL",
        "OPENROUTER_ENDPOINT",
        "OPENROUTER_REFERRER",
        "FFMPEG_PATH",
        "FFMPEG",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def media_root(tmp_path):
    root = tmp_path / "media"
    root.mkdir()
    return root


@pytest.fixture()
def ledger_path(tmp_path):
    return tmp_path / "trailcam_review.json"


@pytest.fixture()
def fake_ffmpeg():
    return FakeFfmpeg()


@pytest.fixture()
def vision():
    return VisionBackend()


@pytest.fixture()
def make_service(media_root, ledger_path, fake_ffmpeg, vision):
    def _make(*, api_key="test-key", ffmpeg=None, **overrides):
        cfg = AppConfig(
            media_root=media_root,
            data_path=ledger_path,
            openrouter_api_key=api_key,
            **overrides,
        )
        svc = ReviewService(
            cfg,
            ffmpeg=ffmpeg or fake_ffmpeg,
            transport=vision.transport,
            today=lambda: SESSION_DATE,
        )
        svc.startup()
        return svc

    return _make


@pytest.fixture()
def service(make_service):
    return make_service()


@pytest.fixture()
def client(service):
    with TestClient(app_module.create_app(service)) as test_client:
        yield test_client
