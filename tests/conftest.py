"""Pytest configuration and fixtures for the mesh optimizer proxy tests."""

from collections.abc import Generator
from pathlib import Path

import pytest
from flask import Flask
from flask.testing import FlaskClient

from app import config, create_app
from app.services import log_service, upstream_client
from app.services.upstream_client import UpstreamClient
from fakes import API_BASE, FakeUpstream


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Point settings and logs at a temporary directory and reset singletons."""
    monkeypatch.setenv(config.ENV_API_TOKEN, "test-token")
    monkeypatch.setenv(config.ENV_SETTINGS_FILE, str(tmp_path / "settings.json"))
    monkeypatch.setenv(config.ENV_LOG_DIRECTORY, str(tmp_path / "logs"))
    monkeypatch.delenv(config.ENV_API_BASE, raising=False)
    monkeypatch.delenv(config.ENV_PRESET_ID, raising=False)

    config.Settings._instance = None
    log_service._log_service = None
    upstream_client._upstream_client = None
    yield
    config.Settings._instance = None
    log_service._log_service = None
    upstream_client._upstream_client = None


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    """Install an in-memory upstream behind the shared UpstreamClient."""
    fake = FakeUpstream()
    upstream_client._upstream_client = UpstreamClient(API_BASE, "test-token", session=fake)  # type: ignore[arg-type]
    return fake


@pytest.fixture
def upstream(fake_upstream: FakeUpstream) -> UpstreamClient:
    """The UpstreamClient wired to the fake catalog."""
    return upstream_client.get_upstream_client()


@pytest.fixture
def app() -> Flask:
    """Create application for testing."""
    app = create_app()
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()


@pytest.fixture
def model_file(tmp_path: Path) -> Path:
    """A small fake model file."""
    path = tmp_path / "chair.fbx"
    path.write_bytes(b"Kaydara FBX Binary  \x00" + b"\x01" * 256)
    return path
