"""Tests for the client-side optimization flow."""

import hashlib
import threading
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from flask.testing import FlaskClient

from app.client.api import ProxyClient
from app.client.flow import FlowCancelled, OptimizationFlow, PhasePlan, sha256_of_file
from app.services.errors import PhaseTimeoutError, UpstreamError, ValidationError

from fakes import FakeUpstream, FlaskSession

MB = 1024 * 1024


class ManualClock:
    """Clock advanced only by sleeping."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def session(client: FlaskClient, fake_upstream: FakeUpstream) -> FlaskSession:
    """Session that sends ProxyClient calls into the Flask app."""
    return FlaskSession(client)


@pytest.fixture
def upstream_file() -> Generator[MagicMock, None, None]:
    """Patch the server-side download so proxied downloads return fixed bytes."""
    response = MagicMock()
    response.ok = True
    response.headers = {"Content-Length": "4"}
    response.iter_content.side_effect = lambda chunk_size: iter([b"glTF"])
    with patch("app.routes.downloads.download_proxy.open_download", return_value=response) as mock:
        yield mock


def make_flow(proxy: Any, tmp_path: Path, **kwargs: Any) -> OptimizationFlow:
    clock = ManualClock()
    return OptimizationFlow(
        proxy, output_dir=tmp_path / "out", clock=clock, sleep=clock.sleep, **kwargs
    )


class TestHelpers:
    """Tests for hashing and the phase plan."""

    def test_sha256_of_file(self, model_file: Path) -> None:
        """Test that the digest matches hashlib on the whole content."""
        assert sha256_of_file(model_file) == hashlib.sha256(model_file.read_bytes()).hexdigest()

    def test_phase_plan_minimums(self) -> None:
        """Test the per-phase floors for an empty file."""
        plan = PhasePlan.from_file_size(0)
        assert (plan.upload_ms, plan.analyze_ms, plan.optimize_ms) == (5_000, 15_000, 45_000)
        assert (plan.convert_ms, plan.download_ms) == (30_000, 4_000)

    def test_phase_plan_scales_with_size(self) -> None:
        """Test the size-dependent budgets and the remaining-time sum."""
        plan = PhasePlan.from_file_size(100 * MB)
        assert plan.upload_ms == pytest.approx(20_000)
        assert plan.analyze_ms == pytest.approx(30_000)
        assert plan.optimize_ms == pytest.approx(95_000)
        assert plan.remaining_ms("optimize") == pytest.approx(105_000)
        assert plan.remaining_ms("upload", 1_000) == pytest.approx(154_000)

    def test_phase_plan_caps(self) -> None:
        """Test that analysis and optimization budgets are capped."""
        plan = PhasePlan.from_file_size(10_000 * MB)
        assert (plan.analyze_ms, plan.optimize_ms, plan.convert_ms) == (120_000, 720_000, 480_000)


class TestProcessFile:
    """End-to-end flow through the proxy against the fake catalog."""

    def test_new_file_optimized_and_downloaded(
        self,
        session: FlaskSession,
        fake_upstream: FakeUpstream,
        upstream_file: MagicMock,
        model_file: Path,
        tmp_path: Path,
    ) -> None:
        """Test upload, tagging, optimization and download of a new file."""
        fake_upstream.job_outcome = "done"
        flow = make_flow(ProxyClient("http://proxy.test", session=session), tmp_path)

        result = flow.process_file(model_file)

        assert result.reused is False
        assert result.converted is False
        assert result.output_path == tmp_path / "out" / "chair.glb"
        assert result.output_path.read_bytes() == b"glTF"
        assert session.puts == [
            (f"https://s3.test/upload/{result.asset_id}", model_file.read_bytes())
        ]
        digest = sha256_of_file(model_file)
        tags = [t["name"] for t in fake_upstream.assets[result.asset_id]["tags"]]
        assert f"sha256-{digest}" in tags
        assert f"hash:{digest}" in tags
        assert "filename:chair.fbx" in tags
        assert upstream_file.call_args[0][0] == result.downloads[0]["url"]

    def test_second_run_reuses_asset(
        self,
        session: FlaskSession,
        fake_upstream: FakeUpstream,
        upstream_file: MagicMock,
        model_file: Path,
        tmp_path: Path,
    ) -> None:
        """Test that identical content is not transferred twice."""
        fake_upstream.job_outcome = "done"
        proxy = ProxyClient("http://proxy.test", session=session)

        first = make_flow(proxy, tmp_path).process_file(model_file)
        second = make_flow(proxy, tmp_path).process_file(model_file)

        assert second.reused is True
        assert second.asset_id == first.asset_id
        assert len(session.puts) == 1
        assert fake_upstream.count("POST", "/rawmodel/api-upload/start") == 1

    def test_falls_back_to_conversion(
        self,
        session: FlaskSession,
        fake_upstream: FakeUpstream,
        upstream_file: MagicMock,
        model_file: Path,
        tmp_path: Path,
    ) -> None:
        """Test that a rejected optimization converts to GLB instead."""
        fake_upstream.accepts_optimize = lambda entry: False
        fake_upstream.converts = True
        flow = make_flow(ProxyClient("http://proxy.test", session=session), tmp_path)

        result = flow.process_file(model_file)

        assert result.converted is True
        assert upstream_file.call_args[0][0] == "https://cdn.test/converted.glb"
        assert result.output_path.name == "chair.glb"


class TestProcessFileUnits:
    """Flow behaviour with a mocked proxy client."""

    @pytest.fixture
    def proxy(self) -> MagicMock:
        """Proxy client whose calls all succeed."""
        proxy = MagicMock()
        proxy.find_by_hash.return_value = {"found": False}
        proxy.start_upload.return_value = {"id": 7, "exists": False, "signedUrl": "https://s3.test/7"}
        proxy.get_rawmodel.return_value = {"data": {"analysis_status": "completed"}}
        proxy.status.return_value = {
            "stage": "ready",
            "progress": 100,
            "downloads": [
                {"format": "usdz", "url": "https://cdn.test/a.usdz"},
                {"format": "glb", "url": "https://cdn.test/a.glb"},
            ],
        }
        proxy.download.side_effect = lambda url, dest: Path(dest)
        return proxy

    def test_unsupported_extension(self, proxy: MagicMock, tmp_path: Path) -> None:
        """Test that unknown file types are rejected before any call."""
        path = tmp_path / "notes.txt"
        path.write_text("x")
        with pytest.raises(ValidationError):
            make_flow(proxy, tmp_path).process_file(path)
        proxy.find_by_hash.assert_not_called()

    def test_prefers_glb_download(self, proxy: MagicMock, model_file: Path, tmp_path: Path) -> None:
        """Test that the GLB output is downloaded when several formats exist."""
        make_flow(proxy, tmp_path).process_file(model_file)
        assert proxy.download.call_args[0][0] == "https://cdn.test/a.glb"

    def test_tagging_failure_is_ignored(
        self, proxy: MagicMock, model_file: Path, tmp_path: Path
    ) -> None:
        """Test that a failed tag write does not stop the flow."""
        proxy.add_tags.side_effect = UpstreamError(500, "tag write failed")
        result = make_flow(proxy, tmp_path).process_file(model_file)
        assert result.output_path is not None

    def test_analysis_timeout(self, proxy: MagicMock, model_file: Path, tmp_path: Path) -> None:
        """Test that analysis that never finishes raises after the bounded wait."""
        proxy.get_rawmodel.return_value = {"data": {"analysis_status": "processing"}}

        with pytest.raises(PhaseTimeoutError) as exc_info:
            make_flow(proxy, tmp_path).process_file(model_file)

        assert exc_info.value.phase == "analysis"
        proxy.optimize.assert_not_called()

    def test_conversion_timeout(self, proxy: MagicMock, model_file: Path, tmp_path: Path) -> None:
        """Test that a conversion that never produces a GLB raises."""
        proxy.optimize.side_effect = UpstreamError(500, "rejected")
        proxy.asset_downloads.return_value = {"data": {}}

        with pytest.raises(PhaseTimeoutError) as exc_info:
            make_flow(proxy, tmp_path).process_file(model_file)

        assert exc_info.value.phase == "convert"
        proxy.add_formats.assert_called_once_with(7)

    def test_cancelled_before_analysis(
        self, proxy: MagicMock, model_file: Path, tmp_path: Path
    ) -> None:
        """Test that a set cancel event stops the flow."""
        cancel = threading.Event()
        proxy.complete_upload.side_effect = lambda asset_id: cancel.set()

        with pytest.raises(FlowCancelled):
            make_flow(proxy, tmp_path, cancel_event=cancel).process_file(model_file)

        proxy.get_rawmodel.assert_not_called()


class TestProxyClient:
    """Tests for ProxyClient details not covered end to end."""

    def test_error_status_raises(self) -> None:
        """Test that non-2xx proxy answers raise UpstreamError."""
        session = MagicMock()
        session.request.return_value.ok = False
        session.request.return_value.status_code = 404
        session.request.return_value.text = '{"error": "Asset not found"}'

        with pytest.raises(UpstreamError) as exc_info:
            ProxyClient("http://proxy.test/", session=session).status(5)

        assert exc_info.value.status_code == 404
        assert session.request.call_args[0] == ("GET", "http://proxy.test/api/status/5")

    def test_upload_reports_progress(self, model_file: Path) -> None:
        """Test that the direct transfer reports bytes sent."""
        session = MagicMock()

        def put(url: str, data: Any, timeout: Any) -> MagicMock:
            while data.read(64):
                pass
            return MagicMock(status_code=200)

        session.put.side_effect = put
        seen: list[tuple[int, int]] = []

        ProxyClient(session=session).upload_file("https://s3.test/1", model_file, lambda *a: seen.append(a))

        size = model_file.stat().st_size
        assert seen[-1] == (size, size)

    def test_upload_rejected(self, model_file: Path) -> None:
        """Test that a refused transfer raises."""
        session = MagicMock()
        session.put.return_value = MagicMock(status_code=403, text="denied")

        with pytest.raises(UpstreamError, match="Upload failed: 403"):
            ProxyClient(session=session).upload_file("https://s3.test/1", model_file)
