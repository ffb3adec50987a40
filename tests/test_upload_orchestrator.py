"""Tests for upload orchestration, tagging and optimization requests."""

from unittest.mock import MagicMock

import pytest

from app.services import upload_orchestrator
from app.services.errors import UpstreamError, UploadInitError, ValidationError
from app.services.upstream_client import UpstreamClient

from fakes import FakeUpstream

HASH = "f" * 64


class TestStartUpload:
    """Tests for start_upload."""

    def test_requires_name_and_filename(self, upstream: UpstreamClient) -> None:
        """Test that missing inputs are rejected."""
        with pytest.raises(ValidationError, match="modelName and filename required"):
            upload_orchestrator.start_upload(upstream, "", "a.fbx")

    def test_new_upload_returns_transfer_url(
        self, upstream: UpstreamClient, fake_upstream: FakeUpstream
    ) -> None:
        """Test that a miss opens a new upload session."""
        result = upload_orchestrator.start_upload(upstream, "chair", "chair.fbx", HASH)

        assert result.reused is False
        assert result.transfer_url == f"https://s3.test/upload/{result.asset_id}"
        assert result.to_dict() == {
            "id": result.asset_id,
            "exists": False,
            "signedUrl": result.transfer_url,
        }
        _, _, body = [c for c in fake_upstream.calls if c[0] == "POST"][0]
        assert body == {"model_name": "chair", "filenames": ["chair.fbx"], "is_zip": False}

    def test_existing_hash_is_reused(
        self, upstream: UpstreamClient, fake_upstream: FakeUpstream
    ) -> None:
        """Test that a hit skips the upload session entirely."""
        asset = fake_upstream.add_asset(name="chair", tags=[f"sha256-{HASH}"])

        result = upload_orchestrator.start_upload(upstream, "chair", "chair.fbx", HASH)

        assert result.reused is True
        assert result.transfer_url is None
        data = result.to_dict()
        assert data["exists"] is True
        assert "signedUrl" not in data
        assert data["foundAsset"]["id"] == asset["id"]
        assert fake_upstream.count("POST", "/rawmodel/api-upload/start") == 0

    def test_missing_transfer_url(self) -> None:
        """Test that an incomplete upstream answer is an init failure."""
        client = MagicMock()
        client.call.return_value = {"id": 5, "links": {"s3_upload_urls": {}}}

        with pytest.raises(UploadInitError, match="Failed to create upload"):
            upload_orchestrator.start_upload(client, "chair", "chair.fbx")


class TestTags:
    """Tests for tag merging."""

    def test_merge_tag_lists_keeps_order(self) -> None:
        """Test that the union keeps first-seen order."""
        assert upload_orchestrator.merge_tag_lists(["a", "b"], ["b", "c", "", None]) == [
            "a",
            "b",
            "c",
        ]

    def test_merge_keeps_existing_tags(
        self, upstream: UpstreamClient, fake_upstream: FakeUpstream
    ) -> None:
        """Test that merging never drops tags already on the asset."""
        asset = fake_upstream.add_asset(tags=["keep-me"])

        upload_orchestrator.merge_tags(upstream, asset["id"], ["new"])

        assert [t["name"] for t in fake_upstream.assets[asset["id"]]["tags"]] == ["keep-me", "new"]

    def test_merge_is_idempotent(
        self, upstream: UpstreamClient, fake_upstream: FakeUpstream
    ) -> None:
        """Test that applying the same tags twice leaves the set unchanged."""
        asset = fake_upstream.add_asset(tags=["x"])

        upload_orchestrator.merge_tags(upstream, asset["id"], ["y", "x"])
        first = list(fake_upstream.assets[asset["id"]]["tags"])
        upload_orchestrator.merge_tags(upstream, asset["id"], ["y", "x"])

        assert fake_upstream.assets[asset["id"]]["tags"] == first

    def test_tag_asset_adds_hash_tags(
        self, upstream: UpstreamClient, fake_upstream: FakeUpstream
    ) -> None:
        """Test that tag_asset writes both hash spellings and the filename."""
        asset = fake_upstream.add_asset()

        assert upload_orchestrator.tag_asset(upstream, asset["id"], HASH, "chair.fbx") is True

        names = [t["name"] for t in fake_upstream.assets[asset["id"]]["tags"]]
        assert names == [f"sha256-{HASH}", f"hash:{HASH}", "filename:chair.fbx"]

    def test_tag_asset_swallows_failures(self) -> None:
        """Test that a tagging failure is reported, not raised."""
        client = MagicMock()
        client.call.side_effect = UpstreamError(500, "boom")

        assert upload_orchestrator.tag_asset(client, 1, HASH) is False


class TestOptimize:
    """Tests for the optimize payload fallback."""

    def test_payload_order(self) -> None:
        """Test the order in which body shapes are tried."""
        bodies = upload_orchestrator.optimize_payloads(7, "12", "fast")
        entries = [b["optimizations"][0] for b in bodies]
        assert entries == [
            {"model_id": 7, "preset_id": 12},
            {"model_id": 7, "config": {"preset_id": 12}},
            {"model_id": 7, "preset_key": "fast"},
            {"model_id": 7, "config": {"preset_key": "fast"}},
            {"model_id": 7},
        ]

    def test_default_preset_used(self) -> None:
        """Test that the configured preset fills in for a missing one."""
        bodies = upload_orchestrator.optimize_payloads(7, None, None, default_preset_id=9547)
        assert bodies[0] == {"optimizations": [{"model_id": 7, "preset_id": 9547}]}

    def test_falls_back_until_accepted(
        self, upstream: UpstreamClient, fake_upstream: FakeUpstream
    ) -> None:
        """Test that rejected shapes are followed by the next one."""
        asset = fake_upstream.add_asset()
        fake_upstream.accepts_optimize = lambda entry: "config" in entry

        out = upload_orchestrator.request_optimization(upstream, asset["id"], 3)

        assert out["data"][0]["id"] in [j["id"] for j in fake_upstream.jobs[asset["id"]]]
        assert fake_upstream.count("POST", "/rawmodel/optimize") == 2

    def test_last_error_raised(
        self, upstream: UpstreamClient, fake_upstream: FakeUpstream
    ) -> None:
        """Test that the last rejection surfaces when every shape fails."""
        asset = fake_upstream.add_asset()
        fake_upstream.accepts_optimize = lambda entry: False

        with pytest.raises(UpstreamError) as exc_info:
            upload_orchestrator.request_optimization(upstream, asset["id"], 3)

        assert exc_info.value.status_code == 422
        assert fake_upstream.count("POST", "/rawmodel/optimize") == 3

    def test_requires_asset_id(self, upstream: UpstreamClient) -> None:
        """Test that a missing asset id is rejected."""
        with pytest.raises(ValidationError, match="rawmodelId required"):
            upload_orchestrator.request_optimization(upstream, None)

    def test_add_formats_defaults_to_glb(self) -> None:
        """Test that GLB is requested when no formats are given."""
        client = MagicMock()
        upload_orchestrator.add_formats(client, 4)
        client.call.assert_called_once_with("/rawmodel/4/addFormats", "POST", {"formats": ["glb"]})
