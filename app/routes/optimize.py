"""Optimization API routes: job creation, status, and upstream pass-throughs."""

import logging
from collections.abc import Callable
from typing import Any

from flask import Blueprint, Response, jsonify, request

from app.config import get_settings
from app.routes.common import error_response
from app.services import status_normalizer, upload_orchestrator
from app.services.errors import MeshOptimizerError, NotFoundError
from app.services.log_service import get_log_service
from app.services.upstream_client import UpstreamClient, get_upstream_client

logger = logging.getLogger(__name__)

optimize_bp = Blueprint("optimize", __name__)


@optimize_bp.route("/optimize", methods=["POST"])
def optimize() -> tuple[Response, int]:
    """Create an optimization job for an asset.

    Request body:
        rawmodelId: Asset id
        presetId: Optional numeric preset (defaults to the configured preset)
        presetKey: Optional named preset

    Returns:
        The upstream job creation payload, or the last upstream error if every
        payload shape was rejected
    """
    data = request.get_json(silent=True)
    data = data if isinstance(data, dict) else {}
    try:
        out = upload_orchestrator.request_optimization(
            get_upstream_client(),
            data.get("rawmodelId"),
            data.get("presetId"),
            data.get("presetKey"),
            default_preset_id=get_settings().preset_id,
        )
    except MeshOptimizerError as e:
        logger.error("optimize failed for %s: %s", data.get("rawmodelId"), e)
        return error_response(e)

    return jsonify(out), 200


@optimize_bp.route("/status/<asset_id>", methods=["GET"])
def get_status(asset_id: str) -> tuple[Response, int]:
    """Normalized stage, progress and downloads for an asset's latest job."""
    try:
        status = status_normalizer.get_status(get_upstream_client(), asset_id)
    except NotFoundError as e:
        return jsonify({"error": "Asset not found", "detail": str(e)}), 404
    except Exception as e:
        logger.exception("Status lookup failed for %s", asset_id)
        get_log_service().error(
            "status", "status_failed", f"Status lookup failed for {asset_id}: {e}",
            {"asset_id": asset_id, "error": str(e)},
        )
        return jsonify({"error": str(e), "stage": "error", "progress": 0, "downloads": []}), 500

    return jsonify(status.to_dict()), 200


@optimize_bp.route("/debug/<asset_id>", methods=["GET"])
def debug(asset_id: str) -> tuple[Response, int]:
    """Raw upstream snapshots for troubleshooting."""
    return jsonify(status_normalizer.debug_snapshot(get_upstream_client(), asset_id)), 200


def _pass_through(fetch: Callable[[UpstreamClient], Any]) -> tuple[Response, int]:
    try:
        return jsonify(fetch(get_upstream_client())), 200
    except MeshOptimizerError as e:
        return error_response(e)


@optimize_bp.route("/rawmodel/<asset_id>", methods=["GET"])
def get_rawmodel(asset_id: str) -> tuple[Response, int]:
    """Asset record, including analysis status, tags and downloads."""
    return _pass_through(lambda c: c.call(f"/rawmodel/{asset_id}", "GET"))


@optimize_bp.route("/rawmodel/<asset_id>/rapidmodels", methods=["GET"])
def list_jobs(asset_id: str) -> tuple[Response, int]:
    """Optimization jobs of an asset."""
    return _pass_through(lambda c: c.call(f"/rawmodel/{asset_id}/rapidmodels", "GET"))


@optimize_bp.route("/rapidmodel/<job_id>/downloads", methods=["GET"])
def job_downloads(job_id: str) -> tuple[Response, int]:
    """Download map of an optimization job."""
    return _pass_through(lambda c: c.call(f"/rapidmodel/{job_id}/downloads", "GET"))


@optimize_bp.route("/rawmodel/<asset_id>/add-formats", methods=["POST"])
def add_formats(asset_id: str) -> tuple[Response, int]:
    """Request GLB (or the given formats) for an asset."""
    data = request.get_json(silent=True)
    formats = data.get("formats") if isinstance(data, dict) else None
    if not isinstance(formats, list) or not all(isinstance(f, str) for f in formats):
        formats = None
    return _pass_through(lambda c: upload_orchestrator.add_formats(c, asset_id, formats))


@optimize_bp.route("/rawmodel/<asset_id>/downloads", methods=["GET"])
def asset_downloads(asset_id: str) -> tuple[Response, int]:
    """Asset-level download map (converted files)."""
    return _pass_through(lambda c: c.call(f"/rawmodel/{asset_id}/downloads", "GET"))
