"""Upload API routes: hash lookup, upload sessions, completion and tagging."""

import logging
from typing import Any

from flask import Blueprint, Response, jsonify, request

from app.config import get_settings
from app.routes.common import error_response
from app.services import dedup_resolver, upload_orchestrator
from app.services.errors import MeshOptimizerError
from app.services.log_service import get_log_service
from app.services.upstream_client import get_upstream_client

logger = logging.getLogger(__name__)

upload_bp = Blueprint("upload", __name__)


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@upload_bp.route("/find-by-hash", methods=["GET"])
def find_by_hash() -> tuple[Response, int]:
    """Look up a previous upload by content hash.

    Query params:
        hash: Hex digest of the file contents

    Returns:
        JSON with found flag and, on a hit, the asset id/name/created_at.
        Upstream failures degrade to ``found: false``; this never answers 5xx.
    """
    content_hash = request.args.get("hash", "").strip()
    if not content_hash:
        return jsonify({"error": "hash required"}), 400

    settings = get_settings()
    try:
        hit = dedup_resolver.find_asset_by_hash(
            get_upstream_client(),
            content_hash,
            search_max_pages=settings.search_max_pages,
            scan_max_pages=settings.scan_max_pages,
        )
    except Exception as e:
        logger.exception("find-by-hash failed for %s", content_hash)
        return jsonify({"found": False, "note": "fallback: suppressed error", "detail": str(e)}), 200

    if not hit:
        return jsonify({"found": False}), 200

    return jsonify({"found": True, **upload_orchestrator.asset_summary(hit)}), 200


@upload_bp.route("/start-upload", methods=["POST"])
def start_upload() -> tuple[Response, int]:
    """Reuse an asset with the same content hash or open a new upload session.

    Request body:
        modelName: Display name for the asset
        filename: Name of the file to transfer
        contentHash: Optional hex digest of the file

    Returns:
        JSON with id, exists and (for new uploads) signedUrl
    """
    data = _json_body()
    try:
        result = upload_orchestrator.start_upload(
            get_upstream_client(),
            data.get("modelName", ""),
            data.get("filename", ""),
            data.get("contentHash") or None,
        )
    except MeshOptimizerError as e:
        logger.error("start-upload failed: %s", e)
        return error_response(e)

    return jsonify(result.to_dict()), 200


@upload_bp.route("/complete-upload/<asset_id>", methods=["POST"])
def complete_upload(asset_id: str) -> tuple[Response, int]:
    """Acknowledge a finished direct transfer.

    Request body (optional):
        contentHash: When given, the dedup tags are attached as well
        filename: Original file name, recorded as a tag

    Returns:
        The upstream completion payload
    """
    client = get_upstream_client()
    try:
        out = upload_orchestrator.complete_upload(client, asset_id)
    except MeshOptimizerError as e:
        get_log_service().error(
            "upload", "upload_complete_failed", f"Completing upload {asset_id} failed: {e}",
            {"asset_id": asset_id, "error": str(e)},
        )
        return error_response(e)

    data = _json_body()
    if data.get("contentHash"):
        upload_orchestrator.tag_asset(client, asset_id, data["contentHash"], data.get("filename"))

    return jsonify(out), 200


@upload_bp.route("/rawmodel/<asset_id>/tags", methods=["POST"])
def add_tags(asset_id: str) -> tuple[Response, int]:
    """Merge tags into an asset's existing tag set.

    Request body:
        tags: List of tag strings

    Returns:
        The upstream response for the updated asset
    """
    tags = _json_body().get("tags")
    incoming = tags if isinstance(tags, list) else []
    try:
        out = upload_orchestrator.merge_tags(get_upstream_client(), asset_id, incoming)
    except MeshOptimizerError as e:
        get_log_service().warning(
            "upload", "tagging_failed", f"Failed to add tags to asset {asset_id}: {e}",
            {"asset_id": asset_id, "tags": incoming, "error": str(e)},
        )
        return error_response(e)

    return jsonify(out), 200
