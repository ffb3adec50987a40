"""Settings API routes for mesh_optimizer_proxy"""

from flask import Blueprint, Response, jsonify, request

from app.config import get_package_version, get_settings
from app.services.log_service import get_log_service
from app.services.upstream_client import reset_upstream_client

settings_bp = Blueprint("settings", __name__)

# Keys the settings API may change; the token and api_base are never among them
ALLOWED_KEYS = {
    "preset_id",
    "request_timeout",
    "search_max_pages",
    "scan_max_pages",
    "log_directory",
}


@settings_bp.route("", methods=["GET"])
def get_all_settings() -> tuple[Response, int]:
    """Get all current settings (the upstream token is never included).

    Returns:
        JSON response with all settings plus whether a token is configured
    """
    settings = get_settings()
    data = settings.all()
    data["api_token_configured"] = bool(settings.api_token)
    return jsonify(data), 200


@settings_bp.route("", methods=["PUT"])
def update_settings() -> tuple[Response, int]:
    """Update settings.

    Request body:
        JSON object with settings to update

    Returns:
        JSON response with updated settings
    """
    if not request.is_json:
        return jsonify({"error": "JSON body required"}), 400

    data = request.get_json(silent=True)
    if not data or not isinstance(data, dict):
        return jsonify({"error": "Empty body"}), 400

    filtered_data = {k: v for k, v in data.items() if k in ALLOWED_KEYS}
    if not filtered_data:
        return jsonify({"error": "No valid settings provided"}), 400

    settings = get_settings()
    settings.update(filtered_data)
    reset_upstream_client()

    get_log_service().info(
        "settings",
        "settings_updated",
        f"Updated settings: {', '.join(filtered_data.keys())}",
        {"changed_keys": list(filtered_data.keys())},
    )

    return jsonify(settings.all()), 200


@settings_bp.route("/version", methods=["GET"])
def get_version() -> tuple[Response, int]:
    """Get the package version from pyproject.toml."""
    return jsonify({"version": get_package_version()}), 200
