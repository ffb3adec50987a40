"""Health check route for mesh_optimizer_proxy."""

from flask import Blueprint, Response, jsonify

from app.services.upstream_client import get_upstream_client, is_failure

main_bp = Blueprint("main", __name__)


@main_bp.route("/health")
def health() -> tuple[Response, int]:
    """Report whether the upstream API answers a cheap listing request."""
    ping = get_upstream_client().safe_call("/rawmodel?q=health", "GET")
    return jsonify(
        {"ok": not is_failure(ping), "upstream_error": ping.message if is_failure(ping) else None}
    ), 200
