"""Helpers shared by the API blueprints."""

from flask import Response, jsonify

from app.services.errors import (
    NotFoundError,
    UploadInitError,
    UpstreamError,
    ValidationError,
)


def error_status(error: Exception) -> int:
    """HTTP status used to report an exception to the browser."""
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, UploadInitError):
        return 502
    return 500


def error_response(error: Exception) -> tuple[Response, int]:
    """JSON error body carrying the raw upstream diagnostic text."""
    body: dict[str, object] = {"error": str(error)}
    if isinstance(error, UpstreamError):
        body["upstream_status"] = error.status_code
    return jsonify(body), error_status(error)
