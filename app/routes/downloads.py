"""Download proxy route: streams upstream files without exposing their URLs."""

import requests
from flask import Blueprint, Response, jsonify, request, stream_with_context

from app.config import get_settings
from app.services import download_proxy
from app.services.log_service import get_log_service

downloads_bp = Blueprint("downloads", __name__)


@downloads_bp.route("/proxy-download", methods=["GET"])
def proxy_download() -> tuple[Response, int] | Response:
    """Stream an upstream download as a forced attachment.

    Query params:
        url: Percent-encoded upstream URL (decoded repeatedly until stable)
    """
    url = request.args.get("url", "")
    if not url:
        return jsonify({"error": "URL parameter required"}), 400

    decoded = download_proxy.decode_until_stable(url)
    if not download_proxy.is_valid_download_url(decoded):
        return jsonify(
            {"error": "Invalid URL format", "originalUrl": url, "decodedUrl": decoded}
        ), 400

    log = get_log_service()
    try:
        upstream = download_proxy.open_download(decoded, timeout=get_settings().request_timeout)
    except requests.RequestException as e:
        log.error("proxy", "download_failed", f"Download failed: {e}", {"error": str(e)})
        return jsonify({"error": "Download failed", "message": str(e)}), 500

    if not upstream.ok:
        log.warning(
            "proxy",
            "download_upstream_failed",
            f"Upstream download answered {upstream.status_code}",
            {"status": upstream.status_code},
        )
        upstream.close()
        return jsonify(
            {
                "error": "Failed to download from upstream",
                "status": upstream.status_code,
                "statusText": upstream.reason,
            }
        ), 502

    stream = download_proxy.DownloadStream(upstream, download_proxy.filename_from_url(decoded))
    log.info(
        "proxy",
        "download_started",
        f"Forcing download of {stream.filename} ({stream.content_length or 'unknown size'})",
        {"filename": stream.filename, "size": stream.content_length},
    )
    return Response(
        stream_with_context(stream.iter_content()),
        headers=stream.headers(),
        mimetype="application/octet-stream",
    )
