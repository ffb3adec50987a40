"""Upload orchestration: hash check, create-or-reuse, completion, tagging, optimize."""

import logging
from dataclasses import dataclass
from typing import Any

from app.services import dedup_resolver
from app.services.errors import MeshOptimizerError, UploadInitError, ValidationError
from app.services.log_service import get_log_service
from app.services.upstream_client import UpstreamClient, payload_data

logger = logging.getLogger(__name__)


@dataclass
class UploadStart:
    """Outcome of starting an upload: either a reused asset or a fresh transfer target."""

    asset_id: Any
    transfer_url: str | None = None
    reused: bool = False
    found_asset: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the browser-facing response shape."""
        result: dict[str, Any] = {"id": self.asset_id, "exists": self.reused}
        if self.transfer_url:
            result["signedUrl"] = self.transfer_url
        if self.found_asset is not None:
            result["foundAsset"] = self.found_asset
        return result


def hash_tags(content_hash: str, filename: str | None = None) -> list[str]:
    """Tags that make an asset discoverable by find_asset_by_hash."""
    tags = [dedup_resolver.safe_tag(content_hash), dedup_resolver.legacy_tag(content_hash)]
    if filename:
        tags.append(f"filename:{filename}")
    return tags


def asset_summary(asset: dict[str, Any]) -> dict[str, Any]:
    """The id/name/created_at triple reported for a matched asset."""
    return {
        "id": asset.get("id"),
        "name": asset.get("name"),
        "created_at": asset.get("created_at"),
    }


def start_upload(
    client: UpstreamClient,
    model_name: str,
    filename: str,
    content_hash: str | None = None,
) -> UploadStart:
    """Reuse an asset with the same content hash or open a new upload session.

    Args:
        client: Upstream client
        model_name: Display name for the new asset
        filename: Name of the file that will be transferred
        content_hash: Optional hex digest of the file contents

    Returns:
        UploadStart; ``transfer_url`` is set only when a new session was created

    Raises:
        ValidationError: If model_name or filename is missing
        UploadInitError: If the upstream response lacks an id or transfer URL
        UpstreamError, TransportError: If the upstream call fails
    """
    if not model_name or not filename:
        raise ValidationError("modelName and filename required")

    log = get_log_service()

    if content_hash:
        hit = dedup_resolver.find_asset_by_hash(client, content_hash)
        if hit:
            log.info(
                "upload",
                "upload_reused",
                f"Reusing asset {hit.get('id')} for {filename}",
                {"asset_id": hit.get("id"), "filename": filename, "hash": content_hash},
            )
            return UploadStart(asset_id=hit.get("id"), reused=True, found_asset=asset_summary(hit))

    start = client.call(
        "/rawmodel/api-upload/start",
        "POST",
        {"model_name": model_name, "filenames": [filename], "is_zip": False},
    )
    start = start if isinstance(start, dict) else {}
    asset_id = start.get("id")
    links = start.get("links") if isinstance(start.get("links"), dict) else {}
    upload_urls = links.get("s3_upload_urls") if isinstance(links.get("s3_upload_urls"), dict) else {}
    transfer_url = upload_urls.get(filename)

    if not asset_id or not transfer_url:
        logger.error("Upload session response missing id or transfer URL: %r", start)
        log.error(
            "upload",
            "upload_init_failed",
            f"Failed to create upload for {filename}",
            {"filename": filename, "response": start},
        )
        raise UploadInitError("Failed to create upload")

    log.info(
        "upload",
        "upload_session_created",
        f"Created upload session {asset_id} for {filename}",
        {"asset_id": asset_id, "filename": filename, "hash": content_hash},
    )
    return UploadStart(asset_id=asset_id, transfer_url=transfer_url)


def complete_upload(client: UpstreamClient, asset_id: Any) -> Any:
    """Acknowledge that the direct transfer for an asset has finished."""
    data = client.call(f"/rawmodel/{asset_id}/api-upload/complete", "GET")
    get_log_service().info(
        "upload", "upload_completed", f"Upload completed for asset {asset_id}",
        {"asset_id": asset_id},
    )
    return data


def current_tags(asset_record: Any) -> list[str]:
    """Tag names of an asset record as returned by ``GET /rawmodel/<id>``."""
    asset = payload_data(asset_record)
    if not isinstance(asset, dict) or not isinstance(asset.get("tags"), list):
        return []
    names: list[str] = []
    for tag in asset["tags"]:
        name = tag.get("name") if isinstance(tag, dict) else tag
        if isinstance(name, str) and name:
            names.append(name)
    return names


def merge_tag_lists(existing: list[str], incoming: list[Any]) -> list[str]:
    """Union of two tag lists, keeping first-seen order and dropping duplicates."""
    merged = existing + [t for t in incoming if isinstance(t, str) and t]
    return list(dict.fromkeys(merged))


def merge_tags(client: UpstreamClient, asset_id: Any, tags: list[Any]) -> Any:
    """Add tags to an asset without dropping the ones it already has.

    Reads the current tags, unions them with ``tags`` and writes the result back, so
    applying the same tags again leaves the asset unchanged.
    """
    record = client.call(f"/rawmodel/{asset_id}", "GET")
    existing = current_tags(record)
    merged = merge_tag_lists(existing, tags)
    logger.info(
        "Asset %s tags: %d current + %d new = %d total",
        asset_id, len(existing), len(tags), len(merged),
    )
    return client.call(f"/rawmodel/{asset_id}", "PUT", {"tags": merged})


def tag_asset(
    client: UpstreamClient, asset_id: Any, content_hash: str, filename: str | None = None
) -> bool:
    """Attach the dedup tags to an uploaded asset.

    Failures are logged and swallowed; an untagged asset only costs a future
    re-upload.

    Returns:
        True if the tags were written
    """
    log = get_log_service()
    tags = hash_tags(content_hash, filename)
    try:
        merge_tags(client, asset_id, tags)
    except MeshOptimizerError as e:
        log.warning(
            "upload",
            "tagging_failed",
            f"Failed to tag asset {asset_id}: {e}",
            {"asset_id": asset_id, "tags": tags, "error": str(e)},
        )
        return False
    log.info("upload", "asset_tagged", f"Tagged asset {asset_id}", {"asset_id": asset_id, "tags": tags})
    return True


def _as_preset_id(value: Any) -> int | None:
    if value is None or isinstance(value, bool) or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def optimize_payloads(
    rawmodel_id: Any,
    preset_id: Any = None,
    preset_key: str | None = None,
    default_preset_id: int | None = None,
) -> list[dict[str, Any]]:
    """Request bodies to try against the bulk optimize endpoint, in order.

    The accepted body shape is not documented consistently upstream; this is a
    compatibility shim that tries each known shape until one is accepted.
    """
    effective_preset = _as_preset_id(preset_id)
    if effective_preset is None:
        effective_preset = default_preset_id

    entries: list[dict[str, Any]] = []
    if effective_preset is not None:
        entries.append({"model_id": rawmodel_id, "preset_id": effective_preset})
        entries.append({"model_id": rawmodel_id, "config": {"preset_id": effective_preset}})
    if preset_key:
        entries.append({"model_id": rawmodel_id, "preset_key": preset_key})
        entries.append({"model_id": rawmodel_id, "config": {"preset_key": preset_key}})
    entries.append({"model_id": rawmodel_id})

    return [{"optimizations": [entry]} for entry in entries]


def request_optimization(
    client: UpstreamClient,
    rawmodel_id: Any,
    preset_id: Any = None,
    preset_key: str | None = None,
    default_preset_id: int | None = None,
) -> Any:
    """Create an optimization job, trying each payload shape until one is accepted.

    Raises:
        ValidationError: If rawmodel_id is missing
        UpstreamError, TransportError: The last failure, if every shape was rejected
    """
    if not rawmodel_id:
        raise ValidationError("rawmodelId required")

    log = get_log_service()
    last_error: MeshOptimizerError | None = None
    bodies = optimize_payloads(rawmodel_id, preset_id, preset_key, default_preset_id)

    for attempt, body in enumerate(bodies, start=1):
        try:
            out = client.call("/rawmodel/optimize", "POST", body)
        except MeshOptimizerError as e:
            logger.info("Optimize payload %d/%d rejected: %s", attempt, len(bodies), e)
            last_error = e
            continue
        log.info(
            "optimize",
            "optimization_started",
            f"Optimization started for asset {rawmodel_id}",
            {"asset_id": rawmodel_id, "payload_attempt": attempt, "payload": body},
        )
        return out

    log.error(
        "optimize",
        "optimization_failed",
        f"All optimize payload variants failed for asset {rawmodel_id}",
        {"asset_id": rawmodel_id, "error": str(last_error)},
    )
    raise last_error or MeshOptimizerError("All optimize payload variants failed")


def add_formats(client: UpstreamClient, asset_id: Any, formats: list[str] | None = None) -> Any:
    """Ask the upstream service to generate additional output formats for an asset."""
    formats = formats or ["glb"]
    data = client.call(f"/rawmodel/{asset_id}/addFormats", "POST", {"formats": formats})
    get_log_service().info(
        "optimize", "formats_requested", f"Requested {', '.join(formats)} for asset {asset_id}",
        {"asset_id": asset_id, "formats": formats},
    )
    return data
