"""Map upstream optimization job snapshots onto a fixed stage enum.

The upstream job status is a free-form string and its progress field is optional and
not monotonic. Every poll recomputes the stage from the latest snapshot; nothing here
is persisted.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from app.services.errors import NotFoundError
from app.services.upstream_client import UpstreamClient, is_failure, payload_data

logger = logging.getLogger(__name__)


class Stage(Enum):
    """Normalized stage of an optimization flow."""

    WAITING = "waiting"
    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        """Whether polling stops at this stage."""
        return self in (Stage.READY, Stage.ERROR)


# Upstream status vocabulary; anything not listed is treated as processing
STATUS_STAGES: dict[str, Stage] = {
    "queued": Stage.QUEUED,
    "pending": Stage.QUEUED,
    "waiting": Stage.QUEUED,
    "processing": Stage.PROCESSING,
    "running": Stage.PROCESSING,
    "optimizing": Stage.PROCESSING,
    "done": Stage.READY,
    "completed": Stage.READY,
    "finished": Stage.READY,
    "ready": Stage.READY,
    "success": Stage.READY,
    "failed": Stage.ERROR,
    "error": Stage.ERROR,
    "cancelled": Stage.ERROR,
}

# Progress bands per stage (inclusive)
QUEUED_BAND = (20, 50)
PROCESSING_BAND = (50, 95)
UNMAPPED_BAND = (50, 90)
PROCESSING_DEFAULT_PROGRESS = 75
UNMAPPED_DEFAULT_PROGRESS = 60
NO_JOB_PROGRESS = 30

# Formats looked up by name directly in a job's download payload
WELL_KNOWN_FORMATS = ("glb", "gltf", "usdz", "fbx", "obj")

# Asset-level download keys containing these are logs or reports, not model files
NON_MODEL_MARKERS = ("error", "info")


@dataclass
class Download:
    """A downloadable output file."""

    format: str
    url: str

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary for JSON serialization."""
        return {"format": self.format, "url": self.url}


@dataclass
class NormalizedStatus:
    """Normalized view of an asset's latest optimization job."""

    stage: Stage
    progress: int
    downloads: list[Download] = field(default_factory=list)
    job_id: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the browser-facing response shape."""
        return {
            "stage": self.stage.value,
            "progress": self.progress,
            "rapidmodelId": self.job_id,
            "downloads": [d.to_dict() for d in self.downloads],
        }


def map_status(status: Any) -> Stage:
    """Map a free-form upstream status string onto a Stage (unrecognized → processing)."""
    return STATUS_STAGES.get(str(status or "").strip().lower(), Stage.PROCESSING)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def raw_progress(job: dict[str, Any]) -> float:
    """Upstream progress of a job, 0 when absent or not numeric."""
    meta = job.get("meta") if isinstance(job.get("meta"), dict) else {}
    value = meta.get("progress", job.get("progress"))
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if number == number else 0.0  # NaN


def _is_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(("http://", "https://"))


def _format_from_key(key: str, default: str = "file") -> str:
    if "." in key:
        return key.rsplit(".", 1)[-1].lower()
    return key.lower() or default


def _parse_created_at(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def latest_job(jobs: list[Any]) -> dict[str, Any] | None:
    """Most recently created job; list order breaks ties and missing timestamps."""
    candidates = [(i, job) for i, job in enumerate(jobs) if isinstance(job, dict)]
    if not candidates:
        return None
    floor = datetime.min.replace(tzinfo=UTC)

    def sort_key(entry: tuple[int, dict[str, Any]]) -> tuple[datetime, int]:
        index, job = entry
        return (_parse_created_at(job.get("created_at")) or floor, index)

    return max(candidates, key=sort_key)[1]


def _add(downloads: list[Download], fmt: str, url: Any) -> None:
    if _is_url(url) and all(d.url != url for d in downloads):
        downloads.append(Download(format=fmt, url=url))


def extract_job_downloads(payload: Any) -> list[Download]:
    """Download links from a job's download payload.

    Supports well-known format keys, a nested ``all`` map keyed by file name or
    format, and any other top-level value that is a URL.
    """
    payload = payload_data(payload)
    if not isinstance(payload, dict):
        return []

    downloads: list[Download] = []
    for fmt in WELL_KNOWN_FORMATS:
        _add(downloads, fmt, payload.get(fmt))

    all_formats = payload.get("all")
    if isinstance(all_formats, dict):
        for key, url in all_formats.items():
            _add(downloads, _format_from_key(str(key)), url)

    for key, value in payload.items():
        if key == "all" or key in WELL_KNOWN_FORMATS:
            continue
        _add(downloads, str(key).lower(), value)

    return downloads


def extract_asset_downloads(asset: Any) -> list[Download]:
    """Model files from an asset's own download map, skipping error/info artifacts."""
    asset = payload_data(asset)
    if not isinstance(asset, dict) or not isinstance(asset.get("downloads"), dict):
        return []

    downloads: list[Download] = []

    def collect(mapping: dict[str, Any]) -> None:
        for key, value in mapping.items():
            key_lower = str(key).lower()
            if any(marker in key_lower for marker in NON_MODEL_MARKERS):
                continue
            if isinstance(value, dict):
                collect(value)
            else:
                _add(downloads, _format_from_key(str(key)), value)

    collect(asset["downloads"])
    return downloads


def normalize(jobs: list[Any] | None, asset: Any) -> NormalizedStatus:
    """Derive stage, progress and downloads from the latest job and the asset record.

    Args:
        jobs: Optimization jobs listed for the asset (may be empty)
        asset: The asset record (``data`` envelope accepted)

    Returns:
        NormalizedStatus with progress in [0, 100]
    """
    job = latest_job(jobs or [])

    if job is None:
        downloads = extract_asset_downloads(asset)
        if downloads:
            return NormalizedStatus(Stage.READY, 100, downloads)
        return NormalizedStatus(Stage.QUEUED, NO_JOB_PROGRESS)

    job_id = job.get("id")
    status = job.get("optimization_status", job.get("status"))
    stage = map_status(status)
    reported = raw_progress(job)
    downloads: list[Download] = []

    if stage == Stage.QUEUED:
        progress = _clamp(reported, *QUEUED_BAND)
    elif stage == Stage.READY:
        progress = 100.0
        downloads = extract_job_downloads(job.get("downloads"))
        if not downloads:
            downloads = extract_asset_downloads(asset)
    elif stage == Stage.ERROR:
        progress = 0.0
    elif str(status or "").strip().lower() in STATUS_STAGES:
        progress = _clamp(reported or PROCESSING_DEFAULT_PROGRESS, *PROCESSING_BAND)
    else:
        logger.info("Unmapped job status %r, treating as processing", status)
        progress = _clamp(reported or UNMAPPED_DEFAULT_PROGRESS, *UNMAPPED_BAND)

    return NormalizedStatus(stage, int(round(progress)), [d for d in downloads if d.url], job_id)


def get_status(client: UpstreamClient, asset_id: Any) -> NormalizedStatus:
    """Fetch the asset and its jobs and normalize them.

    Raises:
        NotFoundError: If the asset record cannot be read
    """
    asset = client.safe_call(f"/rawmodel/{asset_id}", "GET")
    if is_failure(asset):
        raise NotFoundError(asset.message)

    listing = client.safe_call(f"/rawmodel/{asset_id}/rapidmodels", "GET")
    jobs = payload_data(listing) if not is_failure(listing) else []
    jobs = jobs if isinstance(jobs, list) else []

    # Finished jobs listed without their download map get it fetched separately
    job = latest_job(jobs)
    if (
        job is not None
        and "downloads" not in job
        and job.get("id") is not None
        and map_status(job.get("optimization_status", job.get("status"))) == Stage.READY
    ):
        extra = client.safe_call(f"/rapidmodel/{job['id']}/downloads", "GET")
        if not is_failure(extra):
            enriched = {**job, "downloads": payload_data(extra)}
            jobs = [enriched if j is job else j for j in jobs]

    status = normalize(jobs, asset)
    logger.debug("Status for asset %s: %s", asset_id, status.to_dict())
    return status


def debug_snapshot(client: UpstreamClient, asset_id: Any) -> dict[str, Any]:
    """Raw upstream snapshots of an asset, its jobs and download maps."""

    def unwrap(result: Any) -> Any:
        return result.to_dict() if is_failure(result) else payload_data(result)

    rawmodel = client.safe_call(f"/rawmodel/{asset_id}", "GET")
    rapidmodels = client.safe_call(f"/rawmodel/{asset_id}/rapidmodels", "GET")
    raw_downloads = client.safe_call(f"/rawmodel/{asset_id}/downloads", "GET")

    rapid_downloads: Any = None
    jobs = payload_data(rapidmodels) if not is_failure(rapidmodels) else []
    job = latest_job(jobs if isinstance(jobs, list) else [])
    if job is not None:
        rapid_downloads = unwrap(client.safe_call(f"/rapidmodel/{job.get('id')}/downloads", "GET"))

    return {
        "rawmodel": unwrap(rawmodel),
        "rapidmodels": unwrap(rapidmodels),
        "rawDownloads": unwrap(raw_downloads),
        "rapidDownloads": rapid_downloads,
        "timestamp": datetime.now(UTC).isoformat(),
    }
