"""End-to-end optimization of one local model file through the proxy."""

import hashlib
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from app.client.api import ProxyClient
from app.client.poller import ProgressUpdate, StatusPoller
from app.client.profile_store import EstimationProfile, MemoryStore
from app.services.errors import MeshOptimizerError, PhaseTimeoutError, ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (
    ".fbx",
    ".obj",
    ".dae",
    ".gltf",
    ".3ds",
    ".blend",
    ".ply",
    ".stl",
    ".stp",
    ".glb",
)

HASH_CHUNK_SIZE = 4 * 1024 * 1024

ANALYSIS_DONE = ("done", "complete", "completed", "finished", "ready", "success")
ANALYSIS_POLL_SECONDS = 4
ANALYSIS_MAX_WAIT_SECONDS = 600
CONVERT_POLL_SECONDS = 6
CONVERT_MAX_WAIT_SECONDS = 15 * 60

MB = 1024 * 1024


def sha256_of_file(path: str | Path) -> str:
    """Hex SHA-256 digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass
class PhasePlan:
    """Rough per-phase budgets in milliseconds, derived from the file size."""

    upload_ms: float
    analyze_ms: float
    optimize_ms: float
    convert_ms: float
    download_ms: float

    PHASES = ("upload", "analyze", "optimize", "convert", "download")

    @classmethod
    def from_file_size(cls, size_bytes: int) -> "PhasePlan":
        mb = max(0, size_bytes) / MB
        return cls(
            upload_ms=max(5_000.0, mb / 5 * 1000),
            analyze_ms=min(120_000.0, 15_000 + 150 * mb),
            optimize_ms=min(720_000.0, 45_000 + 500 * mb),
            convert_ms=min(480_000.0, 30_000 + 300 * mb),
            download_ms=max(4_000.0, mb / 10 * 1000),
        )

    def remaining_ms(self, phase: str, phase_elapsed_ms: float = 0.0) -> float:
        """Budget left for the current phase and every later one.

        The convert phase only counts once the flow has fallen back to it.
        """
        if phase not in self.PHASES:
            return 0.0
        index = self.PHASES.index(phase)
        later = [p for p in self.PHASES[index + 1 :] if p != "convert"]
        current = getattr(self, f"{phase}_ms")
        total = max(0.0, current - max(0.0, phase_elapsed_ms))
        return total + sum(getattr(self, f"{p}_ms") for p in later)


class FlowCancelled(MeshOptimizerError):
    """The user stopped the flow."""


@dataclass
class FlowResult:
    """Outcome of a processed file."""

    asset_id: Any
    reused: bool
    output_path: Path | None = None
    converted: bool = False
    downloads: list[dict[str, str]] = field(default_factory=list)


def _glb_url(downloads: Any) -> str | None:
    """Find a GLB link in an asset download map, including its ``converted`` section."""
    if not isinstance(downloads, dict):
        return None
    data = downloads.get("data", downloads)
    if not isinstance(data, dict):
        return None
    sections = [data]
    if isinstance(data.get("converted"), dict):
        sections.append(data["converted"])
    for section in sections:
        for key, value in section.items():
            if isinstance(value, str) and value.startswith("http") and key.lower().endswith("glb"):
                return value
    return None


def _pick_download(downloads: list[dict[str, str]]) -> str | None:
    for item in downloads:
        if str(item.get("format", "")).lower() == "glb":
            return item["url"]
    for item in downloads:
        if ".glb" in item.get("url", "").lower():
            return item["url"]
    return downloads[0]["url"] if downloads else None


class OptimizationFlow:
    """Runs hash, dedup, upload, analysis wait, optimization, conversion and download.

    Args:
        client: Proxy API client
        profile: Learned stage durations; an in-memory profile is used if omitted
        output_dir: Where the resulting ``<base>.glb`` is written
        on_status: Receives short human-readable status lines
        on_progress: Receives poll updates while the job runs
        clock: Monotonic time source in seconds
        sleep: Suspends for the given number of seconds
        cancel_event: Set to stop the flow at the next wait
    """

    def __init__(
        self,
        client: ProxyClient,
        profile: EstimationProfile | None = None,
        output_dir: str | Path = ".",
        on_status: Callable[[str], None] | None = None,
        on_progress: Callable[[ProgressUpdate], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.client = client
        self.profile = profile or EstimationProfile(MemoryStore())
        self.output_dir = Path(output_dir)
        self.on_status = on_status
        self.on_progress = on_progress
        self.clock = clock
        self.sleep = sleep
        self.cancel_event = cancel_event or threading.Event()

    def _status(self, message: str) -> None:
        logger.info(message)
        if self.on_status is not None:
            self.on_status(message)

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise FlowCancelled("Cancelled")

    def process_file(self, path: str | Path) -> FlowResult:
        """Optimize one file and download the GLB result.

        Raises:
            ValidationError: If the file type is not supported
            PhaseTimeoutError: If analysis, optimization or conversion takes too long
            FlowCancelled: If cancel_event is set while waiting
        """
        file_path = Path(path)
        if file_path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            raise ValidationError(f"Unsupported file type: {file_path.suffix or file_path.name}")

        plan = PhasePlan.from_file_size(file_path.stat().st_size)
        self._status(f"Hashing {file_path.name}")
        content_hash = sha256_of_file(file_path)

        found = self.client.find_by_hash(content_hash)
        if found.get("found"):
            self._status(f"Found existing asset {found.get('id')}, skipping upload")

        started = self.client.start_upload(file_path.stem, file_path.name, content_hash)
        asset_id = started.get("id")
        reused = bool(started.get("exists"))
        if not reused:
            self._status(f"Uploading {file_path.name} (about {plan.upload_ms / 1000:.0f}s)")
            self.client.upload_file(started["signedUrl"], file_path)
            self.client.complete_upload(asset_id)
            self._tag(asset_id, content_hash, file_path.name)
        self._check_cancelled()

        self._ensure_analyzed(asset_id)
        self._check_cancelled()

        result = FlowResult(asset_id=asset_id, reused=reused)
        url = None
        try:
            self._status(f"Optimizing (about {plan.remaining_ms('optimize') / 1000:.0f}s left)")
            self.client.optimize(asset_id)
            session = self._poll(asset_id)
            if session.stage == "error":
                raise MeshOptimizerError(session.error_message or "Optimization failed")
            result.downloads = list(session.downloads)
            url = _pick_download(session.downloads)
        except MeshOptimizerError as e:
            if isinstance(e, FlowCancelled):
                raise
            logger.warning("Optimization of %s failed, converting instead: %s", asset_id, e)
            self._status("Optimization failed, converting to GLB instead")
            url = self._wait_for_converted(asset_id)
            result.converted = True

        if url is None:
            raise MeshOptimizerError("No downloadable output")
        self._check_cancelled()

        destination = self.output_dir / f"{file_path.stem}.glb"
        self._status(f"Downloading {destination.name}")
        result.output_path = self.client.download(url, destination)
        self._status(f"Saved {result.output_path}")
        return result

    def _tag(self, asset_id: Any, content_hash: str, filename: str) -> None:
        tags = [f"sha256-{content_hash}", f"hash:{content_hash}", f"filename:{filename}"]
        try:
            self.client.add_tags(asset_id, tags)
        except MeshOptimizerError as e:
            logger.warning("Tagging %s failed: %s", asset_id, e)

    def _ensure_analyzed(self, asset_id: Any) -> None:
        """Wait until the asset's analysis reports done.

        Raises:
            PhaseTimeoutError: If analysis is still running after the bounded wait
        """
        started = self.clock()
        self._status("Waiting for analysis")
        while True:
            record = self.client.get_rawmodel(asset_id)
            data = record.get("data", record) if isinstance(record, dict) else {}
            state = str(data.get("analysis_status") or data.get("status") or "").lower()
            if state in ANALYSIS_DONE:
                return
            waited = self.clock() - started
            if waited > ANALYSIS_MAX_WAIT_SECONDS:
                raise PhaseTimeoutError("analysis", waited)
            self._check_cancelled()
            self.sleep(ANALYSIS_POLL_SECONDS)

    def _poll(self, asset_id: Any):
        poller = StatusPoller(
            fetch_status=self.client.status,
            profile=self.profile,
            request_nudge=self.client.add_formats,
            on_update=self.on_progress,
            clock=self.clock,
            sleep=self.sleep,
        )
        session = poller.start(asset_id)
        session.cancel_event = self.cancel_event
        poller.run(session)
        if session.cancelled:
            raise FlowCancelled("Cancelled")
        return session

    def _wait_for_converted(self, asset_id: Any) -> str:
        """Request GLB conversion and wait for it to appear in the asset downloads.

        Raises:
            PhaseTimeoutError: If no GLB shows up within the bounded wait
        """
        self.client.add_formats(asset_id)
        started = self.clock()
        while True:
            try:
                url = _glb_url(self.client.asset_downloads(asset_id))
            except MeshOptimizerError as e:
                logger.warning("Download lookup for %s failed: %s", asset_id, e)
                url = None
            if url:
                return url
            waited = self.clock() - started
            if waited > CONVERT_MAX_WAIT_SECONDS:
                raise PhaseTimeoutError("convert", waited)
            self._check_cancelled()
            self.sleep(CONVERT_POLL_SECONDS)
