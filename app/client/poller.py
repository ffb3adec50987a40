"""Polling loop that turns noisy status snapshots into monotonic progress and an ETA."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import requests

from app.client.estimator import Backoff, StuckDetector, eta_text, model_progress
from app.client.profile_store import EstimationProfile
from app.services.errors import MeshOptimizerError, PhaseTimeoutError

logger = logging.getLogger(__name__)

# Forward order of the happy path; error and unknown sit outside it
STAGE_ORDER = {"waiting": 0, "queued": 1, "processing": 2, "ready": 3}
TERMINAL_STAGES = ("ready", "error")

# Consecutive flat polls after which the bar is shown as indeterminate
FLAT_POLLS_INDETERMINATE = 6

DEFAULT_MAX_WAIT_SECONDS = 20 * 60


@dataclass
class ProgressUpdate:
    """What the user sees after one poll."""

    stage: str
    progress: int
    eta_text: str
    indeterminate: bool
    downloads: list[dict[str, str]] = field(default_factory=list)


@dataclass
class PollSession:
    """State of one user-initiated optimization job, discarded when it ends."""

    asset_id: Any
    stage: str = "waiting"
    known_stage: str = "waiting"
    progress: float = 0.0
    stage_entered_at: float = 0.0
    started_at: float = 0.0
    downloads: list[dict[str, str]] = field(default_factory=list)
    job_id: Any = None
    polls: int = 0
    flat_polls: int = 0
    nudges: int = 0
    error_message: str = ""
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        """Whether the user asked to stop."""
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Stop polling at the next iteration boundary."""
        self.cancel_event.set()

    @property
    def finished(self) -> bool:
        """Whether the session reached a terminal outcome."""
        if self.stage == "error":
            return True
        return self.stage == "ready" and bool(self.downloads)


class StatusPoller:
    """Drives a PollSession until it is ready, errored, cancelled or out of time.

    Args:
        fetch_status: Returns the normalized status dict for an asset id
        profile: Learned stage durations, updated on every observed transition
        request_nudge: Asks upstream to regenerate missing outputs for an asset
        on_update: Receives a ProgressUpdate after every poll
        clock: Monotonic time source in seconds
        sleep: Suspends for the given number of seconds
        max_wait_seconds: Bound on the whole session before PhaseTimeoutError
    """

    def __init__(
        self,
        fetch_status: Callable[[Any], dict[str, Any]],
        profile: EstimationProfile,
        request_nudge: Callable[[Any], Any] | None = None,
        on_update: Callable[[ProgressUpdate], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS,
        backoff: Backoff | None = None,
        stuck_detector: StuckDetector | None = None,
    ) -> None:
        self.fetch_status = fetch_status
        self.profile = profile
        self.request_nudge = request_nudge
        self.on_update = on_update
        self.clock = clock
        self.sleep = sleep
        self.max_wait_seconds = max_wait_seconds
        self.backoff = backoff or Backoff()
        self.stuck_detector = stuck_detector or StuckDetector()

    def start(self, asset_id: Any) -> PollSession:
        """Create a session for an asset, stamped with the current time."""
        now = self.clock()
        return PollSession(asset_id=asset_id, stage_entered_at=now, started_at=now)

    def run(self, session: PollSession) -> PollSession:
        """Poll until the session finishes or is cancelled.

        Raises:
            PhaseTimeoutError: If the session outlives max_wait_seconds
        """
        while not session.cancelled:
            update = self.tick(session)
            if session.finished or session.cancelled:
                break

            waited = self.clock() - session.started_at
            if waited > self.max_wait_seconds:
                raise PhaseTimeoutError("optimize", waited)

            progressed = not update.indeterminate and session.flat_polls == 0
            delay_ms = self.backoff.next_delay(progressed, session.progress)
            self.sleep(delay_ms / 1000)

        return session

    def _fetch(self, asset_id: Any) -> dict[str, Any] | None:
        try:
            status = self.fetch_status(asset_id)
        except (MeshOptimizerError, requests.RequestException, ValueError) as e:
            logger.warning("Status poll for %s failed: %s", asset_id, e)
            return None
        if not isinstance(status, dict) or not status.get("stage"):
            return None
        return status

    def _enter(self, session: PollSession, stage: str, now: float) -> None:
        """Move the session's known stage forward, learning the exited stage's duration."""
        exited = session.known_stage
        if exited == stage:
            return
        duration_ms = (now - session.stage_entered_at) * 1000
        learned = self.profile.record(exited, duration_ms)
        if learned is not None:
            logger.info("Stage %s took %.0fms, learned average now %.0fms", exited, duration_ms, learned)
        session.known_stage = stage
        session.stage_entered_at = now

    def _resolve_stage(self, session: PollSession, reported: str) -> str:
        """Apply the allowed transitions; backward reports keep the current stage."""
        # error is terminal from any stage, waiting included
        if reported == "error":
            return "error"
        if reported not in STAGE_ORDER:
            # Unrecognized vocabulary keeps the flow moving
            reported = "processing"
        if STAGE_ORDER[reported] < STAGE_ORDER[session.known_stage]:
            return session.known_stage
        return reported

    def tick(self, session: PollSession) -> ProgressUpdate:
        """Run one poll and update the session."""
        session.polls += 1
        status = self._fetch(session.asset_id)
        now = self.clock()
        previous = session.progress

        if status is None:
            session.stage = "unknown"
            session.flat_polls += 1
            update = ProgressUpdate(
                stage="unknown",
                progress=int(session.progress),
                eta_text="…",
                indeterminate=True,
                downloads=list(session.downloads),
            )
            self._emit(update)
            return update

        stage = self._resolve_stage(session, str(status.get("stage", "")).lower())
        if stage in STAGE_ORDER:
            self._enter(session, stage, now)
        session.stage = stage
        session.job_id = status.get("rapidmodelId", session.job_id)

        raw = _as_progress(status.get("progress"))
        downloads = [
            d for d in status.get("downloads") or [] if isinstance(d, dict) and d.get("url")
        ]
        session.downloads = downloads

        elapsed_ms = (now - session.stage_entered_at) * 1000
        average_ms = self.profile.average_ms(stage)

        if stage == "ready":
            candidate = 100.0 if downloads else min(raw, 99.0)
        elif stage == "error":
            candidate = previous
            session.error_message = str(status.get("error") or "Optimization error")
        else:
            estimate = model_progress(stage, elapsed_ms, average_ms)
            candidate = max(estimate or 0.0, raw)

        session.progress = max(previous, min(100.0, candidate))

        if session.progress == previous:
            session.flat_polls += 1
        else:
            session.flat_polls = 0

        if stage != "error" and self.stuck_detector.observe(raw, len(downloads)):
            self._nudge(session)

        update = ProgressUpdate(
            stage=stage,
            progress=int(round(session.progress)),
            eta_text=eta_text(stage, elapsed_ms, average_ms),
            indeterminate=(
                session.flat_polls >= FLAT_POLLS_INDETERMINATE and session.progress < 100
            ),
            downloads=list(downloads),
        )
        self._emit(update)
        return update

    def _nudge(self, session: PollSession) -> None:
        """Ask upstream to regenerate the missing output; failures are only logged."""
        if self.request_nudge is None:
            return
        session.nudges += 1
        logger.info("Asset %s looks stuck at high progress, requesting formats", session.asset_id)
        try:
            self.request_nudge(session.asset_id)
        except (MeshOptimizerError, requests.RequestException) as e:
            logger.warning("Format nudge for %s failed: %s", session.asset_id, e)

    def _emit(self, update: ProgressUpdate) -> None:
        if self.on_update is not None:
            self.on_update(update)


def _as_progress(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:
        return 0.0
    return max(0.0, min(100.0, number))
