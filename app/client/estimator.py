"""Progress and ETA estimation from stage, elapsed time and learned durations."""

import math
from dataclasses import dataclass, field

# Progress band each time-bounded stage maps into
STAGE_BANDS: dict[str, tuple[float, float]] = {
    "queued": (20.0, 50.0),
    "processing": (50.0, 95.0),
}

# Beyond this multiple of the learned average the countdown is replaced by a message
LONGER_THAN_USUAL_FACTOR = 1.75

LONGER_THAN_USUAL = "Taking longer than usual…"
CALCULATING = "Calculating…"
ALMOST_DONE = "Almost done…"


def ease_out(fraction: float) -> float:
    """Cubic ease-out on [0, 1]: fast early movement that flattens near the end."""
    if not math.isfinite(fraction):
        return 0.0
    f = max(0.0, min(1.0, fraction))
    return 1.0 - (1.0 - f) ** 3


def humanize_ms(ms: float) -> str:
    """Format a duration as ``"3m 5s"`` or ``"42s"``; invalid/negative values read 0s."""
    if not math.isfinite(ms) or ms < 0:
        ms = 0
    seconds = math.ceil(ms / 1000)
    minutes, rem = divmod(seconds, 60)
    return f"{minutes}m {rem}s" if minutes > 0 else f"{rem}s"


def model_progress(stage: str, elapsed_ms: float, average_ms: float | None) -> float | None:
    """Time-based progress estimate inside the stage's band, or None if not time-bounded."""
    band = STAGE_BANDS.get(stage)
    if band is None or not average_ms or average_ms <= 0:
        return None
    low, high = band
    return low + (high - low) * ease_out(max(0.0, elapsed_ms) / average_ms)


def is_overdue(elapsed_ms: float, average_ms: float | None) -> bool:
    """Whether a stage has run past the range its learned average can vouch for."""
    return bool(average_ms) and elapsed_ms > LONGER_THAN_USUAL_FACTOR * average_ms


def eta_text(stage: str, elapsed_ms: float, average_ms: float | None) -> str:
    """Human-readable remaining time for the current stage."""
    if stage == "ready":
        return "Done"
    if stage == "error":
        return ""
    if stage not in STAGE_BANDS or not average_ms:
        return CALCULATING
    if is_overdue(elapsed_ms, average_ms):
        return LONGER_THAN_USUAL
    remaining = average_ms - elapsed_ms
    if remaining <= 0:
        return ALMOST_DONE
    return humanize_ms(remaining)


@dataclass
class Backoff:
    """Poll delay that grows on unchanged or failed polls and shrinks near completion."""

    initial_ms: float = 1000.0
    max_ms: float = 8000.0
    factor: float = 1.5
    near_completion: float = 90.0
    current_ms: float = 0.0

    def __post_init__(self) -> None:
        if not self.current_ms:
            self.current_ms = self.initial_ms

    def next_delay(self, progressed: bool, progress: float) -> float:
        """Delay before the next poll, in milliseconds."""
        if progress >= self.near_completion:
            self.current_ms = max(self.initial_ms, math.floor(self.current_ms / self.factor))
        elif not progressed:
            self.current_ms = min(self.max_ms, math.floor(self.current_ms * self.factor))
        return self.current_ms


@dataclass
class StuckDetector:
    """Detects a job parked at high progress without any generated downloads.

    Fires once after ``threshold`` consecutive polls with the same reported progress
    (at or above ``min_progress``) and no downloads, then starts counting again.
    """

    threshold: int = 12
    min_progress: float = 90.0
    _last_progress: float | None = field(default=None, init=False, repr=False)
    _unchanged: int = field(default=0, init=False, repr=False)

    def observe(self, progress: float, download_count: int) -> bool:
        """Record a poll; True when a nudge should be sent now."""
        if download_count > 0 or progress < self.min_progress:
            self.reset()
            self._last_progress = progress
            return False
        if self._last_progress is not None and progress == self._last_progress:
            self._unchanged += 1
        else:
            self._unchanged = 0
        self._last_progress = progress
        if self._unchanged >= self.threshold:
            self._unchanged = 0
            return True
        return False

    def reset(self) -> None:
        """Forget the current streak."""
        self._unchanged = 0
