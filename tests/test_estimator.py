"""Tests for progress and ETA estimation."""

import math

import pytest

from app.client import estimator
from app.client.estimator import Backoff, StuckDetector


class TestEaseOut:
    """Tests for the ease-out curve."""

    def test_endpoints(self) -> None:
        """Test that the curve starts at 0 and ends at 1."""
        assert estimator.ease_out(0) == 0
        assert estimator.ease_out(1) == 1

    def test_front_loaded(self) -> None:
        """Test that half the time gives more than half the progress."""
        assert estimator.ease_out(0.5) == pytest.approx(0.875)

    def test_clamped(self) -> None:
        """Test that out-of-range and invalid input is clamped."""
        assert estimator.ease_out(3) == 1
        assert estimator.ease_out(-1) == 0
        assert estimator.ease_out(math.nan) == 0


class TestHumanize:
    """Tests for humanize_ms."""

    def test_minutes_and_seconds(self) -> None:
        """Test the minute format."""
        assert estimator.humanize_ms(65_000) == "1m 5s"

    def test_seconds_only(self) -> None:
        """Test the short format, rounding partial seconds up."""
        assert estimator.humanize_ms(41_200) == "42s"

    def test_invalid(self) -> None:
        """Test that negative and non-finite values read 0s."""
        assert estimator.humanize_ms(-5) == "0s"
        assert estimator.humanize_ms(math.inf) == "0s"


class TestModelProgress:
    """Tests for model_progress."""

    def test_band_edges(self) -> None:
        """Test that progress runs from the band start to its end."""
        assert estimator.model_progress("queued", 0, 45_000) == 20
        assert estimator.model_progress("queued", 45_000, 45_000) == 50
        assert estimator.model_progress("processing", 999_999, 240_000) == 95

    def test_not_time_bounded(self) -> None:
        """Test that other stages have no time model."""
        assert estimator.model_progress("ready", 1000, 45_000) is None
        assert estimator.model_progress("queued", 1000, None) is None


class TestEtaText:
    """Tests for eta_text."""

    def test_countdown(self) -> None:
        """Test the remaining-time countdown."""
        assert estimator.eta_text("processing", 0, 240_000) == "4m 0s"

    def test_almost_done(self) -> None:
        """Test the text between the average and the overdue threshold."""
        assert estimator.eta_text("processing", 300_000, 240_000) == estimator.ALMOST_DONE

    def test_longer_than_usual(self) -> None:
        """Test that 1.75x the learned average switches to the overdue message."""
        assert estimator.eta_text("queued", 45_000 * 1.75, 45_000) == estimator.ALMOST_DONE
        assert estimator.eta_text("queued", 45_000 * 1.76, 45_000) == "Taking longer than usual…"

    def test_terminal_and_unknown(self) -> None:
        """Test the fixed texts for terminal and unmodelled stages."""
        assert estimator.eta_text("ready", 0, None) == "Done"
        assert estimator.eta_text("error", 0, None) == ""
        assert estimator.eta_text("waiting", 0, None) == estimator.CALCULATING


class TestBackoff:
    """Tests for the poll backoff."""

    def test_grows_without_progress(self) -> None:
        """Test multiplicative growth up to the cap."""
        backoff = Backoff()
        delays = [backoff.next_delay(False, 10) for _ in range(8)]
        assert delays[:3] == [1500, 2250, 3375]
        assert max(delays) == 8000

    def test_steady_with_progress(self) -> None:
        """Test that progressing polls keep the delay."""
        backoff = Backoff()
        backoff.next_delay(False, 10)
        assert backoff.next_delay(True, 20) == 1500

    def test_shrinks_near_completion(self) -> None:
        """Test that the delay shrinks back toward the minimum above 90."""
        backoff = Backoff(current_ms=8000)
        assert backoff.next_delay(False, 92) == 5333
        assert [backoff.next_delay(False, 95) for _ in range(6)][-1] == 1000


class TestStuckDetector:
    """Tests for StuckDetector."""

    def test_fires_once_per_window(self) -> None:
        """Test that the detector fires after the threshold and then starts over."""
        detector = StuckDetector(threshold=3)
        fired = [detector.observe(95, 0) for _ in range(8)]
        assert fired == [False, False, False, True, False, False, True, False]

    def test_downloads_reset(self) -> None:
        """Test that any download clears the streak."""
        detector = StuckDetector(threshold=2)
        detector.observe(95, 0)
        detector.observe(95, 0)
        assert detector.observe(95, 1) is False
        assert detector.observe(95, 0) is False

    def test_below_min_progress(self) -> None:
        """Test that low progress never fires."""
        detector = StuckDetector(threshold=1)
        assert not any(detector.observe(50, 0) for _ in range(5))
