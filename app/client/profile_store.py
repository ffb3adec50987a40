"""Persisted per-stage duration estimates learned across optimization runs."""

import math
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path

# Fallback durations when nothing has been learned yet (milliseconds)
DEFAULT_DURATIONS_MS: dict[str, float] = {
    "queued": 45_000.0,
    "processing": 240_000.0,
}

# Weight kept from the previous estimate on each update
EMA_KEEP = 0.7


class MemoryStore:
    """Dict-backed key/value store, used for tests and throwaway sessions."""

    def __init__(self) -> None:
        self._values: dict[str, float] = {}

    def get(self, key: str) -> float | None:
        """Get a stored value, or None if absent."""
        return self._values.get(key)

    def set(self, key: str, value: float) -> None:
        """Store a value."""
        self._values[key] = value


class SqliteStore:
    """Key/value store in a local SQLite file with thread-local connections.

    Concurrent writers may overwrite each other's last update; the values are only a
    heuristic seed for the estimator.
    """

    PROFILE_FILE = "estimation_profile.db"

    def __init__(self, db_path: str | Path | None = None) -> None:
        """Initialize the profile database."""
        self._db_path = Path(db_path or self.PROFILE_FILE)
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "connection", None) is None:
            self._local.connection = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.connection.row_factory = sqlite3.Row
        conn: sqlite3.Connection = self._local.connection
        return conn

    def _init_db(self) -> None:
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS estimation_profile (
                key TEXT PRIMARY KEY,
                value REAL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.commit()

    def get(self, key: str) -> float | None:
        """Get a stored value, or None if absent."""
        row = (
            self._get_connection()
            .execute("SELECT value FROM estimation_profile WHERE key = ?", (key,))
            .fetchone()
        )
        return None if row is None else row["value"]

    def set(self, key: str, value: float) -> None:
        """Insert or replace a value."""
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO estimation_profile (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, datetime.now(UTC).isoformat()),
        )
        conn.commit()

    def close(self) -> None:
        """Close the current thread's connection."""
        if getattr(self._local, "connection", None) is not None:
            self._local.connection.close()
            self._local.connection = None


def _usable(value: object) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    )


class EstimationProfile:
    """Learned average duration per time-bounded stage.

    Values are read once when a poll session starts and written whenever a stage
    transition is observed, using ``next = 0.7 * prev + 0.3 * sample``.
    """

    def __init__(self, store: MemoryStore | SqliteStore) -> None:
        self.store = store
        self._averages = self.load()

    def load(self) -> dict[str, float]:
        """Read all stage averages, falling back to defaults for absent/invalid values."""
        averages: dict[str, float] = {}
        for stage, default in DEFAULT_DURATIONS_MS.items():
            value = self.store.get(stage)
            averages[stage] = float(value) if _usable(value) else default
        return averages

    def average_ms(self, stage: str) -> float | None:
        """Learned duration of a stage, or None for stages that are not time-bounded."""
        return self._averages.get(stage)

    def record(self, stage: str, sample_ms: float) -> float | None:
        """Fold an observed stage duration into the learned average.

        Returns:
            The new average, or None if the stage is not tracked or the sample invalid
        """
        if stage not in DEFAULT_DURATIONS_MS or not _usable(sample_ms):
            return None
        previous = self._averages.get(stage, DEFAULT_DURATIONS_MS[stage])
        updated = EMA_KEEP * previous + (1 - EMA_KEEP) * float(sample_ms)
        self._averages[stage] = updated
        self.store.set(stage, updated)
        return updated

    def to_dict(self) -> dict[str, float]:
        """Current averages keyed by stage name."""
        return dict(self._averages)
