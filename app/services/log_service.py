"""JSONL event log for proxy activity.

Writes one JSON object per line to hive-partitioned daily .jsonl files under
``<log_directory>/json/year=YYYY/month=MM/day=DD/events.jsonl``.
"""

import json
import re
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from app.config import get_settings

# Known event categories, used by the log viewer filters
CATEGORIES = ("app", "upstream", "dedup", "upload", "optimize", "status", "proxy", "settings")


class LogService:
    """JSONL log service with thread-safe file writes."""

    def __init__(self) -> None:
        """Initialize the log service."""
        self._write_lock = threading.Lock()

    def _get_log_dir(self) -> Path:
        """Get the configured log directory, creating it if needed."""
        settings = get_settings()
        log_dir = settings.log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir

    def _get_hive_dir(self, dt: datetime) -> Path:
        """Build the hive-partitioned directory for a day and create it."""
        hive_dir = (
            self._get_log_dir()
            / "json"
            / f"year={dt.year:04d}"
            / f"month={dt.month:02d}"
            / f"day={dt.day:02d}"
        )
        hive_dir.mkdir(parents=True, exist_ok=True)
        return hive_dir

    @staticmethod
    def _extract_date_from_hive_path(path: Path) -> str | None:
        """Extract a YYYY-MM-DD date string from a hive-partitioned path."""
        match = re.search(r"year=(\d{4})/month=(\d{2})/day=(\d{2})", path.as_posix())
        if match:
            return f"{match.group(1)}-{match.group(2)}-{match.group(3)}"
        return None

    def _event_files(self, date: str | None = None) -> list[Path]:
        json_dir = self._get_log_dir() / "json"
        if date:
            try:
                dt = datetime.strptime(date, "%Y-%m-%d")
            except ValueError:
                return []
            path = (
                json_dir
                / f"year={dt.year:04d}"
                / f"month={dt.month:02d}"
                / f"day={dt.day:02d}"
                / "events.jsonl"
            )
            return [path] if path.exists() else []
        if not json_dir.exists():
            return []
        return sorted(json_dir.rglob("events.jsonl"), reverse=True)

    @staticmethod
    def _iter_entries(log_file: Path) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        try:
            with open(log_file, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(json.loads(line))
                    except json.JSONDecodeError:
                        continue
        except OSError:
            return []
        return entries

    def log(
        self,
        level: str,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append a log entry to the current day's JSONL file.

        Args:
            level: Log level (INFO, WARNING, ERROR)
            category: Event category (see CATEGORIES)
            event: Machine-readable event name (snake_case)
            message: Human-readable message
            metadata: Optional additional data
        """
        now = datetime.now(UTC)
        entry: dict[str, Any] = {
            "timestamp": now.isoformat(),
            "level": level.upper(),
            "category": category,
            "event": event,
            "message": message,
        }
        if metadata:
            entry["metadata"] = metadata

        line = json.dumps(entry, default=str)

        with self._write_lock:
            log_file = self._get_hive_dir(now) / "events.jsonl"
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def info(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log an INFO-level event."""
        self.log("INFO", category, event, message, metadata)

    def warning(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log a WARNING-level event."""
        self.log("WARNING", category, event, message, metadata)

    def error(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log an ERROR-level event."""
        self.log("ERROR", category, event, message, metadata)

    def list_log_files(self) -> list[dict[str, Any]]:
        """List all event log files with their date and size."""
        log_dir = self._get_log_dir()
        return [
            {
                "date": self._extract_date_from_hive_path(f),
                "filename": f.name,
                "relative_path": str(f.relative_to(log_dir)),
                "size_bytes": f.stat().st_size,
            }
            for f in self._event_files()
        ]

    def read_log_entries(
        self,
        date: str | None = None,
        level: str | None = None,
        category: str | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> dict[str, Any]:
        """Read and filter log entries with pagination.

        Args:
            date: Filter by date (YYYY-MM-DD). None = all dates.
            level: Filter by level (INFO/WARNING/ERROR)
            category: Filter by category
            search: Full-text search in message and event fields
            offset: Number of entries to skip
            limit: Maximum entries to return

        Returns:
            Dict with entries, total count, offset, limit
        """
        search_lower = search.lower() if search else None
        matched: list[dict[str, Any]] = []
        for log_file in self._event_files(date):
            for entry in self._iter_entries(log_file):
                if level and entry.get("level", "").upper() != level.upper():
                    continue
                if category and entry.get("category") != category:
                    continue
                if search_lower:
                    msg = entry.get("message", "").lower()
                    evt = entry.get("event", "").lower()
                    if search_lower not in msg and search_lower not in evt:
                        continue
                matched.append(entry)

        # Newest first
        matched.sort(key=lambda e: e.get("timestamp", ""), reverse=True)

        return {
            "entries": matched[offset : offset + limit],
            "total": len(matched),
            "offset": offset,
            "limit": limit,
        }

    def get_log_stats(self) -> dict[str, Any]:
        """Get counts by level and category plus the covered date range."""
        level_counts: dict[str, int] = {}
        category_counts: dict[str, int] = {}
        total_entries = 0
        total_size = 0
        dates: list[str] = []

        files = self._event_files()
        for log_file in files:
            total_size += log_file.stat().st_size
            date_str = self._extract_date_from_hive_path(log_file)
            if date_str and date_str not in dates:
                dates.append(date_str)
            for entry in self._iter_entries(log_file):
                total_entries += 1
                lvl = entry.get("level", "UNKNOWN")
                level_counts[lvl] = level_counts.get(lvl, 0) + 1
                cat = entry.get("category", "unknown")
                category_counts[cat] = category_counts.get(cat, 0) + 1

        dates.sort()

        return {
            "total_entries": total_entries,
            "total_size_bytes": total_size,
            "level_counts": level_counts,
            "category_counts": category_counts,
            "date_range": {
                "earliest": dates[0] if dates else None,
                "latest": dates[-1] if dates else None,
            },
            "file_count": len(files),
        }


# Module-level singleton accessor
_log_service: LogService | None = None


def get_log_service() -> LogService:
    """Get the singleton LogService instance."""
    global _log_service
    if _log_service is None:
        _log_service = LogService()
    return _log_service
