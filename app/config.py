"""Configuration management for mesh_optimizer_proxy"""

import json
import os
import tomllib
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Base directory for the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from .env file
ENV_FILE = BASE_DIR / ".env"
load_dotenv(ENV_FILE)

# Settings file paths
SETTINGS_FILE = BASE_DIR / "settings.json"
SETTINGS_DEFAULT_FILE = BASE_DIR / "settings.default.json"
PYPROJECT_FILE = BASE_DIR / "pyproject.toml"

# Environment variable names for configuration
ENV_API_TOKEN = "RAPIDPIPELINE_TOKEN"
ENV_API_BASE = "RP_API_BASE"
ENV_PRESET_ID = "RP_PRESET_ID"
ENV_LOG_DIRECTORY = "MESH_OPTIMIZER_LOG_DIRECTORY"
ENV_SETTINGS_FILE = "MESH_OPTIMIZER_SETTINGS_FILE"

DEFAULT_API_BASE = "https://api.rapidpipeline.com/api/v2"
DEFAULT_PRESET_ID = 9547


def get_package_version() -> str:
    """Get the package version from pyproject.toml."""
    try:
        with open(PYPROJECT_FILE, "rb") as f:
            pyproject = tomllib.load(f)
        return str(pyproject.get("project", {}).get("version", "0.0.0"))
    except Exception:
        return "0.0.0"


def _settings_file() -> Path:
    override = os.environ.get(ENV_SETTINGS_FILE)
    return Path(override) if override else SETTINGS_FILE


class Settings:
    """Manages application settings stored in JSON format.

    The upstream bearer token is deliberately not part of the stored settings: it is
    read from the environment on every access and never written to disk.
    """

    _instance: "Settings | None" = None
    _settings: dict[str, Any]

    def __new__(cls) -> "Settings":
        """Singleton pattern to ensure only one settings instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._load_settings()
        return cls._instance

    def _load_settings(self) -> None:
        """Load settings from file, with environment variables taking precedence.

        Priority order (highest to lowest):
        1. Environment variables (from .env file or system)
        2. settings.json (user-saved settings)
        3. settings.default.json (template defaults)
        4. Hardcoded defaults
        """
        defaults: dict[str, Any] = {
            "api_base": DEFAULT_API_BASE,
            "preset_id": DEFAULT_PRESET_ID,
            "request_timeout": 60,
            "search_max_pages": 10,
            "scan_max_pages": 20,
            "log_directory": "logs",
        }

        if SETTINGS_DEFAULT_FILE.exists():
            with open(SETTINGS_DEFAULT_FILE, encoding="utf-8") as f:
                defaults.update(json.load(f))

        settings_file = _settings_file()
        if settings_file.exists():
            with open(settings_file, encoding="utf-8") as f:
                defaults.update(json.load(f))

        env_overrides = {
            "api_base": os.environ.get(ENV_API_BASE),
            "preset_id": os.environ.get(ENV_PRESET_ID),
            "log_directory": os.environ.get(ENV_LOG_DIRECTORY),
        }

        # Only apply non-None environment values
        for key, value in env_overrides.items():
            if value is not None:
                defaults[key] = value

        # A token that slipped into a settings file is never kept
        defaults.pop("api_token", None)

        self._settings = defaults

        if not settings_file.exists():
            self._save_settings()

    def _save_settings(self) -> None:
        """Save current settings to file."""
        with open(_settings_file(), "w", encoding="utf-8") as f:
            json.dump(self._settings, f, indent=4)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a setting value by key."""
        return self._settings.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set a setting value and save to file."""
        self._settings[key] = value
        self._save_settings()

    def update(self, data: dict[str, Any]) -> None:
        """Update multiple settings at once."""
        self._settings.update(data)
        self._save_settings()

    def all(self) -> dict[str, Any]:
        """Get all settings as a dictionary."""
        return self._settings.copy()

    def reload(self) -> None:
        """Reload settings from file."""
        self._load_settings()

    @property
    def api_token(self) -> str:
        """Get the upstream bearer token (environment only)."""
        return os.environ.get(ENV_API_TOKEN, "")

    @property
    def api_base(self) -> str:
        """Get the upstream API base URL without a trailing slash."""
        return str(self._settings.get("api_base", DEFAULT_API_BASE)).rstrip("/")

    @property
    def preset_id(self) -> int | None:
        """Get the default optimization preset id, or None if not numeric."""
        try:
            return int(self._settings.get("preset_id", DEFAULT_PRESET_ID))
        except (TypeError, ValueError):
            return None

    @property
    def request_timeout(self) -> float:
        """Get the upstream request timeout in seconds."""
        return float(self._settings.get("request_timeout", 60))

    @property
    def search_max_pages(self) -> int:
        """Page bound for targeted tag searches."""
        return int(self._settings.get("search_max_pages", 10))

    @property
    def scan_max_pages(self) -> int:
        """Page bound for full catalog scans."""
        return int(self._settings.get("scan_max_pages", 20))

    @property
    def log_directory(self) -> Path:
        """Get the event log directory."""
        path = Path(str(self._settings.get("log_directory", "logs")))
        if not path.is_absolute():
            path = BASE_DIR / path
        return path


def get_settings() -> Settings:
    """Get the singleton Settings instance."""
    return Settings()
