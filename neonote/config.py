"""Configuration management for neonote."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

_CONFIG_VERSION = 1

logger = logging.getLogger(__name__)


def _default_config_path() -> Path:
    """Get config file path from NEONOTE_CONFIG or the XDG default."""
    explicit = os.environ.get("NEONOTE_CONFIG")
    if explicit:
        return Path(explicit)
    config_home = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return config_home / "neonote" / "config.json"


class Config:
    """Service configuration with persistence.

    Values come from the JSON config file when it exists and carries the
    current version; otherwise from environment variables and built-in
    defaults.
    """

    def __init__(self, config_path: Path | None = None) -> None:
        self._path = config_path or _default_config_path()
        self._data: dict[str, Any] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        """Load config from disk or return defaults."""
        defaults = self._defaults()
        if not self._path.exists():
            return defaults
        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(f"Ignoring unreadable config file {self._path}: {exc}")
            return defaults
        if not isinstance(data, dict) or data.get("version") != _CONFIG_VERSION:
            logger.warning(f"Ignoring config file {self._path} with unknown version")
            return defaults
        defaults.update(data)
        return defaults

    def _defaults(self) -> dict[str, Any]:
        """Return default configuration."""
        return {
            "version": _CONFIG_VERSION,
            "data_dir": os.getenv("NEONOTE_DATA_DIR", "data/notes_db"),
            "host": os.getenv("NEONOTE_HOST", "0.0.0.0"),
            "port": int(os.getenv("NEONOTE_PORT", "8080")),
            "api_key": os.getenv("API_KEY", "secret"),
            "log_level": os.getenv("NEONOTE_LOG_LEVEL", "INFO"),
            "busy_timeout": float(os.getenv("NEONOTE_BUSY_TIMEOUT", "5.0")),
            "page_size": int(os.getenv("NEONOTE_PAGE_SIZE", "50")),
        }

    def save(self) -> None:
        """Persist config to disk."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2)

    # -- Getters --

    @property
    def data_dir(self) -> Path:
        return Path(self._data.get("data_dir", "data/notes_db"))

    @property
    def host(self) -> str:
        return str(self._data.get("host", "0.0.0.0"))

    @property
    def port(self) -> int:
        return int(self._data.get("port", 8080))

    @property
    def api_key(self) -> str:
        return str(self._data.get("api_key", "secret"))

    @property
    def log_level(self) -> str:
        return str(self._data.get("log_level", "INFO")).upper()

    @property
    def busy_timeout(self) -> float:
        return float(self._data.get("busy_timeout", 5.0))

    @property
    def page_size(self) -> int:
        return max(1, int(self._data.get("page_size", 50)))

    # -- Setters --

    def set_data_dir(self, value: str | Path) -> None:
        self._data["data_dir"] = str(value)

    def set_host(self, value: str) -> None:
        self._data["host"] = value.strip()

    def set_port(self, value: int) -> None:
        self._data["port"] = int(value)

    def set_api_key(self, value: str) -> None:
        self._data["api_key"] = value.strip()

    def set_log_level(self, value: str) -> None:
        self._data["log_level"] = value.strip().upper()

    def set_busy_timeout(self, value: float) -> None:
        self._data["busy_timeout"] = max(0.0, float(value))

    def set_page_size(self, value: int) -> None:
        self._data["page_size"] = max(1, int(value))
