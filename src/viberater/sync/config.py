"""Sync configuration management"""
import os
from pathlib import Path
from typing import Any, Optional

import toml  # type: ignore[import-untyped]

DEFAULT_SERVER_URL = "http://localhost:3000"
SERVER_URL_ENV_VAR = "VIBERATER_SERVER_URL"

DEFAULTS: dict[str, Any] = {
    "request_timeout": 30.0,
    "debounce_seconds": 0.5,
    "probe_interval": 30.0,
    "max_retries": 25,
}


def viberater_dir() -> Path:
    """Return ~/.viberater for the current HOME."""
    return Path.home() / ".viberater"


class SyncConfig:
    """Manage sync configuration stored in ``~/.viberater/config.toml``."""

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        self.config_dir = config_dir or viberater_dir()
        self.config_file = self.config_dir / "config.toml"

    def _load(self) -> dict[str, Any]:
        if not self.config_file.exists():
            return {}
        config: dict[str, Any] = toml.load(self.config_file)
        return config

    def _sync_section(self) -> dict[str, Any]:
        section = self._load().get("sync")
        return section if isinstance(section, dict) else {}

    def get_server_url(self) -> str:
        """Get server URL (environment variable wins over the config file)."""
        env_url = os.environ.get(SERVER_URL_ENV_VAR, "").strip()
        if env_url:
            return env_url
        server_url = self._sync_section().get("server_url")
        if isinstance(server_url, str) and server_url.strip():
            return server_url
        return DEFAULT_SERVER_URL

    def set_server_url(self, url: str) -> None:
        """Set server URL in config"""
        self._set("server_url", url)

    def get_db_path(self) -> Path:
        db_path = self._sync_section().get("db_path")
        if isinstance(db_path, str) and db_path.strip():
            return Path(db_path).expanduser()
        return self.config_dir / "local.db"

    def _get_number(self, key: str) -> float:
        value = self._sync_section().get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
            return value
        return DEFAULTS[key]

    def get_request_timeout(self) -> float:
        return float(self._get_number("request_timeout"))

    def get_debounce_seconds(self) -> float:
        return float(self._get_number("debounce_seconds"))

    def get_probe_interval(self) -> float:
        return float(self._get_number("probe_interval"))

    def get_max_retries(self) -> int:
        """Retry budget for retryable failures before dead-lettering (0 = unlimited)."""
        return int(self._get_number("max_retries"))

    def as_dict(self) -> dict[str, Any]:
        return {
            "server_url": self.get_server_url(),
            "db_path": str(self.get_db_path()),
            "request_timeout": self.get_request_timeout(),
            "debounce_seconds": self.get_debounce_seconds(),
            "probe_interval": self.get_probe_interval(),
            "max_retries": self.get_max_retries(),
        }

    def _set(self, key: str, value: Any) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)

        config = self._load()
        sync_section = config.get("sync")
        if not isinstance(sync_section, dict):
            sync_section = {}
            config["sync"] = sync_section

        sync_section[key] = value

        with open(self.config_file, "w", encoding="utf-8") as f:
            toml.dump(config, f)
