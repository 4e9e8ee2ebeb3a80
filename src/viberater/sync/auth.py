"""Bearer-token storage for the remote client."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import toml
from filelock import FileLock, Timeout

from .config import viberater_dir


class CredentialStore:
    """Manages storage of authentication tokens in TOML format.

    The file lives at ``~/.viberater/credentials`` with 600 permissions and
    is guarded by a sibling lock file, so a token refreshed by one process
    is never half-written when another reads it.
    """

    def __init__(self, credentials_path: Optional[Path] = None) -> None:
        self.credentials_path = credentials_path or viberater_dir() / "credentials"
        self.lock_path = self.credentials_path.with_suffix(".lock")

    def _acquire_lock(self) -> FileLock:
        return FileLock(self.lock_path, timeout=10)

    def load(self) -> Optional[dict]:
        """Load credentials from TOML file. Returns None if not exists or invalid."""
        if not self.credentials_path.exists():
            return None

        try:
            with self._acquire_lock():
                with open(self.credentials_path, "r") as handle:
                    return toml.load(handle)
        except (toml.TomlDecodeError, OSError, Timeout):
            return None

    def _write(self, data: dict) -> None:
        self.credentials_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        try:
            with self._acquire_lock():
                with open(self.credentials_path, "w") as handle:
                    toml.dump(data, handle)
                if os.name != "nt":
                    os.chmod(self.credentials_path, 0o600)
        except Timeout as exc:
            raise RuntimeError(
                "Cannot acquire lock on credentials file. Another process may be using it."
            ) from exc

    def save(self, access_token: str, refresh_token: Optional[str] = None, username: Optional[str] = None) -> None:
        data: dict = {"tokens": {"access": access_token}}
        if refresh_token:
            data["tokens"]["refresh"] = refresh_token
        if username:
            data["user"] = {"username": username}
        self._write(data)

    def set_access_token(self, access_token: str) -> None:
        """Replace the access token, keeping the refresh token and user."""
        data = self.load() or {}
        tokens = data.get("tokens") if isinstance(data.get("tokens"), dict) else {}
        tokens["access"] = access_token
        data["tokens"] = tokens
        self._write(data)

    def clear(self) -> None:
        try:
            with self._acquire_lock():
                if self.credentials_path.exists():
                    self.credentials_path.unlink()
        except Timeout as exc:
            raise RuntimeError(
                "Cannot acquire lock on credentials file. Another process may be using it."
            ) from exc

    def _token(self, kind: str) -> Optional[str]:
        data = self.load()
        if not data or not isinstance(data.get("tokens"), dict):
            return None
        value = data["tokens"].get(kind)
        return str(value) if value else None

    def get_access_token(self) -> Optional[str]:
        return self._token("access")

    def get_refresh_token(self) -> Optional[str]:
        return self._token("refresh")

    def get_username(self) -> Optional[str]:
        data = self.load()
        if not data or not isinstance(data.get("user"), dict):
            return None
        return data["user"].get("username")
