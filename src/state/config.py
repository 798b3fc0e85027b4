from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from common.remote import DEFAULT_DESCRIPTION, DEFAULT_FILE_NAME


# Environment variable names for convenience configuration
ENV_TOKEN = "TRACKER_SYNC_TOKEN"
ENV_CONTAINER_ID = "TRACKER_SYNC_CONTAINER_ID"
ENV_BACKEND = "TRACKER_SYNC_BACKEND"
ENV_ENCRYPT = "TRACKER_SYNC_ENCRYPT"
ENV_FILE = "TRACKER_SYNC_FILE"
ENV_WIFI_ONLY = "TRACKER_SYNC_WIFI_ONLY"
ENV_HOME = "TRACKER_SYNC_HOME"

logger = logging.getLogger(__name__)


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("true", "1", "yes", "on")


def sync_home() -> Path:
    """Directory holding the local database and sync settings."""
    return Path(_getenv(ENV_HOME, ".tracker-sync"))


class SyncConfig(BaseModel):
    """
    Everything the sync engine reads from configuration.

    The orchestrator receives this object at construction and only sees a new
    one through an explicit `reload_config()`.
    """

    token: Optional[str] = Field(default=None, description="Access token; doubles as encryption passphrase")
    container_id: Optional[str] = Field(default=None, description="Gist id or S3 bucket")
    backend: Literal["gist", "s3"] = "gist"
    encryption_enabled: bool = False
    file_name: str = DEFAULT_FILE_NAME
    description: str = DEFAULT_DESCRIPTION
    auto_sync_interval_seconds: float = Field(default=180.0, gt=0)
    debounce_seconds: float = Field(default=2.0, ge=0)
    status_reset_seconds: float = Field(default=3.0, ge=0)
    reset_success: bool = Field(default=False, description="Also return to idle after success")
    wifi_only: bool = Field(default=False, description="Skip automatic syncs off Wi-Fi")

    @property
    def is_configured(self) -> bool:
        if not self.container_id:
            return False
        # S3 authenticates through the AWS credential chain
        return self.backend == "s3" or bool(self.token)

    @classmethod
    def from_env(cls, base: Optional["SyncConfig"] = None) -> "SyncConfig":
        """Overlay environment variables on `base` (or on defaults)."""
        updates: Dict[str, Any] = {}
        token = _getenv(ENV_TOKEN)
        if token:
            updates["token"] = token
        container = _getenv(ENV_CONTAINER_ID)
        if container:
            updates["container_id"] = container
        backend = _getenv(ENV_BACKEND)
        if backend:
            updates["backend"] = backend.strip().lower()
        encrypt = _getenv(ENV_ENCRYPT)
        if encrypt is not None:
            updates["encryption_enabled"] = _parse_bool(encrypt)
        file_name = _getenv(ENV_FILE)
        if file_name:
            updates["file_name"] = file_name
        wifi_only = _getenv(ENV_WIFI_ONLY)
        if wifi_only is not None:
            updates["wifi_only"] = _parse_bool(wifi_only)

        data = (base or cls()).model_dump()
        data.update(updates)
        return cls.model_validate(data)

    def require(self) -> "SyncConfig":
        """Return self, or raise if sync cannot run with this configuration."""
        if not self.is_configured:
            missing = [
                name
                for name, val in [(ENV_CONTAINER_ID, self.container_id), (ENV_TOKEN, self.token)]
                if not val and not (name == ENV_TOKEN and self.backend == "s3")
            ]
            raise RuntimeError(f"Missing required sync configuration: {', '.join(missing)}")
        return self


class ConfigStore:
    """
    JSON file holding the sync settings and the persisted `last_sync_at`.

    - Layout: {"config": {...SyncConfig...}, "last_sync_at": ISO8601 | null}
    - Environment variables override file values on `load()`.
    - A corrupt file is logged and treated as empty.
    """

    def __init__(self, path: Optional[os.PathLike[str] | str] = None) -> None:
        self._path = Path(path) if path else sync_home() / "sync.json"

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as ex:
            logger.warning("Ignoring unreadable sync settings at %s: %s", self._path, ex)
            return {}
        return raw if isinstance(raw, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        tmp.replace(self._path)

    def load(self) -> SyncConfig:
        stored = self._read().get("config")
        base = SyncConfig()
        if isinstance(stored, dict):
            try:
                base = SyncConfig.model_validate(stored)
            except ValidationError as ex:
                logger.warning("Ignoring invalid sync settings in %s: %s", self._path, ex)
        return SyncConfig.from_env(base)

    def save(self, config: SyncConfig) -> None:
        data = self._read()
        data["config"] = config.model_dump(mode="json")
        self._write(data)

    def last_sync_at(self) -> Optional[datetime]:
        raw = self._read().get("last_sync_at")
        if not isinstance(raw, str):
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None

    def record_last_sync(self, when: datetime) -> None:
        data = self._read()
        data["last_sync_at"] = when.isoformat()
        self._write(data)


__all__ = ["SyncConfig", "ConfigStore", "sync_home"]
