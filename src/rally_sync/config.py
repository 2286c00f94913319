"""Runtime configuration for the sync layer."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Tuple

BASE_DIR = Path.home() / ".rally"
SESSION_PATH = BASE_DIR / "session.json"
DEFAULT_BASE_URL = "http://localhost:8080"
BACKOFF_DELAYS_MS: Tuple[int, ...] = (1000, 2000, 4000, 8000, 16000, 30000)


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class SyncConfig:
    base_url: str = DEFAULT_BASE_URL
    request_timeout_s: float = 15.0
    heartbeat_interval_s: float = 30.0
    backoff_ms: Tuple[int, ...] = BACKOFF_DELAYS_MS
    typing_clear_s: float = 3.0
    typing_throttle_s: float = 2.0
    page_size: int = 50
    session_path: Path = field(default=SESSION_PATH)

    @property
    def api_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/v1"

    @property
    def ws_url(self) -> str:
        base = self.base_url.rstrip("/")
        if base.startswith("http"):
            base = "ws" + base[len("http") :]
        return f"{base}/ws"

    def with_overrides(self, **changes) -> "SyncConfig":
        changes = {key: value for key, value in changes.items() if value is not None}
        if "session_path" in changes:
            changes["session_path"] = Path(changes["session_path"]).expanduser()
        return replace(self, **changes)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "SyncConfig":
        """Build a config from ``RALLY_*`` environment variables."""

        env = os.environ if env is None else env
        defaults = cls()
        session_path = env.get("RALLY_SESSION_PATH")
        return cls(
            base_url=env.get("RALLY_BASE_URL", defaults.base_url),
            request_timeout_s=_env_float(env, "RALLY_REQUEST_TIMEOUT", defaults.request_timeout_s),
            heartbeat_interval_s=_env_float(env, "RALLY_HEARTBEAT_INTERVAL", defaults.heartbeat_interval_s),
            page_size=_env_int(env, "RALLY_PAGE_SIZE", defaults.page_size),
            session_path=Path(session_path).expanduser() if session_path else defaults.session_path,
        )
