"""Persist the client Session and guard its single in-process copy."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import SESSION_PATH
from .models import AuthUser

logger = logging.getLogger(__name__)

SessionListener = Callable[[Optional["Session"]], None]


@dataclass(frozen=True)
class Session:
    access_token: str
    refresh_token: Optional[str]
    user: Optional[AuthUser] = None

    @property
    def is_authenticated(self) -> bool:
        """False for the interim "profile incomplete" state."""

        return bool(self.refresh_token)

    def to_payload(self) -> Dict[str, object]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "user": self.user.to_payload() if self.user is not None else None,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, object]) -> "Session":
        access_token = data.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("access_token required")
        refresh_token = data.get("refresh_token")
        user = data.get("user")
        return cls(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
            user=AuthUser.from_payload(user) if isinstance(user, dict) else None,
        )


def _atomic_write_json(path: Path, payload: Dict[str, object]) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    content = json.dumps(payload, indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


class SessionStore:
    """Durable JSON storage for exactly one Session."""

    def __init__(self, path: Path | str = SESSION_PATH) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> Optional[Session]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, ValueError):
            logger.warning("ignoring unreadable session file %s", self.path)
            return None
        if not isinstance(data, dict):
            return None
        try:
            return Session.from_payload(data)
        except (ValueError, KeyError):
            logger.warning("ignoring malformed session file %s", self.path)
            return None

    def save(self, session: Session) -> None:
        _atomic_write_json(self.path, session.to_payload())

    def erase(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return


class SessionHolder:
    """The process-wide Session value.

    Anyone may read it; only the credential coordinator calls ``install``
    and ``destroy``. Both persist before notifying listeners, so the next
    read anywhere observes the new state.
    """

    def __init__(self, store: SessionStore) -> None:
        self._store = store
        self._session: Optional[Session] = None
        self._listeners: List[SessionListener] = []
        self._loaded = False

    def load(self) -> Optional[Session]:
        if not self._loaded:
            self._session = self._store.load()
            self._loaded = True
        return self._session

    @property
    def current(self) -> Optional[Session]:
        return self._session

    @property
    def access_token(self) -> Optional[str]:
        return self._session.access_token if self._session is not None else None

    @property
    def refresh_token(self) -> Optional[str]:
        return self._session.refresh_token if self._session is not None else None

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None and self._session.is_authenticated

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return

        return unsubscribe

    def install(self, session: Session) -> None:
        self._store.save(session)
        self._session = session
        self._loaded = True
        self._notify()

    def destroy(self) -> None:
        had_session = self._session is not None
        self._session = None
        self._loaded = True
        self._store.erase()
        if had_session:
            self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._session)
