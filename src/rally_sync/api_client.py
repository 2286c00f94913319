"""aiohttp request/response client for the REST backend."""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.parse
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import aiohttp

from .config import SyncConfig
from .credentials import CredentialCoordinator
from .errors import ApiError, TransportError, error_from_envelope
from .models import AuthTokens, Conversation, Message, MessagePage, parse_each
from .session_store import SessionHolder

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _chat_path(chat_id: str, suffix: str = "") -> str:
    return f"/chats/{urllib.parse.quote(chat_id, safe='')}{suffix}"


def _decode(parse: Callable[..., T], *args: Any) -> T:
    try:
        return parse(*args)
    except ValueError as exc:
        raise ApiError(200, "INVALID_RESPONSE", str(exc)) from exc


class ApiClient:
    """REST endpoints; everything except the auth bootstrap goes through ``coordinator``."""

    def __init__(
        self,
        config: SyncConfig,
        holder: SessionHolder,
        *,
        http: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._http = http
        self._owns_http = http is None
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout_s)
        self.coordinator = CredentialCoordinator(holder, self.refresh)
        self._authed = self.coordinator.authorized(self._request)

    async def _session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    async def close(self) -> None:
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def _request(
        self,
        token: Optional[str],
        method: str,
        path: str,
        *,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self._config.api_url}{path}"
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        query = {key: str(value) for key, value in (params or {}).items() if value is not None}
        http = await self._session()
        try:
            async with http.request(
                method,
                url,
                json=body,
                params=query or None,
                headers=headers,
                timeout=self._timeout,
            ) as response:
                status = response.status
                raw = await response.text()
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{method} {path} timed out") from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        try:
            payload = json.loads(raw) if raw else {}
        except ValueError:
            if status >= 400:
                raise error_from_envelope(status, None)
            raise ApiError(status, "INVALID_RESPONSE", "response is not JSON")
        if status >= 400:
            logger.debug("%s %s -> %s", method, path, status)
            raise error_from_envelope(status, payload)
        if isinstance(payload, dict):
            return payload.get("data")
        return None

    # Auth bootstrap: no credential involved.

    async def send_otp(self, phone: str) -> Dict[str, Any]:
        data = await self._request(None, "POST", "/auth/otp/send", body={"phone": phone})
        return data if isinstance(data, dict) else {}

    async def verify_otp(self, session_id: str, code: str) -> Dict[str, Any]:
        data = await self._request(None, "POST", "/auth/otp/verify", body={"session_id": session_id, "code": code})
        if not isinstance(data, dict):
            raise ApiError(200, "INVALID_RESPONSE", "verify response missing data")
        return data

    async def refresh(self, refresh_token: str) -> AuthTokens:
        data = await self._request(None, "POST", "/auth/refresh", body={"refresh_token": refresh_token})
        if not isinstance(data, dict):
            raise ApiError(200, "INVALID_RESPONSE", "refresh response missing data")
        return _decode(AuthTokens.from_payload, data)

    # Authenticated endpoints.

    async def profile_setup(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._authed("POST", "/auth/profile/setup", body=dict(fields))
        if not isinstance(data, dict):
            raise ApiError(200, "INVALID_RESPONSE", "profile setup response missing data")
        return data

    async def list_chats(self) -> List[Conversation]:
        data = await self._authed("GET", "/chats")
        return parse_each(data, Conversation.from_payload)

    async def create_personal_chat(self, user_id: str) -> Tuple[str, bool]:
        data = await self._authed("POST", "/chats/personal", body={"user_id": user_id})
        if not isinstance(data, dict) or not isinstance(data.get("chat_id"), str):
            raise ApiError(200, "INVALID_RESPONSE", "chat_id missing")
        return data["chat_id"], bool(data.get("is_new", False))

    async def get_messages(self, chat_id: str, *, before: str | None = None, limit: int | None = None) -> MessagePage:
        data = await self._authed(
            "GET",
            _chat_path(chat_id, "/messages"),
            params={"before": before, "limit": limit if limit is not None else self._config.page_size},
        )
        return MessagePage.from_payload(data if isinstance(data, dict) else {}, chat_id)

    async def send_message(self, chat_id: str, content: str, reply_to: str | None = None) -> Message:
        data = await self._authed(
            "POST",
            _chat_path(chat_id, "/messages"),
            body={"content": content, "reply_to_id": reply_to},
        )
        if not isinstance(data, dict):
            raise ApiError(200, "INVALID_RESPONSE", "message missing")
        return _decode(Message.from_payload, data, chat_id)

    async def mark_read(self, chat_id: str, last_read_at: datetime) -> None:
        await self._authed("POST", _chat_path(chat_id, "/read"), body={"last_read_at": last_read_at.isoformat()})

    async def mute_chat(self, chat_id: str, muted: bool) -> None:
        await self._authed("PATCH", _chat_path(chat_id, "/mute"), body={"is_muted": muted})

    async def unread_count(self) -> int:
        data = await self._authed("GET", "/chats/unread-count")
        if isinstance(data, dict) and isinstance(data.get("total_unread"), int):
            return data["total_unread"]
        return 0
