"""Composes session, coordinator, API client, transport and store.

The presentation layer talks to :class:`SyncClient` only: it reads state from
``client.store`` and issues intents (send, mark read, load more, typing).
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

import aiohttp

from .api_client import ApiClient
from .config import SyncConfig
from .errors import ApiError, AuthorizationError, HandshakeError
from .models import AuthTokens, AuthUser, Conversation, Message, MessagePage, Sender, utc_now
from .session_store import Session, SessionHolder, SessionStore
from .store import ConversationStore
from .transport import Scheduler, SocketOpener, TransportEvent, TransportManager, new_client_id

logger = logging.getLogger(__name__)


class SyncClient:
    def __init__(
        self,
        config: SyncConfig | None = None,
        *,
        http: aiohttp.ClientSession | None = None,
        open_socket: SocketOpener | None = None,
        call_later: Scheduler | None = None,
    ) -> None:
        self.config = config or SyncConfig()
        self.holder = SessionHolder(SessionStore(self.config.session_path))
        self.api = ApiClient(self.config, self.holder, http=http)
        self.coordinator = self.api.coordinator
        self.store = ConversationStore(typing_clear_s=self.config.typing_clear_s, call_later=call_later)
        self.transport = TransportManager(
            self.config.ws_url,
            credential_provider=self._connection_credential,
            heartbeat_interval_s=self.config.heartbeat_interval_s,
            backoff_ms=self.config.backoff_ms,
            open_socket=open_socket,
            call_later=call_later,
            http=http,
        )
        self._wired = False
        self._loading: Set[str] = set()
        self._last_typing_sent: Dict[str, float] = {}
        # (chat_id, client_id) of socket sends awaiting their echo, oldest first.
        self._in_flight: Deque[Tuple[str, str]] = deque()
        self._signed_out_listeners: List[Callable[[], None]] = []
        self._shutdown_task: Optional[asyncio.Task] = None
        self.holder.subscribe(self._on_session_changed)
        self.transport.on_close(self._on_connection_lost)

    # Lifecycle.

    async def start(self) -> Optional[Session]:
        session = self.holder.load()
        self._adopt_identity(session)
        if self.holder.is_authenticated:
            try:
                await self.connect()
            except (HandshakeError, ApiError) as exc:
                logger.warning("starting offline: %s", exc)
        return self.holder.current

    async def close(self) -> None:
        await self.transport.close()
        if self._shutdown_task is not None:
            await asyncio.gather(self._shutdown_task, return_exceptions=True)
        await self.api.close()

    def on_signed_out(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._signed_out_listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._signed_out_listeners.remove(listener)
            except ValueError:
                return

        return unsubscribe

    def _connection_credential(self) -> Optional[str]:
        return self.holder.access_token if self.holder.is_authenticated else None

    async def connect(self) -> None:
        """Open the push connection; a rejected token goes through renewal first."""

        if self._shutdown_task is not None:
            await asyncio.gather(self._shutdown_task, return_exceptions=True)
            self._shutdown_task = None
        self._wire_transport()

        async def open_with(token: Optional[str]) -> None:
            if token is None:
                raise AuthorizationError(401, "UNAUTHORIZED", "no access credential")
            try:
                await self.transport.connect(token)
            except HandshakeError as exc:
                if exc.status == 401:
                    raise AuthorizationError(401, "UNAUTHORIZED", str(exc)) from exc
                raise

        await self.coordinator.call(open_with)

    def _wire_transport(self) -> None:
        if self._wired:
            return
        self.transport.on("message", self._on_message_event)
        self.transport.on("typing", self._on_typing_event)
        self.transport.on("error", self._on_error_event)
        self._wired = True

    def _adopt_identity(self, session: Optional[Session]) -> None:
        if session is not None and session.user is not None:
            self.store.self_user_id = session.user.id

    def _self_sender(self) -> Sender:
        session = self.holder.current
        if session is not None and session.user is not None:
            return Sender(id=session.user.id, first_name=session.user.first_name)
        return Sender(id="")

    def _on_session_changed(self, session: Optional[Session]) -> None:
        if session is not None:
            self._adopt_identity(session)
            return
        self.store.reset()
        self._wired = False
        self._last_typing_sent.clear()
        self._in_flight.clear()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._shutdown_task = loop.create_task(self.transport.disconnect())
        for listener in list(self._signed_out_listeners):
            listener()

    # Push events.

    def _on_message_event(self, event: TransportEvent) -> None:
        if not isinstance(event.payload, dict):
            return
        try:
            message = Message.from_payload(event.payload)
        except ValueError as exc:
            logger.debug("ignoring message event: %s", exc)
            return
        if message.client_id:
            self._settle_in_flight(message.chat_id, message.client_id)
            if self.store.confirm_pending(message.chat_id, message.client_id, message):
                return
        self.store.append(message.chat_id, message)

    def _on_typing_event(self, event: TransportEvent) -> None:
        payload: Any = event.payload
        if not isinstance(payload, dict) or not isinstance(payload.get("chat_id"), str):
            return
        user_id = payload.get("user_id")
        if user_id is not None and user_id == self.store.self_user_id:
            return
        name = payload.get("first_name") or user_id or "someone"
        self.store.set_typing(payload["chat_id"], str(name))

    def _on_error_event(self, event: TransportEvent) -> None:
        """Fail the socket send the server rejected.

        Error frames carry no chat or client id, and the server answers each
        socket's frames in order, so the rejection belongs to the oldest send
        still awaiting its echo. An explicit ``client_id`` wins when present.
        """

        payload = event.payload if isinstance(event.payload, dict) else {}
        logger.warning("server error event: %s %s", payload.get("code"), payload.get("message"))
        client_id = payload.get("client_id")
        for chat_id, pending_id in list(self._in_flight):
            if client_id is None or pending_id == client_id:
                self._settle_in_flight(chat_id, pending_id)
                self.store.fail_pending(chat_id, pending_id)
                return

    def _on_connection_lost(self) -> None:
        # Sends without an echo may or may not have reached the server.
        while self._in_flight:
            chat_id, client_id = self._in_flight.popleft()
            self.store.fail_pending(chat_id, client_id)

    def _settle_in_flight(self, chat_id: str, client_id: str) -> None:
        try:
            self._in_flight.remove((chat_id, client_id))
        except ValueError:
            return

    # Auth intents.

    async def request_otp(self, phone: str) -> Dict[str, Any]:
        return await self.api.send_otp(phone)

    async def verify_otp(self, session_id: str, code: str) -> Session:
        data = await self.api.verify_otp(session_id, code)
        if data.get("is_new"):
            return self.coordinator.sign_in_interim(str(data["temp_token"]), str(data["user_id"]))
        return await self._finish_sign_in(data)

    async def complete_profile(self, fields: Dict[str, Any]) -> Session:
        data = await self.api.profile_setup(fields)
        return await self._finish_sign_in(data)

    async def _finish_sign_in(self, data: Dict[str, Any]) -> Session:
        try:
            tokens = AuthTokens.from_payload(data)
        except ValueError as exc:
            raise ApiError(200, "INVALID_RESPONSE", str(exc)) from exc
        user_payload = data.get("user")
        user = AuthUser.from_payload(user_payload) if isinstance(user_payload, dict) else None
        session = self.coordinator.sign_in(tokens, user)
        try:
            await self.connect()
        except (HandshakeError, ApiError) as exc:
            logger.warning("signed in but push connection unavailable: %s", exc)
        return session

    def logout(self) -> None:
        self.coordinator.sign_out("logout")

    # Conversation intents.

    async def refresh_conversations(self) -> List[Conversation]:
        conversations = await self.api.list_chats()
        self.store.set_conversations(conversations)
        return conversations

    async def start_direct_chat(self, user_id: str) -> str:
        chat_id, _ = await self.api.create_personal_chat(user_id)
        await self.refresh_conversations()
        return chat_id

    async def open_conversation(self, chat_id: str) -> MessagePage:
        self.store.active_chat_id = chat_id
        page = await self.api.get_messages(chat_id, limit=self.config.page_size)
        self.store.replace(chat_id, page.messages)
        self.store.set_has_more(chat_id, page.has_more)
        await self.mark_read(chat_id)
        return page

    def close_conversation(self, chat_id: str) -> None:
        if self.store.active_chat_id == chat_id:
            self.store.active_chat_id = None

    async def load_more(self, chat_id: str) -> bool:
        """Fetch the page before the oldest held id; ``False`` if nothing was fetched."""

        if chat_id in self._loading or not self.store.has_more(chat_id):
            return False
        cursor = self.store.oldest_id(chat_id)
        self._loading.add(chat_id)
        try:
            page = await self.api.get_messages(chat_id, before=cursor, limit=self.config.page_size)
        finally:
            self._loading.discard(chat_id)
        self.store.prepend_merge(chat_id, page.messages)
        self.store.set_has_more(chat_id, page.has_more)
        return True

    async def send(self, chat_id: str, content: str, reply_to: str | None = None) -> Message:
        """Send over the push connection when Open, else through the REST endpoint."""

        if self.transport.is_connected:
            client_id = new_client_id()
            pending = self.store.add_pending(chat_id, content, client_id, self._self_sender(), reply_to)
            if self.transport.send_message(chat_id, content, reply_to, client_id=client_id) is not None:
                self._in_flight.append((chat_id, client_id))
                return pending
            try:
                message = await self.api.send_message(chat_id, content, reply_to)
            except ApiError:
                self.store.fail_pending(chat_id, client_id)
                raise
            self.store.confirm_pending(chat_id, client_id, message)
            return message

        message = await self.api.send_message(chat_id, content, reply_to)
        self.store.append(chat_id, message)
        return message

    async def mark_read(self, chat_id: str) -> None:
        if not self.transport.send_read(chat_id):
            await self.api.mark_read(chat_id, utc_now())
        self.store.set_unread(chat_id, 0)

    def start_typing(self, chat_id: str) -> bool:
        now = asyncio.get_running_loop().time()
        last = self._last_typing_sent.get(chat_id)
        if last is not None and now - last < self.config.typing_throttle_s:
            return False
        if not self.transport.send_typing(chat_id):
            return False
        self._last_typing_sent[chat_id] = now
        return True

    async def mute(self, chat_id: str, muted: bool) -> None:
        await self.api.mute_chat(chat_id, muted)
        self.store.set_muted(chat_id, muted)
