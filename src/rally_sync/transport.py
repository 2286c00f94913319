"""Persistent WebSocket connection: lifecycle, heartbeat, typed dispatch.

Inbound frames are JSON objects ``{"type": ..., "data": ...}``. Recognized
types: ``message``, ``typing``, ``read``, ``pong`` and ``error``; handlers
registered under ``"*"`` see every event. Outbound commands are ``message``,
``typing``, ``read`` and the ``ping`` heartbeat probe.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

import aiohttp
from aiohttp import WSMsgType

from .config import BACKOFF_DELAYS_MS
from .errors import HandshakeError

logger = logging.getLogger(__name__)

WILDCARD = "*"
RECOGNIZED_EVENTS = frozenset({"message", "typing", "read", "pong", "error"})
HEARTBEAT_KIND = "ping"
MAX_OUTBOUND_FRAMES = 1000


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


@dataclass(frozen=True)
class TransportEvent:
    type: str
    payload: Any


Handler = Callable[[TransportEvent], None]
CredentialProvider = Callable[[], Optional[str]]


class SocketLike(Protocol):
    closed: bool

    def __aiter__(self): ...

    async def send_str(self, data: str) -> None: ...

    async def close(self) -> Any: ...


SocketOpener = Callable[[str, str], Awaitable[SocketLike]]
Scheduler = Callable[[float, Callable[[], None]], asyncio.TimerHandle]


def new_client_id() -> str:
    return f"c_{secrets.token_urlsafe(12)}"


def decode_frame(raw: object) -> Optional[TransportEvent]:
    """Decode one text frame; ``None`` for anything that is not a typed object."""

    try:
        frame = json.loads(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not isinstance(frame, dict):
        return None
    event_type = frame.get("type")
    if not isinstance(event_type, str) or not event_type:
        return None
    payload = frame.get("data")
    if payload is None:
        payload = frame
    return TransportEvent(type=event_type, payload=payload)


def _retrieve_outcome(handshake: asyncio.Future) -> None:
    # Every caller may have been cancelled while the shared handshake ran.
    if not handshake.cancelled():
        handshake.exception()


class ReconnectBackoff:
    """Fixed delay ladder; the index is capped at the last rung."""

    def __init__(self, delays_ms: Sequence[int] = BACKOFF_DELAYS_MS) -> None:
        if not delays_ms:
            raise ValueError("delays_ms must not be empty")
        self._delays = tuple(delays_ms)
        self.attempt = 0

    def next_delay_ms(self) -> int:
        delay = self._delays[min(self.attempt, len(self._delays) - 1)]
        self.attempt += 1
        return delay

    def reset(self) -> None:
        self.attempt = 0


@dataclass
class _Registration:
    event_type: str
    handler: Handler


class TransportManager:
    """Owns zero or one live socket and keeps it alive across closures."""

    def __init__(
        self,
        url: str,
        *,
        credential_provider: CredentialProvider | None = None,
        heartbeat_interval_s: float = 30.0,
        backoff_ms: Sequence[int] = BACKOFF_DELAYS_MS,
        open_socket: SocketOpener | None = None,
        call_later: Scheduler | None = None,
        http: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self._credential_provider = credential_provider
        self._heartbeat_interval_s = heartbeat_interval_s
        self._backoff = ReconnectBackoff(backoff_ms)
        self._open_socket = open_socket or self._aiohttp_open
        self._call_later = call_later
        self._http = http
        self._owns_http = http is None

        self._state = ConnectionState.IDLE
        self._ws: Optional[SocketLike] = None
        self._outbound: Optional[asyncio.Queue[str]] = None
        self._tasks: List[asyncio.Task] = []
        self._handshake: Optional[asyncio.Future] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._known_good: Optional[str] = None
        self._generation = 0
        self._stopped = False
        self._handlers: Dict[str, List[_Registration]] = {}
        self._close_listeners: List[Callable[[], None]] = []
        self.last_reconnect_delay_ms: Optional[int] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def reconnect_attempt(self) -> int:
        return self._backoff.attempt

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    # Handler registry.

    def on(self, event_type: str, handler: Handler) -> Callable[[], None]:
        registration = _Registration(event_type=event_type, handler=handler)
        self._handlers.setdefault(event_type, []).append(registration)

        def unregister() -> None:
            registrations = self._handlers.get(event_type)
            if not registrations:
                return
            try:
                registrations.remove(registration)
            except ValueError:
                return
            if not registrations:
                self._handlers.pop(event_type, None)

        return unregister

    def on_close(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Call ``listener`` whenever an Open connection ends, for any reason.

        Close listeners are not event handlers: ``disconnect`` keeps them.
        """

        self._close_listeners.append(listener)

        def unregister() -> None:
            try:
                self._close_listeners.remove(listener)
            except ValueError:
                return

        return unregister

    def _notify_closed(self) -> None:
        for listener in list(self._close_listeners):
            try:
                listener()
            except Exception:
                logger.exception("close listener failed")

    def dispatch(self, event: TransportEvent) -> None:
        registrations = list(self._handlers.get(event.type, []))
        if event.type != WILDCARD:
            registrations.extend(self._handlers.get(WILDCARD, []))
        for registration in registrations:
            try:
                registration.handler(event)
            except Exception:
                logger.exception("handler for %r event failed", event.type)

    def _handle_frame(self, raw: object) -> None:
        event = decode_frame(raw)
        if event is None:
            logger.debug("dropping malformed frame")
            return
        self.dispatch(event)

    # Lifecycle.

    async def connect(self, credential: str) -> None:
        """Resolve once the connection is Open; concurrent callers share one handshake."""

        if self._state is ConnectionState.OPEN:
            return
        self._stopped = False
        self._cancel_reconnect_timer()
        if self._handshake is None:
            self._handshake = asyncio.ensure_future(self._open(credential, self._generation))
            self._handshake.add_done_callback(_retrieve_outcome)
        await asyncio.shield(self._handshake)

    async def _aiohttp_open(self, url: str, credential: str) -> SocketLike:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return await self._http.ws_connect(url, params={"token": credential})

    async def _open(self, credential: str, generation: int) -> None:
        self._state = ConnectionState.CONNECTING
        try:
            ws = await self._open_socket(self._url, credential)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError, HandshakeError) as exc:
            if generation == self._generation:
                self._state = ConnectionState.IDLE
            logger.info("handshake failed: %s", exc)
            status = exc.status if isinstance(exc, (HandshakeError, aiohttp.ClientResponseError)) else None
            raise HandshakeError(str(exc) or type(exc).__name__, status=status) from exc
        finally:
            if self._handshake is asyncio.current_task():
                self._handshake = None

        if generation != self._generation:
            await ws.close()
            raise HandshakeError("disconnected during handshake")

        self._ws = ws
        self._known_good = credential
        self._backoff.reset()
        self._outbound = asyncio.Queue(maxsize=MAX_OUTBOUND_FRAMES)
        self._state = ConnectionState.OPEN
        self._tasks = [
            asyncio.create_task(self._write_loop(ws, self._outbound)),
            asyncio.create_task(self._heartbeat(ws)),
            asyncio.create_task(self._read_loop(ws)),
        ]
        logger.info("connection open")

    async def _read_loop(self, ws: SocketLike) -> None:
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._handle_frame(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    break
        except (aiohttp.ClientError, OSError) as exc:
            logger.info("connection read failed: %s", exc)
        self._on_socket_closed(ws)

    async def _write_loop(self, ws: SocketLike, outbound: asyncio.Queue[str]) -> None:
        while True:
            frame = await outbound.get()
            try:
                await ws.send_str(frame)
            except (aiohttp.ClientError, OSError) as exc:
                logger.debug("write failed: %s", exc)
                return

    async def _heartbeat(self, ws: SocketLike) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval_s)
            if self._ws is not ws or self._state is not ConnectionState.OPEN:
                return
            self.send(HEARTBEAT_KIND)

    def _teardown_socket(self) -> List[asyncio.Task]:
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        self._tasks = []
        self._ws = None
        self._outbound = None
        return tasks

    def _on_socket_closed(self, ws: SocketLike) -> None:
        if ws is not self._ws:
            return
        self._teardown_socket()
        self._state = ConnectionState.IDLE
        logger.info("connection closed unexpectedly")
        self._notify_closed()
        if not self._stopped:
            self._schedule_reconnect()

    # Reconnection.

    def _current_credential(self) -> Optional[str]:
        if self._credential_provider is not None:
            return self._credential_provider()
        return self._known_good

    def _schedule_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            return
        if self._current_credential() is None:
            logger.info("no credential available; not reconnecting")
            return
        delay_ms = self._backoff.next_delay_ms()
        self.last_reconnect_delay_ms = delay_ms
        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._reconnect_handle = call_later(delay_ms / 1000, self._fire_reconnect)
        logger.info("reconnect attempt %d in %d ms", self._backoff.attempt, delay_ms)

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._stopped:
            return
        credential = self._current_credential()
        if credential is None:
            logger.info("credential gone; reconnect abandoned")
            return
        self._reconnect_task = asyncio.ensure_future(self._reconnect(credential))

    async def _reconnect(self, credential: str) -> None:
        try:
            await self.connect(credential)
        except HandshakeError:
            if not self._stopped and self._state is not ConnectionState.OPEN:
                self._schedule_reconnect()

    # Outgoing commands.

    def send(self, kind: str, **fields: Any) -> bool:
        """Queue a command; a silent no-op (``False``) unless the connection is Open."""

        if self._state is not ConnectionState.OPEN or self._outbound is None:
            logger.debug("not connected; dropping %r command", kind)
            return False
        frame = json.dumps({"type": kind, **fields})
        try:
            self._outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("outbound queue full; dropping %r command", kind)
            return False
        return True

    def send_message(
        self,
        chat_id: str,
        content: str,
        reply_to: str | None = None,
        client_id: str | None = None,
    ) -> Optional[str]:
        client_id = client_id or new_client_id()
        sent = self.send("message", chat_id=chat_id, content=content, reply_to=reply_to, client_id=client_id)
        return client_id if sent else None

    def send_typing(self, chat_id: str) -> bool:
        return self.send("typing", chat_id=chat_id)

    def send_read(self, chat_id: str) -> bool:
        return self.send("read", chat_id=chat_id)

    # Shutdown.

    async def disconnect(self) -> None:
        """Terminal for this connection; a fresh ``connect`` is needed to resume."""

        self._generation += 1
        self._stopped = True
        self._handshake = None
        self._cancel_reconnect_timer()
        current = asyncio.current_task()
        pending: List[asyncio.Task] = []
        if self._reconnect_task is not None and self._reconnect_task is not current:
            self._reconnect_task.cancel()
            pending.append(self._reconnect_task)
        self._reconnect_task = None
        self._handlers.clear()
        self._backoff.reset()

        ws = self._ws
        if ws is not None:
            self._state = ConnectionState.CLOSING
        pending.extend(self._teardown_socket())
        if ws is not None and not ws.closed:
            await ws.close()
        await asyncio.gather(*pending, return_exceptions=True)
        self._state = ConnectionState.IDLE
        if ws is not None:
            self._notify_closed()

    async def close(self) -> None:
        await self.disconnect()
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None
