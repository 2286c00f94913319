"""Coordinates credential renewal across concurrent request/response calls.

Every authenticated call goes through :class:`CredentialCoordinator`. When a
call fails with :class:`AuthorizationError` the coordinator runs at most one
renewal for the whole failure episode: the first failing call performs it,
every call failing meanwhile parks a future in ``_waiters`` and is replayed
with the credential handed out when the renewal settles. Each call is retried
at most once.

The event loop is single-threaded, so a plain flag guards re-entrancy; the
only suspension points are the awaits below.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

from .errors import AuthorizationError, RenewalError
from .models import AuthTokens, AuthUser
from .session_store import Session, SessionHolder

logger = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[Optional[str]], Awaitable[T]]
RenewFunc = Callable[[str], Awaitable[AuthTokens]]


class CredentialCoordinator:
    def __init__(self, holder: SessionHolder, renew: RenewFunc) -> None:
        self._holder = holder
        self._renew = renew
        self._renewing = False
        self._waiters: List[asyncio.Future] = []

    @property
    def renewal_in_flight(self) -> bool:
        return self._renewing

    @property
    def pending_count(self) -> int:
        return len(self._waiters)

    def sign_in(self, tokens: AuthTokens, user: AuthUser | None = None) -> Session:
        session = Session(access_token=tokens.access_token, refresh_token=tokens.refresh_token, user=user)
        self._holder.install(session)
        logger.info("signed in as %s", user.id if user is not None else "<unknown>")
        return session

    def sign_in_interim(self, temp_token: str, user_id: str) -> Session:
        """Store the temporary credential issued before profile setup."""

        session = Session(
            access_token=temp_token,
            refresh_token=None,
            user=AuthUser(id=user_id, first_name="", is_profile_complete=False),
        )
        self._holder.install(session)
        return session

    def sign_out(self, reason: str = "logout") -> None:
        if self._holder.current is not None:
            logger.info("signing out: %s", reason)
        self._holder.destroy()

    def authorized(self, fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """Wrap ``fn(token, *args, **kwargs)`` into a coordinated ``fn(*args, **kwargs)``."""

        @functools.wraps(fn)
        async def wrapper(*args, **kwargs) -> T:
            return await self.call(lambda token: fn(token, *args, **kwargs))

        return wrapper

    async def call(self, operation: Operation) -> T:
        token = self._holder.access_token
        try:
            return await operation(token)
        except AuthorizationError as exc:
            return await self._recover(operation, token, exc)

    async def _recover(self, operation: Operation, used_token: Optional[str], exc: AuthorizationError) -> T:
        refresh_token = self._holder.refresh_token
        if refresh_token is None:
            self.sign_out("no renewal credential")
            raise exc

        if self._renewing:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                token = await waiter
            except RenewalError as renewal_exc:
                raise exc from renewal_exc
            return await operation(token)

        current = self._holder.access_token
        if used_token is not None and current is not None and current != used_token:
            # A renewal finished while this call was in flight.
            return await operation(current)

        new_token = await self._run_renewal(refresh_token, exc)
        return await operation(new_token)

    async def _run_renewal(self, refresh_token: str, exc: AuthorizationError) -> str:
        self._renewing = True
        try:
            tokens = await self._renew(refresh_token)
            current = self._holder.current
            user = current.user if current is not None else None
            self._holder.install(
                Session(access_token=tokens.access_token, refresh_token=tokens.refresh_token, user=user)
            )
            logger.info("credentials renewed; replaying %d queued call(s)", len(self._waiters))
            self._settle(token=tokens.access_token)
        except Exception as renewal_exc:
            logger.warning("credential renewal failed: %s", renewal_exc)
            self.sign_out("renewal failed")
            self._settle(error=RenewalError(str(renewal_exc) or type(renewal_exc).__name__))
            raise exc from renewal_exc
        finally:
            if self._renewing:
                self._settle(error=RenewalError("renewal interrupted"))
        return tokens.access_token

    def _settle(self, *, token: Optional[str] = None, error: Optional[BaseException] = None) -> None:
        waiters, self._waiters = self._waiters, []
        self._renewing = False
        for waiter in waiters:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(token)
