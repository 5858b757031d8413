"""Single-flight session refresh in front of the transport.

When a request fails with ``UNAUTHORIZED`` the gate refreshes the session
once, no matter how many requests are failing at the same moment:

1. The first failing caller parks a future, flips the gate to
   ``REFRESHING`` and starts the refresh task, all in one synchronous step
2. Every other failing caller (and any caller that asked to wait for a
   fresh token) parks a future while the gate is ``REFRESHING``
3. When the refresh settles every parked future is resolved with the new
   access token (each caller then replays its request exactly once) or
   failed with a single ``SessionExpiredError``

A replayed request never re-enters the gate; a second ``UNAUTHORIZED``
propagates to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from grocery_sync.errors import ApiError, ErrorKind, SessionExpiredError
from grocery_sync.models import Credentials
from grocery_sync.token_store import TokenStoreError
from grocery_sync.transport import ApiRequest, RequestEnvelope

if TYPE_CHECKING:
    from grocery_sync.session import Session
    from grocery_sync.transport import CancelToken, Transport

logger = logging.getLogger(__name__)

REFRESH_PATH = "/auth/refresh"


class GateState(StrEnum):
    """Refresh gate lifecycle."""

    IDLE = "idle"
    REFRESHING = "refreshing"
    LOGGED_OUT = "logged_out"


class SessionRefreshGate:
    """Wraps a Transport with single-flight token refresh.

    Args:
        transport: Transport used for both API calls and the refresh call.
        refresh_path: Endpoint that exchanges a refresh token.
    """

    def __init__(self, transport: Transport, refresh_path: str = REFRESH_PATH) -> None:
        """Initialize the gate.

        Args:
            transport: Transport used for both API calls and the refresh call.
            refresh_path: Endpoint that exchanges a refresh token.
        """
        self._transport = transport
        self._session: Session = transport.session
        self._refresh_path = refresh_path
        self._state = (
            GateState.IDLE if self._session.is_authenticated else GateState.LOGGED_OUT
        )
        self._waiters: list[asyncio.Future[str]] = []
        self._refresh_task: asyncio.Task[None] | None = None
        self.refresh_count = 0

    @property
    def state(self) -> GateState:
        """Return the gate state."""
        return self._state

    @property
    def pending_count(self) -> int:
        """Return the number of callers parked on the current refresh."""
        return len(self._waiters)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def sign_in(self, credentials: Credentials) -> None:
        """Adopt a fresh token pair and reopen the gate.

        Args:
            credentials: New token pair.

        Raises:
            TokenStoreError: If the pair cannot be persisted.
        """
        self._session.authenticate(credentials)
        if self._state is not GateState.REFRESHING:
            self._state = GateState.IDLE
        logger.info("Signed in")

    def logout(self) -> None:
        """Clear the session and fail any callers waiting on a refresh."""
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = None
        self._session.clear()
        self._state = GateState.LOGGED_OUT
        self._drain(error=SessionExpiredError("Signed out"))
        logger.info("Signed out")

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    async def send(self, request: ApiRequest, cancel: CancelToken | None = None) -> Any:
        """Send a request, refreshing the session once on UNAUTHORIZED.

        Args:
            request: The call to make.
            cancel: Optional cancellation signal.

        Returns:
            Parsed JSON body, or None for an empty response.

        Raises:
            ApiError: On failure; SessionExpiredError when refresh fails.
        """
        envelope = RequestEnvelope(request)
        if request.wait_for_refresh and self._state is GateState.REFRESHING:
            token = await self._wait_for_token(self._enqueue(), cancel)
            return await self._transport.send(
                envelope.mark_retried().request, token=token, cancel=cancel
            )
        return await self._send_envelope(envelope, cancel)

    async def _send_envelope(
        self, envelope: RequestEnvelope, cancel: CancelToken | None
    ) -> Any:
        """Send once, then replay once after a refresh if needed.

        Args:
            envelope: Request plus replay state.
            cancel: Optional cancellation signal.

        Returns:
            Parsed JSON body.

        Raises:
            ApiError: On failure.
        """
        request = envelope.request
        token = self._session.access_token
        try:
            return await self._transport.send(request, token=token, cancel=cancel)
        except ApiError as exc:
            if (
                exc.kind is not ErrorKind.UNAUTHORIZED
                or envelope.retried
                or request.skip_auth
            ):
                raise
            if self._state is GateState.LOGGED_OUT:
                raise SessionExpiredError() from exc

        current = self._session.access_token
        if (
            self._state is GateState.IDLE
            and current is not None
            and current != token
        ):
            # The token was already replaced while this request was in flight.
            new_token = current
        else:
            new_token = await self._wait_for_token(self._enqueue(), cancel)
        return await self._transport.send(
            envelope.mark_retried().request, token=new_token, cancel=cancel
        )

    def _enqueue(self) -> asyncio.Future[str]:
        """Park a caller, starting the refresh if none is running.

        Runs without suspending, so the state check and the enqueue can
        not interleave with another caller.

        Returns:
            Future resolved with the new access token.
        """
        waiter: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        if self._state is not GateState.REFRESHING:
            self._state = GateState.REFRESHING
            self._session.mark_refreshing()
            self._refresh_task = asyncio.create_task(self._run_refresh())
        return waiter

    async def _wait_for_token(
        self, waiter: asyncio.Future[str], cancel: CancelToken | None
    ) -> str:
        """Wait on a parked future, leaving the queue if cancelled.

        Args:
            waiter: Future returned by ``_enqueue``.
            cancel: Optional cancellation signal.

        Returns:
            The refreshed access token.

        Raises:
            ApiError: SessionExpiredError, or CANCELLED.
        """
        try:
            if cancel is None:
                return await waiter
            return await cancel.guard(waiter)
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def _run_refresh(self) -> None:
        """Exchange the refresh token and settle every parked caller."""
        self.refresh_count += 1
        logger.info("Refreshing session")
        try:
            credentials = await self._exchange_refresh_token()
            self._session.authenticate(credentials)
        except asyncio.CancelledError:
            if self._state is GateState.REFRESHING:
                self._state = GateState.IDLE
                self._session.mark_settled()
            self._drain(error=SessionExpiredError("Session refresh cancelled"))
            raise
        except (ApiError, ValidationError, TokenStoreError) as exc:
            logger.warning("Session refresh failed; signing out: %s", exc)
            self._state = GateState.LOGGED_OUT
            self._session.clear()
            self._drain(error=SessionExpiredError())
            return
        except Exception:
            logger.exception("Unexpected session refresh failure; signing out")
            self._state = GateState.LOGGED_OUT
            self._session.clear()
            self._drain(error=SessionExpiredError())
            return
        self._state = GateState.IDLE
        logger.info("Session refreshed")
        self._drain(token=credentials.access_token)

    async def _exchange_refresh_token(self) -> Credentials:
        """Call the refresh endpoint.

        Returns:
            The new token pair.

        Raises:
            SessionExpiredError: If no refresh token is held.
            ApiError: If the refresh call fails.
            ValidationError: If the response is not a token pair.
        """
        refresh_token = self._session.refresh_token
        if not refresh_token:
            raise SessionExpiredError("No refresh token available")
        data = await self._transport.send(
            ApiRequest(
                "POST",
                self._refresh_path,
                json={"refresh_token": refresh_token},
                skip_auth=True,
            )
        )
        if not isinstance(data, dict):
            raise ApiError("Malformed refresh response", payload=data)
        # Some backends rotate only the access token.
        data.setdefault("refresh_token", refresh_token)
        return Credentials.model_validate(data)

    def _drain(
        self, token: str | None = None, error: ApiError | None = None
    ) -> None:
        """Settle every parked caller at once.

        Args:
            token: New access token on success.
            error: Shared error on failure.
        """
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(token or "")
