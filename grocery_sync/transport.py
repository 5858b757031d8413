"""HTTP transport with bearer auth, failure normalization and cancellation.

Every failure leaving ``Transport.send`` is an ``ApiError``:

1. A response with an error status is classified by status code
2. No response at all (connect error, timeout, dropped connection) is
   ``NETWORK``
3. Anything else is ``UNKNOWN``

Requests are described by ``ApiRequest``; the refresh gate wraps them in a
``RequestEnvelope`` to record whether a request has already been replayed
after a token refresh.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from grocery_sync.errors import (
    NETWORK_ERROR_MESSAGE,
    ApiError,
    ErrorKind,
    error_from_response,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from grocery_sync.session import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 30.0
CANCELLED_MESSAGE = "Request cancelled"


@dataclass(frozen=True)
class ApiRequest:
    """A single API call.

    Attributes:
        method: HTTP method.
        path: Path relative to the API base URL.
        params: Optional query parameters.
        json: Optional JSON body.
        skip_auth: Send without a bearer token (used by the refresh call).
        wait_for_refresh: Wait for an in-flight token refresh before sending.
    """

    method: str
    path: str
    params: dict[str, Any] | None = None
    json: Any = None
    skip_auth: bool = False
    wait_for_refresh: bool = False


@dataclass(frozen=True)
class RequestEnvelope:
    """An ApiRequest plus its replay state inside the refresh gate."""

    request: ApiRequest
    retried: bool = False

    def mark_retried(self) -> RequestEnvelope:
        """Return an envelope recording that the request was replayed.

        Returns:
            New envelope with ``retried`` set.
        """
        return dataclasses.replace(self, retried=True)


class CancelToken:
    """Cooperative cancellation signal shared by one or more requests.

    Calling ``cancel`` aborts whatever I/O the guarded awaitables are doing;
    their callers fail with an ``ApiError`` of kind ``CANCELLED``.
    """

    def __init__(self) -> None:
        """Initialize an un-cancelled token."""
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        """Whether ``cancel`` has been called."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal cancellation."""
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise the cancellation error if the token is cancelled.

        Raises:
            ApiError: With kind CANCELLED.
        """
        if self.cancelled:
            raise ApiError(CANCELLED_MESSAGE, kind=ErrorKind.CANCELLED)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token is cancelled first.

        On cancellation the underlying task or future is cancelled.

        Args:
            awaitable: Coroutine or future to run.

        Returns:
            The awaitable's result.

        Raises:
            ApiError: With kind CANCELLED when the token fires first.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        signal = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, signal}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            signal.cancel()
        if work.done():
            return work.result()
        work.cancel()
        raise ApiError(CANCELLED_MESSAGE, kind=ErrorKind.CANCELLED)


class Transport:
    """Issues HTTP requests against the API base URL.

    Args:
        base_url: API root, e.g. ``https://api.example.com``.
        session: Source of the current access token.
        http_client: Optional pre-configured httpx.AsyncClient for testing.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        session: Session,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the transport.

        Args:
            base_url: API root URL.
            session: Source of the current access token.
            http_client: Optional pre-configured httpx.AsyncClient for testing.
            timeout: Per-request timeout in seconds.
        """
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self._timeout = timeout

    @property
    def session(self) -> Session:
        """Return the session this transport authenticates with."""
        return self._session

    async def send(
        self,
        request: ApiRequest,
        *,
        token: str | None = None,
        cancel: CancelToken | None = None,
    ) -> Any:
        """Send a request and return the parsed JSON body.

        Args:
            request: The call to make.
            token: Access token to use instead of the session's current one.
            cancel: Optional cancellation signal.

        Returns:
            Parsed JSON body, or None for an empty response.

        Raises:
            ApiError: On any failure.
        """
        if cancel is None:
            return await self._send(request, token)
        return await cancel.guard(self._send(request, token))

    async def _send(self, request: ApiRequest, token: str | None) -> Any:
        """Send a single request, normalizing every failure.

        Args:
            request: The call to make.
            token: Explicit access token, if any.

        Returns:
            Parsed JSON body, or None for an empty response.

        Raises:
            ApiError: On any failure.
        """
        url = f"{self._base_url}{request.path}"
        logger.debug("%s %s", request.method, request.path)
        try:
            response = await self._client.request(
                request.method,
                url,
                params=request.params,
                json=request.json,
                headers=self._build_headers(request, token),
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            error = error_from_response(exc.response)
            logger.debug(
                "%s %s failed: %s (%s)",
                request.method,
                request.path,
                error.status_code,
                error.kind,
            )
            raise error from exc
        except httpx.TimeoutException as exc:
            raise ApiError(
                f"Request timed out after {self._timeout:g}s",
                kind=ErrorKind.NETWORK,
                code="TIMEOUT",
            ) from exc
        except httpx.TransportError as exc:
            raise ApiError(
                NETWORK_ERROR_MESSAGE, kind=ErrorKind.NETWORK, code="NETWORK_ERROR"
            ) from exc
        except httpx.HTTPError as exc:
            raise ApiError(
                f"Unexpected request failure: {exc}", code="UNKNOWN_ERROR"
            ) from exc

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ApiError(
                "Response body is not valid JSON",
                status_code=response.status_code,
                payload=response.text,
            ) from exc

    def _build_headers(self, request: ApiRequest, token: str | None) -> dict[str, str]:
        """Build request headers.

        Args:
            request: The call being made.
            token: Explicit access token, if any.

        Returns:
            Headers with Accept and, unless skipped, Authorization.
        """
        headers = {"Accept": "application/json"}
        if request.skip_auth:
            return headers
        bearer = token if token is not None else self._session.access_token
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    async def aclose(self) -> None:
        """Close the underlying HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()
