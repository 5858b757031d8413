"""API client: the assembled request pipeline.

``ApiClient`` wires Transport -> SessionRefreshGate -> RetryPolicy around a
single Session and exposes verb helpers returning parsed JSON. Services and
the mutation orchestrator send through ``ApiClient.send``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from grocery_sync.refresh_gate import REFRESH_PATH, SessionRefreshGate
from grocery_sync.retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_ATTEMPTS, RetryPolicy
from grocery_sync.session import Session
from grocery_sync.token_store import FileTokenStore
from grocery_sync.transport import DEFAULT_TIMEOUT, ApiRequest, Transport

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import httpx

    from grocery_sync.config import Config
    from grocery_sync.models import Credentials
    from grocery_sync.token_store import TokenStore
    from grocery_sync.transport import CancelToken


class ApiClient:
    """Authenticated, retrying JSON client for the grocery backend.

    Args:
        base_url: API root URL.
        token_store: Persistence for the session's token pair.
        http_client: Optional pre-configured httpx.AsyncClient for testing.
        timeout: Per-request timeout in seconds.
        max_attempts: Retry cap for transient failures.
        base_delay: First backoff delay in seconds.
        refresh_path: Token refresh endpoint.
        sleep: Awaitable sleep used between retries.
    """

    def __init__(
        self,
        base_url: str,
        token_store: TokenStore,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        refresh_path: str = REFRESH_PATH,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        """Initialize the client and its pipeline.

        Args:
            base_url: API root URL.
            token_store: Persistence for the session's token pair.
            http_client: Optional pre-configured httpx.AsyncClient for testing.
            timeout: Per-request timeout in seconds.
            max_attempts: Retry cap for transient failures.
            base_delay: First backoff delay in seconds.
            refresh_path: Token refresh endpoint.
            sleep: Awaitable sleep used between retries.
        """
        self.session = Session(token_store)
        self.transport = Transport(
            base_url, self.session, http_client=http_client, timeout=timeout
        )
        self.gate = SessionRefreshGate(self.transport, refresh_path=refresh_path)
        retry_kwargs: dict[str, Any] = {}
        if sleep is not None:
            retry_kwargs["sleep"] = sleep
        self.retry = RetryPolicy(
            self.gate,
            max_attempts=max_attempts,
            base_delay=base_delay,
            **retry_kwargs,
        )

    @classmethod
    def from_config(
        cls, config: Config, http_client: httpx.AsyncClient | None = None
    ) -> ApiClient:
        """Build a client from loaded configuration.

        Args:
            config: Validated configuration.
            http_client: Optional pre-configured httpx.AsyncClient.

        Returns:
            Configured ApiClient using a FileTokenStore.
        """
        return cls(
            config.api_base_url,
            FileTokenStore(config.token_store_path),
            http_client=http_client,
            timeout=config.request_timeout,
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
        )

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def sign_in(self, credentials: Credentials) -> None:
        """Store a token pair obtained from the identity provider.

        Args:
            credentials: Access / refresh token pair.
        """
        self.gate.sign_in(credentials)

    def logout(self) -> None:
        """Forget the session."""
        self.gate.logout()

    # ------------------------------------------------------------------
    # HTTP methods
    # ------------------------------------------------------------------

    async def send(self, request: ApiRequest, cancel: CancelToken | None = None) -> Any:
        """Send a request through retry, refresh gate and transport.

        Args:
            request: The call to make.
            cancel: Optional cancellation signal.

        Returns:
            Parsed JSON body, or None for an empty response.

        Raises:
            ApiError: On failure.
        """
        return await self.retry.send(request, cancel=cancel)

    async def get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        cancel: CancelToken | None = None,
    ) -> Any:
        """Make an authenticated GET request.

        Args:
            path: API path.
            params: Optional query parameters.
            cancel: Optional cancellation signal.

        Returns:
            Parsed JSON body.
        """
        return await self.send(ApiRequest("GET", path, params=params), cancel)

    async def post(
        self, path: str, json_data: Any = None, cancel: CancelToken | None = None
    ) -> Any:
        """Make an authenticated POST request.

        Args:
            path: API path.
            json_data: Optional JSON body.
            cancel: Optional cancellation signal.

        Returns:
            Parsed JSON body.
        """
        return await self.send(ApiRequest("POST", path, json=json_data), cancel)

    async def put(
        self, path: str, json_data: Any = None, cancel: CancelToken | None = None
    ) -> Any:
        """Make an authenticated PUT request.

        Args:
            path: API path.
            json_data: Optional JSON body.
            cancel: Optional cancellation signal.

        Returns:
            Parsed JSON body.
        """
        return await self.send(ApiRequest("PUT", path, json=json_data), cancel)

    async def patch(
        self, path: str, json_data: Any = None, cancel: CancelToken | None = None
    ) -> Any:
        """Make an authenticated PATCH request.

        Args:
            path: API path.
            json_data: Optional JSON body.
            cancel: Optional cancellation signal.

        Returns:
            Parsed JSON body.
        """
        return await self.send(ApiRequest("PATCH", path, json=json_data), cancel)

    async def delete(self, path: str, cancel: CancelToken | None = None) -> Any:
        """Make an authenticated DELETE request.

        Args:
            path: API path.
            cancel: Optional cancellation signal.

        Returns:
            Parsed JSON body, or None.
        """
        return await self.send(ApiRequest("DELETE", path), cancel)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Close the underlying HTTP client if we own it."""
        await self.transport.aclose()

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
