"""Exponential-backoff retry for transient failures.

Only ``NETWORK``, ``RATE_LIMITED`` and ``SERVER`` failures are retried.
Every attempt goes back through the refresh gate, so a token that expired
during the backoff is refreshed like any other.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from grocery_sync.errors import ApiError, ErrorKind

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from grocery_sync.refresh_gate import SessionRefreshGate
    from grocery_sync.transport import ApiRequest, CancelToken

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0

RETRYABLE_KINDS = frozenset(
    {ErrorKind.NETWORK, ErrorKind.RATE_LIMITED, ErrorKind.SERVER}
)


class RetryPolicy:
    """Retries transient failures from the refresh gate.

    Args:
        gate: The gate (and transport) to send through.
        max_attempts: Total attempts, including the first.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Optional ceiling for a single delay.
        sleep: Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        gate: SessionRefreshGate,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the policy.

        Args:
            gate: The gate to send through.
            max_attempts: Total attempts, including the first.
            base_delay: Delay before the first retry, in seconds.
            max_delay: Optional ceiling for a single delay.
            sleep: Awaitable sleep, replaceable in tests.

        Raises:
            ValueError: If max_attempts < 1 or base_delay < 0.
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        if base_delay < 0:
            raise ValueError(f"base_delay must not be negative, got {base_delay}")
        self._gate = gate
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        """Return the attempt cap."""
        return self._max_attempts

    @staticmethod
    def should_retry(error: ApiError) -> bool:
        """Check whether a failure is transient.

        Args:
            error: The failure.

        Returns:
            True for NETWORK, RATE_LIMITED and SERVER kinds.
        """
        return error.kind in RETRYABLE_KINDS

    def delay_for(self, attempt: int) -> float:
        """Return the delay after a failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed.

        Returns:
            Seconds to wait: base_delay doubled per previous retry.
        """
        delay = self._base_delay * (2 ** (attempt - 1))
        if self._max_delay is not None:
            delay = min(delay, self._max_delay)
        return delay

    async def send(self, request: ApiRequest, cancel: CancelToken | None = None) -> Any:
        """Send a request, retrying transient failures with backoff.

        Args:
            request: The call to make.
            cancel: Optional cancellation signal; also interrupts backoff.

        Returns:
            Parsed JSON body.

        Raises:
            ApiError: The last failure once attempts are exhausted, or any
                non-transient failure immediately.
        """
        attempt = 1
        while True:
            try:
                return await self._gate.send(request, cancel=cancel)
            except ApiError as exc:
                if not self.should_retry(exc) or attempt >= self._max_attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s %s failed (%s); retry %d/%d in %.2fs",
                    request.method,
                    request.path,
                    exc.kind,
                    attempt,
                    self._max_attempts - 1,
                    delay,
                )
            if cancel is None:
                await self._sleep(delay)
            else:
                await cancel.guard(self._sleep(delay))
            attempt += 1
