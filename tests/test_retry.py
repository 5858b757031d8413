"""Tests for grocery_sync.retry module."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from grocery_sync.errors import ApiError, ErrorKind
from grocery_sync.retry import RetryPolicy
from grocery_sync.transport import ApiRequest, CancelToken

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

REQUEST = ApiRequest("GET", "/grocery-lists/me")


class _ScriptedGate:
    """Stands in for the refresh gate, replaying scripted outcomes."""

    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def send(self, request: ApiRequest, cancel: CancelToken | None = None) -> Any:
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _RecordingSleep:
    """Awaitable sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _error(kind: ErrorKind) -> ApiError:
    """Build an ApiError of the given kind.

    Args:
        kind: Error kind.

    Returns:
        ApiError instance.
    """
    return ApiError(f"{kind} failure", kind=kind)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestRetryPolicyInit:
    """Tests for RetryPolicy construction and delays."""

    def test_rejects_zero_attempts(self) -> None:
        """Test max_attempts must be at least one."""
        with pytest.raises(ValueError, match="max_attempts"):
            RetryPolicy(_ScriptedGate([]), max_attempts=0)  # type: ignore[arg-type]

    def test_rejects_negative_delay(self) -> None:
        """Test base_delay must not be negative."""
        with pytest.raises(ValueError, match="base_delay"):
            RetryPolicy(_ScriptedGate([]), base_delay=-1)  # type: ignore[arg-type]

    def test_delay_doubles(self) -> None:
        """Test delays double per attempt."""
        policy = RetryPolicy(_ScriptedGate([]), base_delay=0.5)  # type: ignore[arg-type]
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]

    def test_delay_capped(self) -> None:
        """Test max_delay caps a single delay."""
        policy = RetryPolicy(
            _ScriptedGate([]), base_delay=1.0, max_delay=3.0  # type: ignore[arg-type]
        )
        assert policy.delay_for(5) == 3.0

    @pytest.mark.parametrize(
        ("kind", "expected"),
        [
            (ErrorKind.NETWORK, True),
            (ErrorKind.RATE_LIMITED, True),
            (ErrorKind.SERVER, True),
            (ErrorKind.VALIDATION, False),
            (ErrorKind.CONFLICT, False),
            (ErrorKind.UNAUTHORIZED, False),
            (ErrorKind.FORBIDDEN, False),
            (ErrorKind.CANCELLED, False),
            (ErrorKind.UNKNOWN, False),
        ],
    )
    def test_should_retry(self, kind: ErrorKind, expected: bool) -> None:
        """Test only transient kinds are retryable."""
        assert RetryPolicy.should_retry(_error(kind)) is expected


# ---------------------------------------------------------------------------
# RetryPolicy.send
# ---------------------------------------------------------------------------


class TestRetryPolicySend:
    """Tests for RetryPolicy.send."""

    @pytest.mark.asyncio()
    async def test_rate_limited_exhausts_attempts(self) -> None:
        """Test a persistent 429 is attempted three times with growing delays."""
        gate = _ScriptedGate([_error(ErrorKind.RATE_LIMITED)] * 3)
        sleep = _RecordingSleep()
        policy = RetryPolicy(gate, sleep=sleep)  # type: ignore[arg-type]

        with pytest.raises(ApiError) as exc_info:
            await policy.send(REQUEST)

        assert exc_info.value.kind is ErrorKind.RATE_LIMITED
        assert gate.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio()
    async def test_succeeds_after_transient_failures(self) -> None:
        """Test a network failure then a server failure then success."""
        gate = _ScriptedGate(
            [_error(ErrorKind.NETWORK), _error(ErrorKind.SERVER), {"ok": True}]
        )
        sleep = _RecordingSleep()
        policy = RetryPolicy(gate, sleep=sleep)  # type: ignore[arg-type]

        assert await policy.send(REQUEST) == {"ok": True}
        assert gate.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        "kind",
        [
            ErrorKind.VALIDATION,
            ErrorKind.CONFLICT,
            ErrorKind.UNAUTHORIZED,
            ErrorKind.FORBIDDEN,
        ],
    )
    async def test_non_transient_not_retried(self, kind: ErrorKind) -> None:
        """Test validation, conflict and auth failures surface immediately."""
        gate = _ScriptedGate([_error(kind)])
        sleep = _RecordingSleep()
        policy = RetryPolicy(gate, sleep=sleep)  # type: ignore[arg-type]

        with pytest.raises(ApiError) as exc_info:
            await policy.send(REQUEST)

        assert exc_info.value.kind is kind
        assert gate.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio()
    async def test_single_attempt_policy(self) -> None:
        """Test max_attempts=1 never sleeps."""
        gate = _ScriptedGate([_error(ErrorKind.SERVER)])
        sleep = _RecordingSleep()
        policy = RetryPolicy(gate, max_attempts=1, sleep=sleep)  # type: ignore[arg-type]

        with pytest.raises(ApiError):
            await policy.send(REQUEST)
        assert sleep.delays == []

    @pytest.mark.asyncio()
    async def test_cancel_during_backoff(self) -> None:
        """Test cancelling interrupts the backoff wait."""
        gate = _ScriptedGate([_error(ErrorKind.SERVER), {"ok": True}])
        policy = RetryPolicy(gate, base_delay=30.0)  # type: ignore[arg-type]
        token = CancelToken()

        task = asyncio.create_task(policy.send(REQUEST, cancel=token))
        await asyncio.sleep(0.01)
        token.cancel()

        with pytest.raises(ApiError) as exc_info:
            await asyncio.wait_for(task, timeout=1)
        assert exc_info.value.kind is ErrorKind.CANCELLED
        assert gate.calls == 1
