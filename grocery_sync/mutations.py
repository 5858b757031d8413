"""The optimistic-write recipe shared by every grocery mutation.

Each write is described by a ``Mutation``: which cache key it touches, a
pure updater computing the optimistic value, and the request confirming it
with the server. ``MutationOrchestrator.run`` then always does the same
thing:

1. Apply the updater to the cache (``EntityCache.begin_optimistic``)
2. Send the request through retry policy, refresh gate and transport
3. On success, commit (optionally merging the server response) and mark
   the list-of-lists summaries stale
4. On any failure, including cancellation, restore the snapshot and
   re-raise the original error
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from grocery_sync.cache import ABSENT, CacheKey, CacheKind

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from grocery_sync.cache import EntityCache
    from grocery_sync.transport import ApiRequest, CancelToken

logger = logging.getLogger(__name__)

SUMMARY_KINDS = (CacheKind.PERSONAL_LISTS, CacheKind.FAMILY_LISTS)


@dataclass(frozen=True)
class Mutation:
    """One optimistic write.

    Attributes:
        key: Cache key the write changes.
        updater: Pure function mapping the current value to the optimistic
            one.
        request: Server call confirming the write.
        apply_response: Optional function merging the server response into
            the optimistic value; its result becomes the authoritative
            cached value.
        invalidates: Extra keys or whole kinds to mark stale on success.
    """

    key: CacheKey
    updater: Callable[[Any], Any]
    request: ApiRequest
    apply_response: Callable[[Any, Any], Any] | None = None
    invalidates: tuple[CacheKey | CacheKind, ...] = field(default_factory=tuple)


class MutationOrchestrator:
    """Runs mutations against the cache and the API.

    Args:
        cache: Entity cache holding the optimistic values.
        send: Coroutine function sending a request (normally
            ``RetryPolicy.send``).
        summary_kinds: Kinds marked stale after every successful write.
    """

    def __init__(
        self,
        cache: EntityCache,
        send: Callable[[ApiRequest, CancelToken | None], Awaitable[Any]],
        summary_kinds: tuple[CacheKind, ...] = SUMMARY_KINDS,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            cache: Entity cache holding the optimistic values.
            send: Coroutine function sending a request.
            summary_kinds: Kinds marked stale after every successful write.
        """
        self._cache = cache
        self._send = send
        self._summary_kinds = summary_kinds

    @property
    def cache(self) -> EntityCache:
        """Return the cache this orchestrator writes to."""
        return self._cache

    async def run(self, mutation: Mutation, cancel: CancelToken | None = None) -> Any:
        """Apply a mutation optimistically and confirm it with the server.

        Args:
            mutation: The write to perform.
            cancel: Optional cancellation signal for the request.

        Returns:
            The server's parsed response.

        Raises:
            ApiError: The request's failure, after the cache is rolled back.
        """
        write = await self._cache.begin_optimistic(mutation.key, mutation.updater)
        try:
            response = await self._send(mutation.request, cancel)
            server_value = (
                mutation.apply_response(write.value, response)
                if mutation.apply_response is not None
                else ABSENT
            )
        except BaseException:
            self._cache.rollback(write)
            logger.info(
                "%s %s failed; optimistic change to %s rolled back",
                mutation.request.method,
                mutation.request.path,
                mutation.key,
            )
            raise

        self._cache.commit(write, server_value=server_value)
        self._invalidate(mutation.invalidates)
        return response

    def _invalidate(self, extra: tuple[CacheKey | CacheKind, ...]) -> None:
        """Mark summaries and any extra keys or kinds stale.

        Args:
            extra: Mutation-specific keys or kinds.
        """
        for target in (*self._summary_kinds, *extra):
            if isinstance(target, CacheKind):
                self._cache.invalidate_kind(target)
            else:
                self._cache.invalidate(target)
