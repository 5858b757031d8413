"""Pantry snapshots, cached per scope."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from grocery_sync.cache import CacheKey
from grocery_sync.errors import ApiError
from grocery_sync.models import ListScope, PantryEntry

if TYPE_CHECKING:
    from grocery_sync.cache import EntityCache
    from grocery_sync.client import ApiClient
    from grocery_sync.models import GroceryList
    from grocery_sync.transport import CancelToken


class PantryService:
    """Reads pantry inventory for the current user or a family.

    Args:
        client: API client.
        cache: Entity cache shared with the grocery service.
    """

    def __init__(self, client: ApiClient, cache: EntityCache) -> None:
        """Initialize the service.

        Args:
            client: API client.
            cache: Entity cache shared with the grocery service.
        """
        self._client = client
        self._cache = cache

    async def get_user_pantry(
        self, refresh: bool = False, cancel: CancelToken | None = None
    ) -> list[PantryEntry]:
        """Return the current user's pantry.

        Args:
            refresh: Ignore any cached snapshot.
            cancel: Optional cancellation signal.

        Returns:
            Pantry entries.
        """
        key = CacheKey.user_pantry()
        if refresh:
            self._cache.invalidate(key)

        async def load() -> list[PantryEntry]:
            return parse_pantry(await self._client.get("/pantry-items/me"))

        return await self._cache.get_or_fetch(key, load, cancel=cancel)

    async def get_family_pantry(
        self, family_id: int, refresh: bool = False, cancel: CancelToken | None = None
    ) -> list[PantryEntry]:
        """Return a family's shared pantry.

        Args:
            family_id: Family id.
            refresh: Ignore any cached snapshot.
            cancel: Optional cancellation signal.

        Returns:
            Pantry entries.
        """
        key = CacheKey.family_pantry(family_id)
        if refresh:
            self._cache.invalidate(key)

        async def load() -> list[PantryEntry]:
            data = await self._client.get(f"/pantry-items/family/{family_id}")
            return parse_pantry(data, default_scope=ListScope.FAMILY)

        return await self._cache.get_or_fetch(key, load, cancel=cancel)

    async def get_for_list(
        self,
        grocery_list: GroceryList,
        refresh: bool = True,
        cancel: CancelToken | None = None,
    ) -> list[PantryEntry]:
        """Return the pantry a list is reconciled against.

        Family lists use the family pantry; personal lists the user's own.

        Args:
            grocery_list: The list being synced.
            refresh: Ignore any cached snapshot.
            cancel: Optional cancellation signal.

        Returns:
            Pantry entries.
        """
        if grocery_list.scope is ListScope.FAMILY and grocery_list.family_id is not None:
            return await self.get_family_pantry(
                grocery_list.family_id, refresh=refresh, cancel=cancel
            )
        return await self.get_user_pantry(refresh=refresh, cancel=cancel)


def parse_pantry(
    data: Any, default_scope: ListScope = ListScope.PERSONAL
) -> list[PantryEntry]:
    """Parse a pantry response.

    Accepts either a bare list or an object wrapping it under ``items``.

    Args:
        data: Parsed JSON body.
        default_scope: Scope for entries that do not state one.

    Returns:
        Pantry entries.

    Raises:
        ApiError: If the body has neither shape.
    """
    if isinstance(data, dict):
        data = data.get("items")
    if not isinstance(data, list):
        raise ApiError("Unexpected pantry response", payload=data)
    entries = []
    for raw in data:
        if isinstance(raw, dict):
            raw = {"owner_scope": default_scope.value, **raw}
        try:
            entries.append(PantryEntry.model_validate(raw))
        except ValidationError as exc:
            raise ApiError(f"Malformed pantry entry: {exc}", payload=raw) from exc
    return entries
