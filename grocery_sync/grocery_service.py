"""Grocery list reads and optimistic writes.

Every write follows the same recipe (see ``grocery_sync.mutations``); the
methods here only differ in their updater and endpoint. Pantry sync adds an
ownership check: only the list's owner may reconcile it, and a non-owner
gets a FORBIDDEN error before any pantry data is read.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ValidationError

from grocery_sync.cache import ABSENT, CacheKey, CacheKind, EntityCache
from grocery_sync.errors import ApiError, ErrorKind
from grocery_sync.models import (
    AddItemRequest,
    GroceryList,
    GroceryListItem,
    ItemUpdate,
    ListStatus,
    SyncResult,
    is_temporary_id,
    temporary_item_id,
)
from grocery_sync.mutations import Mutation, MutationOrchestrator
from grocery_sync.pantry_service import PantryService
from grocery_sync.reconciliation import reconcile
from grocery_sync.transport import ApiRequest

if TYPE_CHECKING:
    from collections.abc import Callable

    from grocery_sync.client import ApiClient
    from grocery_sync.transport import CancelToken

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_PANTRY_KINDS = (CacheKind.USER_PANTRY, CacheKind.FAMILY_PANTRY)
_TOTAL_TOLERANCE = 1e-9


class GroceryService:
    """Grocery list operations backed by the entity cache.

    Args:
        client: API client.
        cache: Optional shared entity cache (a new one by default).
        pantry: Optional pantry service sharing the same cache.
    """

    def __init__(
        self,
        client: ApiClient,
        cache: EntityCache | None = None,
        pantry: PantryService | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            client: API client.
            cache: Optional shared entity cache.
            pantry: Optional pantry service sharing the same cache.
        """
        self._client = client
        self.cache = cache if cache is not None else EntityCache()
        self.pantry = pantry or PantryService(client, self.cache)
        self.orchestrator = MutationOrchestrator(self.cache, client.send)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_list(
        self, list_id: int, refresh: bool = False, cancel: CancelToken | None = None
    ) -> GroceryList:
        """Return a grocery list, from cache when fresh.

        Args:
            list_id: List id.
            refresh: Ignore any cached copy.
            cancel: Optional cancellation signal.

        Returns:
            The grocery list.
        """
        key = CacheKey.grocery_list(list_id)
        if refresh:
            self.cache.invalidate(key)

        async def load() -> GroceryList:
            previous = self.cache.get(key)
            data = await self._client.get(f"/grocery-lists/{list_id}")
            return _carry_totals(previous, _parse(GroceryList, data))

        return await self.cache.get_or_fetch(key, load, cancel=cancel)

    async def get_personal_lists(
        self, status: ListStatus | None = None, cancel: CancelToken | None = None
    ) -> list[GroceryList]:
        """Return the current user's personal lists.

        Unfiltered results are cached; status-filtered ones are not.

        Args:
            status: Optional status filter.
            cancel: Optional cancellation signal.

        Returns:
            Grocery lists.
        """
        params = {"status": status.value} if status else None

        async def load(token: CancelToken | None = None) -> list[GroceryList]:
            data = await self._client.get(
                "/grocery-lists/me", params=params, cancel=token
            )
            return _parse_lists(data)

        if params:
            return await load(cancel)
        key = CacheKey.personal_lists()
        return await self.cache.get_or_fetch(key, load, cancel=cancel)

    async def get_family_lists(
        self,
        family_id: int,
        status: ListStatus | None = None,
        cancel: CancelToken | None = None,
    ) -> list[GroceryList]:
        """Return a family's lists.

        Args:
            family_id: Family id.
            status: Optional status filter.
            cancel: Optional cancellation signal.

        Returns:
            Grocery lists.
        """
        params = {"status": status.value} if status else None

        async def load(token: CancelToken | None = None) -> list[GroceryList]:
            data = await self._client.get(
                f"/grocery-lists/family/{family_id}", params=params, cancel=token
            )
            return _parse_lists(data)

        if params:
            return await load(cancel)
        key = CacheKey.family_lists(family_id)
        return await self.cache.get_or_fetch(key, load, cancel=cancel)

    # ------------------------------------------------------------------
    # Item writes
    # ------------------------------------------------------------------

    async def add_item(
        self,
        list_id: int,
        item: AddItemRequest,
        cancel: CancelToken | None = None,
    ) -> GroceryListItem:
        """Add a manual item, showing it immediately under a placeholder id.

        Args:
            list_id: List id.
            item: Item to add.
            cancel: Optional cancellation signal.

        Returns:
            The item as saved by the server.
        """
        placeholder = GroceryListItem(
            id=temporary_item_id(),
            ingredient_id=item.ingredient_id,
            ingredient_name=item.ingredient_name,
            quantity_as_entered=item.quantity,
            unit_as_entered=item.unit_code,
            is_manual=True,
            note=item.note,
        )

        def updater(current: GroceryList | None) -> GroceryList | None:
            if current is None:
                return None
            return current.with_items([*current.items, placeholder])

        def apply_response(optimistic: GroceryList | None, response: Any) -> Any:
            if optimistic is None:
                return ABSENT
            saved = _parse(GroceryListItem, response)
            return _replace_item(optimistic, placeholder.id, lambda _: saved)

        response = await self.orchestrator.run(
            Mutation(
                key=CacheKey.grocery_list(list_id),
                updater=updater,
                request=ApiRequest(
                    "POST",
                    f"/grocery-lists/{list_id}/items",
                    json=item.model_dump(exclude_none=True),
                ),
                apply_response=apply_response,
            ),
            cancel=cancel,
        )
        return _parse(GroceryListItem, response)

    async def update_item(
        self,
        list_id: int,
        item_id: int,
        updates: ItemUpdate,
        cancel: CancelToken | None = None,
    ) -> GroceryListItem:
        """Edit an item's quantity, unit, note or checked flag.

        Args:
            list_id: List id.
            item_id: Item id.
            updates: Fields to change; unset fields are left alone.
            cancel: Optional cancellation signal.

        Returns:
            The item as saved by the server.
        """
        _require_persisted(item_id)
        changes = _item_changes(updates)
        response = await self.orchestrator.run(
            Mutation(
                key=CacheKey.grocery_list(list_id),
                updater=_item_updater(item_id, lambda it: it.model_copy(update=changes)),
                request=ApiRequest(
                    "PUT",
                    f"/grocery-lists/{list_id}/items/{item_id}",
                    json=updates.model_dump(exclude_none=True),
                ),
                apply_response=_server_item_merger(item_id),
            ),
            cancel=cancel,
        )
        return _parse(GroceryListItem, response)

    async def remove_item(
        self, list_id: int, item_id: int, cancel: CancelToken | None = None
    ) -> None:
        """Remove an item.

        Args:
            list_id: List id.
            item_id: Item id.
            cancel: Optional cancellation signal.
        """
        _require_persisted(item_id)

        def updater(current: GroceryList | None) -> GroceryList | None:
            if current is None:
                return None
            return current.with_items([it for it in current.items if it.id != item_id])

        await self.orchestrator.run(
            Mutation(
                key=CacheKey.grocery_list(list_id),
                updater=updater,
                request=ApiRequest("DELETE", f"/grocery-lists/items/{item_id}"),
            ),
            cancel=cancel,
        )

    async def toggle_item(
        self, list_id: int, item_id: int, cancel: CancelToken | None = None
    ) -> GroceryListItem:
        """Flip an item's checked flag.

        Args:
            list_id: List id.
            item_id: Item id.
            cancel: Optional cancellation signal.

        Returns:
            The item as saved by the server.
        """
        _require_persisted(item_id)
        response = await self.orchestrator.run(
            Mutation(
                key=CacheKey.grocery_list(list_id),
                updater=_item_updater(
                    item_id, lambda it: it.model_copy(update={"checked": not it.checked})
                ),
                request=ApiRequest(
                    "POST", f"/grocery-lists/items/{item_id}/check", json={}
                ),
                apply_response=_server_item_merger(item_id),
            ),
            cancel=cancel,
        )
        return _parse(GroceryListItem, response)

    async def mark_purchased(
        self,
        list_id: int,
        item_id: int,
        is_purchased: bool = True,
        cancel: CancelToken | None = None,
    ) -> GroceryListItem:
        """Mark an item purchased (or not).

        Purchases restock the pantry server-side, so pantry snapshots are
        marked stale on success.

        Args:
            list_id: List id.
            item_id: Item id.
            is_purchased: New purchased flag.
            cancel: Optional cancellation signal.

        Returns:
            The item as saved by the server.
        """
        _require_persisted(item_id)
        response = await self.orchestrator.run(
            Mutation(
                key=CacheKey.grocery_list(list_id),
                updater=_item_updater(
                    item_id,
                    lambda it: it.model_copy(update={"is_purchased": is_purchased}),
                ),
                request=ApiRequest(
                    "POST",
                    f"/grocery-lists/items/{item_id}/purchase",
                    json={"is_purchased": is_purchased},
                ),
                apply_response=_server_item_merger(item_id),
                invalidates=_PANTRY_KINDS,
            ),
            cancel=cancel,
        )
        return _parse(GroceryListItem, response)

    async def clear_checked(
        self, list_id: int, cancel: CancelToken | None = None
    ) -> int:
        """Remove every checked item.

        Args:
            list_id: List id.
            cancel: Optional cancellation signal.

        Returns:
            Number of items the server removed.
        """

        def updater(current: GroceryList | None) -> GroceryList | None:
            if current is None:
                return None
            return current.with_items([it for it in current.items if not it.checked])

        response = await self.orchestrator.run(
            Mutation(
                key=CacheKey.grocery_list(list_id),
                updater=updater,
                request=ApiRequest("DELETE", f"/grocery-lists/{list_id}/items/checked"),
            ),
            cancel=cancel,
        )
        if isinstance(response, dict):
            return int(response.get("items_removed", 0))
        return 0

    async def delete_list(self, list_id: int, cancel: CancelToken | None = None) -> None:
        """Delete a grocery list.

        Args:
            list_id: List id.
            cancel: Optional cancellation signal.
        """
        key = CacheKey.grocery_list(list_id)
        await self.orchestrator.run(
            Mutation(
                key=key,
                updater=lambda _current: None,
                request=ApiRequest("DELETE", f"/grocery-lists/{list_id}"),
            ),
            cancel=cancel,
        )
        self.cache.delete(key)

    # ------------------------------------------------------------------
    # Pantry sync
    # ------------------------------------------------------------------

    async def sync_with_pantry(
        self, list_id: int, user_id: int, cancel: CancelToken | None = None
    ) -> SyncResult:
        """Reconcile a list against its pantry.

        The remaining items are applied to the cached list immediately and
        confirmed with the server; counts and message prefer the server's
        response when it provides them.

        Args:
            list_id: List id.
            user_id: The user asking for the sync.
            cancel: Optional cancellation signal.

        Returns:
            The reconciliation result.

        Raises:
            ApiError: FORBIDDEN if ``user_id`` does not own the list, or the
                underlying request failure.
        """
        grocery_list = await self.get_list(list_id, cancel=cancel)
        if grocery_list.owner_user_id is None or grocery_list.owner_user_id != user_id:
            raise ApiError(
                "Only the owner of this list can sync it with the pantry.",
                kind=ErrorKind.FORBIDDEN,
                code="NOT_LIST_OWNER",
            )

        pantry = await self.pantry.get_for_list(grocery_list, cancel=cancel)
        outcome: dict[str, SyncResult] = {}

        def updater(current: GroceryList | None) -> GroceryList | None:
            base = current if current is not None else grocery_list
            outcome["local"] = reconcile(base.items, pantry)
            if current is None:
                return None
            return current.with_items(outcome["local"].remaining_items)

        def apply_response(optimistic: GroceryList | None, response: Any) -> Any:
            if optimistic is None or not isinstance(response, dict):
                return ABSENT
            if "remaining_items" not in response:
                return ABSENT
            items = [_parse(GroceryListItem, raw) for raw in response["remaining_items"]]
            return _carry_totals(optimistic, optimistic.with_items(items))

        response = await self.orchestrator.run(
            Mutation(
                key=CacheKey.grocery_list(list_id),
                updater=updater,
                request=ApiRequest(
                    "POST", f"/grocery-lists/{list_id}/sync-pantry", json={}
                ),
                apply_response=apply_response,
                invalidates=_PANTRY_KINDS,
            ),
            cancel=cancel,
        )
        result = _merge_sync_result(outcome["local"], response)
        logger.info(
            "List %d synced with pantry: %d removed, %d updated",
            list_id,
            result.items_removed,
            result.items_updated,
        )
        return result


# ------------------------------------------------------------------
# Pure helper functions
# ------------------------------------------------------------------


def _parse(model: type[M], data: Any) -> M:
    """Validate a response body into a model.

    Args:
        model: Pydantic model class.
        data: Parsed JSON body.

    Returns:
        Model instance.

    Raises:
        ApiError: If the body does not match the model.
    """
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ApiError(
            f"Unexpected {model.__name__} response: {exc}", payload=data
        ) from exc


def _parse_lists(data: Any) -> list[GroceryList]:
    """Validate a list-of-lists response.

    Args:
        data: Parsed JSON body (a list, or an object with ``items``).

    Returns:
        Grocery lists.

    Raises:
        ApiError: If the body is not a list of grocery lists.
    """
    if isinstance(data, dict):
        data = data.get("items")
    if not isinstance(data, list):
        raise ApiError("Unexpected grocery lists response", payload=data)
    return [_parse(GroceryList, raw) for raw in data]


def _require_persisted(item_id: int) -> None:
    """Reject writes against an item the server has not confirmed yet.

    Args:
        item_id: Item id.

    Raises:
        ApiError: VALIDATION for placeholder ids.
    """
    if is_temporary_id(item_id):
        raise ApiError(
            "This item is still being saved; try again in a moment.",
            kind=ErrorKind.VALIDATION,
            code="ITEM_NOT_SAVED",
        )


def _replace_item(
    grocery_list: GroceryList,
    item_id: int,
    change: Callable[[GroceryListItem], GroceryListItem],
) -> GroceryList:
    """Return a copy of a list with one item replaced.

    Args:
        grocery_list: Source list (not modified).
        item_id: Id of the item to replace.
        change: Maps the old item to its replacement.

    Returns:
        New list.
    """
    return grocery_list.with_items(
        [change(it) if it.id == item_id else it for it in grocery_list.items]
    )


def _carry_totals(
    previous: GroceryList | None, fresh: GroceryList
) -> GroceryList:
    """Keep the pre-deduction totals a pantry sync recorded.

    The server stores only the reduced quantity after a sync, so a reload
    would otherwise treat the reduced amount as the full requirement and
    the next sync would deduct the pantry again.

    Args:
        previous: The list as cached before the reload, if any.
        fresh: The list as just received from the server.

    Returns:
        ``fresh``, with totals carried over where they still apply.
    """
    if previous is None:
        return fresh
    known = {it.id: it for it in previous.items}
    items = [_carry_item_total(known.get(it.id), it) for it in fresh.items]
    if all(new is old for new, old in zip(items, fresh.items, strict=True)):
        return fresh
    return fresh.with_items(items)


def _carry_item_total(
    previous: GroceryListItem | None, fresh: GroceryListItem
) -> GroceryListItem:
    """Carry one item's total forward if the server only defaulted it."""
    if previous is None or previous.canonical_quantity_total is None:
        return fresh
    old_needed = previous.canonical_quantity_needed
    new_needed = fresh.canonical_quantity_needed
    if old_needed is None or new_needed is None:
        return fresh
    if previous.canonical_unit != fresh.canonical_unit:
        return fresh
    # Only a reduced item whose total came back equal to its need.
    if not math.isclose(old_needed, new_needed, abs_tol=_TOTAL_TOLERANCE):
        return fresh
    if not math.isclose(
        fresh.canonical_quantity_total or 0.0, new_needed, abs_tol=_TOTAL_TOLERANCE
    ):
        return fresh
    if previous.canonical_quantity_total <= old_needed + _TOTAL_TOLERANCE:
        return fresh
    return fresh.model_copy(
        update={"canonical_quantity_total": previous.canonical_quantity_total}
    )


def _item_updater(
    item_id: int, change: Callable[[GroceryListItem], GroceryListItem]
) -> Callable[[GroceryList | None], GroceryList | None]:
    """Build a cache updater that changes one item of a list.

    Args:
        item_id: Id of the item to change.
        change: Maps the old item to its replacement.

    Returns:
        Updater for ``EntityCache.begin_optimistic``.
    """

    def updater(current: GroceryList | None) -> GroceryList | None:
        if current is None:
            return None
        return _replace_item(current, item_id, change)

    return updater


def _server_item_merger(item_id: int) -> Callable[[Any, Any], Any]:
    """Build an ``apply_response`` that swaps in the server's item.

    Args:
        item_id: Id of the item the server returned.

    Returns:
        Function merging the response into the optimistic list.
    """

    def apply_response(optimistic: GroceryList | None, response: Any) -> Any:
        if optimistic is None or not isinstance(response, dict):
            return ABSENT
        saved = _parse(GroceryListItem, response)
        return _replace_item(
            optimistic, item_id, lambda old: _carry_item_total(old, saved)
        )

    return apply_response


def _item_changes(updates: ItemUpdate) -> dict[str, Any]:
    """Translate an ItemUpdate into GroceryListItem field changes.

    Args:
        updates: Partial update.

    Returns:
        Mapping of item attribute names to new values.
    """
    changes: dict[str, Any] = {}
    if updates.quantity is not None:
        changes["quantity_as_entered"] = updates.quantity
    if updates.unit_code is not None:
        changes["unit_as_entered"] = updates.unit_code
    if updates.note is not None:
        changes["note"] = updates.note
    if updates.checked is not None:
        changes["checked"] = updates.checked
    return changes


def _merge_sync_result(local: SyncResult, response: Any) -> SyncResult:
    """Combine the local reconciliation with the server's answer.

    Args:
        local: Result computed on the client.
        response: Parsed server response.

    Returns:
        SyncResult preferring server counts, message and items.
    """
    if not isinstance(response, dict):
        return local
    merged = local.model_dump()
    for field in ("items_removed", "items_updated", "message"):
        if response.get(field) is not None:
            merged[field] = response[field]
    if isinstance(response.get("remaining_items"), list):
        merged["remaining_items"] = response["remaining_items"]
    return _parse(SyncResult, merged)
