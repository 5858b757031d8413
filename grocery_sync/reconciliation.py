"""Pantry reconciliation: deduct what is already on hand from a grocery list.

Business rules for each grocery item with a canonical quantity:

* no pantry stock of the same ingredient in the same canonical unit: the
  item is left alone (units are never converted, so grams of an ingredient
  do not cover millilitres of it)
* pantry covers the full requirement: the item is removed
* pantry covers part of it: the item's needed quantity becomes what is
  still missing

The remainder is always computed from ``canonical_quantity_total``, the
requirement before any deduction, so re-running against an unchanged pantry
is a no-op and a pantry that shrank between runs raises the need again.
"""

from __future__ import annotations

import math
from collections import defaultdict
from typing import TYPE_CHECKING

from grocery_sync.models import SyncResult

if TYPE_CHECKING:
    from collections.abc import Iterable

    from grocery_sync.models import GroceryListItem, PantryEntry

_EPSILON = 1e-9


def pantry_totals(pantry: Iterable[PantryEntry]) -> dict[tuple[int, str], float]:
    """Sum pantry stock per (ingredient id, canonical unit).

    Entries without a canonical quantity are skipped.

    Args:
        pantry: Pantry snapshot.

    Returns:
        Mapping of (ingredient_id, unit) to total quantity on hand.
    """
    totals: dict[tuple[int, str], float] = defaultdict(float)
    for entry in pantry:
        if entry.canonical_quantity is None or entry.canonical_unit is None:
            continue
        totals[(entry.ingredient_id, entry.canonical_unit)] += entry.canonical_quantity
    return dict(totals)


def reconcile(
    items: Iterable[GroceryListItem], pantry: Iterable[PantryEntry]
) -> SyncResult:
    """Diff grocery items against pantry stock.

    Args:
        items: Current grocery list items.
        pantry: Pantry snapshot in canonical units.

    Returns:
        SyncResult with removal / update counts and the items still needed.
    """
    stock = pantry_totals(pantry)
    removed = 0
    updated = 0
    remaining: list[GroceryListItem] = []

    for item in items:
        on_hand = _stock_for(item, stock)
        if on_hand is None or on_hand <= 0:
            remaining.append(item)
            continue

        total = item.canonical_quantity_total
        if total is None:
            total = item.canonical_quantity_needed or 0.0
        if on_hand >= total - _EPSILON:
            removed += 1
            continue

        still_needed = total - on_hand
        needed = item.canonical_quantity_needed
        if needed is not None and math.isclose(needed, still_needed, abs_tol=_EPSILON):
            remaining.append(item)
            continue
        remaining.append(
            item.model_copy(
                update={
                    "canonical_quantity_needed": still_needed,
                    "canonical_quantity_total": total,
                }
            )
        )
        updated += 1

    return SyncResult(
        items_removed=removed,
        items_updated=updated,
        remaining_items=remaining,
        message=_summary_message(removed, updated),
    )


def _stock_for(
    item: GroceryListItem, stock: dict[tuple[int, str], float]
) -> float | None:
    """Return pantry stock matching an item's ingredient and unit.

    Args:
        item: Grocery item.
        stock: Output of ``pantry_totals``.

    Returns:
        Quantity on hand, or None when nothing comparable is stocked.
    """
    if (
        item.ingredient_id is None
        or item.canonical_quantity_needed is None
        or item.canonical_unit is None
    ):
        return None
    return stock.get((item.ingredient_id, item.canonical_unit))


def _summary_message(removed: int, updated: int) -> str:
    """Build a human-readable summary of a reconciliation.

    Args:
        removed: Items fully covered by the pantry.
        updated: Items partially covered.

    Returns:
        Summary sentence.
    """
    if removed == 0 and updated == 0:
        return "Grocery list is already in sync with your pantry."
    parts = []
    if removed:
        parts.append(f"removed {removed} item{'s' if removed != 1 else ''}")
    if updated:
        parts.append(f"updated {updated} item{'s' if updated != 1 else ''}")
    return f"Synced with pantry: {' and '.join(parts)}."
