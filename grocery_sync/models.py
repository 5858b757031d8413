"""Pydantic models and enums for grocery-sync.

This is the shared type system for server entities. Field names follow the
backend's snake_case JSON; the as-entered quantity and unit travel as
``quantity`` / ``unit_code`` on the wire.
"""

from __future__ import annotations

import itertools
import time
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ListScope(StrEnum):
    """Who a grocery list or pantry entry belongs to."""

    PERSONAL = "personal"
    FAMILY = "family"


class ListStatus(StrEnum):
    """Grocery list lifecycle."""

    DRAFT = "draft"
    FINALIZED = "finalized"
    PURCHASED = "purchased"


_UNIT_ALIASES: dict[str, str] = {
    # Weight
    "gram": "g",
    "grams": "g",
    "gr": "g",
    "kilogram": "kg",
    "kilograms": "kg",
    "ounce": "oz",
    "ounces": "oz",
    "lbs": "lb",
    "pound": "lb",
    "pounds": "lb",
    # Volume
    "milliliter": "ml",
    "milliliters": "ml",
    "millilitre": "ml",
    "millilitres": "ml",
    "liter": "l",
    "liters": "l",
    "litre": "l",
    "litres": "l",
    "teaspoon": "tsp",
    "teaspoons": "tsp",
    "tablespoon": "tbsp",
    "tablespoons": "tbsp",
    "cups": "cup",
    # Count
    "piece": "each",
    "pieces": "each",
    "pcs": "each",
    "ea": "each",
}


def normalize_unit_code(raw: str | None) -> str | None:
    """Normalize a unit code for comparison.

    Trims, lower-cases and folds common spellings onto their short code.
    Unrecognized codes are returned cleaned but otherwise unchanged so two
    distinct units are never merged by accident.

    Args:
        raw: Unit code from the server or user input.

    Returns:
        Normalized code, or None for a missing / blank value.
    """
    if raw is None or not raw.strip():
        return None
    cleaned = raw.strip().lower()
    return _UNIT_ALIASES.get(cleaned, cleaned)


_temp_ids = itertools.count(1)


def temporary_item_id() -> int:
    """Return a client-side placeholder id for an unconfirmed item.

    Placeholder ids are negative (derived from the current time in
    milliseconds) so they can never collide with a server-assigned id.

    Returns:
        A unique negative integer.
    """
    return -(int(time.time() * 1000) * 1000 + next(_temp_ids) % 1000)


def is_temporary_id(item_id: int) -> bool:
    """Check whether an id is a client-side placeholder.

    Args:
        item_id: Item id.

    Returns:
        True for placeholder ids.
    """
    return item_id < 0


def _check_canonical_pair(
    quantity: float | None, unit: str | None, label: str
) -> None:
    """Enforce that a canonical quantity and unit are set together.

    Args:
        quantity: Canonical quantity.
        unit: Canonical unit code.
        label: Model name for the error message.

    Raises:
        ValueError: If exactly one of the pair is set.
    """
    if (quantity is None) != (unit is None):
        raise ValueError(
            f"{label}: canonical quantity and canonical unit must be set together"
        )


# ---------------------------------------------------------------------------
# Session credentials
# ---------------------------------------------------------------------------


class Credentials(BaseModel):
    """An access / refresh token pair."""

    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Grocery lists
# ---------------------------------------------------------------------------


class GroceryListItem(BaseModel):
    """A single line on a grocery list."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    ingredient_id: int | None = None
    ingredient_name: str = ""
    quantity_as_entered: float | None = Field(default=None, alias="quantity")
    unit_as_entered: str | None = Field(default=None, alias="unit_code")
    canonical_quantity_needed: float | None = None
    canonical_unit: str | None = None
    canonical_quantity_total: float | None = None
    is_manual: bool = False
    is_purchased: bool = False
    checked: bool = False
    source_meal_plan_id: int | None = None
    note: str | None = None

    @field_validator("canonical_unit", mode="before")
    @classmethod
    def _normalize_unit(cls, v: object) -> str | None:
        """Normalize canonical unit codes.

        Args:
            v: Raw value.

        Returns:
            Normalized unit code, or None.
        """
        return normalize_unit_code(None if v is None else str(v))

    @model_validator(mode="after")
    def _check_canonical(self) -> GroceryListItem:
        """Validate the canonical pair and default the total requirement.

        Returns:
            The validated item.
        """
        _check_canonical_pair(
            self.canonical_quantity_needed, self.canonical_unit, "GroceryListItem"
        )
        if self.canonical_quantity_needed is None:
            self.canonical_quantity_total = None
        elif self.canonical_quantity_total is None:
            self.canonical_quantity_total = self.canonical_quantity_needed
        return self

    @property
    def is_temporary(self) -> bool:
        """Whether this item only exists as an unconfirmed optimistic entry."""
        return is_temporary_id(self.id)


class GroceryList(BaseModel):
    """A grocery list with its items."""

    id: int
    family_id: int | None = None
    owner_user_id: int | None = None
    scope: ListScope = ListScope.PERSONAL
    meal_plan_id: int | None = None
    title: str | None = None
    status: ListStatus = ListStatus.DRAFT
    created_at: str | None = None
    items: list[GroceryListItem] = []

    def with_items(self, items: list[GroceryListItem]) -> GroceryList:
        """Return a copy of this list holding different items.

        Args:
            items: Replacement items.

        Returns:
            New GroceryList; this instance is not modified.
        """
        return self.model_copy(update={"items": list(items)})


class AddItemRequest(BaseModel):
    """Payload for adding a manual item to a list."""

    ingredient_name: str = Field(min_length=1)
    ingredient_id: int | None = None
    quantity: float | None = None
    unit_code: str | None = None
    note: str | None = None


class ItemUpdate(BaseModel):
    """Partial update for a grocery list item."""

    quantity: float | None = None
    unit_code: str | None = None
    note: str | None = None
    checked: bool | None = None


# ---------------------------------------------------------------------------
# Pantry
# ---------------------------------------------------------------------------


class PantryEntry(BaseModel):
    """An ingredient on hand, expressed in canonical units."""

    id: int | None = None
    ingredient_id: int
    canonical_quantity: float | None = None
    canonical_unit: str | None = None
    owner_scope: ListScope = ListScope.PERSONAL

    @field_validator("canonical_unit", mode="before")
    @classmethod
    def _normalize_unit(cls, v: object) -> str | None:
        """Normalize canonical unit codes.

        Args:
            v: Raw value.

        Returns:
            Normalized unit code, or None.
        """
        return normalize_unit_code(None if v is None else str(v))

    @model_validator(mode="after")
    def _check_canonical(self) -> PantryEntry:
        """Validate the canonical pair.

        Returns:
            The validated entry.
        """
        _check_canonical_pair(
            self.canonical_quantity, self.canonical_unit, "PantryEntry"
        )
        return self


class SyncResult(BaseModel):
    """Outcome of reconciling a grocery list against the pantry."""

    items_removed: int = 0
    items_updated: int = 0
    remaining_items: list[GroceryListItem] = []
    message: str = ""
