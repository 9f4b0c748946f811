"""
Ingredients the user adds by hand.

Saved ingredients join the detected ones every time recipes are requested.
The history keeps the 50 most recently added names, newest first.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Sequence

from .repository import KeyValueStore

logger = logging.getLogger(__name__)

CUSTOM_INGREDIENTS_KEY = "custom_ingredients"
INGREDIENT_HISTORY_KEY = "ingredient_history"
HISTORY_LIMIT = 50
MAX_NAME_LENGTH = 50

_VALID_NAME = re.compile(r"^[A-Za-z0-9\s\-']+$")


def normalize_ingredient_name(name: str) -> str:
    """``"  red  ONION "`` becomes ``"Red Onion"``."""
    return " ".join(word.capitalize() for word in name.split())


def validate_ingredient_name(name: str) -> str:
    """Check a hand-typed ingredient name and return its normalized form.

    Raises:
        ValueError: If the name is empty, too short or long, or has
            characters other than letters, digits, spaces, hyphens and apostrophes
    """
    trimmed = name.strip()
    if not trimmed:
        raise ValueError("Ingredient name cannot be empty")
    if len(trimmed) < 2:
        raise ValueError("Ingredient name must be at least 2 characters long")
    if len(trimmed) > MAX_NAME_LENGTH:
        raise ValueError(f"Ingredient name cannot exceed {MAX_NAME_LENGTH} characters")
    if not _VALID_NAME.match(trimmed):
        raise ValueError(f"Ingredient name contains invalid characters: '{trimmed}'")
    if not any(c.isalpha() for c in trimmed):
        raise ValueError("Ingredient name must contain at least one letter")
    return normalize_ingredient_name(trimmed)


def merge_ingredients(
    detected: Sequence[str],
    extra: Sequence[str] = (),
    excluded: Sequence[str] = (),
) -> List[str]:
    """Detected names minus ``excluded``, followed by ``extra``.

    Comparison is case-insensitive and the first spelling of a name wins.
    """
    dropped = {name.strip().lower() for name in excluded}
    seen = set()
    merged = []
    for name in [*detected, *extra]:
        key = name.strip().lower()
        if not key or key in dropped or key in seen:
            continue
        seen.add(key)
        merged.append(name.strip())
    return merged


@dataclass(frozen=True)
class CustomIngredient:
    name: str
    added_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "added_at": self.added_at.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomIngredient":
        return cls(name=str(data["name"]), added_at=datetime.fromisoformat(data["added_at"]))


class CustomIngredients:
    """The user's saved ingredient list and its add history."""

    def __init__(self, store: KeyValueStore, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.clock = clock

    def list(self) -> List[CustomIngredient]:
        return [CustomIngredient.from_dict(item) for item in self.store.get_json(CUSTOM_INGREDIENTS_KEY, [])]

    def names(self) -> List[str]:
        return [ingredient.name for ingredient in self.list()]

    def add(self, name: str) -> CustomIngredient:
        """Validate and save ``name``.

        Raises:
            ValueError: If the name is invalid or already saved
        """
        normalized = validate_ingredient_name(name)
        saved = self.list()
        if any(item.name.lower() == normalized.lower() for item in saved):
            raise ValueError(f"Ingredient '{normalized}' is already in your list")

        ingredient = CustomIngredient(name=normalized, added_at=self.clock())
        saved.append(ingredient)
        self.store.put_json(CUSTOM_INGREDIENTS_KEY, [item.to_dict() for item in saved])
        self.remember(normalized)
        logger.info("Added custom ingredient %s", normalized)
        return ingredient

    def remove(self, name: str) -> bool:
        """Remove ``name`` (case-insensitive). Returns whether it was saved."""
        saved = self.list()
        kept = [item for item in saved if item.name.lower() != name.strip().lower()]
        if len(kept) == len(saved):
            return False
        self.store.put_json(CUSTOM_INGREDIENTS_KEY, [item.to_dict() for item in kept])
        return True

    def clear(self) -> None:
        """Forget every saved ingredient and the history."""
        self.store.delete(CUSTOM_INGREDIENTS_KEY)
        self.store.delete(INGREDIENT_HISTORY_KEY)

    def history(self) -> List[str]:
        return list(self.store.get_json(INGREDIENT_HISTORY_KEY, []))

    def remember(self, name: str) -> None:
        """Move ``name`` to the front of the history."""
        history = [item for item in self.history() if item.lower() != name.lower()]
        history.insert(0, name)
        self.store.put_json(INGREDIENT_HISTORY_KEY, history[:HISTORY_LIMIT])

    def ingredients_for(
        self,
        detected: Sequence[str],
        extra: Sequence[str] = (),
        excluded: Sequence[str] = (),
    ) -> List[str]:
        """Ingredient names to send for recipes.

        ``extra`` names are one-off additions; they are validated and
        recorded in the history but not saved.

        Raises:
            ValueError: If an ``extra`` name is invalid
        """
        one_off = [validate_ingredient_name(name) for name in extra]
        for name in one_off:
            self.remember(name)
        return merge_ingredients(detected, [*self.names(), *one_off], excluded)
