"""
Recipe suggestions cached by ingredient set.

Entries live in one key-value blob, keyed by a hash of the sorted,
lower-cased ingredient names and dietary constraints. An entry is served
for 24 hours; beyond 200 entries the oldest are evicted.
"""

import hashlib
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Sequence

from .models import RecipeGenerationResult
from food_scan.core.errors import StorageError
from food_scan.storage.repository import KeyValueStore

logger = logging.getLogger(__name__)

RECIPE_CACHE_KEY = "recipe_cache"
MAX_AGE = timedelta(hours=24)
MAX_ENTRIES = 200


def cache_key(ingredients: Sequence[str], dietary_constraints: Sequence[str] = ()) -> str:
    """Order- and case-insensitive key for an ingredient list."""
    names = sorted({i.strip().lower() for i in ingredients if i.strip()})
    constraints = sorted({c.strip().lower() for c in dietary_constraints if c.strip()})
    raw = ",".join(names) + "|" + ",".join(constraints)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class RecipeCache:
    """Successful recipe results, reused for the same ingredients."""

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], datetime] = datetime.now,
        max_age: timedelta = MAX_AGE,
        max_entries: int = MAX_ENTRIES,
    ):
        self.store = store
        self.clock = clock
        self.max_age = max_age
        self.max_entries = max_entries

    def _entries(self) -> Dict[str, Dict[str, Any]]:
        entries = self.store.get_json(RECIPE_CACHE_KEY, {})
        return entries if isinstance(entries, dict) else {}

    def _is_fresh(self, entry: Dict[str, Any], now: datetime) -> bool:
        try:
            return now - datetime.fromisoformat(entry["cached_at"]) <= self.max_age
        except (KeyError, TypeError, ValueError):
            return False

    def get(
        self, ingredients: Sequence[str], dietary_constraints: Sequence[str] = ()
    ) -> Optional[RecipeGenerationResult]:
        """The cached result for ``ingredients``, or None on a miss.

        Unreadable or expired entries count as misses.
        """
        try:
            entry = self._entries().get(cache_key(ingredients, dietary_constraints))
        except StorageError as e:
            logger.warning("Recipe cache unreadable: %s", e.technical_details)
            return None
        if entry is None or not self._is_fresh(entry, self.clock()):
            return None
        try:
            result = RecipeGenerationResult.from_dict(entry["result"])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Dropping malformed recipe cache entry: %r", e)
            return None
        return replace(result, from_cache=True)

    def put(
        self,
        ingredients: Sequence[str],
        result: RecipeGenerationResult,
        dietary_constraints: Sequence[str] = (),
    ) -> None:
        """Store a successful result. Failures and empty ingredient lists are skipped."""
        if not result.is_success or not any(i.strip() for i in ingredients):
            return

        now = self.clock()
        try:
            entries = {k: v for k, v in self._entries().items() if self._is_fresh(v, now)}
            entries[cache_key(ingredients, dietary_constraints)] = {
                "cached_at": now.isoformat(),
                "result": result.to_dict(),
            }
            if len(entries) > self.max_entries:
                newest = sorted(entries, key=lambda k: entries[k]["cached_at"], reverse=True)
                entries = {k: entries[k] for k in newest[:self.max_entries]}
            self.store.put_json(RECIPE_CACHE_KEY, entries)
        except StorageError as e:
            logger.warning("Could not cache recipes: %s", e.technical_details)

    def size(self) -> int:
        """Number of entries still fresh enough to be served."""
        now = self.clock()
        return sum(1 for entry in self._entries().values() if self._is_fresh(entry, now))

    def clear(self) -> int:
        """Drop every entry. Returns how many were stored."""
        count = len(self._entries())
        self.store.delete(RECIPE_CACHE_KEY)
        logger.info("Cleared %d cached recipe results", count)
        return count
