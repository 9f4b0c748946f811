"""
Saved recipes, stored as one JSON list in the key-value store.

The suggestions from the most recent scan are kept alongside, so a recipe
can be saved by id after the scan that produced it.
"""

import logging
from typing import List, Optional, Sequence

from .repository import KeyValueStore
from food_scan.core.service import SubscriptionService
from food_scan.core.subscription import ActionKind
from food_scan.sdk.models import Recipe

logger = logging.getLogger(__name__)

RECIPE_BOOK_KEY = "recipe_book"
LAST_SUGGESTIONS_KEY = "last_suggestions"


class RecipeBook:
    """A user's saved recipes. Saving requires the recipe-book feature."""

    def __init__(self, store: KeyValueStore, subscriptions: SubscriptionService):
        self.store = store
        self.subscriptions = subscriptions

    def list(self) -> List[Recipe]:
        return [Recipe.from_dict(item) for item in self.store.get_json(RECIPE_BOOK_KEY, [])]

    def save(self, recipe: Recipe) -> bool:
        """Save ``recipe``; returns False if it was already saved.

        Raises:
            SubscriptionError: If the tier has no recipe book
        """
        recipes = self.list()
        if recipe in recipes:
            return False
        self.subscriptions.consume(ActionKind.SAVE_RECIPE)
        recipes.append(recipe)
        self.store.put_json(RECIPE_BOOK_KEY, [r.to_dict() for r in recipes])
        logger.info("Saved recipe %s", recipe.id)
        return True

    def remove(self, recipe_id: str) -> bool:
        recipes = self.list()
        kept = [r for r in recipes if r.id != recipe_id]
        if len(kept) == len(recipes):
            return False
        self.store.put_json(RECIPE_BOOK_KEY, [r.to_dict() for r in kept])
        return True

    def remember_suggestions(self, recipes: Sequence[Recipe]) -> None:
        """Replace the last-scan suggestions with ``recipes``."""
        self.store.put_json(LAST_SUGGESTIONS_KEY, [r.to_dict() for r in recipes])

    def suggestions(self) -> List[Recipe]:
        return [Recipe.from_dict(item) for item in self.store.get_json(LAST_SUGGESTIONS_KEY, [])]

    def find_suggestion(self, recipe_id: str) -> Optional[Recipe]:
        return next((r for r in self.suggestions() if r.id == recipe_id), None)
