"""
Scan pipeline: quota gate, recognition, usage recording, recipe suggestions.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .models import FoodRecognitionResult, RecipeGenerationResult
from .recipe_client import RecipeClient
from .vision_client import FoodVisionClient
from food_scan.core import quota
from food_scan.core.service import SubscriptionService
from food_scan.core.subscription import ActionKind, SubscriptionState
from food_scan.storage.custom_ingredients import CustomIngredients, merge_ingredients, validate_ingredient_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanResult:
    recognition: FoodRecognitionResult
    recipes: Optional[RecipeGenerationResult]
    state: SubscriptionState
    # Names sent for recipes: detected, minus exclusions, plus custom ones.
    ingredients: List[str] = field(default_factory=list)


class FoodScanner:
    """Runs one photo through recognition and recipe suggestion.

    The scan is gated before any API call and charged only after
    recognition succeeds, so failed scans cost nothing.
    """

    def __init__(
        self,
        subscriptions: SubscriptionService,
        vision: FoodVisionClient,
        recipes: Optional[RecipeClient] = None,
        custom_ingredients: Optional[CustomIngredients] = None,
    ):
        self.subscriptions = subscriptions
        self.vision = vision
        self.recipes = recipes
        self.custom_ingredients = custom_ingredients

    async def scan(
        self,
        image_bytes: bytes,
        suggest_recipes: bool = True,
        dietary_constraints: Sequence[str] = (),
        extra_ingredients: Sequence[str] = (),
        excluded_ingredients: Sequence[str] = (),
    ) -> ScanResult:
        """Recognize ingredients and optionally suggest recipes.

        Args:
            image_bytes: The photo
            suggest_recipes: Ask for recipes after recognition
            dietary_constraints: Passed through to the recipe prompt
            extra_ingredients: One-off additions to the detected ingredients
            excluded_ingredients: Detected ingredients to leave out

        Raises:
            ValueError: If an extra ingredient name is invalid
            SubscriptionError: If no scan allowance remains
            ProcessingError, NetworkError: If recognition fails
        """
        extras = [validate_ingredient_name(name) for name in extra_ingredients]

        self.subscriptions.refresh()
        quota.require_action(self.subscriptions.state, ActionKind.SCAN_FOOD)

        recognition = await self.vision.analyze_image(image_bytes)
        state = self.subscriptions.consume(ActionKind.SCAN_FOOD)

        if self.custom_ingredients is not None:
            names = self.custom_ingredients.ingredients_for(
                recognition.ingredient_names, extras, excluded_ingredients
            )
        else:
            names = merge_ingredients(recognition.ingredient_names, extras, excluded_ingredients)

        suggestions = None
        if suggest_recipes and self.recipes is not None:
            suggestions = await self.recipes.generate_recipes(names, dietary_constraints)
            if not suggestions.is_success:
                logger.warning("Scan succeeded but recipe suggestions failed: %s", suggestions.error_message)

        return ScanResult(recognition=recognition, recipes=suggestions, state=state, ingredients=names)
