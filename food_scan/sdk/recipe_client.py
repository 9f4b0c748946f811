"""
Recipe suggestion client.

Asks an OpenAI chat model for recipes built around the detected
ingredients, then re-scores each recipe against what the user actually has.
"""

import logging
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from openai import AsyncOpenAI

from .models import Recipe, RecipeGenerationResult
from .recipe_cache import RecipeCache
from .vision_client import extract_json_content
from food_scan.config.loader import ApiConfig
from food_scan.core import retry
from food_scan.core.errors import AppError, ProcessingError, to_app_error, user_message

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You are a professional chef and nutritionist AI assistant. Your task is to generate detailed recipes based on provided ingredients, including comprehensive nutrition information and allergen detection.

Always respond with valid JSON in this exact structure:
{
  "recipes": [
    {
      "id": "unique_recipe_id",
      "title": "Recipe Name",
      "ingredients": ["ingredient 1", "ingredient 2"],
      "instructions": ["step 1", "step 2"],
      "cooking_time": 30,
      "servings": 4,
      "match_percentage": 85.5,
      "nutrition": {
        "calories": 350,
        "protein": 25.5,
        "carbohydrates": 45.2,
        "fat": 12.8,
        "fiber": 8.3,
        "sugar": 6.1,
        "sodium": 580.2,
        "serving_size": "1 cup"
      },
      "allergens": [
        {"name": "Dairy", "severity": "medium", "description": "Contains milk products"}
      ],
      "intolerances": [
        {"name": "Lactose", "type": "lactose", "description": "Contains lactose from dairy products"}
      ],
      "used_ingredients": ["ingredient from user list"],
      "missing_ingredients": ["additional ingredients needed"],
      "difficulty": "easy"
    }
  ],
  "total_found": 5,
  "alternative_suggestions": []
}

Guidelines:
- Generate exactly {count} recipes ranked by ingredient match percentage
- Calculate accurate nutrition information per serving
- Identify all potential allergens (nuts, dairy, gluten, shellfish, eggs, soy, etc.)
- Detect intolerances (lactose, gluten, etc.)
- Match percentage should reflect how many user ingredients are used
- Include clear, step-by-step cooking instructions
- Difficulty levels: "easy" (< 30 min), "medium" (30-60 min), "hard" (> 60 min)
- Allergen severity: "low" (trace amounts), "medium" (moderate amounts), "high" (primary ingredient)
"""


def build_user_prompt(ingredients: Sequence[str], dietary_constraints: Sequence[str], count: int) -> str:
    lines = [f"Generate {count} recipes using these ingredients: {', '.join(ingredients)}", ""]
    if dietary_constraints:
        lines.append(f"Dietary constraints (must be respected): {', '.join(dietary_constraints)}")
        lines.append("")
    lines.extend([
        "Requirements:",
        "- Prioritize recipes that use the most provided ingredients",
        "- Include detailed nutrition information for each recipe",
        "- Identify all allergens and intolerances",
        "- Rank recipes by ingredient match percentage (highest first)",
        "- If exact matches are limited, include alternative recipe suggestions",
        "",
        "Return only the JSON response, no additional text.",
    ])
    return "\n".join(lines)


def build_alternative_prompt(ingredients: Sequence[str], count: int) -> str:
    return (
        f"The user has these ingredients: {', '.join(ingredients)}\n\n"
        f"Since exact matches might be limited, generate {count} alternative recipe suggestions that:\n"
        "- Use some of the provided ingredients but don't require all of them\n"
        "- Include common pantry staples that most people have\n"
        "- Offer different cooking styles and cuisines\n\n"
        "Return only the JSON response, no additional text."
    )


def rank_recipes_by_match(recipes: List[Recipe]) -> List[Recipe]:
    """Highest match percentage first. Returns a new list."""
    return sorted(recipes, key=lambda r: r.match_percentage, reverse=True)


def highlight_used_ingredients(recipe: Recipe, detected: Sequence[str]) -> Recipe:
    """Split the recipe's ingredients into used/missing against ``detected``.

    Matching is case-insensitive substring containment in either direction,
    so "tomato" matches "2 ripe tomatoes". Blank and repeated recipe entries
    are ignored. The match percentage becomes the share of distinct recipe
    ingredients the user has.
    """
    normalized = [d.lower().strip() for d in detected if d and d.strip()]
    used: List[str] = []
    missing: List[str] = []
    seen = set()

    for ingredient in recipe.ingredients:
        candidate = ingredient.lower().strip()
        if not candidate or candidate in seen:
            continue
        seen.add(candidate)
        if any(d in candidate or candidate in d for d in normalized):
            used.append(ingredient)
        else:
            missing.append(ingredient)

    match = (len(used) / len(seen)) * 100 if seen else 0.0
    return recipe.with_match(used, missing, match)


def parse_recipes(payload: Dict[str, Any], detected: Sequence[str], limit: int, generation_time_ms: int) -> RecipeGenerationResult:
    """Build a ranked result from the model's JSON.

    Raises:
        ProcessingError: ``service_failure`` on a malformed payload
    """
    items = payload.get("recipes")
    if not isinstance(items, list):
        raise ProcessingError.service_failure("Invalid response format: missing recipes")

    try:
        recipes = [Recipe.from_dict(item) for item in items]
        alternatives = [Recipe.from_dict(item) for item in payload.get("alternative_suggestions") or []]
        total_found = int(payload.get("total_found") or len(recipes))
    except (KeyError, TypeError, ValueError) as e:
        raise ProcessingError.service_failure(f"Invalid recipe entry: {e!r}")

    highlighted = [highlight_used_ingredients(r, detected) for r in recipes]
    ranked = rank_recipes_by_match(highlighted)[:limit]
    return RecipeGenerationResult(
        recipes=ranked,
        total_found=total_found,
        generation_time_ms=generation_time_ms,
        alternative_suggestions=alternatives,
    )


def _is_malformed_response(error: BaseException) -> bool:
    return isinstance(error, ProcessingError) and error.recoverable


class RecipeClient:
    """Recipe Generation API client.

    Transport failures are retried under ``policy``. A reply that cannot be
    parsed is requested again under ``processing_policy``.
    """

    def __init__(
        self,
        config: Optional[ApiConfig] = None,
        policy: retry.RetryPolicy = retry.NETWORK_POLICY,
        client: Optional[AsyncOpenAI] = None,
        sleep: retry.SleepFunc = None,
        processing_policy: retry.RetryPolicy = retry.PROCESSING_POLICY,
        cache: Optional[RecipeCache] = None,
    ):
        self.config = config or ApiConfig()
        self.policy = policy
        self.processing_policy = replace(processing_policy, retryable=_is_malformed_response)
        self.client = client or AsyncOpenAI(
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
            max_retries=0,
        )
        self.cache = cache
        self._sleep = sleep

    async def _request(self, user_prompt: str, temperature: float) -> Any:
        system_prompt = SYSTEM_PROMPT.replace("{count}", str(self.config.max_recipe_suggestions))
        try:
            return await self.client.chat.completions.create(
                model=self.config.text_model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=4000,
                temperature=temperature,
            )
        except Exception as e:
            raise to_app_error(e) from e

    async def _fetch(
        self, user_prompt: str, temperature: float, detected: Sequence[str], started: float
    ) -> RecipeGenerationResult:
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        count = self.config.max_recipe_suggestions

        async def attempt() -> RecipeGenerationResult:
            response = await retry.execute_or_raise(
                lambda: self._request(user_prompt, temperature), self.policy, **kwargs
            )
            elapsed_ms = int((time.monotonic() - started) * 1000)
            return parse_recipes(extract_json_content(response), detected, count, elapsed_ms)

        return await retry.execute_or_raise(attempt, self.processing_policy, **kwargs)

    async def generate_recipes(
        self,
        ingredients: Sequence[str],
        dietary_constraints: Sequence[str] = (),
    ) -> RecipeGenerationResult:
        """Suggest up to ``max_recipe_suggestions`` recipes for ``ingredients``.

        A fresh cached result for the same ingredients is returned without
        calling the API. Failures are reported in the result rather than raised.
        """
        started = time.monotonic()

        if not ingredients:
            return RecipeGenerationResult.failure("No ingredients provided", 0)

        if self.cache is not None:
            cached = self.cache.get(ingredients, dietary_constraints)
            if cached is not None:
                logger.info("Using %d cached recipes", len(cached.recipes))
                return cached

        prompt = build_user_prompt(ingredients, dietary_constraints, self.config.max_recipe_suggestions)
        try:
            result = await self._fetch(prompt, 0.3, ingredients, started)
        except AppError as e:
            logger.error("Recipe generation failed: %s (%s)", e.message, e.technical_details)
            return RecipeGenerationResult.failure(
                user_message(e), int((time.monotonic() - started) * 1000)
            )

        logger.info("Generated %d recipes in %dms", len(result.recipes), result.generation_time_ms)
        if self.cache is not None:
            self.cache.put(ingredients, result, dietary_constraints)
        return result

    async def get_top_recipes(self, ingredients: Sequence[str], limit: int) -> List[Recipe]:
        """The best ``limit`` recipes.

        Raises:
            ProcessingError: If generation failed
        """
        result = await self.generate_recipes(ingredients)
        if not result.is_success:
            raise ProcessingError(result.error_message or "Failed to generate recipes")
        return result.recipes[:limit]

    async def find_alternative_recipes(self, ingredients: Sequence[str]) -> List[Recipe]:
        """Looser suggestions using only some of ``ingredients``; empty on failure."""
        count = self.config.max_recipe_suggestions
        try:
            result = await self._fetch(build_alternative_prompt(ingredients, count), 0.5, ingredients, time.monotonic())
        except AppError as e:
            logger.warning("Alternative recipe lookup failed: %s", e.technical_details or e.message)
            return []
        return result.recipes
