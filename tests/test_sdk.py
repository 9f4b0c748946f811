"""
Unit tests for SDK layer.

Tests the vision and recipe clients against a mocked AsyncOpenAI client,
and the scan pipeline's quota handling.
"""

import asyncio
import io
import json
import os
import shutil
import tempfile
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest
from PIL import Image

from food_scan.config.loader import ApiConfig
from food_scan.core.errors import NetworkError, ProcessingError, SubscriptionError
from food_scan.core.retry import RetryPolicy
from food_scan.core.service import SubscriptionService
from food_scan.core.subscription import ActionKind
from food_scan.sdk.models import FoodRecognitionResult, Ingredient, Recipe
from food_scan.sdk.recipe_client import (
    RecipeClient,
    build_user_prompt,
    highlight_used_ingredients,
    rank_recipes_by_match,
)
from food_scan.sdk.scanner import FoodScanner
from food_scan.sdk.vision_client import FoodVisionClient, extract_json_content, parse_recognition
from food_scan.storage.custom_ingredients import CustomIngredients
from food_scan.storage.repository import KeyValueStore, fetch_usage_records

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")

FAST_POLICY = RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0)


async def no_sleep(seconds: float) -> None:
    return None


def chat_response(content) -> SimpleNamespace:
    if not isinstance(content, str):
        content = json.dumps(content)
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def mock_openai(*responses) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=list(responses))
    return client


def photo() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (400, 300), color=(120, 180, 60)).save(buffer, format="PNG")
    return buffer.getvalue()


def recipe_payload(recipe_id: str, ingredients, match: float = 50.0) -> dict:
    return {
        "id": recipe_id,
        "title": f"Recipe {recipe_id}",
        "ingredients": ingredients,
        "instructions": ["Cook"],
        "cooking_time": 20,
        "servings": 2,
        "match_percentage": match,
        "nutrition": {
            "calories": 300, "protein": 10, "carbohydrates": 40, "fat": 8,
            "fiber": 4, "sugar": 5, "sodium": 300, "serving_size": "1 plate",
        },
        "allergens": [{"name": "Dairy", "severity": "medium", "description": "Milk"}],
        "difficulty": "easy",
    }


VISION_PAYLOAD = {
    "ingredients": [
        {"name": "tomato", "confidence": 0.8, "category": "vegetable"},
        {"name": "basil", "confidence": 0.95, "category": "herb"},
        {"name": "mystery", "confidence": 0.1, "category": "other"},
    ],
    "overall_confidence": 0.85,
}


class TestResponseParsing:
    """Test JSON extraction and recognition parsing."""

    def test_extract_plain_json(self):
        assert extract_json_content(chat_response({"a": 1})) == {"a": 1}

    def test_extract_fenced_json(self):
        response = chat_response('```json\n{"a": 1}\n```')
        assert extract_json_content(response) == {"a": 1}

    @pytest.mark.parametrize("response", [
        SimpleNamespace(choices=[]),
        chat_response(""),
        chat_response("not json"),
        chat_response("[1, 2]"),
    ])
    def test_extract_rejects_bad_responses(self, response):
        with pytest.raises(ProcessingError):
            extract_json_content(response)

    def test_low_confidence_items_dropped_and_sorted(self):
        result = parse_recognition(VISION_PAYLOAD, 12)

        assert result.is_success
        assert result.ingredient_names == ["basil", "tomato"]
        assert result.confidence == 0.85
        assert result.processing_time_ms == 12

    def test_nothing_credible_means_no_food(self):
        payload = {"ingredients": [], "overall_confidence": 0.0}
        with pytest.raises(ProcessingError) as excinfo:
            parse_recognition(payload, 0)
        assert "No food items" in excinfo.value.message

    def test_missing_ingredients_is_service_failure(self):
        with pytest.raises(ProcessingError):
            parse_recognition({"overall_confidence": 0.9}, 0)


class TestFoodVisionClient:
    """Test the vision client's request and retry handling."""

    def test_analyze_image_success(self):
        client = mock_openai(chat_response(VISION_PAYLOAD))
        vision = FoodVisionClient(ApiConfig(vision_model="gpt-4o"), FAST_POLICY, client, no_sleep)

        result = asyncio.run(vision.analyze_image(photo()))

        assert result.ingredient_names == ["basil", "tomato"]
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        content = kwargs["messages"][0]["content"]
        assert content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")

    def test_transient_errors_are_retried(self):
        client = mock_openai(
            openai.APITimeoutError(request=REQUEST),
            openai.APIConnectionError(request=REQUEST),
            chat_response(VISION_PAYLOAD),
        )
        vision = FoodVisionClient(ApiConfig(), FAST_POLICY, client, no_sleep)

        result = asyncio.run(vision.analyze_image(photo()))

        assert result.is_success
        assert client.chat.completions.create.await_count == 3

    def test_authentication_failure_is_not_retried(self):
        error = openai.AuthenticationError(
            "bad key", response=httpx.Response(401, request=REQUEST), body=None
        )
        client = mock_openai(error, chat_response(VISION_PAYLOAD))
        vision = FoodVisionClient(ApiConfig(), FAST_POLICY, client, no_sleep)

        with pytest.raises(NetworkError) as excinfo:
            asyncio.run(vision.analyze_image(photo()))
        assert not excinfo.value.recoverable
        assert client.chat.completions.create.await_count == 1

    def test_invalid_image_never_calls_api(self):
        client = mock_openai()
        vision = FoodVisionClient(ApiConfig(), FAST_POLICY, client, no_sleep)

        with pytest.raises(ProcessingError):
            asyncio.run(vision.analyze_image(b"garbage"))
        client.chat.completions.create.assert_not_called()

    def test_recognize_reports_failure(self):
        client = mock_openai(*[openai.APITimeoutError(request=REQUEST)] * 3)
        vision = FoodVisionClient(ApiConfig(), FAST_POLICY, client, no_sleep)

        result = asyncio.run(vision.recognize(photo()))

        assert not result.is_success
        assert result.error_message == "Request timed out. Please try again."
        assert result.ingredients == []

    @patch('food_scan.sdk.vision_client.AsyncOpenAI')
    def test_builds_client_without_sdk_retries(self, mock_openai_class):
        FoodVisionClient(ApiConfig(base_url="http://localhost:8080/v1", timeout_seconds=12))

        mock_openai_class.assert_called_once_with(
            base_url="http://localhost:8080/v1", timeout=12.0, max_retries=0
        )


class TestRecipeHelpers:
    """Test ranking and ingredient highlighting."""

    def make_recipe(self, recipe_id: str, ingredients, match: float = 0.0) -> Recipe:
        return Recipe.from_dict(recipe_payload(recipe_id, ingredients, match))

    def test_highlight_is_case_insensitive_substring(self):
        recipe = self.make_recipe("r1", ["2 Ripe Tomatoes", "fresh basil", "olive oil"])
        highlighted = highlight_used_ingredients(recipe, ["tomato", "Basil"])

        assert highlighted.used_ingredients == ["2 Ripe Tomatoes", "fresh basil"]
        assert highlighted.missing_ingredients == ["olive oil"]
        assert highlighted.match_percentage == pytest.approx(200 / 3)

    def test_highlight_ignores_blank_and_repeated_entries(self):
        recipe = self.make_recipe("r1", ["Tomato", "", "  ", "tomato", "garlic"])
        highlighted = highlight_used_ingredients(recipe, ["tomato"])

        assert highlighted.used_ingredients == ["Tomato"]
        assert highlighted.missing_ingredients == ["garlic"]
        assert highlighted.match_percentage == 50.0

    def test_highlight_empty_recipe(self):
        assert highlight_used_ingredients(self.make_recipe("r0", []), ["tomato"]).match_percentage == 0.0

    def test_rank_by_match(self):
        recipes = [self.make_recipe("a", [], 20), self.make_recipe("b", [], 90), self.make_recipe("c", [], 55)]
        assert [r.id for r in rank_recipes_by_match(recipes)] == ["b", "c", "a"]

    def test_user_prompt_mentions_constraints(self):
        prompt = build_user_prompt(["egg", "rice"], ["vegetarian"], 3)
        assert "Generate 3 recipes using these ingredients: egg, rice" in prompt
        assert "vegetarian" in prompt


class TestRecipeClient:
    """Test recipe generation against a mocked API."""

    def test_generate_recipes_ranks_and_limits(self):
        payload = {
            "recipes": [
                recipe_payload("low", ["tomato", "flour", "yeast", "salt"]),
                recipe_payload("high", ["tomato", "basil"]),
                recipe_payload("none", ["beef"]),
            ],
            "total_found": 3,
        }
        client = mock_openai(chat_response(payload))
        recipes = RecipeClient(ApiConfig(max_recipe_suggestions=2), FAST_POLICY, client, no_sleep)

        result = asyncio.run(recipes.generate_recipes(["tomato", "basil"]))

        assert result.is_success
        assert [r.id for r in result.recipes] == ["high", "low"]
        assert result.recipes[0].match_percentage == 100.0
        assert result.total_found == 3
        system_prompt = client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
        assert "Generate exactly 2 recipes" in system_prompt

    def test_no_ingredients(self):
        client = mock_openai()
        result = asyncio.run(RecipeClient(ApiConfig(), FAST_POLICY, client, no_sleep).generate_recipes([]))

        assert not result.is_success
        assert result.error_message == "No ingredients provided"
        client.chat.completions.create.assert_not_called()

    def test_malformed_response_is_failure_result(self):
        client = mock_openai(*[chat_response({"recipes": [{"id": "x"}]})] * 2)
        result = asyncio.run(RecipeClient(ApiConfig(), FAST_POLICY, client, no_sleep).generate_recipes(["egg"]))

        assert not result.is_success
        assert result.error_message == "Failed to process image. Please try again."
        assert client.chat.completions.create.await_count == 2

    def test_malformed_reply_is_requested_again(self):
        client = mock_openai(
            chat_response("not json at all"),
            chat_response({"recipes": [recipe_payload("r1", ["egg"])]}),
        )
        recipes = RecipeClient(ApiConfig(), FAST_POLICY, client, no_sleep)

        result = asyncio.run(recipes.generate_recipes(["egg"]))

        assert result.is_success
        assert [r.id for r in result.recipes] == ["r1"]
        assert client.chat.completions.create.await_count == 2

    def test_ingredient_objects_are_read_by_name(self):
        payload = {"recipes": [recipe_payload("r1", [{"name": "tomato", "amount": "2"}, "salt"])]}
        client = mock_openai(chat_response(payload))
        recipes = RecipeClient(ApiConfig(), FAST_POLICY, client, no_sleep)

        result = asyncio.run(recipes.generate_recipes(["tomato"]))

        assert result.is_success
        assert result.recipes[0].ingredients == ["tomato", "salt"]
        assert result.recipes[0].used_ingredients == ["tomato"]
        assert result.recipes[0].match_percentage == 50.0

    @pytest.mark.parametrize("entry", [42, None, {"amount": "2"}, ["tomato"]])
    def test_unsupported_ingredient_entries_are_failure_result(self, entry):
        payload = {"recipes": [recipe_payload("r1", [entry])]}
        client = mock_openai(*[chat_response(payload)] * 2)
        recipes = RecipeClient(ApiConfig(), FAST_POLICY, client, no_sleep)

        result = asyncio.run(recipes.generate_recipes(["tomato"]))

        assert not result.is_success
        assert result.error_message == "Failed to process image. Please try again."

    def test_get_top_recipes_raises_on_failure(self):
        client = mock_openai(*[chat_response("nonsense")] * 2)
        recipes = RecipeClient(ApiConfig(), FAST_POLICY, client, no_sleep)

        with pytest.raises(ProcessingError):
            asyncio.run(recipes.get_top_recipes(["egg"], 1))

    def test_alternatives_empty_on_failure(self):
        client = mock_openai(*[openai.APIConnectionError(request=REQUEST)] * 3)
        recipes = RecipeClient(ApiConfig(), FAST_POLICY, client, no_sleep)

        assert asyncio.run(recipes.find_alternative_recipes(["egg"])) == []


class TestFoodScanner:
    """Test the scan pipeline's gating and charging."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.service = SubscriptionService(KeyValueStore(self.db_path))

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_vision(self, *responses) -> MagicMock:
        vision = MagicMock()
        vision.analyze_image = AsyncMock(side_effect=list(responses))
        return vision

    def test_successful_scan_is_charged(self):
        recognition = FoodRecognitionResult.success([Ingredient("egg", 0.9)], 0.9, 5)
        scanner = FoodScanner(self.service, self.make_vision(recognition))

        result = asyncio.run(scanner.scan(b"image"))

        assert result.recognition is recognition
        assert result.recipes is None
        assert result.state.quota.used == 1
        assert len(fetch_usage_records(action_kind=ActionKind.SCAN_FOOD, db_path=self.db_path)) == 1

    def test_failed_recognition_is_free(self):
        scanner = FoodScanner(self.service, self.make_vision(ProcessingError.no_food_detected()))

        with pytest.raises(ProcessingError):
            asyncio.run(scanner.scan(b"image"))
        assert self.service.state.quota.used == 0
        assert self.service.state.usage_history == ()

    def test_exhausted_quota_skips_api(self):
        for _ in range(4):
            self.service.consume(ActionKind.SCAN_FOOD)
        vision = self.make_vision()
        scanner = FoodScanner(self.service, vision)

        with pytest.raises(SubscriptionError):
            asyncio.run(scanner.scan(b"image"))
        vision.analyze_image.assert_not_called()

    def test_recipes_follow_recognition(self):
        recognition = FoodRecognitionResult.success([Ingredient("egg", 0.9), Ingredient("rice", 0.8)], 0.9, 5)
        recipes = MagicMock()
        recipes.generate_recipes = AsyncMock(return_value=MagicMock(is_success=True))
        scanner = FoodScanner(self.service, self.make_vision(recognition), recipes)

        asyncio.run(scanner.scan(b"image", dietary_constraints=["vegan"]))

        recipes.generate_recipes.assert_awaited_once_with(["egg", "rice"], ["vegan"])

    def test_custom_ingredients_join_detected(self):
        custom = CustomIngredients(KeyValueStore(self.db_path))
        custom.add("olive oil")
        recognition = FoodRecognitionResult.success([Ingredient("egg", 0.9), Ingredient("plate", 0.4)], 0.9, 5)
        recipes = MagicMock()
        recipes.generate_recipes = AsyncMock(return_value=MagicMock(is_success=True))
        scanner = FoodScanner(self.service, self.make_vision(recognition), recipes, custom)

        result = asyncio.run(scanner.scan(
            b"image", extra_ingredients=["chives"], excluded_ingredients=["Plate"]
        ))

        assert result.ingredients == ["egg", "Olive Oil", "Chives"]
        recipes.generate_recipes.assert_awaited_once_with(["egg", "Olive Oil", "Chives"], ())
        assert custom.history() == ["Chives", "Olive Oil"]
        assert custom.names() == ["Olive Oil"]

    def test_invalid_extra_ingredient_is_rejected_before_scanning(self):
        vision = self.make_vision()
        scanner = FoodScanner(self.service, vision)

        with pytest.raises(ValueError):
            asyncio.run(scanner.scan(b"image", extra_ingredients=["<script>"]))
        vision.analyze_image.assert_not_called()
        assert self.service.state.quota.used == 0
