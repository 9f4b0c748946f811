"""
Food recognition client.

Sends a compressed photo to an OpenAI vision-capable chat model and parses
the structured ingredient list it returns.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from .image_processing import prepare_image
from .models import FoodRecognitionResult, Ingredient
from food_scan.config.loader import ApiConfig
from food_scan.core import retry
from food_scan.core.errors import ProcessingError, to_app_error, user_message

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.3

VISION_PROMPT = """\
Analyze this food image and identify all visible ingredients with confidence scores.

Return your response as a JSON object with this exact structure:
{
  "ingredients": [
    {
      "name": "ingredient_name",
      "confidence": 0.95,
      "category": "category_name"
    }
  ],
  "overall_confidence": 0.90
}

Guidelines:
- Only identify ingredients you can clearly see in the image
- Use confidence scores from 0.0 to 1.0 (1.0 = completely certain)
- Categories should be: "protein", "vegetable", "fruit", "grain", "dairy", "spice", "herb", "sauce", "other"
- Be specific with ingredient names (e.g., "red bell pepper" not just "pepper")
- Include overall confidence for the entire analysis
- If no food is visible, return empty ingredients array with overall_confidence: 0.0
- Minimum confidence threshold: 0.3 (don't include ingredients below this)

Return only the JSON object, no additional text.
"""


def extract_json_content(response: Any) -> Dict[str, Any]:
    """Pull the JSON object out of a chat completion response.

    Tolerates a Markdown code fence around the JSON.

    Raises:
        ProcessingError: ``service_failure`` if there is no parseable JSON object
    """
    choices = getattr(response, "choices", None)
    if not choices:
        raise ProcessingError.service_failure("No choices in response")

    content = choices[0].message.content
    if not content or not content.strip():
        raise ProcessingError.service_failure("Empty response content")

    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProcessingError.service_failure(f"Response is not valid JSON: {e}")
    if not isinstance(parsed, dict):
        raise ProcessingError.service_failure("Response JSON is not an object")
    return parsed


def parse_recognition(payload: Dict[str, Any], processing_time_ms: int) -> FoodRecognitionResult:
    """Turn the model's JSON into a result, dropping low-confidence items.

    Raises:
        ProcessingError: ``service_failure`` on a malformed payload,
            ``no_food_detected`` when nothing credible was found
    """
    items = payload.get("ingredients")
    if not isinstance(items, list):
        raise ProcessingError.service_failure("Invalid response format: missing ingredients")

    try:
        ingredients = [Ingredient.from_dict(item) for item in items]
        overall = float(payload.get("overall_confidence") or 0.0)
    except (KeyError, TypeError, ValueError) as e:
        raise ProcessingError.service_failure(f"Invalid ingredient entry: {e!r}")

    ingredients = [i for i in ingredients if i.confidence >= MIN_CONFIDENCE]
    if not ingredients and overall < MIN_CONFIDENCE:
        raise ProcessingError.no_food_detected()

    ingredients.sort(key=lambda i: i.confidence, reverse=True)
    return FoodRecognitionResult.success(
        ingredients=ingredients,
        confidence=overall,
        processing_time_ms=processing_time_ms,
    )


class FoodVisionClient:
    """Vision Recognition API client.

    Network calls run under the network retry policy; the OpenAI SDK's own
    retries are disabled so only one layer retries.
    """

    def __init__(
        self,
        config: Optional[ApiConfig] = None,
        policy: retry.RetryPolicy = retry.NETWORK_POLICY,
        client: Optional[AsyncOpenAI] = None,
        sleep: retry.SleepFunc = None,
    ):
        """Initialize the vision client.

        Args:
            config: API settings (defaults to ``ApiConfig()``)
            policy: Retry policy for the API call
            client: Preconfigured AsyncOpenAI client; built from config if omitted
            sleep: Sleep used between retries, injectable for tests
        """
        self.config = config or ApiConfig()
        self.policy = policy
        self.client = client or AsyncOpenAI(
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
            max_retries=0,
        )
        self._sleep = sleep

    def build_messages(self, base64_image: str) -> List[Dict[str, Any]]:
        return [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": VISION_PROMPT},
                    {
                        "type": "image_url",
                        "image_url": {
                            "url": f"data:image/jpeg;base64,{base64_image}",
                            "detail": "high",
                        },
                    },
                ],
            }
        ]

    async def _request(self, base64_image: str) -> Any:
        try:
            return await self.client.chat.completions.create(
                model=self.config.vision_model,
                messages=self.build_messages(base64_image),
                max_tokens=1000,
                temperature=0.1,
            )
        except Exception as e:
            raise to_app_error(e) from e

    async def analyze_image(self, image_bytes: bytes) -> FoodRecognitionResult:
        """Recognize ingredients in ``image_bytes``.

        Raises:
            ProcessingError: Invalid image, unparseable response or no food found
            NetworkError: API failure that survived the retry policy
        """
        started = time.monotonic()
        processed = prepare_image(image_bytes)

        kwargs = {"sleep": self._sleep} if self._sleep else {}
        response = await retry.execute_or_raise(
            lambda: self._request(processed.base64_image), self.policy, **kwargs
        )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        result = parse_recognition(extract_json_content(response), elapsed_ms)
        logger.info(
            "Recognized %d ingredients in %dms", len(result.ingredients), elapsed_ms
        )
        return result

    async def recognize(self, image_bytes: bytes) -> FoodRecognitionResult:
        """Like ``analyze_image`` but reports failures as a failed result."""
        started = time.monotonic()
        try:
            return await self.analyze_image(image_bytes)
        except Exception as e:
            logger.error("Food recognition failed: %r", e)
            return FoodRecognitionResult.failure(
                error_message=user_message(e),
                processing_time_ms=int((time.monotonic() - started) * 1000),
            )
