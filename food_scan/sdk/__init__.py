"""
SDK for food_scan.

Provides programmatic access to food recognition and recipe suggestions.
"""

from .recipe_client import RecipeClient
from .scanner import FoodScanner, ScanResult
from .vision_client import FoodVisionClient

__all__ = ["FoodVisionClient", "RecipeClient", "FoodScanner", "ScanResult"]
