"""
Recognition and recipe data models.

Each model converts to and from the JSON shape the vision and recipe
prompts ask the API to return.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Ingredient:
    """One detected ingredient with a 0.0-1.0 confidence score."""
    name: str
    confidence: float
    category: str = "other"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ingredient":
        return cls(
            name=str(data["name"]),
            confidence=float(data["confidence"]),
            category=str(data.get("category", "other")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "confidence": self.confidence, "category": self.category}


@dataclass(frozen=True)
class FoodRecognitionResult:
    """Outcome of a vision request.

    ``processing_time_ms`` covers validation, compression and the API call.
    """
    ingredients: List[Ingredient]
    confidence: float
    processing_time_ms: int
    is_success: bool = True
    error_message: Optional[str] = None

    @classmethod
    def success(cls, ingredients: List[Ingredient], confidence: float, processing_time_ms: int) -> "FoodRecognitionResult":
        return cls(ingredients=ingredients, confidence=confidence, processing_time_ms=processing_time_ms)

    @classmethod
    def failure(cls, error_message: str, processing_time_ms: int) -> "FoodRecognitionResult":
        return cls(
            ingredients=[],
            confidence=0.0,
            processing_time_ms=processing_time_ms,
            is_success=False,
            error_message=error_message,
        )

    @property
    def ingredient_names(self) -> List[str]:
        return [ingredient.name for ingredient in self.ingredients]


@dataclass(frozen=True)
class NutritionInfo:
    """Per-serving nutrition. Macros in grams, sodium in milligrams."""
    calories: int
    protein: float
    carbohydrates: float
    fat: float
    fiber: float
    sugar: float
    sodium: float
    serving_size: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NutritionInfo":
        return cls(
            calories=int(data["calories"]),
            protein=float(data["protein"]),
            carbohydrates=float(data["carbohydrates"]),
            fat=float(data["fat"]),
            fiber=float(data["fiber"]),
            sugar=float(data["sugar"]),
            sodium=float(data["sodium"]),
            serving_size=str(data["serving_size"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calories": self.calories,
            "protein": self.protein,
            "carbohydrates": self.carbohydrates,
            "fat": self.fat,
            "fiber": self.fiber,
            "sugar": self.sugar,
            "sodium": self.sodium,
            "serving_size": self.serving_size,
        }


@dataclass(frozen=True)
class Allergen:
    name: str
    severity: str  # "low", "medium" or "high"
    description: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Allergen":
        return cls(name=data["name"], severity=data["severity"], description=data.get("description", ""))

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "severity": self.severity, "description": self.description}


@dataclass(frozen=True)
class Intolerance:
    name: str
    type: str  # "lactose", "gluten", "nuts", "shellfish", "eggs", "soy" or "other"
    description: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Intolerance":
        return cls(name=data["name"], type=data["type"], description=data.get("description", ""))

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type, "description": self.description}


def _ingredient_text(item: Any) -> str:
    """Ingredient entries come back either as strings or as ``{"name": ...}`` objects.

    Raises:
        TypeError: For any other shape
    """
    if isinstance(item, str):
        return item
    if isinstance(item, dict) and isinstance(item.get("name"), str):
        return item["name"]
    raise TypeError(f"Unsupported ingredient entry: {item!r}")


@dataclass(frozen=True)
class Recipe:
    """A suggested recipe. Equality is by ``id``."""
    id: str
    title: str
    ingredients: List[str]
    instructions: List[str]
    cooking_time: int
    servings: int
    match_percentage: float
    nutrition: NutritionInfo
    allergens: List[Allergen] = field(default_factory=list)
    intolerances: List[Intolerance] = field(default_factory=list)
    used_ingredients: List[str] = field(default_factory=list)
    missing_ingredients: List[str] = field(default_factory=list)
    difficulty: str = "medium"
    image_url: Optional[str] = None

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Recipe) and other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)

    def with_match(self, used: List[str], missing: List[str], match_percentage: float) -> "Recipe":
        return replace(
            self,
            used_ingredients=used,
            missing_ingredients=missing,
            match_percentage=match_percentage,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recipe":
        """Build a recipe from the API JSON shape.

        Raises:
            KeyError, ValueError, TypeError: If required fields are missing or mistyped
        """
        return cls(
            id=str(data["id"]),
            title=str(data["title"]),
            ingredients=[_ingredient_text(i) for i in data["ingredients"]],
            instructions=[str(step) for step in data["instructions"]],
            cooking_time=int(data["cooking_time"]),
            servings=int(data["servings"]),
            match_percentage=float(data["match_percentage"]),
            nutrition=NutritionInfo.from_dict(data["nutrition"]),
            allergens=[Allergen.from_dict(a) for a in data.get("allergens", [])],
            intolerances=[Intolerance.from_dict(i) for i in data.get("intolerances", [])],
            used_ingredients=[_ingredient_text(i) for i in data.get("used_ingredients", [])],
            missing_ingredients=[_ingredient_text(i) for i in data.get("missing_ingredients", [])],
            difficulty=str(data.get("difficulty", "medium")),
            image_url=data.get("image_url"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "ingredients": list(self.ingredients),
            "instructions": list(self.instructions),
            "cooking_time": self.cooking_time,
            "servings": self.servings,
            "match_percentage": self.match_percentage,
            "nutrition": self.nutrition.to_dict(),
            "allergens": [a.to_dict() for a in self.allergens],
            "intolerances": [i.to_dict() for i in self.intolerances],
            "used_ingredients": list(self.used_ingredients),
            "missing_ingredients": list(self.missing_ingredients),
            "difficulty": self.difficulty,
            "image_url": self.image_url,
        }


@dataclass(frozen=True)
class RecipeGenerationResult:
    recipes: List[Recipe]
    total_found: int
    generation_time_ms: int
    alternative_suggestions: List[Recipe] = field(default_factory=list)
    is_success: bool = True
    error_message: Optional[str] = None
    from_cache: bool = False

    @classmethod
    def failure(cls, error_message: str, generation_time_ms: int) -> "RecipeGenerationResult":
        return cls(
            recipes=[],
            total_found=0,
            generation_time_ms=generation_time_ms,
            is_success=False,
            error_message=error_message,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipes": [r.to_dict() for r in self.recipes],
            "total_found": self.total_found,
            "generation_time_ms": self.generation_time_ms,
            "alternative_suggestions": [r.to_dict() for r in self.alternative_suggestions],
            "is_success": self.is_success,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecipeGenerationResult":
        return cls(
            recipes=[Recipe.from_dict(r) for r in data["recipes"]],
            total_found=int(data["total_found"]),
            generation_time_ms=int(data["generation_time_ms"]),
            alternative_suggestions=[Recipe.from_dict(r) for r in data.get("alternative_suggestions", [])],
            is_success=bool(data.get("is_success", True)),
            error_message=data.get("error_message"),
        )
