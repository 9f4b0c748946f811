"""
CLI interface for food_scan.

Provides command-line access to scanning and subscription management.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from food_scan.config.loader import AppConfig, load_app_config
from food_scan.core.errors import AppError, RecoveryAction, recovery_action, to_app_error, user_message
from food_scan.core.service import SubscriptionService
from food_scan.core.subscription import UNLIMITED, parse_tier
from food_scan.sdk.models import Recipe
from food_scan.sdk.recipe_cache import RecipeCache
from food_scan.sdk.recipe_client import RecipeClient
from food_scan.sdk.scanner import FoodScanner
from food_scan.sdk.vision_client import FoodVisionClient
from food_scan.storage.custom_ingredients import CustomIngredients
from food_scan.storage.recipe_book import RecipeBook
from food_scan.storage.repository import KeyValueStore, fetch_usage_records, initialize_schema

app = typer.Typer()
recipes_app = typer.Typer(help="Manage the recipe book.")
ingredients_app = typer.Typer(help="Manage hand-added ingredients.")
cache_app = typer.Typer(help="Inspect or clear cached recipe suggestions.")
app.add_typer(recipes_app, name="recipes")
app.add_typer(ingredients_app, name="ingredients")
app.add_typer(cache_app, name="cache")

console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_RECOVERY_HINTS = {
    RecoveryAction.RETRY: "Run the command again to retry.",
    RecoveryAction.OPEN_SETTINGS: "Check the permission settings and try again.",
    RecoveryAction.UPGRADE: "Run `food-scan upgrade premium` to unlock more.",
    RecoveryAction.NONE: "",
}


class _State:
    config: AppConfig = AppConfig()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=verbose)],
        force=True,
    )


def _store() -> KeyValueStore:
    return KeyValueStore(_State.config.storage.db_path)


def _service(store: Optional[KeyValueStore] = None) -> SubscriptionService:
    return SubscriptionService(store or _store())


def _fail(error: BaseException) -> None:
    """Print the user-facing message plus the matching recovery hint and exit."""
    console.print(f"[red]Error:[/] {user_message(error)}")
    hint = _RECOVERY_HINTS[recovery_action(error)]
    if hint:
        console.print(f"[dim]{hint}[/]")
    sys.exit(EXIT_CODE_FAIL)


def _usage_error(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _format_limit(value: int) -> str:
    return "unlimited" if value == UNLIMITED else str(value)


def _print_recipe(recipe: Recipe) -> None:
    console.print(
        f"\n[bold]{recipe.title}[/bold] [dim]({recipe.id})[/] ({recipe.match_percentage:.0f}% match, "
        f"{recipe.cooking_time} min, {recipe.nutrition.calories} kcal)"
    )
    if recipe.missing_ingredients:
        console.print(f"Missing: {', '.join(recipe.missing_ingredients)}")
    if recipe.allergens:
        console.print(f"Allergens: {', '.join(a.name for a in recipe.allergens)}")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """food_scan CLI."""
    _setup_logging(verbose)
    try:
        _State.config = load_app_config(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if ctx.invoked_subcommand is None:
        console.print("food_scan - Use --help to see available commands")


@app.command()
def init():
    """Initialize the local database."""
    try:
        initialize_schema(_State.config.storage.db_path)
        _service()
        console.print("[green]✓[/] Database initialized successfully")
    except AppError as e:
        _fail(e)


@app.command()
def status():
    """Show the current tier and remaining quota."""
    try:
        service = _service()
        state = service.refresh()
    except AppError as e:
        _fail(e)
        return

    tier = state.tier
    quota = state.quota
    table = Table(title=f"{tier.display_name} plan")
    table.add_column("Item")
    table.add_column("Value", justify="right")
    table.add_row("Scans used", str(quota.used))
    table.add_row("Scans left", _format_limit(quota.primary_remaining))
    table.add_row("Scan allowance", _format_limit(quota.periodic_allowance))
    table.add_row("Bonus credits", str(quota.bonus_allowance))
    table.add_row("History kept (days)", _format_limit(quota.history_retention_days))
    table.add_row(
        "Next reset",
        quota.period_reset_at.strftime("%Y-%m-%d %H:%M") if quota.period_reset_at else "-",
    )
    if state.is_active(service.clock()) and state.expiry_date is not None:
        table.add_row("Renews", state.expiry_date.strftime("%Y-%m-%d"))
    table.add_row("Features", ", ".join(sorted(f.value for f in tier.features)) or "-")
    console.print(table)


@app.command()
def scan(
    image: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Food photo"),
    no_recipes: bool = typer.Option(False, "--no-recipes", help="Only list ingredients"),
    diet: Optional[str] = typer.Option(None, "--diet", help="Comma-separated dietary constraints"),
    add: Optional[List[str]] = typer.Option(None, "--add", help="Extra ingredient for this scan (repeatable)"),
    remove: Optional[List[str]] = typer.Option(None, "--remove", help="Detected ingredient to leave out (repeatable)"),
):
    """Recognize ingredients in a photo and suggest recipes."""
    config = _State.config
    try:
        store = _store()
        service = _service(store)
        recipe_client = None
        if not no_recipes:
            recipe_client = RecipeClient(
                config.api,
                config.retry.network,
                processing_policy=config.retry.processing,
                cache=RecipeCache(store),
            )
        scanner = FoodScanner(
            service,
            FoodVisionClient(config.api, config.retry.network),
            recipe_client,
            CustomIngredients(store),
        )
        constraints = [c.strip() for c in diet.split(",") if c.strip()] if diet else []
        result = asyncio.run(scanner.scan(
            image.read_bytes(), not no_recipes, constraints, add or [], remove or []
        ))
    except ValueError as e:
        _usage_error(str(e))
        return
    except Exception as e:
        _fail(to_app_error(e))
        return

    table = Table(title="Detected ingredients")
    table.add_column("Ingredient")
    table.add_column("Category")
    table.add_column("Confidence", justify="right")
    for ingredient in result.recognition.ingredients:
        table.add_row(ingredient.name, ingredient.category, f"{ingredient.confidence:.0%}")
    console.print(table)

    if result.ingredients and result.ingredients != result.recognition.ingredient_names:
        console.print(f"Cooking with: {', '.join(result.ingredients)}")

    if result.recipes is not None:
        if not result.recipes.is_success:
            console.print(f"[yellow]No recipes:[/] {result.recipes.error_message}")
        elif result.recipes.from_cache:
            console.print("[dim]Recipes served from cache.[/]")
        for recipe in result.recipes.recipes:
            _print_recipe(recipe)
        if result.recipes.recipes:
            try:
                RecipeBook(store, service).remember_suggestions(result.recipes.recipes)
            except AppError as e:
                _fail(e)


@app.command()
def upgrade(tier: str = typer.Argument(..., help="free, premium or professional")):
    """Switch subscription tier. The usage window restarts."""
    try:
        tier_type = parse_tier(tier)
    except ValueError as e:
        _usage_error(str(e))
        return
    try:
        state = _service().upgrade(tier_type)
    except AppError as e:
        _fail(e)
        return
    console.print(f"[green]✓[/] Now on the {state.tier.display_name} plan")


@app.command()
def cancel():
    """Cancel the paid plan and return to the free tier."""
    try:
        _service().cancel()
    except AppError as e:
        _fail(e)
        return
    console.print("[green]✓[/] Subscription cancelled, now on the Free plan")


@app.command()
def reset():
    """Start a new quota period immediately."""
    try:
        _service().reset_quota()
    except AppError as e:
        _fail(e)
        return
    console.print("[green]✓[/] Usage quota reset")


@app.command()
def history(limit: int = typer.Option(20, "--limit", "-n", help="Number of records to show")):
    """Show recent usage records."""
    try:
        initialize_schema(_State.config.storage.db_path)
        records = fetch_usage_records(limit=limit, db_path=_State.config.storage.db_path)
    except AppError as e:
        _fail(e)
        return

    if not records:
        console.print("[dim]No usage recorded yet.[/]")
        return

    table = Table(title="Usage history")
    table.add_column("When")
    table.add_column("Action")
    table.add_column("Charged to")
    for record in records:
        table.add_row(
            record.occurred_at.strftime("%Y-%m-%d %H:%M:%S"),
            record.action_kind.value,
            record.channel.value,
        )
    console.print(table)


def _recipe_book() -> RecipeBook:
    store = _store()
    return RecipeBook(store, _service(store))


@recipes_app.command("list")
def recipes_list():
    """Show saved recipes."""
    try:
        saved = _recipe_book().list()
    except AppError as e:
        _fail(e)
        return
    if not saved:
        console.print("[dim]No saved recipes yet.[/]")
        return
    for recipe in saved:
        _print_recipe(recipe)


@recipes_app.command("save")
def recipes_save(recipe_id: str = typer.Argument(..., help="Id of a recipe from the last scan")):
    """Save a recipe suggested by the last scan."""
    try:
        book = _recipe_book()
        recipe = book.find_suggestion(recipe_id)
        if recipe is None:
            _usage_error(f"No recipe '{recipe_id}' in the last scan's suggestions")
            return
        saved = book.save(recipe)
    except AppError as e:
        _fail(e)
        return
    if saved:
        console.print(f"[green]✓[/] Saved {recipe.title}")
    else:
        console.print(f"[dim]{recipe.title} is already in your recipe book.[/]")


@recipes_app.command("remove")
def recipes_remove(recipe_id: str = typer.Argument(..., help="Id of a saved recipe")):
    """Remove a recipe from the recipe book."""
    try:
        removed = _recipe_book().remove(recipe_id)
    except AppError as e:
        _fail(e)
        return
    if not removed:
        _usage_error(f"No saved recipe '{recipe_id}'")
        return
    console.print(f"[green]✓[/] Removed {recipe_id}")


@ingredients_app.command("add")
def ingredients_add(name: str = typer.Argument(..., help="Ingredient name")):
    """Always include an ingredient when asking for recipes."""
    try:
        ingredient = CustomIngredients(_store()).add(name)
    except ValueError as e:
        _usage_error(str(e))
        return
    except AppError as e:
        _fail(e)
        return
    console.print(f"[green]✓[/] Added {ingredient.name}")


@ingredients_app.command("remove")
def ingredients_remove(name: str = typer.Argument(..., help="Ingredient name")):
    """Stop including a hand-added ingredient."""
    try:
        removed = CustomIngredients(_store()).remove(name)
    except AppError as e:
        _fail(e)
        return
    if not removed:
        _usage_error(f"'{name}' is not in your ingredient list")
        return
    console.print(f"[green]✓[/] Removed {name}")


@ingredients_app.command("list")
def ingredients_list():
    """Show hand-added ingredients and recently added names."""
    try:
        custom = CustomIngredients(_store())
        names = custom.names()
        recent = custom.history()
    except AppError as e:
        _fail(e)
        return
    console.print(f"Always included: {', '.join(names) if names else '-'}")
    console.print(f"[dim]Recently added: {', '.join(recent[:10]) if recent else '-'}[/]")


@ingredients_app.command("clear")
def ingredients_clear():
    """Forget all hand-added ingredients and their history."""
    try:
        CustomIngredients(_store()).clear()
    except AppError as e:
        _fail(e)
        return
    console.print("[green]✓[/] Ingredient list cleared")


@cache_app.command("size")
def cache_size():
    """Show how many recipe results are cached."""
    try:
        size = RecipeCache(_store()).size()
    except AppError as e:
        _fail(e)
        return
    console.print(f"{size} cached recipe result(s)")


@cache_app.command("clear")
def cache_clear():
    """Drop all cached recipe results."""
    try:
        removed = RecipeCache(_store()).clear()
    except AppError as e:
        _fail(e)
        return
    console.print(f"[green]✓[/] Cleared {removed} cached recipe result(s)")


if __name__ == "__main__":
    app()
