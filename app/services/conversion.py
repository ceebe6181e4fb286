"""Conversions between provider records, local meal logs and sync entries."""

import math
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from app.models.database import MealLog
from app.schemas.nutrition import NutritionEntry

MEAL_TYPES = ("breakfast", "lunch", "dinner", "snack")

MERGED_NUTRIENTS = ("calories", "carbs", "protein", "fat")


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to naive UTC, the form stored in the database."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _number(value: Any) -> float:
    if value in (None, ""):
        return 0
    return float(value)


def _first(record: dict[str, Any], *keys: str) -> Any:
    """First truthy value among keys."""
    for key in keys:
        if record.get(key):
            return record[key]
    return None


def parse_timestamp(value: Any) -> datetime:
    """Parse a provider timestamp (datetime, ISO string or epoch seconds)."""
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str) and value:
        return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise ValueError(f"Invalid meal timestamp: {value!r}")


def external_record_id(record: dict[str, Any]) -> Optional[str]:
    value = record.get("id")
    return str(value) if value not in (None, "") else None


def external_timestamp(record: dict[str, Any]) -> datetime:
    value = _first(record, "timestamp", "date")
    if value is None:
        return datetime.utcnow()
    return parse_timestamp(value)


def convert_to_local_format(record: dict[str, Any], provider: str) -> NutritionEntry:
    """
    Convert a raw provider record into a NutritionEntry.

    Providers disagree on field names, so the common aliases are accepted
    and missing values fall back to defaults.
    """
    meal_type = record.get("meal_type")
    if meal_type not in MEAL_TYPES:
        meal_type = "snack"

    return NutritionEntry(
        id=f"imported_{provider}_{uuid.uuid4().hex[:12]}",
        food_name=_first(record, "name", "food_name") or "Unknown Food",
        meal_type=meal_type,
        calories=_number(record.get("calories")),
        carbs=_number(_first(record, "carbs", "carbohydrates")),
        protein=_number(record.get("protein")),
        fat=_number(record.get("fat")),
        fiber=_number(record.get("fiber")),
        sugar=_number(record.get("sugar")),
        sodium=_number(record.get("sodium")),
        serving_size=record.get("serving_size") or "1 serving",
        servings=_number(record.get("servings")) or 1,
        timestamp=external_timestamp(record),
        source=provider,
        external_id=external_record_id(record),
    )


def meal_to_entry(meal: MealLog) -> NutritionEntry:
    return NutritionEntry(
        id=str(meal.id),
        food_name=meal.food_name,
        meal_type=meal.meal_type if meal.meal_type in MEAL_TYPES else "snack",
        calories=meal.calories or 0,
        carbs=meal.carbs or 0,
        protein=meal.protein or 0,
        fat=meal.fat or 0,
        fiber=meal.fiber,
        sugar=meal.sugars,
        sodium=meal.sodium,
        serving_size=meal.portion_size,
        servings=meal.servings,
        timestamp=meal.logged_at,
        source=meal.source,
        external_id=meal.external_id,
    )


def meal_snapshot(meal: MealLog) -> dict[str, Any]:
    """JSON-safe copy of a meal log row, stored on conflicts."""
    return {
        "id": meal.id,
        "food_name": meal.food_name,
        "meal_type": meal.meal_type,
        "calories": meal.calories,
        "carbs": meal.carbs,
        "protein": meal.protein,
        "fat": meal.fat,
        "fiber": meal.fiber,
        "sugars": meal.sugars,
        "sodium": meal.sodium,
        "portion_size": meal.portion_size,
        "servings": meal.servings,
        "logged_at": meal.logged_at.isoformat() if meal.logged_at else None,
        "source": meal.source,
    }


def merge_nutrition_data(local: dict[str, Any], external: dict[str, Any]) -> dict[str, Any]:
    """
    Merge a conflicting pair.

    External fields overlay local ones; the macro nutrients are the
    rounded mean of both sides.
    """
    external_carbs = external.get("carbs", external.get("carbohydrates"))
    sides = {
        "calories": (local.get("calories"), external.get("calories")),
        "carbs": (local.get("carbs"), external_carbs),
        "protein": (local.get("protein"), external.get("protein")),
        "fat": (local.get("fat"), external.get("fat")),
    }

    merged = {**local, **external}
    for key in MERGED_NUTRIENTS:
        local_value, external_value = sides[key]
        merged[key] = _round_half_up((_number(local_value) + _number(external_value)) / 2)
    merged["merged"] = True
    merged["merge_timestamp"] = datetime.utcnow().isoformat()
    return merged


def suggest_resolution(policy: Optional[str], local: dict[str, Any], external: dict[str, Any]) -> Optional[str]:
    """Map a connection's conflict policy onto a resolution for one conflict."""
    if policy == "external_wins":
        return "use_external"
    if policy == "local_wins":
        return "use_local"
    if policy == "newest_wins":
        local_time = parse_timestamp(local["logged_at"]) if local.get("logged_at") else None
        try:
            external_time = external_timestamp(external)
        except ValueError:
            return "use_local"
        if local_time is None or external_time > local_time:
            return "use_external"
        return "use_local"
    return None


def resolved_nutrients(data: dict[str, Any]) -> dict[str, float]:
    """Nutrient values from resolved conflict data, keyed by meal log column."""
    values = {
        "calories": data.get("calories"),
        "carbs": data.get("carbs", data.get("carbohydrates")),
        "protein": data.get("protein"),
        "fat": data.get("fat"),
    }
    return {key: _number(value) for key, value in values.items() if value is not None}
