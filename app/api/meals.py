"""Local meal log endpoints."""

import logging
from datetime import datetime, timedelta
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.schemas.nutrition import NutritionEntry
from app.schemas.responses import MealCreate
from app.services.conversion import meal_to_entry, to_naive_utc
from app.services.repositories import MealLogRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/meals", tags=["meals"])


@router.post("", response_model=NutritionEntry, status_code=201)
async def log_meal(
    body: MealCreate,
    user_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    """Log a meal locally."""
    entry = NutritionEntry(
        id="new",
        food_name=body.food_name,
        meal_type=body.meal_type,
        calories=body.calories,
        carbs=body.carbs,
        protein=body.protein,
        fat=body.fat,
        fiber=body.fiber,
        sugar=body.sugar,
        sodium=body.sodium,
        serving_size=body.serving_size,
        servings=body.servings,
        timestamp=to_naive_utc(body.logged_at) or datetime.utcnow(),
        source="local",
    )
    meal = await MealLogRepository(db).add(user_id, entry)
    await db.commit()
    return meal_to_entry(meal)


@router.get("", response_model=list[NutritionEntry])
async def list_meals(
    user_id: str = Query(..., min_length=1),
    start: datetime | None = None,
    end: datetime | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Meals logged in [start, end]; defaults to the last 24 hours."""
    end = to_naive_utc(end) or datetime.utcnow()
    start = to_naive_utc(start) or end - timedelta(hours=24)
    if start > end:
        raise HTTPException(status_code=422, detail="start must be before or equal to end")

    meals = await MealLogRepository(db).list_for_user(user_id, start, end)
    return [meal_to_entry(meal) for meal in meals]
