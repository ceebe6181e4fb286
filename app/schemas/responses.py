"""Pydantic request/response models for API endpoints."""

from datetime import datetime
from pydantic import BaseModel, Field

from app.schemas.nutrition import MealType, Resolution, SyncRequestDirection


class ActionResponse(BaseModel):
    """Result of a mutating action."""
    success: bool
    message: str


class SyncRequest(BaseModel):
    start_date: datetime | None = None
    end_date: datetime | None = None
    direction: SyncRequestDirection = "both"


class ImportRequest(BaseModel):
    start_date: datetime | None = None
    end_date: datetime | None = None


class ResolveConflictRequest(BaseModel):
    resolution: Resolution
    apply: bool = False


class AutoResolveResponse(BaseModel):
    provider: str
    resolved: int


class MealCreate(BaseModel):
    """A meal logged in the app."""
    food_name: str = Field(min_length=1)
    meal_type: MealType = "snack"
    calories: float = Field(default=0, ge=0)
    carbs: float = Field(default=0, ge=0)
    protein: float = Field(default=0, ge=0)
    fat: float = Field(default=0, ge=0)
    fiber: float | None = Field(default=None, ge=0)
    sugar: float | None = Field(default=None, ge=0)
    sodium: float | None = Field(default=None, ge=0)
    serving_size: str | None = None
    servings: float | None = Field(default=None, gt=0)
    logged_at: datetime | None = None
