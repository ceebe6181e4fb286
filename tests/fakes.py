"""Test doubles and data builders shared by the test modules."""

from app.models.database import MealLog
from app.services.providers import ProviderAdapter, ProviderError

USER_ID = "user-1"


class FakeProviderAdapter(ProviderAdapter):
    """Scripted provider: serves external_meals and fails sends for chosen meal ids."""

    def __init__(self, external_meals=None, failing_meal_ids=(), fetch_error=None):
        self.external_meals = list(external_meals or [])
        self.failing_meal_ids = set(failing_meal_ids)
        self.fetch_error = fetch_error
        self.sent = []
        self.fetch_calls = []

    async def fetch_meals(self, provider, connection, start_date, end_date):
        self.fetch_calls.append((provider, start_date, end_date))
        if self.fetch_error is not None:
            raise self.fetch_error
        return [dict(meal) if isinstance(meal, dict) else meal for meal in self.external_meals]

    async def send_meal(self, provider, connection, meal):
        if meal.id in self.failing_meal_ids:
            raise ProviderError(f"provider rejected meal {meal.id}")
        self.sent.append(meal)
        return f"{provider}-{meal.id}"


async def add_meal(session, food_name, logged_at, user_id=USER_ID, **fields) -> MealLog:
    """Insert a local meal log row."""
    meal = MealLog(
        user_id=user_id,
        food_name=food_name,
        meal_type=fields.pop("meal_type", "breakfast"),
        calories=fields.pop("calories", 200),
        carbs=fields.pop("carbs", 40),
        protein=fields.pop("protein", 5),
        fat=fields.pop("fat", 3),
        logged_at=logged_at,
        source=fields.pop("source", "local"),
        **fields,
    )
    session.add(meal)
    await session.commit()
    return meal


class EchoProviderAdapter(ProviderAdapter):
    """Provider that stores sent meals and returns them on the next fetch."""

    def __init__(self):
        self.stored = []

    async def fetch_meals(self, provider, connection, start_date, end_date):
        return [dict(meal) for meal in self.stored]

    async def send_meal(self, provider, connection, meal):
        external_id = f"{provider}-{len(self.stored) + 1}"
        self.stored.append({
            "id": external_id,
            "name": meal.food_name,
            "meal_type": meal.meal_type,
            "calories": meal.calories,
            "carbs": meal.carbs,
            "timestamp": meal.timestamp.isoformat(),
        })
        return external_id
