from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from app.core.database import init_db
from app.api import config, connections, sync, conflicts, meals
from app.api.deps import get_provider_adapter
from app.services.scheduler import start_scheduler, stop_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    # Startup
    await init_db()
    adapter = get_provider_adapter()
    start_scheduler(adapter)
    yield
    # Shutdown
    stop_scheduler()
    await adapter.close()


# Create FastAPI application
app = FastAPI(
    title="Nutrition Sync",
    description="Reconciles logged meals with third-party nutrition trackers",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(config.router)
app.include_router(connections.router)
app.include_router(sync.router)
app.include_router(conflicts.router)
app.include_router(meals.router)


@app.get("/")
async def root():
    """Redirect root to the API docs."""
    return RedirectResponse(url="/docs")
