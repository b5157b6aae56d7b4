"""Admin application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from toggle_engine import __version__
from toggle_engine.api.features import create_router
from toggle_engine.core.config import ToggleSettings, get_settings
from toggle_engine.core.feature_toggles import ToggleManager, build_toggle_manager
from toggle_engine.utils.logging import setup_logging

logger = logging.getLogger(__name__)


def create_app(
    manager: Optional[ToggleManager] = None,
    settings: Optional[ToggleSettings] = None,
) -> FastAPI:
    """Create the admin app; the manager is initialized on startup."""
    settings = settings or get_settings()
    if manager is None:
        setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
        manager = build_toggle_manager(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        result = await manager.initialize()
        if not result:
            logger.error(f"Feature toggle manager failed to initialize: {result.error}")
        yield
        manager.close()

    app = FastAPI(title="Feature Toggle Engine", version=__version__, lifespan=lifespan)
    app.state.toggle_manager = manager
    app.include_router(create_router(manager), prefix="/api/v1")
    app.mount("/metrics", make_asgi_app())
    return app


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "toggle_engine.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
