from __future__ import annotations

from typing import Optional

from fastapi import FastAPI
from loguru import logger

from .repository import FunnelRepository
from .routes import router
from .settings import Settings, get_settings

API_PREFIX = "/api/ml"


def create_app(settings: Optional[Settings] = None, repository: Optional[FunnelRepository] = None) -> FastAPI:
    """Create and configure the remote store FastAPI instance."""
    settings = settings or get_settings()
    app = FastAPI(title="League Funnel Store", version="0.1.0")
    app.state.settings = settings
    app.state.repository = repository or FunnelRepository()
    app.include_router(router, prefix=API_PREFIX)
    logger.debug("Remote store ready under {}", API_PREFIX)
    return app


app = create_app()
