"""Main FastAPI application for the Air Health service."""
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api_routes import router
from .cache_manager import CacheManager
from .refresh_jobs import RefreshCoordinator
from .settings import AirHealthSettings, load_settings

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[AirHealthSettings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or load_settings()
    cache = CacheManager(settings.database_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    coordinator = RefreshCoordinator(cache=cache, settings=settings, transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await coordinator.initialize()
        missing = settings.required_credentials()
        if missing:
            logger.warning("[startup] collection disabled until configured: %s", ", ".join(missing))
        yield

    app = FastAPI(
        title="Air Health Index API",
        description="Rolling 3-hour AQHI for Bangkok community monitoring points",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.cache = cache
    app.state.coordinator = coordinator

    # CORS middleware for frontend
    allowed_origins = os.getenv(
        "ALLOWED_ORIGINS",
        "http://localhost:5173,http://localhost:3000"
    ).split(",")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "airhealth API"}

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    uvicorn.run("airhealth.main:create_app", factory=True, host="0.0.0.0", port=8000)
