from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Sequence

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.routers.capacity import router as capacity_router
from app.routers.modifications import router as modifications_router
from app.routers.substitutions import router as substitutions_router
from app.services.capacity_alert_scheduler import (
    shutdown_capacity_alert_scheduler,
    start_capacity_alert_scheduler,
)
from core.settings import get_settings
from db.session import engine


settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    start_capacity_alert_scheduler()
    yield
    shutdown_capacity_alert_scheduler()
    # Ensure DB connections are cleanly closed on shutdown
    await engine.dispose()


def create_app(allowed_origins: Sequence[str] | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        allowed_origins: Optional list of CORS origins to allow. If not provided,
            permissive defaults will be used for local development.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)

    cors_origins = list(
        allowed_origins
        or [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(capacity_router, prefix="/capacity", tags=["capacity"])
    app.include_router(
        substitutions_router, prefix="/substitutions", tags=["substitutions"]
    )
    app.include_router(
        modifications_router, prefix="/modifications", tags=["modifications"]
    )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
