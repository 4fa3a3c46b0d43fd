import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware

from app.api.v1.api import api_router
from app.core.config import Settings, get_settings
from app.core.database import Database
from app.core.exceptions import register_exception_handlers
from app.core.logging import RequestContextMiddleware, setup_logging
from app.core.redis_client import init_redis
from app.services.notifications import NotificationHub
from app.services.storage import LocalFileStorage

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, **overrides) -> FastAPI:
    """Build the application.

    ``overrides`` may supply ready-made ``database``, ``redis``, ``storage`` or
    ``notifications`` resources; anything not supplied is created at startup
    from ``settings`` and released at shutdown.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        # Note: in production the schema is managed by Alembic migrations
        state = app.state
        owned = []
        if "database" not in overrides:
            state.database = Database(settings.DATABASE_URL, pool_pre_ping=True)
            owned.append(state.database)
        if "redis" not in overrides:
            state.redis = await init_redis(settings.REDIS_URL)
        if "storage" not in overrides:
            state.storage = LocalFileStorage(settings.UPLOAD_PATH)
        state.storage.ensure_dirs()
        if "notifications" not in overrides:
            state.notifications = NotificationHub()
        logger.info("Application started (%s)", settings.ENVIRONMENT)
        yield
        # Shutdown
        if "redis" not in overrides:
            await state.redis.aclose()
        for database in owned:
            await database.dispose()

    app = FastAPI(
        title="Notes Workspace API",
        description="A multi-tenant REST API for taking, organizing and sharing notes",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    for name, resource in overrides.items():
        setattr(app.state, name, resource)

    app.add_middleware(RequestContextMiddleware)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add trusted host middleware for production
    if settings.is_production:
        app.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=[host.strip() for host in settings.ALLOWED_HOSTS.split(",") if host.strip()],
        )

    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/")
    async def root():
        return {"message": "Notes Workspace API", "version": "1.0.0"}

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "environment": settings.ENVIRONMENT}

    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        proxy_headers=True,  # Enable proxy headers support
        forwarded_allow_ips="*"  # Allow forwarded headers from any IP
    )
