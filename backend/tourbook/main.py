from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import structlog
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.staticfiles import StaticFiles
from prometheus_fastapi_instrumentator import Instrumentator

from tourbook import __version__
from tourbook.api import bookings, reviews, tours, users, views
from tourbook.core.errors import register_error_handlers
from tourbook.core.logging import configure_logging
from tourbook.core.rate_limit import configure_rate_limit, limit_api_requests
from tourbook.core.settings import Settings, get_settings
from tourbook.db.session import db_manager
from tourbook.middleware.logging import RequestLoggingMiddleware
from tourbook.middleware.security import BodySizeLimitMiddleware, SecurityHeadersMiddleware

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/v1"
WEBHOOK_PATH = "/webhook-checkout"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting application...")
    try:
        await db_manager.initialize()
        logger.info("Database manager initialized successfully")
    except Exception:
        logger.exception("Failed to initialize database manager")
        raise

    yield

    # Shutdown
    logger.info("Shutting down application...")
    try:
        await db_manager.close()
    except Exception as e:
        logger.error(f"Error during database cleanup: {e}")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=f"{settings.APP_NAME} API",
        description="Tour catalog, reviews and bookings",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.limiter = configure_rate_limit(settings)

    # added innermost first
    app.add_middleware(
        BodySizeLimitMiddleware, max_bytes=settings.BODY_LIMIT_BYTES, exempt_paths=(WEBHOOK_PATH,)
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    api_limit = [Depends(limit_api_requests)]
    for router in (tours.router, reviews.nested_router, reviews.router, users.router, bookings.router):
        app.include_router(router, prefix=API_PREFIX, dependencies=api_limit)
    app.include_router(bookings.webhook_router)
    app.include_router(views.router)

    @app.get("/health")
    async def health_check():
        """Liveness plus database connectivity"""
        database = await db_manager.health_check()
        return {
            "status": "healthy" if database["status"] == "healthy" else "degraded",
            "version": __version__,
            "components": {"database": database["status"], "api": "healthy"},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    Instrumentator().instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    media_img = Path(settings.MEDIA_ROOT) / "img"
    app.mount("/img", StaticFiles(directory=str(media_img), check_dir=False), name="img")

    return app


app = create_app()
