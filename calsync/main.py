# calsync/main.py
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calsync.api.api import api_router
from calsync.core.config import settings
from calsync.core.error_handlers import register_exception_handlers
from calsync.core.logging import setup_logging
from calsync.core.middleware import register_middlewares
from calsync.db.base import SessionLocal
from calsync.db.session import init_db
from calsync.services import register_services
from calsync.services.health_monitor import get_health_monitor
from calsync.services.health_scheduler import HealthScheduler
from calsync.services.token_service import TokenService

# Set up the logger at the start
logger = setup_logging()


def _sweep_expiring_tokens() -> int:
    db = SessionLocal()
    try:
        return TokenService(db).refresh_expiring_tokens().total
    finally:
        db.close()


# Background task for refreshing tokens before they expire
async def refresh_expiring_tokens():
    while True:
        try:
            scheduled = await asyncio.to_thread(_sweep_expiring_tokens)
            if scheduled > 0:
                logger.info(f"Refreshed {scheduled} expiring tokens")
            await asyncio.sleep(settings.TOKEN_REFRESH_SWEEP_SECONDS)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in token refresh sweep: {str(e)}", exc_info=True)
            # Wait for a minute before retrying
            await asyncio.sleep(60)


# Context manager for startup/shutdown events
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting calsync API {app.version}")

    register_services()
    logger.info("Services registered")

    init_db()

    background_task = None
    scheduler = None
    if settings.BACKGROUND_JOBS_ENABLED:
        background_task = asyncio.create_task(refresh_expiring_tokens())
        scheduler = HealthScheduler(get_health_monitor())
        scheduler.start()

    yield

    logger.info("Shutting down application and background tasks")
    if scheduler is not None:
        scheduler.stop()
    if background_task is not None:
        background_task.cancel()
        try:
            await background_task
        except asyncio.CancelledError:
            logger.info("Background tasks cancelled successfully")


app = FastAPI(
    title="calsync API",
    description="Calendar integrations for Google, Outlook and CalDAV servers",
    version="0.1.0",
    lifespan=lifespan,
)

# Register custom exception handlers
register_exception_handlers(app)

# Register middleware
register_middlewares(app)

# Set up CORS middleware
if settings.BACKEND_CORS_ORIGINS:
    allowed_origins = [str(origin) for origin in settings.BACKEND_CORS_ORIGINS]
    logger.info(f"Setting up CORS with allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
def root():
    return {"message": "calsync API"}


def create_app():
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
