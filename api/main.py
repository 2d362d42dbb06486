"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, sync
from api.dependencies import get_scheduler
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.logging import setup_logging
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Partner Sync Engine API",
    description="Operator surface for LMS/PRM synchronization and reconciliation",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(sync.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Partner Sync Engine API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    # Recover orphaned runs before the first tick
    scheduler = get_scheduler()
    await scheduler.startup()
    scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Partner Sync Engine API")
    get_scheduler().stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Partner Sync Engine API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "runs": "/sync/runs",
            "tasks": "/sync/tasks",
            "trigger": "/sync/{entity_type}",
            "cache": "/sync/cache/rebuild"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
