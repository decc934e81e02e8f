"""
Challenge Engagement API - Main Application Entry Point.

This module initializes and configures the FastAPI application for the
Challenge Engagement API. It sets up logging, the database, middleware, and
routes.

The service owns the social-engagement core of the habit-challenge platform:
friend requests and friendships, challenge participation and daily check-ins,
threaded comments with likes and pins, leaderboards, and realtime change
notifications. User accounts and challenge definitions are owned by other
services and only read here.

Key Responsibilities:
- Configure and launch the FastAPI application.
- Set up middleware for correlation, error handling, and request timing.
- Create the database tables on startup and release realtime sessions on
  shutdown.
- Mount API routers (health, monitoring, WebSocket, core API).
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from api.dependencies import get_realtime_reconciler, is_valid_api_key
from api.endpoints import router, websocket_router
from api.health_router import health_router, monitoring_router
from core.config import get_settings
from core.database import create_db_and_tables
from core.logging_config import setup_logging
from core.middleware import (
    CorrelationMiddleware,
    ErrorHandlingMiddleware,
    PerformanceMiddleware,
)


# API Key security
async def verify_api_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")):
    if not x_api_key:
        raise HTTPException(status_code=401, detail="API key required")
    if not is_valid_api_key(x_api_key):
        if get_settings().api_key is None:
            # For development, any key that starts with pk_ is accepted
            raise HTTPException(status_code=401, detail="Invalid API key format")
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    setup_logging()
    logger = logging.getLogger("api.startup")
    try:
        await create_db_and_tables()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")

    logger.info("Service startup completed")
    yield

    # Cleanup on shutdown
    logger.info("Shutting down Challenge Engagement API")
    get_realtime_reconciler().close_all()
    logger.info("Cleanup completed")


app = FastAPI(
    title="Challenge Engagement API",
    description="Friendships, challenge participation, comments and leaderboards",
    version="1.0.0",
    lifespan=lifespan,
)


# CORS middleware (required for frontend communication)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:3001",
        "http://localhost:3003",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Added in reverse order of execution: correlation runs first
app.add_middleware(PerformanceMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(CorrelationMiddleware)


# Health routers FIRST (no authentication required for monitoring)
app.include_router(health_router)
app.include_router(monitoring_router)

# WebSocket router checks the api_key query parameter itself
app.include_router(websocket_router)

# Main API router (with API key verification for security)
app.include_router(router, dependencies=[Depends(verify_api_key)])


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
    )
