"""Gains Sandbox FastAPI Application.

What-if capital gains previews: sessions are queued over REST, computed by
a background worker pool, and delivered over WebSocket or by polling.
"""

import logging
import sys
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .models import database, init_db, configure_database
from .routers import health, whatif
from .routers import websocket as ws_router
from .services.config import config_service, ConfigValidationException
from .services.logging_service import setup_logging
from .services.runtime import SandboxRuntime

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup: Validate configuration
    try:
        config_service.load_and_validate()
    except ConfigValidationException as e:
        print(f"FATAL: {e}")
        print("Server cannot start with invalid configuration.")
        sys.exit(1)

    setup_logging(config_service.get("logging.level"), config_service.get("logging.format"))

    configure_database(config_service.get("database.url"))
    await init_db()
    logger.info("Database initialized")

    runtime = SandboxRuntime.from_config(config_service, database.async_session_maker)
    app.state.sandbox = runtime
    await runtime.open()

    yield

    logger.info("Initiating graceful shutdown...")
    await runtime.close()
    await database.engine.dispose()
    logger.info("Graceful shutdown complete")


app = FastAPI(
    title="Gains Sandbox API",
    description="What-if capital gains under alternate cost basis methods",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(whatif.router, prefix="/api/what-if", tags=["What-If"])
app.include_router(ws_router.router, prefix="/api", tags=["WebSocket"])


@app.get("/")
async def root():
    """Root endpoint redirect to docs."""
    return {"message": "Gains Sandbox API", "docs": "/docs"}
