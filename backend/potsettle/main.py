"""
PotSettle FastAPI Application Entry Point.

Configures logging, CORS, routes, error handlers and the MongoDB
connection lifecycle.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from potsettle.config import settings
from potsettle.dal.database import connect_to_mongo, close_mongo_connection, ensure_indexes, get_database
from potsettle.errors import (
    NegativePotError,
    ProofIntegrityError,
    SettlementSystemError,
    SnapshotUnavailableError,
)
from potsettle.routes.health import router as health_router
from potsettle.routes.sessions import router as sessions_router
from potsettle.routes.settlement import router as settlement_router
from potsettle.routes.calculator import router as calculator_router

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("potsettle.app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.
    Handles startup and shutdown events for MongoDB connection.
    """
    try:
        await connect_to_mongo()
        db = get_database()
        await ensure_indexes(db)
        logger.info("PotSettle v%s started with database connection", settings.APP_VERSION)
    except Exception as e:
        # The calculator endpoints work without a database.
        logger.warning(
            "Failed to connect to MongoDB during startup: %s. "
            "Session endpoints will fail until a connection is established.",
            str(e)
        )
        logger.info("PotSettle v%s started WITHOUT database connection", settings.APP_VERSION)

    yield

    await close_mongo_connection()
    logger.info("PotSettle shutdown complete")


app = FastAPI(
    title="PotSettle API",
    description="Home poker session ledger, settlement optimizer and proof engine",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=600,
)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

_ERROR_STATUS = {
    NegativePotError: status.HTTP_409_CONFLICT,
    ProofIntegrityError: status.HTTP_409_CONFLICT,
    SnapshotUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@app.exception_handler(SettlementSystemError)
async def settlement_error_handler(request: Request, exc: SettlementSystemError):
    """Map invariant and integrity failures to JSON error responses."""
    status_code = _ERROR_STATUS.get(type(exc), status.HTTP_409_CONFLICT)
    logger.error(
        "%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message
    )
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


# Register routers
app.include_router(health_router)
app.include_router(health_router, prefix="/api")
app.include_router(sessions_router, prefix="/api")
app.include_router(settlement_router, prefix="/api")
app.include_router(calculator_router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "PotSettle API",
        "version": settings.APP_VERSION,
        "status": "operational",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "potsettle.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
