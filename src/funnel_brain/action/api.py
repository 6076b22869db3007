"""FastAPI application: funnel pipeline and experiment endpoints."""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from funnel_brain.action.routers.experiments import router as experiments_router
from funnel_brain.action.routers.pipeline import router as pipeline_router
from funnel_brain.db.connection import engine
from funnel_brain.db.models import Base
from funnel_brain.errors import FunnelBrainError

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

app = FastAPI(title="Funnel Brain API", version=VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Include modular routers
# ---------------------------------------------------------------------------

app.include_router(pipeline_router)
app.include_router(experiments_router)


@app.on_event("startup")
async def _ensure_tables():
    """Create missing tables. Existing tables are left untouched."""
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%d tables)", len(Base.metadata.tables))
    except Exception:
        logger.exception("Failed to ensure database schema")


@app.exception_handler(FunnelBrainError)
async def _domain_error_handler(request: Request, exc: FunnelBrainError):
    """Domain errors that escape a route still answer with their own status."""
    logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def _global_error_handler(request: Request, exc: Exception):
    """Catch-all: ensure every unhandled error returns JSON, not raw HTML."""
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={
            "detail": f"Server error: {exc}",
            "error": str(exc),
            "status": "failed",
        },
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok", "version": VERSION}
