"""
StudioSign - FastAPI Application Entry Point
"""

from __future__ import annotations

import logging
import traceback
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.api.v1 import auth, envelopes, signing
from app.config import get_settings
from app.core.exceptions import StudioSignError
from app.core.logging import configure_logging

settings = get_settings()
logger = logging.getLogger(__name__)


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and initialize DB tables on startup."""
    from app.database import init_db

    configure_logging(settings.LOG_LEVEL)
    init_db()
    logger.info("%s %s started (%s)", settings.APP_TITLE, settings.APP_VERSION, settings.ENVIRONMENT)
    yield


# ─── App ──────────────────────────────────────────────────────────────────────

app = FastAPI(
    title=settings.APP_TITLE,
    version=settings.APP_VERSION,
    description=(
        "StudioSign - multi-party e-signature envelopes for the studio back office. "
        "Sequential or parallel signing, magic-link + OTP signer authentication, "
        "append-only audit trail."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# ─── CORS ─────────────────────────────────────────────────────────────────────

origins = settings.ALLOWED_ORIGINS if settings.is_production else ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Exception handlers ───────────────────────────────────────────────────────


@app.exception_handler(StudioSignError)
async def studiosign_exception_handler(request: Request, exc: StudioSignError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status_code,
        content=exc.to_dict(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    if settings.ENVIRONMENT == "development":
        return JSONResponse(
            status_code=500,
            content={
                "error_code": "INTERNAL_ERROR",
                "message": str(exc),
                "traceback": traceback.format_exc(),
            },
        )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_ERROR",
            "message": "An internal error occurred.",
        },
    )


# ─── Health endpoint ──────────────────────────────────────────────────────────


@app.get("/health", tags=["health"])
async def health_check() -> Dict[str, Any]:
    """Returns system health including DB connectivity."""
    from app.database import engine

    db_ok = False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable", exc_info=True)

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "db_connected": db_ok,
        "email_enabled": settings.EMAIL_ENABLED,
    }


# ─── Routers ──────────────────────────────────────────────────────────────────

API_PREFIX = "/api/v1"

app.include_router(auth.router, prefix=API_PREFIX)
app.include_router(envelopes.router, prefix=API_PREFIX)
app.include_router(signing.router, prefix=API_PREFIX)
