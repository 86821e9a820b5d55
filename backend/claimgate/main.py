"""
Claimgate - FastAPI Application

Free distribution of a fixed 100-token collection. A token is released
only to an address whose written observation of the artwork is approved
by the evaluator; the service then pays for the claim on the claimant's
behalf.

Architecture:
- Trust Gate: per-origin strikes; three hard rejections block for an hour
- Evaluator: Approved | SoftReject | HardReject | Unavailable
- Claim Orchestrator: gate -> eligibility -> evaluator -> reservation -> relay
- Relay Executor: estimate + margin, bounded retries, manual-claim fallback
- Local Ledger: bitmap token state, nonce-bound signatures, event log
"""
import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from . import __version__
from .config import get_settings
from .logging_config import configure_logging, request_id_var
from .rate_limit import configure_rate_limits, limiter, rate_limit_exceeded_handler
from .routers import admin_router, claims_router, health_router
from .services.container import Services, build_services

logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the app. Services are built from the environment unless given."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            configure_logging()
            app.state.services = build_services(get_settings())
        yield
        await app.state.services.relay.drain()
        logger.info("Shutdown complete")

    app = FastAPI(
        lifespan=lifespan,
        title="Claimgate",
        description="""
    Claimgate - Observation-Gated Token Claims

    ## Flow
    1. **Submit**: address + observation (+ optional tokenId)
    2. **Gate**: blocked origins are refused before evaluation
    3. **Evaluate**: approve, ask a follow-up question, or reject
    4. **Relay**: the service claims the token for the address

    ## Key Principles
    - One token per address, one claim per token
    - Authorization signatures are bound to the claimant's nonce
    - Observations are permanent once recorded
    """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.services = services
    app.state.limiter = limiter

    settings = services.settings if services is not None else get_settings()
    configure_rate_limits(settings)
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        field = ".".join(str(part) for part in errors[0]["loc"][1:]) if errors else None
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Invalid request", "field": field},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", "-")
        logger.exception(f"Unhandled error on {request.method} {request.url.path} (request {request_id})")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error", "requestId": request_id},
        )

    app.include_router(claims_router)
    app.include_router(admin_router)
    app.include_router(health_router)

    @app.get("/")
    async def root():
        """Root endpoint - API information."""
        return {
            "name": "Claimgate",
            "version": __version__,
            "description": "Observation-gated token claims",
            "docs": "/docs",
        }

    return app


app = create_app()


def run() -> None:
    """Console entry point."""
    uvicorn.run(
        "claimgate.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
