"""
Claimgate - Health Router

Liveness, readiness, a status summary and Prometheus metrics.
"""
import logging

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .. import __version__, metrics
from ..dependencies import get_services
from ..rate_limit import limiter
from ..services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def health(services: Services = Depends(get_services)):
    """Pool and relayer summary."""
    gateway = services.ledger.gateway
    authority = services.ledger.authority.address
    available = await gateway.call("available_count")
    metrics.AVAILABLE_TOKENS.set(available)
    return {
        "status": "ok",
        "version": __version__,
        "availableTokens": available,
        "paused": await gateway.call("is_paused"),
        "authority": authority,
        "relayerBalanceWei": str(await gateway.get_balance(authority)),
        "blockNumber": services.ledger.claimer.block_number,
        "relayMode": services.settings.relay_mode,
        "pendingConfirmations": services.relay.in_flight,
    }


@router.get("/metrics")
@limiter.exempt
async def prometheus_metrics():
    return Response(metrics.render_latest(), media_type=metrics.CONTENT_TYPE)


@router.get("/live")
@limiter.exempt
async def live():
    return {"status": "alive"}


@router.get("/ready")
@limiter.exempt
async def ready(services: Services = Depends(get_services)):
    """Ready when the event store answers."""
    try:
        with services.engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "unavailable"})
    return {"status": "ready"}
