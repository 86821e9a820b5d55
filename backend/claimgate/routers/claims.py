"""
Claimgate - Claims Router

Public claimant surface: observation submission, direct claims and the
read-only views of the pool.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..dependencies import get_services
from ..models.ledger import LedgerCall
from ..rate_limit import client_origin, limiter, submit_limit
from ..services.claims.orchestrator import ClaimOutcome, ClaimValidationError, validate_claim_input
from ..services.container import Services
from ..services.ledger.errors import InsufficientFundsError, LedgerError
from ..services.ledger.gateway import submit_and_wait
from ..services.ledger.signatures import is_valid_address, normalize_address

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["claims"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class SubmitObservationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address: Optional[str] = None
    observation: Optional[str] = None
    token_id: Optional[int] = Field(default=None, alias="tokenId")


class DirectClaimRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address: str
    token_id: int = Field(alias="tokenId")
    observation: str
    signature: str


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, **extra})


def outcome_to_response(outcome: ClaimOutcome, explorer_tx_url: str) -> Dict[str, Any]:
    """camelCase JSON body for a submission outcome."""
    body: Dict[str, Any] = {
        "success": outcome.http_status < 400,
        "state": outcome.state.value,
        "approved": outcome.approved,
        "softReject": outcome.soft_reject,
        "score": outcome.score,
        "reason": outcome.reason,
        "message": outcome.message,
        "claimed": outcome.claimed,
        "broadcasting": outcome.broadcasting,
        "tokenId": outcome.token_id,
    }
    if outcome.question:
        body["question"] = outcome.question
    if outcome.attempts_remaining is not None:
        body["attemptsRemaining"] = outcome.attempts_remaining
    if outcome.blocked:
        body["blocked"] = True
    if outcome.remaining_seconds is not None:
        body["remainingSeconds"] = outcome.remaining_seconds
        body["remainingMins"] = -(-outcome.remaining_seconds // 60)
    if outcome.error_code:
        body["errorCode"] = outcome.error_code

    relay = outcome.relay
    if relay is not None and relay.handle:
        body["claimResult"] = {
            "txHandle": relay.handle,
            "etherscanUrl": f"{explorer_tx_url}{relay.handle}",
            "blockNumber": relay.block_number,
            "gasUsed": relay.gas_used,
            "tokenId": relay.token_id,
            "observation": relay.observation,
            "status": relay.status.value,
        }
    if relay is not None and relay.fallback is not None:
        body["claimData"] = relay.fallback.to_dict()
    return body


# =============================================================================
# SUBMISSION
# =============================================================================

@router.post("/submit-observation")
@limiter.limit(submit_limit)
async def submit_observation(
    request: Request,
    body: SubmitObservationRequest,
    services: Services = Depends(get_services),
):
    """
    Evaluate an observation and, if approved, claim a token for the address.

    Omit tokenId to receive a random available token.
    """
    try:
        submission = validate_claim_input(
            body.address, body.observation, body.token_id, max_supply=services.ledger.claimer.max_supply
        )
    except ClaimValidationError as e:
        return _error(400, e.message, field=e.field)

    outcome = await services.orchestrator.submit(client_origin(request), submission)
    return JSONResponse(
        status_code=outcome.http_status,
        content=outcome_to_response(outcome, services.settings.explorer_tx_url),
    )


@router.post("/claim")
async def direct_claim(body: DirectClaimRequest, services: Services = Depends(get_services)):
    """Submit a signed direct claim (completes a manual fallback)."""
    if not is_valid_address(body.address):
        return _error(400, "Invalid wallet address", field="address")

    call = LedgerCall(
        method="claim",
        sender=normalize_address(body.address),
        args=(body.token_id, body.observation, body.signature),
    )
    try:
        receipt = await submit_and_wait(
            services.ledger.gateway,
            call,
            gas_margin_percent=services.settings.gas_margin_percent,
            timeout=services.settings.confirm_timeout,
        )
    except LedgerError as e:
        logger.info(f"Direct claim by {body.address} for token {body.token_id} rejected: {e.code.value}")
        return _error(409, str(e), errorCode=e.code.value)
    except InsufficientFundsError as e:
        return _error(402, str(e), errorCode="INSUFFICIENT_FUNDS")

    services.observations.invalidate()
    return {
        "success": True,
        "claimed": True,
        "txHandle": receipt.tx_hash,
        "etherscanUrl": f"{services.settings.explorer_tx_url}{receipt.tx_hash}",
        "blockNumber": receipt.block_number,
        "gasUsed": receipt.gas_used,
        "tokenId": body.token_id,
    }


# =============================================================================
# READS
# =============================================================================

@router.get("/available-tokens")
async def available_tokens(services: Services = Depends(get_services)):
    tokens = await services.ledger.gateway.call("get_available_tokens")
    return {"availableTokens": tokens, "count": len(tokens), "maxSupply": services.ledger.claimer.max_supply}


@router.get("/has-claimed/{address}")
async def has_claimed(address: str, services: Services = Depends(get_services)):
    if not is_valid_address(address):
        return _error(400, "Invalid wallet address")
    claimed = await services.ledger.gateway.call("has_claimed", address)
    return {"address": normalize_address(address), "hasClaimed": claimed}


@router.get("/nonce/{address}")
async def get_nonce(address: str, services: Services = Depends(get_services)):
    if not is_valid_address(address):
        return _error(400, "Invalid wallet address")
    nonce = await services.ledger.gateway.call("get_nonce", address)
    return {"address": normalize_address(address), "nonce": nonce}


@router.get("/bitmaps")
async def bitmaps(services: Services = Depends(get_services)):
    """256-bit bitmaps as hex strings (bit i = token i)."""
    gateway = services.ledger.gateway
    claimed = await gateway.call("get_claimed_bitmap")
    deposited = await gateway.call("get_deposited_bitmap")
    return {
        "claimedBitmap": hex(claimed),
        "depositedBitmap": hex(deposited),
        "availableCount": await gateway.call("available_count"),
    }


@router.get("/observation/{token_id}")
async def get_observation(token_id: int, services: Services = Depends(get_services)):
    max_supply = services.ledger.claimer.max_supply
    if token_id < 1 or token_id > max_supply:
        return _error(400, f"Token id must be between 1 and {max_supply}")
    record = services.observations.get(token_id)
    if record is None:
        return _error(404, f"No observation recorded for token {token_id}")
    return record.to_dict()


@router.get("/observations")
async def list_observations(services: Services = Depends(get_services)):
    records = services.observations.all()
    return {"observations": [r.to_dict() for r in records], "count": len(records)}


@router.get("/tx-status/{handle}")
async def tx_status(handle: str, services: Services = Depends(get_services)):
    record = services.status_store.get(handle)
    if record is None:
        return _error(404, "Unknown transaction handle")
    return {
        "txHandle": record.handle,
        "status": record.status.value,
        "method": record.method,
        "recipient": record.recipient,
        "tokenId": record.token_id,
        "attempts": record.attempt_count,
        "blockNumber": record.block_number,
        "gasUsed": record.gas_used,
        "error": record.error,
        "claimData": record.fallback,
        "etherscanUrl": f"{services.settings.explorer_tx_url}{record.handle}",
        "updatedAt": record.updated_at.isoformat() if record.updated_at else None,
    }
