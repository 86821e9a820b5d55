"""
Claimgate - Admin Router

Owner operations on the token pool, submitted through the ledger gateway
as the owner account. Every endpoint requires the X-Admin-Key header.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from ..dependencies import get_services, verify_admin_key
from ..models.ledger import LedgerCall
from ..services.container import Services
from ..services.ledger.errors import InsufficientFundsError, LedgerError
from ..services.ledger.gateway import submit_and_wait

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TokenIdsRequest(_CamelModel):
    token_ids: List[int] = Field(alias="tokenIds", min_length=1)


class WithdrawRequest(TokenIdsRequest):
    to: str


class SetAuthorityRequest(_CamelModel):
    authority: str


class ClaimantRequest(_CamelModel):
    claimant: str


class ResetNonceRequest(ClaimantRequest):
    value: int = 0


class RecipientRequest(_CamelModel):
    to: str


class RelayObservationRequest(_CamelModel):
    holder: str
    token_id: int = Field(alias="tokenId")
    observation: str


class ClearOriginRequest(_CamelModel):
    origin: str


# =============================================================================
# HELPERS
# =============================================================================

async def _submit(services: Services, sender: str, method: str, *args) -> dict:
    call = LedgerCall(method=method, sender=sender, args=args)
    try:
        receipt = await submit_and_wait(
            services.ledger.gateway,
            call,
            gas_margin_percent=services.settings.gas_margin_percent,
            timeout=services.settings.confirm_timeout,
        )
    except LedgerError as e:
        logger.warning(f"Admin {method} reverted: {e}")
        raise HTTPException(status_code=409, detail={"code": e.code.value, "message": str(e)})
    except InsufficientFundsError as e:
        raise HTTPException(status_code=402, detail={"code": "INSUFFICIENT_FUNDS", "message": str(e)})

    logger.info(f"Admin {method} mined in block {receipt.block_number}")
    return {
        "success": True,
        "method": method,
        "txHandle": receipt.tx_hash,
        "blockNumber": receipt.block_number,
        "gasUsed": receipt.gas_used,
    }


async def _as_owner(services: Services, method: str, *args) -> dict:
    return await _submit(services, services.ledger.owner.address, method, *args)


# =============================================================================
# OWNER OPERATIONS
# =============================================================================

@router.post("/deposit")
async def deposit(
    body: TokenIdsRequest,
    services: Services = Depends(get_services),
    _: bool = Depends(verify_admin_key),
):
    return await _as_owner(services, "deposit", body.token_ids)


@router.post("/withdraw")
async def withdraw(
    body: WithdrawRequest,
    services: Services = Depends(get_services),
    _: bool = Depends(verify_admin_key),
):
    return await _as_owner(services, "withdraw", body.token_ids, body.to)


@router.post("/set-authority")
async def set_authority(
    body: SetAuthorityRequest,
    services: Services = Depends(get_services),
    _: bool = Depends(verify_admin_key),
):
    return await _as_owner(services, "set_authority", body.authority)


@router.post("/reset-claim-status")
async def reset_claim_status(
    body: ClaimantRequest,
    services: Services = Depends(get_services),
    _: bool = Depends(verify_admin_key),
):
    return await _as_owner(services, "reset_claim_status", body.claimant)


@router.post("/reset-nonce")
async def reset_nonce(
    body: ResetNonceRequest,
    services: Services = Depends(get_services),
    _: bool = Depends(verify_admin_key),
):
    if body.value < 0:
        raise HTTPException(status_code=400, detail="Nonce must be non-negative")
    return await _as_owner(services, "reset_nonce", body.claimant, body.value)


@router.post("/pause")
async def pause(services: Services = Depends(get_services), _: bool = Depends(verify_admin_key)):
    return await _as_owner(services, "pause")


@router.post("/unpause")
async def unpause(services: Services = Depends(get_services), _: bool = Depends(verify_admin_key)):
    return await _as_owner(services, "unpause")


@router.post("/emergency-withdraw-all")
async def emergency_withdraw_all(
    body: RecipientRequest,
    services: Services = Depends(get_services),
    _: bool = Depends(verify_admin_key),
):
    """Move every deposited token out of the pool. Requires the pool to be paused."""
    return await _as_owner(services, "emergency_withdraw_all", body.to)


# =============================================================================
# AUTHORITY OPERATIONS
# =============================================================================

@router.post("/relay-add-observation")
async def relay_add_observation(
    body: RelayObservationRequest,
    services: Services = Depends(get_services),
    _: bool = Depends(verify_admin_key),
):
    """Record the observation for a token the holder already owns."""
    result = await _submit(
        services,
        services.ledger.authority.address,
        "relay_add_observation",
        body.holder,
        body.token_id,
        body.observation,
    )
    services.observations.invalidate()
    return result


# =============================================================================
# TRUST GATE
# =============================================================================

@router.get("/trust/{origin}")
async def trust_status(
    origin: str,
    services: Services = Depends(get_services),
    _: bool = Depends(verify_admin_key),
):
    decision = services.trust_gate.check(origin)
    return {
        "origin": origin,
        "blocked": not decision.allowed,
        "failureCount": decision.failure_count,
        "remainingSeconds": decision.remaining_seconds,
    }


@router.post("/trust/clear")
async def clear_origin(
    body: ClearOriginRequest,
    services: Services = Depends(get_services),
    _: bool = Depends(verify_admin_key),
):
    services.trust_gate.record_success(body.origin)
    logger.info(f"Trust record cleared for {body.origin}")
    return {"success": True, "origin": body.origin}
