"""
Claim Orchestrator

Drives one observation submission through the claim states:

    RECEIVED -> trust gate -> eligibility pre-check -> evaluator
             -> reservation -> eligibility re-check -> relay

Core Principles:
1. No path skips the trust gate. A blocked origin never reaches the
   evaluator.
2. Only hard rejections are strikes; approvals clear the record.
3. A claimant and a token are reserved in-process from authorization until
   the relay finishes, so two concurrent approvals cannot race to the
   ledger for the same claimant or token. The ledger still has the final
   word.
4. Eligibility is checked before the evaluator (cheap refusal) and again
   immediately before submission (state may have moved meanwhile).
"""
import logging
import random
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional, Set

from ... import metrics
from ...config import MAX_OBSERVATION_LENGTH, MAX_SUPPLY
from ...models.db_models import RelayStatus
from ..guardian.evaluator import (
    Approved,
    EvaluationResult,
    HardReject,
    ObservationEvaluator,
    SoftReject,
    Unavailable,
    evaluate_with_timeout,
)
from ..guardian.trust_gate import TrustGate
from ..ledger.errors import REVERT_MESSAGES, RevertCode
from ..ledger.gateway import LedgerGateway
from ..ledger.signatures import is_valid_address, is_zero_address, normalize_address
from ..relay.executor import RelayExecutor, RelayResult
from .state_machine import ClaimSession, ClaimState

logger = logging.getLogger(__name__)

CLAIM_IN_PROGRESS = "CLAIM_IN_PROGRESS"


# =============================================================================
# INPUT VALIDATION
# =============================================================================

class ClaimValidationError(ValueError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


@dataclass(frozen=True)
class ClaimSubmission:
    address: str
    observation: str
    token_id: Optional[int] = None


def validate_claim_input(
    address,
    observation,
    token_id=None,
    max_supply: int = MAX_SUPPLY,
) -> ClaimSubmission:
    """Shape checks that run before the gate. Nothing is recorded on failure."""
    if not is_valid_address(address) or is_zero_address(address):
        raise ClaimValidationError("Invalid wallet address", field="address")

    if not isinstance(observation, str):
        raise ClaimValidationError("Observation must be text", field="observation")
    text = observation.strip()
    if not text:
        raise ClaimValidationError("Observation is required", field="observation")
    if len(text) > MAX_OBSERVATION_LENGTH:
        raise ClaimValidationError(
            f"Observation must be at most {MAX_OBSERVATION_LENGTH} characters",
            field="observation",
        )

    if token_id is not None:
        if isinstance(token_id, bool) or not isinstance(token_id, int):
            raise ClaimValidationError("Token id must be an integer", field="tokenId")
        if token_id < 1 or token_id > max_supply:
            raise ClaimValidationError(f"Token id must be between 1 and {max_supply}", field="tokenId")

    return ClaimSubmission(address=normalize_address(address), observation=text, token_id=token_id)


# =============================================================================
# OUTCOME
# =============================================================================

@dataclass
class ClaimOutcome:
    session: ClaimSession
    http_status: int
    message: str
    approved: bool = False
    soft_reject: bool = False
    score: Optional[int] = None
    reason: Optional[str] = None
    question: Optional[str] = None
    claimed: bool = False
    broadcasting: bool = False
    token_id: Optional[int] = None
    relay: Optional[RelayResult] = None
    attempts_remaining: Optional[int] = None
    blocked: bool = False
    remaining_seconds: Optional[int] = None
    error_code: Optional[str] = None

    @property
    def state(self) -> ClaimState:
        return self.session.state


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class ClaimOrchestrator:

    def __init__(
        self,
        gateway: LedgerGateway,
        trust_gate: TrustGate,
        evaluator: ObservationEvaluator,
        relay: RelayExecutor,
        evaluator_timeout: float = 15.0,
        rng: Optional[random.Random] = None,
    ):
        self.gateway = gateway
        self.trust_gate = trust_gate
        self.evaluator = evaluator
        self.relay = relay
        self.evaluator_timeout = evaluator_timeout
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._claimants_in_flight: Set[str] = set()
        self._tokens_in_flight: Set[int] = set()

    async def submit(self, origin: str, submission: ClaimSubmission) -> ClaimOutcome:
        session = ClaimSession(
            origin=origin,
            address=submission.address,
            observation=submission.observation,
            token_id=submission.token_id,
        )
        outcome = await self._run(session)
        metrics.SUBMISSIONS_TOTAL.labels(outcome=outcome.state.value).inc()
        logger.info(
            f"Submission from {origin} for {submission.address} ended in {outcome.state.value} "
            f"(token={outcome.token_id}, status={outcome.http_status})"
        )
        return outcome

    async def _run(self, session: ClaimSession) -> ClaimOutcome:
        # Gate
        decision = self.trust_gate.check(session.origin)
        if not decision.allowed:
            session.advance(ClaimState.GATE_BLOCKED, "origin blocked")
            metrics.GATE_BLOCKS_TOTAL.inc()
            return ClaimOutcome(
                session=session,
                http_status=429,
                message=(
                    f"Too many rejected observations. Try again in "
                    f"{decision.remaining_minutes} minutes."
                ),
                blocked=True,
                remaining_seconds=decision.remaining_seconds,
                attempts_remaining=0,
                token_id=session.token_id,
            )
        session.advance(ClaimState.GATE_CHECKED, "origin allowed")

        # Cheap refusal before spending an evaluator call
        code = await self._ineligibility(session.address, session.token_id)
        if code is not None:
            session.advance(ClaimState.INELIGIBLE, code)
            return self._ineligible(session, code)

        # Evaluate
        result = await evaluate_with_timeout(
            self.evaluator, session.observation, session.token_id, self.evaluator_timeout
        )
        session.advance(ClaimState.EVALUATED, type(result).__name__)
        return await self._handle_verdict(session, result)

    async def _handle_verdict(self, session: ClaimSession, result: EvaluationResult) -> ClaimOutcome:
        if isinstance(result, Unavailable):
            session.advance(ClaimState.EVALUATOR_UNAVAILABLE, result.detail)
            metrics.EVALUATOR_ERRORS_TOTAL.inc()
            return ClaimOutcome(
                session=session,
                http_status=503,
                message="Observation could not be evaluated right now. This does not count against you; please try again shortly.",
                token_id=session.token_id,
                error_code="EVALUATOR_UNAVAILABLE",
            )

        if isinstance(result, SoftReject):
            session.advance(ClaimState.SOFT_REJECTED, f"score {result.score}")
            current = self.trust_gate.check(session.origin)
            return ClaimOutcome(
                session=session,
                http_status=200,
                message="Almost there. Look again and tell us more.",
                soft_reject=True,
                score=result.score,
                reason=result.reason,
                question=result.question,
                token_id=session.token_id,
                attempts_remaining=self.trust_gate.failure_threshold - current.failure_count,
            )

        if isinstance(result, HardReject):
            session.advance(ClaimState.HARD_REJECTED, f"score {result.score}")
            record = self.trust_gate.record_failure(session.origin)
            remaining = self.trust_gate.attempts_remaining(record)
            blocked = record.blocked_until is not None
            message = (
                "Observation rejected. Too many rejected attempts; try again in an hour."
                if blocked
                else f"Observation rejected. {remaining} attempts remaining."
            )
            return ClaimOutcome(
                session=session,
                http_status=200,
                message=message,
                score=result.score,
                reason=result.reason,
                token_id=session.token_id,
                attempts_remaining=remaining,
                blocked=blocked,
            )

        return await self._authorize_and_relay(session, result)

    async def _authorize_and_relay(self, session: ClaimSession, verdict: Approved) -> ClaimOutcome:
        candidates = None
        if session.token_id is None:
            candidates = await self.gateway.call("get_available_tokens")

        with self._reservation(session.address, session.token_id, candidates) as (token_id, code):
            if code is not None:
                session.advance(ClaimState.INELIGIBLE, code)
                return self._ineligible(session, code, verdict)

            session.token_id = token_id
            session.advance(ClaimState.AUTHORIZED, f"token {token_id}")
            self.trust_gate.record_success(session.origin)

            code = await self._ineligibility(session.address, token_id)
            if code is not None:
                session.advance(ClaimState.INELIGIBLE, f"re-check: {code}")
                return self._ineligible(session, code, verdict)

            relay = await self.relay.relay_claim(session.address, token_id, session.observation)
            session.advance(ClaimState.RELAYED, relay.handle or "not submitted")
            return self._relay_outcome(session, verdict, relay)

    def _relay_outcome(self, session: ClaimSession, verdict: Approved, relay: RelayResult) -> ClaimOutcome:
        outcome = ClaimOutcome(
            session=session,
            http_status=200,
            message="",
            approved=True,
            score=verdict.score,
            reason=verdict.reason,
            token_id=relay.token_id,
            relay=relay,
        )
        if relay.pending:
            outcome.claimed = True
            outcome.broadcasting = True
            outcome.message = f"Observation approved. Token #{relay.token_id} is on its way."
            return outcome
        if relay.confirmed:
            session.advance(ClaimState.CONFIRMED, f"block {relay.block_number}")
            outcome.claimed = True
            outcome.message = f"Observation approved. Token #{relay.token_id} claimed."
            return outcome

        session.advance(ClaimState.RELAY_FAILED, relay.error_code or "relay failed")
        outcome.error_code = relay.error_code
        if relay.status == RelayStatus.MANUAL_FALLBACK:
            session.advance(ClaimState.MANUAL_FALLBACK, "signature issued")
            outcome.message = (
                "Observation approved, but the automatic claim could not be completed. "
                "Use the signature provided to claim the token yourself."
            )
            return outcome

        outcome.http_status = 503
        outcome.message = "Observation approved, but the claim could not be submitted. Please try again later."
        return outcome

    def _ineligible(
        self,
        session: ClaimSession,
        code: str,
        verdict: Optional[Approved] = None,
    ) -> ClaimOutcome:
        if code == CLAIM_IN_PROGRESS:
            message = "A claim for this address or token is already in progress"
        else:
            message = REVERT_MESSAGES.get(RevertCode(code), code)
        return ClaimOutcome(
            session=session,
            http_status=409,
            message=message,
            approved=verdict is not None,
            score=verdict.score if verdict else None,
            reason=verdict.reason if verdict else None,
            token_id=session.token_id,
            error_code=code,
        )

    async def _ineligibility(self, address: str, token_id: Optional[int]) -> Optional[str]:
        """Named reason the claim cannot go through right now, or None."""
        if await self.gateway.call("is_paused"):
            return RevertCode.PAUSED.value
        if await self.gateway.call("has_claimed", address):
            return RevertCode.ALREADY_CLAIMED.value
        if token_id is None:
            if await self.gateway.call("available_count") == 0:
                return RevertCode.TOKEN_NOT_AVAILABLE.value
        elif not await self.gateway.call("is_token_available", token_id):
            return RevertCode.TOKEN_NOT_AVAILABLE.value
        return None

    @contextmanager
    def _reservation(
        self,
        address: str,
        token_id: Optional[int],
        candidates: Optional[List[int]] = None,
    ) -> Iterator:
        """Reserve claimant and token; yields (token_id, None) or (None, refusal code)."""
        with self._lock:
            if address in self._claimants_in_flight:
                refusal = CLAIM_IN_PROGRESS
            elif token_id is not None and token_id in self._tokens_in_flight:
                refusal = CLAIM_IN_PROGRESS
            else:
                refusal = None
                if token_id is None:
                    token_id = self._pick_token(candidates or [])
                    if token_id is None:
                        refusal = RevertCode.TOKEN_NOT_AVAILABLE.value
            if refusal is None:
                self._claimants_in_flight.add(address)
                self._tokens_in_flight.add(token_id)

        if refusal is not None:
            yield None, refusal
            return
        try:
            yield token_id, None
        finally:
            with self._lock:
                self._claimants_in_flight.discard(address)
                self._tokens_in_flight.discard(token_id)

    def _pick_token(self, candidates: List[int]) -> Optional[int]:
        available = [
            t for t in candidates
            if t not in self._tokens_in_flight
        ]
        if not available:
            return None
        return self._rng.choice(available)
