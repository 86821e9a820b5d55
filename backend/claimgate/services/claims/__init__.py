"""
Claim Orchestration

Submission lifecycle from gate check to ledger confirmation.
"""
from .orchestrator import ClaimOrchestrator, ClaimOutcome, ClaimSubmission, ClaimValidationError, validate_claim_input
from .state_machine import CLAIM_STATE_CONFIG, ClaimSession, ClaimState

__all__ = [
    "ClaimOrchestrator",
    "ClaimOutcome",
    "ClaimSubmission",
    "ClaimValidationError",
    "validate_claim_input",
    "CLAIM_STATE_CONFIG",
    "ClaimSession",
    "ClaimState",
]
