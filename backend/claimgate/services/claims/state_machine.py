"""
Claim State Machine

Deterministic lifecycle of one observation submission. Every request
starts at RECEIVED and must pass the trust gate before anything else
happens; transitions not listed in CLAIM_STATE_CONFIG are refused.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ClaimState(str, Enum):
    RECEIVED = "RECEIVED"
    GATE_CHECKED = "GATE_CHECKED"
    GATE_BLOCKED = "GATE_BLOCKED"
    EVALUATED = "EVALUATED"
    EVALUATOR_UNAVAILABLE = "EVALUATOR_UNAVAILABLE"
    SOFT_REJECTED = "SOFT_REJECTED"
    HARD_REJECTED = "HARD_REJECTED"
    INELIGIBLE = "INELIGIBLE"
    AUTHORIZED = "AUTHORIZED"
    RELAYED = "RELAYED"
    CONFIRMED = "CONFIRMED"
    RELAY_FAILED = "RELAY_FAILED"
    MANUAL_FALLBACK = "MANUAL_FALLBACK"


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

CLAIM_STATE_CONFIG = {
    ClaimState.RECEIVED: {
        "description": "Submission validated and accepted for processing",
        "allowed_transitions": [ClaimState.GATE_CHECKED, ClaimState.GATE_BLOCKED],
    },
    ClaimState.GATE_CHECKED: {
        "description": "Origin is not blocked",
        "allowed_transitions": [ClaimState.EVALUATED, ClaimState.INELIGIBLE],
    },
    ClaimState.GATE_BLOCKED: {
        "description": "Origin blocked after repeated hard rejections",
        "allowed_transitions": [],
    },
    ClaimState.EVALUATED: {
        "description": "Evaluator returned a verdict",
        "allowed_transitions": [
            ClaimState.SOFT_REJECTED,
            ClaimState.HARD_REJECTED,
            ClaimState.AUTHORIZED,
            ClaimState.EVALUATOR_UNAVAILABLE,
        ],
    },
    ClaimState.EVALUATOR_UNAVAILABLE: {
        "description": "Evaluator failed; rejected without counting against the origin",
        "allowed_transitions": [],
    },
    ClaimState.SOFT_REJECTED: {
        "description": "Near miss; free retry with a follow-up question",
        "allowed_transitions": [],
    },
    ClaimState.HARD_REJECTED: {
        "description": "Rejected; counted by the trust gate",
        "allowed_transitions": [],
    },
    ClaimState.INELIGIBLE: {
        "description": "Claimant already claimed or token not available",
        "allowed_transitions": [],
    },
    ClaimState.AUTHORIZED: {
        "description": "Approved and reserved; ready for relay",
        "allowed_transitions": [ClaimState.RELAYED, ClaimState.INELIGIBLE],
    },
    ClaimState.RELAYED: {
        "description": "Relay transaction submitted",
        "allowed_transitions": [ClaimState.CONFIRMED, ClaimState.RELAY_FAILED],
    },
    ClaimState.CONFIRMED: {
        "description": "Claim confirmed on the ledger",
        "allowed_transitions": [],
    },
    ClaimState.RELAY_FAILED: {
        "description": "Relay could not complete",
        "allowed_transitions": [ClaimState.MANUAL_FALLBACK],
    },
    ClaimState.MANUAL_FALLBACK: {
        "description": "Claimant received a signature for the direct claim path",
        "allowed_transitions": [],
    },
}


def can_transition(from_state: ClaimState, to_state: ClaimState) -> Tuple[bool, str]:
    """Returns (allowed, reason)."""
    allowed = CLAIM_STATE_CONFIG.get(from_state, {}).get("allowed_transitions", [])
    if to_state in allowed:
        return True, "Transition allowed"
    return False, f"Cannot transition from {from_state.value} to {to_state.value}"


def is_terminal_state(state: ClaimState) -> bool:
    return not CLAIM_STATE_CONFIG.get(state, {}).get("allowed_transitions", [])


class InvalidTransitionError(Exception):
    pass


@dataclass
class ClaimSession:
    """One submission's progress through the claim states."""
    origin: str
    address: str
    observation: str
    token_id: Optional[int] = None
    state: ClaimState = ClaimState.RECEIVED
    history: List[Dict[str, Any]] = field(default_factory=list)

    def advance(self, to_state: ClaimState, trigger: str = "") -> None:
        allowed, reason = can_transition(self.state, to_state)
        if not allowed:
            raise InvalidTransitionError(reason)
        self.history.append({
            "from_state": self.state.value,
            "to_state": to_state.value,
            "trigger": trigger,
            "at": datetime.utcnow().isoformat(),
        })
        self.state = to_state

    @property
    def terminal(self) -> bool:
        return is_terminal_state(self.state)

    def visited(self, state: ClaimState) -> bool:
        return self.state == state or any(h["from_state"] == state.value for h in self.history)
