"""
Ledger Error Taxonomy

LedgerError is a revert: the operation was rejected by the engine and
retrying it unchanged can never succeed. TransientLedgerError is the only
class the relay executor retries.
"""
from enum import Enum
from typing import Optional


class RevertCode(str, Enum):
    """Named conditions a ledger operation can revert with."""
    NOT_OWNER = "NOT_OWNER"
    NOT_AUTHORITY = "NOT_AUTHORITY"
    PAUSED = "PAUSED"
    NOT_PAUSED = "NOT_PAUSED"
    INVALID_TOKEN_ID = "INVALID_TOKEN_ID"
    INVALID_OBSERVATION = "INVALID_OBSERVATION"
    ALREADY_DEPOSITED = "ALREADY_DEPOSITED"
    NOT_DEPOSITED = "NOT_DEPOSITED"
    TOKEN_CLAIMED = "TOKEN_CLAIMED"
    TOKEN_NOT_AVAILABLE = "TOKEN_NOT_AVAILABLE"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    ZERO_ADDRESS = "ZERO_ADDRESS"
    NOT_TOKEN_HOLDER = "NOT_TOKEN_HOLDER"
    OBSERVATION_EXISTS = "OBSERVATION_EXISTS"
    REENTRANT_CALL = "REENTRANT_CALL"
    OUT_OF_GAS = "OUT_OF_GAS"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    INVALID_NONCE = "INVALID_NONCE"
    UNKNOWN_METHOD = "UNKNOWN_METHOD"


REVERT_MESSAGES = {
    RevertCode.NOT_OWNER: "Caller is not the owner",
    RevertCode.NOT_AUTHORITY: "Caller is not the claim authority",
    RevertCode.PAUSED: "Claims are paused",
    RevertCode.NOT_PAUSED: "Operation requires the pool to be paused",
    RevertCode.INVALID_TOKEN_ID: "Token id out of range",
    RevertCode.INVALID_OBSERVATION: "Observation must be 1-250 characters",
    RevertCode.ALREADY_DEPOSITED: "Token already deposited",
    RevertCode.NOT_DEPOSITED: "Token is not deposited in the pool",
    RevertCode.TOKEN_CLAIMED: "Token has already been claimed",
    RevertCode.TOKEN_NOT_AVAILABLE: "Token not available",
    RevertCode.ALREADY_CLAIMED: "Address has already claimed",
    RevertCode.INVALID_SIGNATURE: "Invalid signature",
    RevertCode.ZERO_ADDRESS: "Zero address not allowed",
    RevertCode.NOT_TOKEN_HOLDER: "Caller does not hold the token",
    RevertCode.OBSERVATION_EXISTS: "Token already has an observation",
    RevertCode.REENTRANT_CALL: "Reentrant call",
    RevertCode.OUT_OF_GAS: "Out of gas",
    RevertCode.INVALID_ADDRESS: "Not a valid address",
    RevertCode.INVALID_NONCE: "Nonce must be a non-negative integer",
    RevertCode.UNKNOWN_METHOD: "Unknown ledger method",
}


class LedgerError(Exception):
    """Operation reverted by the ledger engine."""

    def __init__(self, code: RevertCode, detail: Optional[str] = None):
        self.code = code
        self.detail = detail
        message = REVERT_MESSAGES.get(code, code.value)
        super().__init__(f"{message}: {detail}" if detail else message)


class TransientLedgerError(Exception):
    """Provider/network failure; the operation may be retried."""


class InsufficientFundsError(Exception):
    """Sender cannot pay for the transaction; retrying will not help."""
