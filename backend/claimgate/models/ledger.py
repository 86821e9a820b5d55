"""
Claimgate - Ledger Value Objects

Plain dataclasses exchanged between the ledger engine, the gateway and
the services built on top of them.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .db_models import LedgerEventType


ZERO_ADDRESS = "0x" + "00" * 20


@dataclass(frozen=True)
class LedgerEvent:
    """An event as emitted by the ledger engine."""
    event_type: LedgerEventType
    token_id: Optional[int] = None
    account: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    block_number: int = 0
    tx_hash: str = ""
    log_index: int = 0
    sequence: Optional[int] = None  # Global log position, set once persisted
    recorded_at: Optional[datetime] = None


@dataclass(frozen=True)
class LedgerCall:
    """A state-changing call addressed to the claim engine."""
    method: str
    sender: str
    args: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class TxReceipt:
    """Outcome of a mined transaction. status is 1 on success, 0 on revert."""
    tx_hash: str
    status: int
    block_number: int
    gas_used: int
    revert_code: Optional[str] = None
    revert_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1
