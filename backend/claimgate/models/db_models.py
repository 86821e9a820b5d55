"""
Claimgate - SQLAlchemy ORM Models

ledger_events is append-only: rows are inserted by the ledger engine and
never updated or deleted. relay_operations is the status store behind
GET /api/tx-status/{handle}.
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Enum as SQLEnum, BigInteger
from ..database import Base


# =============================================================================
# ENUMS
# =============================================================================

class LedgerEventType(str, Enum):
    """Events emitted by the local ledger engine."""
    DEPLOYED = "DEPLOYED"
    TRANSFER = "TRANSFER"
    DEPOSITED = "DEPOSITED"
    WITHDRAWN = "WITHDRAWN"
    CLAIMED = "CLAIMED"
    OBSERVATION_RECORDED = "OBSERVATION_RECORDED"
    AUTHORITY_UPDATED = "AUTHORITY_UPDATED"
    CLAIM_STATUS_RESET = "CLAIM_STATUS_RESET"
    NONCE_RESET = "NONCE_RESET"
    PAUSED = "PAUSED"
    UNPAUSED = "UNPAUSED"
    EMERGENCY_WITHDRAWAL = "EMERGENCY_WITHDRAWAL"


class RelayStatus(str, Enum):
    """Lifecycle of a relayed ledger operation."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    MANUAL_FALLBACK = "MANUAL_FALLBACK"


# =============================================================================
# LEDGER EVENT LOG
# =============================================================================

class LedgerEventDB(Base):
    """One ledger event. The autoincrement id is the global log order."""
    __tablename__ = "ledger_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    block_number = Column(BigInteger, nullable=False, index=True)
    tx_hash = Column(String(66), nullable=False, index=True)
    log_index = Column(Integer, nullable=False, default=0)
    event_type = Column(SQLEnum(LedgerEventType), nullable=False, index=True)
    token_id = Column(Integer, nullable=True, index=True)
    account = Column(String(42), nullable=True, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    recorded_at = Column(DateTime, default=datetime.utcnow, nullable=False)


# =============================================================================
# RELAY STATUS STORE
# =============================================================================

class RelayOperationDB(Base):
    """Status record for a submitted relay operation, keyed by tx handle."""
    __tablename__ = "relay_operations"

    handle = Column(String(66), primary_key=True)
    method = Column(String(50), nullable=False)
    recipient = Column(String(42), nullable=False, index=True)
    token_id = Column(Integer, nullable=False)
    observation = Column(Text, nullable=False)
    attempt_count = Column(Integer, nullable=False, default=1)
    status = Column(SQLEnum(RelayStatus), nullable=False, default=RelayStatus.PENDING)
    block_number = Column(BigInteger, nullable=True)
    gas_used = Column(BigInteger, nullable=True)
    error = Column(Text, nullable=True)
    fallback = Column(JSON, nullable=True)  # Manual claim artifact when relay failed
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
