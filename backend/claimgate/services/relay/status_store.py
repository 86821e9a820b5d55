"""
Relay Status Store

One row per submitted relay transaction, keyed by its handle (the tx
hash). Optimistic confirmations update the row after the HTTP request
that created it has already returned.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from ...models.db_models import RelayOperationDB, RelayStatus

logger = logging.getLogger(__name__)


@dataclass
class RelayOperationRecord:
    handle: str
    method: str
    recipient: str
    token_id: int
    observation: str
    attempt_count: int
    status: RelayStatus
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    error: Optional[str] = None
    fallback: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RelayStatusStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def record_pending(
        self,
        handle: str,
        method: str,
        recipient: str,
        token_id: int,
        observation: str,
        attempt_count: int,
    ) -> None:
        with self._session_factory() as session:
            session.add(RelayOperationDB(
                handle=handle,
                method=method,
                recipient=recipient,
                token_id=token_id,
                observation=observation,
                attempt_count=attempt_count,
                status=RelayStatus.PENDING,
            ))
            session.commit()

    def mark_confirmed(self, handle: str, block_number: int, gas_used: int) -> None:
        self._update(handle, status=RelayStatus.CONFIRMED, block_number=block_number, gas_used=gas_used)

    def mark_failed(
        self,
        handle: str,
        error: str,
        fallback: Optional[Dict[str, Any]] = None,
        block_number: Optional[int] = None,
    ) -> None:
        status = RelayStatus.MANUAL_FALLBACK if fallback else RelayStatus.FAILED
        self._update(handle, status=status, error=error, fallback=fallback, block_number=block_number)

    def _update(self, handle: str, **values: Any) -> None:
        with self._session_factory() as session:
            row = session.get(RelayOperationDB, handle)
            if row is None:
                logger.warning(f"Relay status update for unknown handle {handle}")
                return
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = datetime.utcnow()
            session.commit()

    def get(self, handle: str) -> Optional[RelayOperationRecord]:
        with self._session_factory() as session:
            row = session.get(RelayOperationDB, handle)
            if row is None:
                return None
            return RelayOperationRecord(
                handle=row.handle,
                method=row.method,
                recipient=row.recipient,
                token_id=row.token_id,
                observation=row.observation,
                attempt_count=row.attempt_count,
                status=row.status,
                block_number=row.block_number,
                gas_used=row.gas_used,
                error=row.error,
                fallback=row.fallback,
                created_at=row.created_at,
                updated_at=row.updated_at,
            )
