"""
Ledger Event Store

Append-only persistence for ledger events.

Core Principles:
1. Events are inserted, never updated, never deleted.
2. The autoincrement id is the global order; replay follows it.
3. One transaction's events are written together or not at all.
"""
from typing import Iterable, Iterator, List, Optional

from sqlalchemy.orm import sessionmaker

from ...models.db_models import LedgerEventDB, LedgerEventType
from ...models.ledger import LedgerEvent


class LedgerEventStore:
    """SQLAlchemy-backed append-only event log."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def append(self, events: Iterable[LedgerEvent]) -> List[LedgerEvent]:
        """Persist a batch of events atomically. Returns them with sequence set."""
        rows = [
            LedgerEventDB(
                block_number=event.block_number,
                tx_hash=event.tx_hash,
                log_index=event.log_index,
                event_type=event.event_type,
                token_id=event.token_id,
                account=event.account,
                payload=dict(event.payload),
            )
            for event in events
        ]
        if not rows:
            return []

        with self._session_factory() as session:
            session.add_all(rows)
            session.commit()
            return [_to_event(row) for row in rows]

    def iter_events(
        self,
        event_type: Optional[LedgerEventType] = None,
        token_id: Optional[int] = None,
    ) -> Iterator[LedgerEvent]:
        """Yield events in log order, optionally filtered."""
        with self._session_factory() as session:
            query = session.query(LedgerEventDB)
            if event_type is not None:
                query = query.filter(LedgerEventDB.event_type == event_type)
            if token_id is not None:
                query = query.filter(LedgerEventDB.token_id == token_id)
            rows = query.order_by(LedgerEventDB.id.asc()).all()
        for row in rows:
            yield _to_event(row)

    def count(self) -> int:
        with self._session_factory() as session:
            return session.query(LedgerEventDB).count()

    def last_block(self) -> int:
        with self._session_factory() as session:
            row = session.query(LedgerEventDB).order_by(LedgerEventDB.id.desc()).first()
            return row.block_number if row else 0


def _to_event(row: LedgerEventDB) -> LedgerEvent:
    return LedgerEvent(
        event_type=row.event_type,
        token_id=row.token_id,
        account=row.account,
        payload=dict(row.payload or {}),
        block_number=row.block_number,
        tx_hash=row.tx_hash,
        log_index=row.log_index,
        sequence=row.id,
        recorded_at=row.recorded_at,
    )
