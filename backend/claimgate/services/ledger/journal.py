"""
Event Journal

Buffers events emitted inside a ledger transaction and writes them to the
event store only when the outermost transaction commits. A rolled back
transaction discards its events, so the log never shows an operation that
did not happen.
"""
import logging
from typing import Callable, List, Optional

from ...models.db_models import LedgerEventType
from ...models.ledger import LedgerEvent
from .event_store import LedgerEventStore

logger = logging.getLogger(__name__)


class EventJournal:
    def __init__(self, store: Optional[LedgerEventStore] = None):
        self.store = store
        self._buffer: List[LedgerEvent] = []
        self._listeners: List[Callable[[List[LedgerEvent]], None]] = []

    def subscribe(self, listener: Callable[[List[LedgerEvent]], None]) -> None:
        """Call listener with every committed batch."""
        self._listeners.append(listener)

    def record(
        self,
        event_type: LedgerEventType,
        token_id: Optional[int] = None,
        account: Optional[str] = None,
        **payload,
    ) -> None:
        self._buffer.append(
            LedgerEvent(event_type=event_type, token_id=token_id, account=account, payload=payload)
        )

    def mark(self) -> int:
        return len(self._buffer)

    def discard(self, mark: int) -> None:
        del self._buffer[mark:]

    def pending(self) -> List[LedgerEvent]:
        return list(self._buffer)

    def flush(self, block_number: int, tx_hash: str) -> List[LedgerEvent]:
        """Stamp buffered events with block/tx metadata and persist them."""
        stamped = [
            LedgerEvent(
                event_type=event.event_type,
                token_id=event.token_id,
                account=event.account,
                payload=event.payload,
                block_number=block_number,
                tx_hash=tx_hash,
                log_index=index,
            )
            for index, event in enumerate(self._buffer)
        ]
        if self.store is not None:
            stamped = self.store.append(stamped)
        self._buffer.clear()

        for listener in self._listeners:
            try:
                listener(stamped)
            except Exception:
                logger.exception("Event listener failed")
        return stamped
