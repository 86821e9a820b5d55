"""
Observation Ledger

Read model of recorded observations. The event log is the only source of
truth; this class replays OBSERVATION_RECORDED events from genesis and
keeps the first one per token. The replayed map is cached with a TTL and
invalidated whenever a claim succeeds.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

from ...models.db_models import LedgerEventType
from ..ledger.event_store import LedgerEventStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObservationRecord:
    token_id: int
    text: str
    observer: Optional[str]
    block_number: int
    tx_hash: str
    recorded_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "text": self.text,
            "observer": self.observer,
            "blockNumber": self.block_number,
            "txHash": self.tx_hash,
            "recordedAt": self.recorded_at.isoformat() if self.recorded_at else None,
        }


class ObservationLedger:
    """TTL-cached replay of the observation events."""

    def __init__(
        self,
        event_store: LedgerEventStore,
        ttl: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.event_store = event_store
        self.ttl = ttl
        self._clock = clock
        self._lock = Lock()
        self._cache: Optional[Tuple[Dict[int, ObservationRecord], float]] = None

    def _records(self) -> Dict[int, ObservationRecord]:
        with self._lock:
            if self._cache is not None:
                records, expiry = self._cache
                if self._clock() < expiry:
                    return records
            records = self._replay()
            self._cache = (records, self._clock() + self.ttl)
            return records

    def _replay(self) -> Dict[int, ObservationRecord]:
        records: Dict[int, ObservationRecord] = {}
        for event in self.event_store.iter_events(event_type=LedgerEventType.OBSERVATION_RECORDED):
            if event.token_id in records:
                continue  # first observation wins
            records[event.token_id] = ObservationRecord(
                token_id=event.token_id,
                text=event.payload.get("text", ""),
                observer=event.account,
                block_number=event.block_number,
                tx_hash=event.tx_hash,
                recorded_at=event.recorded_at,
            )
        logger.debug(f"Replayed {len(records)} observations")
        return records

    def get(self, token_id: int) -> Optional[ObservationRecord]:
        return self._records().get(token_id)

    def all(self) -> List[ObservationRecord]:
        """Every recorded observation, ordered by token id."""
        records = self._records()
        return [records[token_id] for token_id in sorted(records)]

    def invalidate(self) -> None:
        with self._lock:
            self._cache = None
