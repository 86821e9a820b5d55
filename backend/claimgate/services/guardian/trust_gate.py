"""
Trust Gate

Per-origin strike counter in front of the evaluator.

Rules (hard-locked unless configured):
- Only hard rejections are strikes. Soft rejections and evaluator outages
  never touch the record.
- The third strike inside the counting window blocks the origin for one
  hour. A blocked origin is turned away before the evaluator runs.
- Any approval clears the record. An expired block clears on next check.

Records are in-memory and reset on restart; that only forgives strikes,
it never admits a claim twice.
"""
import logging
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_BLOCK_SECONDS = 60 * 60
DEFAULT_WINDOW_SECONDS = 60 * 60


@dataclass(frozen=True)
class TrustRecord:
    failure_count: int = 0
    blocked_until: Optional[float] = None
    first_failure_at: Optional[float] = None


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    failure_count: int = 0
    remaining_seconds: int = 0

    @property
    def remaining_minutes(self) -> int:
        return math.ceil(self.remaining_seconds / 60)


class TrustStore(Protocol):
    """Keyed record store with atomic read-modify-write per origin."""

    def get(self, origin: str) -> Optional[TrustRecord]: ...

    def update(
        self,
        origin: str,
        mutate: Callable[[Optional[TrustRecord]], Optional[TrustRecord]],
    ) -> Optional[TrustRecord]: ...

    def clear(self, origin: str) -> None: ...


class InMemoryTrustStore:
    """Dict-backed TrustStore; one lock makes every update atomic."""

    def __init__(self):
        self._records: Dict[str, TrustRecord] = {}
        self._lock = threading.Lock()

    def get(self, origin: str) -> Optional[TrustRecord]:
        with self._lock:
            return self._records.get(origin)

    def update(self, origin, mutate):
        with self._lock:
            record = mutate(self._records.get(origin))
            if record is None:
                self._records.pop(origin, None)
            else:
                self._records[origin] = record
            return record

    def clear(self, origin: str) -> None:
        with self._lock:
            self._records.pop(origin, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class TrustGate:
    def __init__(
        self,
        store: Optional[TrustStore] = None,
        clock: Callable[[], float] = time.time,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        block_seconds: int = DEFAULT_BLOCK_SECONDS,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
    ):
        self.store = store if store is not None else InMemoryTrustStore()
        self.clock = clock
        self.failure_threshold = failure_threshold
        self.block_seconds = block_seconds
        self.window_seconds = window_seconds

    def check(self, origin: str) -> GateDecision:
        """Blocked origins get the remaining block time; expired blocks are cleared."""
        now = self.clock()

        def expire(record: Optional[TrustRecord]) -> Optional[TrustRecord]:
            if record is not None and record.blocked_until is not None and now >= record.blocked_until:
                return None
            return record

        record = self.store.update(origin, expire)
        if record is None:
            return GateDecision(allowed=True)
        if record.blocked_until is not None:
            return GateDecision(
                allowed=False,
                failure_count=record.failure_count,
                remaining_seconds=max(1, math.ceil(record.blocked_until - now)),
            )
        return GateDecision(allowed=True, failure_count=record.failure_count)

    def record_failure(self, origin: str) -> TrustRecord:
        """Count a hard rejection; the threshold-th strike starts a block."""
        now = self.clock()

        def strike(record: Optional[TrustRecord]) -> TrustRecord:
            if record is None or (
                record.blocked_until is None
                and record.first_failure_at is not None
                and now - record.first_failure_at > self.window_seconds
            ):
                record = TrustRecord(first_failure_at=now)
            record = replace(record, failure_count=record.failure_count + 1)
            if record.failure_count >= self.failure_threshold and record.blocked_until is None:
                record = replace(record, blocked_until=now + self.block_seconds)
            return record

        record = self.store.update(origin, strike)
        if record.blocked_until is not None:
            logger.warning(
                f"Origin {origin} blocked for {self.block_seconds}s after "
                f"{record.failure_count} hard rejections"
            )
        else:
            logger.info(f"Origin {origin} strikes: {record.failure_count}/{self.failure_threshold}")
        return record

    def record_success(self, origin: str) -> None:
        self.store.clear(origin)

    def attempts_remaining(self, record: TrustRecord) -> int:
        return max(0, self.failure_threshold - record.failure_count)
