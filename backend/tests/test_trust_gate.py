"""
Tests for the per-origin trust gate.
"""
import threading

from claimgate.services.guardian.trust_gate import InMemoryTrustStore, TrustGate
from tests.conftest import FakeClock


ORIGIN = "203.0.113.7"


def make_gate(clock=None):
    return TrustGate(clock=clock or FakeClock())


class TestTrustGate:

    def test_unknown_origin_allowed(self):
        decision = make_gate().check(ORIGIN)
        assert decision.allowed
        assert decision.failure_count == 0

    def test_third_failure_blocks_for_an_hour(self):
        clock = FakeClock()
        gate = make_gate(clock)
        gate.record_failure(ORIGIN)
        gate.record_failure(ORIGIN)
        assert gate.check(ORIGIN).allowed

        record = gate.record_failure(ORIGIN)
        assert record.blocked_until == clock.now + 3600

        decision = gate.check(ORIGIN)
        assert not decision.allowed
        assert decision.remaining_seconds == 3600
        assert decision.remaining_minutes == 60

    def test_block_expires(self):
        clock = FakeClock()
        gate = make_gate(clock)
        for _ in range(3):
            gate.record_failure(ORIGIN)

        clock.advance(3599)
        assert gate.check(ORIGIN).remaining_seconds == 1
        clock.advance(1)
        decision = gate.check(ORIGIN)
        assert decision.allowed
        assert decision.failure_count == 0

    def test_success_resets_count(self):
        gate = make_gate()
        gate.record_failure(ORIGIN)
        gate.record_failure(ORIGIN)
        gate.record_success(ORIGIN)
        record = gate.record_failure(ORIGIN)
        assert record.failure_count == 1
        assert gate.check(ORIGIN).allowed

    def test_old_failures_fall_out_of_window(self):
        clock = FakeClock()
        gate = make_gate(clock)
        gate.record_failure(ORIGIN)
        gate.record_failure(ORIGIN)
        clock.advance(3601)
        record = gate.record_failure(ORIGIN)
        assert record.failure_count == 1
        assert record.blocked_until is None

    def test_origins_are_independent(self):
        gate = make_gate()
        for _ in range(3):
            gate.record_failure(ORIGIN)
        assert gate.check("198.51.100.1").allowed

    def test_attempts_remaining(self):
        gate = make_gate()
        assert gate.attempts_remaining(gate.record_failure(ORIGIN)) == 2
        assert gate.attempts_remaining(gate.record_failure(ORIGIN)) == 1
        assert gate.attempts_remaining(gate.record_failure(ORIGIN)) == 0


class TestInMemoryTrustStore:

    def test_concurrent_failures_are_all_counted(self):
        store = InMemoryTrustStore()
        gate = TrustGate(store=store, clock=FakeClock(), failure_threshold=1000)

        def strike():
            for _ in range(50):
                gate.record_failure(ORIGIN)

        threads = [threading.Thread(target=strike) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get(ORIGIN).failure_count == 400

    def test_clear(self):
        store = InMemoryTrustStore()
        gate = TrustGate(store=store, clock=FakeClock())
        gate.record_failure(ORIGIN)
        assert len(store) == 1
        store.clear(ORIGIN)
        assert store.get(ORIGIN) is None
