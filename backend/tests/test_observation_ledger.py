"""
Tests for the observation read model.
"""
from claimgate.models.db_models import LedgerEventType
from claimgate.models.ledger import LedgerEvent
from claimgate.services.observations.ledger import ObservationLedger
from tests.conftest import AUTHORITY, CLAIMANT, OTHER, OWNER, FakeClock


class TestObservationLedger:

    def test_replays_recorded_observations(self, ledger, event_store):
        ledger.claimer.relay_claim(AUTHORITY.address, CLAIMANT.address, 42, "light and shadow")
        observations = ObservationLedger(event_store)

        record = observations.get(42)
        assert record.text == "light and shadow"
        assert record.observer == CLAIMANT.address
        assert record.block_number == ledger.claimer.block_number
        assert record.to_dict()["tokenId"] == 42
        assert observations.get(43) is None

    def test_all_sorted_by_token(self, ledger, event_store):
        ledger.claimer.relay_claim(AUTHORITY.address, CLAIMANT.address, 50, "fifty")
        ledger.claimer.relay_claim(AUTHORITY.address, OTHER.address, 3, "three")
        assert [r.token_id for r in ObservationLedger(event_store).all()] == [3, 50]

    def test_first_observation_wins(self, event_store):
        event_store.append([
            LedgerEvent(LedgerEventType.OBSERVATION_RECORDED, token_id=9, account=OWNER.address,
                        payload={"text": "first"}, block_number=1, tx_hash="0x01"),
            LedgerEvent(LedgerEventType.OBSERVATION_RECORDED, token_id=9, account=OTHER.address,
                        payload={"text": "second"}, block_number=2, tx_hash="0x02"),
        ])
        assert ObservationLedger(event_store).get(9).text == "first"

    def test_cache_until_ttl_or_invalidate(self, ledger, event_store):
        clock = FakeClock()
        observations = ObservationLedger(event_store, ttl=30, clock=clock)
        assert observations.all() == []

        ledger.claimer.relay_claim(AUTHORITY.address, CLAIMANT.address, 42, "light")
        assert observations.get(42) is None  # still cached

        clock.advance(31)
        assert observations.get(42).text == "light"

        ledger.claimer.relay_claim(AUTHORITY.address, OTHER.address, 43, "shade")
        observations.invalidate()
        assert observations.get(43).text == "shade"
