"""
Tests for the relay executor: retries, abort classes, manual fallback and
optimistic confirmation.
"""
import pytest

from claimgate.models.db_models import LedgerEventType, RelayStatus
from claimgate.models.ledger import LedgerCall
from claimgate.services.ledger.errors import TransientLedgerError
from claimgate.services.ledger.signatures import claim_message_hash, recover_claim_signer
from claimgate.services.relay.executor import RelayExecutor
from claimgate.services.relay.status_store import RelayStatusStore
from tests.conftest import AUTHORITY, CLAIMANT, OTHER


class FlakyGateway:
    """Fails the first `failures` submissions with a transient error."""

    def __init__(self, inner, failures=2, receipt_failures=0):
        self.inner = inner
        self.failures = failures
        self.receipt_failures = receipt_failures
        self.send_calls = 0

    async def estimate_gas(self, call):
        return await self.inner.estimate_gas(call)

    async def send_transaction(self, call, gas_limit):
        self.send_calls += 1
        if self.send_calls <= self.failures:
            raise TransientLedgerError("provider timeout")
        return await self.inner.send_transaction(call, gas_limit)

    async def wait_for_receipt(self, tx_hash, timeout):
        if self.receipt_failures:
            self.receipt_failures -= 1
            raise TransientLedgerError("receipt lookup failed")
        return await self.inner.wait_for_receipt(tx_hash, timeout)

    async def call(self, method, *args):
        return await self.inner.call(method, *args)

    async def get_balance(self, address):
        return await self.inner.get_balance(address)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def status_store(session_factory):
    return RelayStatusStore(session_factory)


def make_executor(gateway, status_store, **kwargs):
    kwargs.setdefault("sleep", RecordingSleep())
    return RelayExecutor(gateway=gateway, authority=AUTHORITY, status_store=status_store, **kwargs)


def claimed_events(event_store):
    return list(event_store.iter_events(event_type=LedgerEventType.CLAIMED))


class TestConfirmedMode:

    async def test_success_first_try(self, ledger, status_store, event_store):
        executor = make_executor(ledger.gateway, status_store)
        result = await executor.relay_claim(CLAIMANT.address, 42, "light")

        assert result.confirmed
        assert result.attempts == 1
        assert result.block_number == ledger.claimer.block_number
        assert result.gas_used > 21000
        assert status_store.get(result.handle).status == RelayStatus.CONFIRMED

    async def test_retry_succeeds_on_third_attempt(self, ledger, status_store, event_store):
        sleep = RecordingSleep()
        gateway = FlakyGateway(ledger.gateway, failures=2)
        executor = make_executor(gateway, status_store, sleep=sleep)

        result = await executor.relay_claim(CLAIMANT.address, 42, "light")

        assert result.confirmed
        assert result.attempts == 3
        assert sleep.delays == [2.0, 4.0]
        assert len(claimed_events(event_store)) == 1
        assert status_store.get(result.handle).attempt_count == 3

    async def test_gas_margin_applied(self, ledger, status_store):
        call = LedgerCall("relay_claim", AUTHORITY.address, (CLAIMANT.address, 42, "light"))
        estimate = await ledger.gateway.estimate_gas(call)
        limits = []
        original = ledger.gateway.send_transaction

        async def spy(call, gas_limit):
            limits.append(gas_limit)
            return await original(call, gas_limit)

        ledger.gateway.send_transaction = spy
        await make_executor(ledger.gateway, status_store).relay_claim(CLAIMANT.address, 42, "light")
        assert limits == [estimate * 120 // 100]

    async def test_backoff_delays(self, ledger, status_store):
        executor = make_executor(ledger.gateway, status_store)
        assert [executor.backoff_delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


class TestFailures:

    async def test_retries_exhausted_issues_manual_claim(self, ledger, status_store, event_store):
        sleep = RecordingSleep()
        gateway = FlakyGateway(ledger.gateway, failures=10)
        executor = make_executor(gateway, status_store, sleep=sleep)

        result = await executor.relay_claim(CLAIMANT.address, 42, "light")

        assert result.status == RelayStatus.MANUAL_FALLBACK
        assert result.error_code == "RETRIES_EXHAUSTED"
        assert gateway.send_calls == 3
        assert sleep.delays == [2.0, 4.0]
        assert claimed_events(event_store) == []

        artifact = result.fallback
        assert artifact.manual_claim_required
        assert artifact.nonce == 0
        assert artifact.authority == AUTHORITY.address
        assert artifact.message_hash == "0x" + claim_message_hash(CLAIMANT.address, 42, "light", 0).hex()
        assert recover_claim_signer(CLAIMANT.address, 42, "light", 0, artifact.signature) == AUTHORITY.address

    async def test_manual_claim_completes_on_direct_path(self, ledger, status_store):
        gateway = FlakyGateway(ledger.gateway, failures=10)
        result = await make_executor(gateway, status_store).relay_claim(CLAIMANT.address, 42, "light")

        artifact = result.fallback
        ledger.claimer.claim(CLAIMANT.address, artifact.token_id, artifact.observation, artifact.signature)
        assert ledger.claimer.owner_of(42) == CLAIMANT.address

    async def test_revert_aborts_without_retry(self, ledger, status_store):
        ledger.claimer.relay_claim(AUTHORITY.address, OTHER.address, 7, "first")
        sleep = RecordingSleep()
        gateway = FlakyGateway(ledger.gateway, failures=0)
        executor = make_executor(gateway, status_store, sleep=sleep)

        result = await executor.relay_claim(CLAIMANT.address, 7, "second")

        assert result.error_code == "TOKEN_NOT_AVAILABLE"
        assert result.attempts == 1
        assert sleep.delays == []
        assert gateway.send_calls == 0
        assert result.status == RelayStatus.MANUAL_FALLBACK

    async def test_insufficient_funds_aborts(self, ledger, status_store):
        ledger.gateway.balances[AUTHORITY.address] = 1
        sleep = RecordingSleep()
        executor = make_executor(ledger.gateway, status_store, sleep=sleep)

        result = await executor.relay_claim(CLAIMANT.address, 42, "light")

        assert result.error_code == "INSUFFICIENT_FUNDS"
        assert result.attempts == 1
        assert sleep.delays == []
        assert result.fallback is not None
        assert ledger.claimer.is_token_available(42)

    async def test_relayer_pays_gas(self, ledger, status_store):
        before = ledger.gateway.balances[AUTHORITY.address]
        result = await make_executor(ledger.gateway, status_store).relay_claim(CLAIMANT.address, 42, "light")
        spent = before - ledger.gateway.balances[AUTHORITY.address]
        assert spent == result.gas_used * ledger.gateway.gas_price_wei

    async def test_receipt_lookup_retried(self, ledger, status_store):
        gateway = FlakyGateway(ledger.gateway, failures=0, receipt_failures=1)
        result = await make_executor(gateway, status_store).relay_claim(CLAIMANT.address, 42, "light")
        assert result.confirmed


class TestOptimisticMode:

    async def test_returns_pending_then_confirms(self, ledger, status_store):
        confirmed = []
        executor = make_executor(
            ledger.gateway, status_store, optimistic=True, on_confirmed=confirmed.append,
        )

        result = await executor.relay_claim(CLAIMANT.address, 42, "light")
        assert result.pending
        assert result.handle is not None

        await executor.drain()

        assert executor.in_flight == 0
        assert confirmed and confirmed[0].handle == result.handle
        assert status_store.get(result.handle).status == RelayStatus.CONFIRMED

    async def test_background_failure_recorded(self, ledger, status_store):
        gateway = FlakyGateway(ledger.gateway, failures=0, receipt_failures=10)
        executor = make_executor(gateway, status_store, optimistic=True)

        result = await executor.relay_claim(CLAIMANT.address, 42, "light")
        await executor.drain()

        record = status_store.get(result.handle)
        assert record.status == RelayStatus.MANUAL_FALLBACK
        assert record.fallback["manualClaimRequired"] is True
