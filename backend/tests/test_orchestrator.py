"""
Tests for the claim orchestrator: gate, evaluator outcomes, eligibility,
reservation and relay fallback, end to end over the local ledger.
"""
import asyncio

import pytest

from claimgate.metrics import REGISTRY
from claimgate.services.claims.orchestrator import ClaimValidationError, validate_claim_input
from claimgate.services.claims.state_machine import (
    ClaimSession,
    ClaimState,
    InvalidTransitionError,
    can_transition,
    is_terminal_state,
)
from claimgate.services.guardian.evaluator import EvaluatorError
from tests.conftest import AUTHORITY, CLAIMANT, GOOD_OBSERVATION, OTHER, OWNER, StubEvaluator


ORIGIN = "198.51.100.23"


def submission(account=CLAIMANT, text=GOOD_OBSERVATION, token_id=42):
    return validate_claim_input(account.address, text, token_id)


# =============================================================================
# TEST: INPUT VALIDATION
# =============================================================================

class TestValidateClaimInput:

    def test_normalizes(self):
        result = validate_claim_input(CLAIMANT.address.lower(), "  light  ", 5)
        assert result.address == CLAIMANT.address
        assert result.observation == "light"
        assert result.token_id == 5

    def test_token_optional(self):
        assert validate_claim_input(CLAIMANT.address, "light").token_id is None

    @pytest.mark.parametrize("address", ["", "0x123", None, "0x" + "00" * 20])
    def test_bad_address(self, address):
        with pytest.raises(ClaimValidationError) as exc:
            validate_claim_input(address, "light", 5)
        assert exc.value.field == "address"

    @pytest.mark.parametrize("text", ["", "   ", "x" * 251, None, 42])
    def test_bad_observation(self, text):
        with pytest.raises(ClaimValidationError) as exc:
            validate_claim_input(CLAIMANT.address, text, 5)
        assert exc.value.field == "observation"

    @pytest.mark.parametrize("token_id", [0, 101, True, "5"])
    def test_bad_token(self, token_id):
        with pytest.raises(ClaimValidationError) as exc:
            validate_claim_input(CLAIMANT.address, "light", token_id)
        assert exc.value.field == "tokenId"


# =============================================================================
# TEST: STATE MACHINE
# =============================================================================

class TestClaimStateMachine:

    def test_gate_cannot_be_skipped(self):
        allowed, _ = can_transition(ClaimState.RECEIVED, ClaimState.EVALUATED)
        assert not allowed
        allowed, _ = can_transition(ClaimState.RECEIVED, ClaimState.AUTHORIZED)
        assert not allowed

    def test_session_records_history(self):
        session = ClaimSession(origin=ORIGIN, address=CLAIMANT.address, observation="x")
        session.advance(ClaimState.GATE_CHECKED, "ok")
        session.advance(ClaimState.EVALUATED, "Approved")
        assert [h["to_state"] for h in session.history] == ["GATE_CHECKED", "EVALUATED"]
        assert session.visited(ClaimState.RECEIVED)

    def test_invalid_transition_raises(self):
        session = ClaimSession(origin=ORIGIN, address=CLAIMANT.address, observation="x")
        with pytest.raises(InvalidTransitionError):
            session.advance(ClaimState.RELAYED)

    @pytest.mark.parametrize("state", [
        ClaimState.GATE_BLOCKED, ClaimState.SOFT_REJECTED, ClaimState.HARD_REJECTED,
        ClaimState.CONFIRMED, ClaimState.MANUAL_FALLBACK, ClaimState.INELIGIBLE,
    ])
    def test_terminal_states(self, state):
        assert is_terminal_state(state)


# =============================================================================
# TEST: END-TO-END SCENARIOS
# =============================================================================

class TestScenarios:

    async def test_token_42_claimed(self, services):
        outcome = await services.orchestrator.submit(ORIGIN, submission())

        assert outcome.http_status == 200
        assert outcome.approved and outcome.claimed
        assert outcome.score == 7
        assert outcome.state == ClaimState.CONFIRMED
        assert outcome.session.visited(ClaimState.GATE_CHECKED)

        claimer = services.ledger.claimer
        assert not claimer.is_token_available(42)
        assert claimer.has_claimed(CLAIMANT.address)
        record = services.observations.get(42)
        assert record.text == GOOD_OBSERVATION
        assert record.observer == CLAIMANT.address

    async def test_token_7_unavailable_regardless_of_quality(self, services, evaluator):
        services.ledger.claimer.relay_claim(AUTHORITY.address, OTHER.address, 7, "taken earlier")

        for text in (GOOD_OBSERVATION, "nice"):
            outcome = await services.orchestrator.submit(ORIGIN, submission(text=text, token_id=7))
            assert outcome.http_status == 409
            assert outcome.error_code == "TOKEN_NOT_AVAILABLE"
            assert outcome.message == "Token not available"
            assert outcome.state == ClaimState.INELIGIBLE

        assert evaluator.calls == []

    async def test_blocked_origin(self, services, evaluator):
        orchestrator = services.orchestrator
        for _ in range(2):
            outcome = await orchestrator.submit(ORIGIN, submission(text="nice"))
            assert outcome.state == ClaimState.HARD_REJECTED
            assert not outcome.blocked

        third = await orchestrator.submit(ORIGIN, submission(text="nice"))
        assert third.state == ClaimState.HARD_REJECTED
        assert third.blocked
        assert third.attempts_remaining == 0

        retry = await orchestrator.submit(ORIGIN, submission())
        assert retry.http_status == 429
        assert retry.state == ClaimState.GATE_BLOCKED
        assert retry.remaining_seconds > 0
        assert len(evaluator.calls) == 3

    async def test_block_expires_after_an_hour(self, services, clock):
        for _ in range(3):
            await services.orchestrator.submit(ORIGIN, submission(text="nice"))
        clock.advance(3600)
        outcome = await services.orchestrator.submit(ORIGIN, submission())
        assert outcome.claimed

    async def test_success_resets_strikes(self, services):
        orchestrator = services.orchestrator
        await orchestrator.submit(ORIGIN, submission(text="nice"))
        await orchestrator.submit(ORIGIN, submission(text="nice"))
        approved = await orchestrator.submit(ORIGIN, submission())
        assert approved.claimed

        after = await orchestrator.submit(ORIGIN, submission(account=OTHER, text="nice", token_id=43))
        assert after.attempts_remaining == 2
        assert not after.blocked

    async def test_soft_rejections_never_block(self, settings, clock):
        from claimgate.services.container import build_services
        from tests.conftest import no_sleep

        evaluator = StubEvaluator(scorer=lambda text: 4)
        services = build_services(settings, evaluator=evaluator, clock=clock, sleep=no_sleep)

        for _ in range(10):
            outcome = await services.orchestrator.submit(ORIGIN, submission())
            assert outcome.soft_reject
            assert outcome.question == "What colours stand out to you?"
            assert outcome.attempts_remaining == 3
            assert outcome.state == ClaimState.SOFT_REJECTED

        assert services.trust_gate.check(ORIGIN).allowed
        assert len(evaluator.calls) == 10
        assert services.ledger.claimer.is_token_available(42)


# =============================================================================
# TEST: EVALUATOR UNAVAILABLE
# =============================================================================

class TestEvaluatorUnavailable:

    async def test_fail_safe_reject_not_counted(self, settings, clock):
        from claimgate.services.container import build_services
        from tests.conftest import no_sleep

        services = build_services(
            settings, evaluator=StubEvaluator(error=EvaluatorError("down")), clock=clock, sleep=no_sleep,
        )
        before = REGISTRY.get_sample_value("claimgate_evaluator_errors_total") or 0

        for _ in range(4):
            outcome = await services.orchestrator.submit(ORIGIN, submission())
            assert outcome.http_status == 503
            assert outcome.state == ClaimState.EVALUATOR_UNAVAILABLE
            assert not outcome.approved

        assert services.trust_gate.check(ORIGIN).allowed
        assert services.ledger.claimer.is_token_available(42)
        assert REGISTRY.get_sample_value("claimgate_evaluator_errors_total") == before + 4


# =============================================================================
# TEST: ELIGIBILITY AND RESERVATION
# =============================================================================

class TestEligibility:

    async def test_already_claimed_skips_evaluator(self, services, evaluator):
        await services.orchestrator.submit(ORIGIN, submission())
        evaluator.calls.clear()

        outcome = await services.orchestrator.submit(ORIGIN, submission(token_id=43))
        assert outcome.http_status == 409
        assert outcome.error_code == "ALREADY_CLAIMED"
        assert evaluator.calls == []

    async def test_paused_pool(self, services):
        services.ledger.claimer.pause(OWNER.address)
        outcome = await services.orchestrator.submit(ORIGIN, submission())
        assert outcome.http_status == 409
        assert outcome.error_code == "PAUSED"

    async def test_random_token_when_omitted(self, services):
        outcome = await services.orchestrator.submit(ORIGIN, submission(token_id=None))
        assert outcome.claimed
        assert 1 <= outcome.token_id <= 100
        assert services.ledger.claimer.owner_of(outcome.token_id) == CLAIMANT.address

    async def test_random_token_with_empty_pool(self, services):
        claimer = services.ledger.claimer
        claimer.withdraw(OWNER.address, claimer.get_available_tokens(), OWNER.address)
        outcome = await services.orchestrator.submit(ORIGIN, submission(token_id=None))
        assert outcome.http_status == 409
        assert outcome.error_code == "TOKEN_NOT_AVAILABLE"

    async def test_concurrent_claims_for_one_token(self, services):
        first, second = await asyncio.gather(
            services.orchestrator.submit(ORIGIN, submission(account=CLAIMANT)),
            services.orchestrator.submit("192.0.2.1", submission(account=OTHER)),
        )
        outcomes = [first, second]
        assert sum(1 for o in outcomes if o.claimed) == 1
        assert sum(1 for o in outcomes if o.http_status == 409) == 1
        assert services.ledger.claimer.owner_of(42) in (CLAIMANT.address, OTHER.address)


# =============================================================================
# TEST: RELAY FALLBACK
# =============================================================================

class TestRelayFallback:

    async def test_manual_fallback_outcome(self, services):
        services.ledger.gateway.balances[AUTHORITY.address] = 0

        outcome = await services.orchestrator.submit(ORIGIN, submission())

        assert outcome.http_status == 200
        assert outcome.approved
        assert not outcome.claimed
        assert outcome.state == ClaimState.MANUAL_FALLBACK
        assert outcome.error_code == "INSUFFICIENT_FUNDS"
        artifact = outcome.relay.fallback.to_dict()
        assert artifact["manualClaimRequired"] is True
        assert artifact["tokenId"] == 42
        assert artifact["nonce"] == 0

    async def test_optimistic_mode(self, settings, clock):
        from dataclasses import replace
        from claimgate.services.container import build_services
        from tests.conftest import no_sleep

        services = build_services(
            replace(settings, relay_mode="optimistic"), evaluator=StubEvaluator(), clock=clock, sleep=no_sleep,
        )
        outcome = await services.orchestrator.submit(ORIGIN, submission())
        assert outcome.claimed and outcome.broadcasting
        assert outcome.state == ClaimState.RELAYED

        await services.relay.drain()
        assert services.status_store.get(outcome.relay.handle).status.value == "CONFIRMED"
        assert services.observations.get(42).text == GOOD_OBSERVATION
