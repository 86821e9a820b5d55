"""
Shared fixtures: deterministic keys, in-memory event store, fake clock,
stub evaluator and a fully wired local ledger.
"""
import asyncio
from typing import Callable, List, Optional

import pytest
from eth_account import Account

from claimgate.config import Settings
from claimgate.database import init_db, make_engine, make_session_factory
from claimgate.rate_limit import limiter
from claimgate.services.container import build_services
from claimgate.services.guardian.evaluator import (
    EvaluationResult,
    EvaluatorError,
    classify_evaluation,
)
from claimgate.services.ledger.event_store import LedgerEventStore
from claimgate.services.ledger.runtime import bootstrap_local_ledger


OWNER_KEY = "0x" + "11" * 32
AUTHORITY_KEY = "0x" + "22" * 32
CLAIMANT_KEY = "0x" + "33" * 32
OTHER_KEY = "0x" + "44" * 32

OWNER = Account.from_key(OWNER_KEY)
AUTHORITY = Account.from_key(AUTHORITY_KEY)
CLAIMANT = Account.from_key(CLAIMANT_KEY)
OTHER = Account.from_key(OTHER_KEY)

GOOD_OBSERVATION = "a 42-character observation about light and shadow"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def default_score(text: str) -> int:
    if len(text) < 10:
        return 1
    return 7


class StubEvaluator:
    """Scores by a plain function; records every call."""

    def __init__(self, scorer: Callable[[str], int] = default_score, error: Optional[Exception] = None):
        self.scorer = scorer
        self.error = error
        self.calls: List[str] = []

    async def evaluate(self, observation: str, token_id: Optional[int]) -> EvaluationResult:
        self.calls.append(observation)
        if self.error is not None:
            raise self.error
        score = self.scorer(observation)
        return classify_evaluation({
            "approved": score >= 5,
            "score": score,
            "reason": f"scored {score}",
            "question": "What colours stand out to you?",
        })


class HangingEvaluator:
    async def evaluate(self, observation: str, token_id: Optional[int]) -> EvaluationResult:
        await asyncio.sleep(60)
        raise EvaluatorError("unreachable")


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    return make_session_factory(engine)


@pytest.fixture
def event_store(session_factory):
    return LedgerEventStore(session_factory)


@pytest.fixture
def ledger(event_store):
    return bootstrap_local_ledger(event_store, owner=OWNER, authority=AUTHORITY)


@pytest.fixture
def claimer(ledger):
    return ledger.claimer


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        owner_private_key=OWNER_KEY,
        authority_private_key=AUTHORITY_KEY,
        admin_api_key="test-admin-key",
        evaluator_timeout=0.5,
        trust_proxy=True,
    )


@pytest.fixture
def evaluator():
    return StubEvaluator()


@pytest.fixture
def services(settings, evaluator, clock):
    return build_services(settings, evaluator=evaluator, clock=clock, sleep=no_sleep)
