"""
Service Container

Builds every long-lived component from Settings, in dependency order.
The FastAPI app holds one Services instance on app.state; tests build
their own with injected clock, sleep and evaluator.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from ..config import MAX_SUPPLY, Settings
from ..database import init_db, make_engine, make_session_factory
from .claims.orchestrator import ClaimOrchestrator
from .guardian.evaluator import GeminiEvaluator, ObservationEvaluator
from .guardian.trust_gate import TrustGate
from .ledger.event_store import LedgerEventStore
from .ledger.runtime import LocalLedger, bootstrap_local_ledger, load_account
from .observations.ledger import ObservationLedger
from .relay.executor import RelayExecutor
from .relay.status_store import RelayStatusStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    ledger: LocalLedger
    trust_gate: TrustGate
    evaluator: ObservationEvaluator
    status_store: RelayStatusStore
    relay: RelayExecutor
    observations: ObservationLedger
    orchestrator: ClaimOrchestrator


def build_services(
    settings: Settings,
    evaluator: Optional[ObservationEvaluator] = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    max_supply: int = MAX_SUPPLY,
) -> Services:
    engine = make_engine(settings.database_url)
    init_db(engine)
    session_factory = make_session_factory(engine)

    event_store = LedgerEventStore(session_factory)
    ledger = bootstrap_local_ledger(
        event_store,
        owner=load_account(settings.owner_private_key, "owner"),
        authority=load_account(settings.authority_private_key, "authority"),
        genesis_deposit=settings.genesis_deposit,
        relayer_balance_wei=settings.relayer_balance_wei,
        gas_price_wei=settings.gas_price_wei,
        max_supply=max_supply,
    )

    observations = ObservationLedger(event_store, ttl=settings.observation_cache_ttl, clock=clock)
    status_store = RelayStatusStore(session_factory)
    relay = RelayExecutor(
        gateway=ledger.gateway,
        authority=ledger.authority,
        status_store=status_store,
        optimistic=settings.optimistic_relay,
        max_attempts=settings.relay_max_attempts,
        backoff_base=settings.relay_backoff_base,
        gas_margin_percent=settings.gas_margin_percent,
        confirm_timeout=settings.confirm_timeout,
        sleep=sleep,
        on_confirmed=lambda result: observations.invalidate(),
    )

    if evaluator is None:
        if not settings.evaluator_api_key:
            logger.warning("EVALUATOR_API_KEY not set; every submission will be answered as evaluator-unavailable")
        evaluator = GeminiEvaluator(
            api_key=settings.evaluator_api_key,
            model=settings.evaluator_model,
            fallback_model=settings.evaluator_fallback_model,
            base_url=settings.evaluator_url,
            approve_threshold=settings.approve_threshold,
            hard_reject_below=settings.hard_reject_below,
        )

    trust_gate = TrustGate(
        clock=clock,
        failure_threshold=settings.trust_failure_threshold,
        block_seconds=settings.trust_block_seconds,
        window_seconds=settings.trust_window_seconds,
    )
    orchestrator = ClaimOrchestrator(
        gateway=ledger.gateway,
        trust_gate=trust_gate,
        evaluator=evaluator,
        relay=relay,
        evaluator_timeout=settings.evaluator_timeout,
    )

    logger.info(
        f"Services ready: owner={ledger.owner.address} authority={ledger.authority.address} "
        f"relay_mode={settings.relay_mode} available={ledger.claimer.available_count()}"
    )
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        ledger=ledger,
        trust_gate=trust_gate,
        evaluator=evaluator,
        status_store=status_store,
        relay=relay,
        observations=observations,
        orchestrator=orchestrator,
    )
