"""
Local Ledger Runtime

Wires the collection, claim engine, journal, event store and gateway, and
brings them to the current state: a fresh database gets a genesis block
(deployment + mint of the whole pool to the owner, optionally deposited);
an existing one is replayed event by event.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from ...config import MAX_SUPPLY
from .claimer import ObservationClaimer
from .collection import TokenCollection
from .event_store import LedgerEventStore
from .gateway import LocalLedgerGateway
from .journal import EventJournal
from .signatures import derive_address

logger = logging.getLogger(__name__)

POOL_ADDRESS = derive_address("claimgate:observation-claimer")
COLLECTION_ADDRESS = derive_address("claimgate:token-collection")


@dataclass
class LocalLedger:
    claimer: ObservationClaimer
    collection: TokenCollection
    journal: EventJournal
    event_store: LedgerEventStore
    gateway: LocalLedgerGateway
    owner: LocalAccount
    authority: LocalAccount


def load_account(private_key: Optional[str], role: str) -> LocalAccount:
    """Account from a hex key, or an ephemeral one (logged loudly)."""
    if private_key:
        return Account.from_key(private_key)
    account = Account.create()
    logger.critical(
        f"NO {role.upper()} PRIVATE KEY SET - using ephemeral account {account.address}. "
        f"Signatures issued by this process will not verify after a restart."
    )
    return account


def bootstrap_local_ledger(
    event_store: LedgerEventStore,
    owner: LocalAccount,
    authority: LocalAccount,
    genesis_deposit: bool = True,
    relayer_balance_wei: int = 10 ** 18,
    gas_price_wei: int = 20 * 10 ** 9,
    max_supply: int = MAX_SUPPLY,
) -> LocalLedger:
    journal = EventJournal(event_store)
    collection = TokenCollection(journal, COLLECTION_ADDRESS, max_supply)
    claimer = ObservationClaimer(
        collection=collection,
        journal=journal,
        owner=owner.address,
        authority=authority.address,
        address=POOL_ADDRESS,
        max_supply=max_supply,
    )

    if event_store.count() == 0:
        _genesis(claimer, owner.address, genesis_deposit, max_supply)
    else:
        replayed = 0
        for event in event_store.iter_events():
            claimer.apply_event(event)
            replayed += 1
        logger.info(f"Replayed {replayed} ledger events up to block {claimer.block_number}")
        if claimer.get_owner() != owner.address:
            logger.warning(
                f"Configured owner {owner.address} differs from deployed owner {claimer.get_owner()}"
            )
        if claimer.get_authority() != authority.address:
            logger.warning(
                f"Configured authority {authority.address} differs from ledger authority "
                f"{claimer.get_authority()}; relay claims will revert until set-authority"
            )

    gateway = LocalLedgerGateway(
        claimer,
        gas_price_wei=gas_price_wei,
        balances={authority.address: relayer_balance_wei},
    )
    return LocalLedger(
        claimer=claimer,
        collection=collection,
        journal=journal,
        event_store=event_store,
        gateway=gateway,
        owner=owner,
        authority=authority,
    )


def _genesis(
    claimer: ObservationClaimer,
    owner: str,
    deposit: bool,
    max_supply: int,
) -> None:
    token_ids = list(range(1, max_supply + 1))
    claimer.genesis(owner, token_ids)
    if deposit:
        claimer.deposit(owner, token_ids)
    logger.info(
        f"Genesis: minted {max_supply} tokens to {owner}"
        + (", all deposited" if deposit else "")
    )
