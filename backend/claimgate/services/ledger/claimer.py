"""
Observation Claimer - Claim Engine

State machine of the token pool: owner-only administration, the two claim
paths and the observation-only paths.

Core Principles:
1. Every state-changing method is one atomic transaction. A revert
   restores the bitmaps, claimant records, custody and event buffer, so
   no partial update is ever visible.
2. Claim validation order is fixed:
   not already claimed -> observation length -> token availability ->
   signature / authority -> nonce increment -> state mutation ->
   asset transfer -> event emission.
3. The claim paths are guarded against re-entry from the transfer
   callback; the claimed bit is always set before custody moves.
4. Observations live only in the event log. The engine keeps one
   "observed" bit per token to enforce one observation per token.
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional

from eth_utils import keccak

from ...config import MAX_OBSERVATION_LENGTH, MAX_SUPPLY
from ...models.db_models import LedgerEventType
from ...models.ledger import LedgerCall, LedgerEvent
from .collection import TokenCollection
from .errors import LedgerError, RevertCode
from .journal import EventJournal
from .signatures import is_zero_address, normalize_address, recover_claim_signer
from .token_state import TokenBitmaps, TokenStateStore, validate_token_id

logger = logging.getLogger(__name__)


# State-changing methods reachable through execute()/simulate()
MUTATING_METHODS = frozenset({
    "deposit",
    "withdraw",
    "set_authority",
    "reset_claim_status",
    "reset_nonce",
    "pause",
    "unpause",
    "emergency_withdraw_all",
    "claim",
    "relay_claim",
    "add_observation",
    "relay_add_observation",
})

# Read-only methods reachable through the gateway's call()
VIEW_METHODS = frozenset({
    "is_token_available",
    "get_available_tokens",
    "available_count",
    "has_claimed",
    "get_nonce",
    "get_claimed_bitmap",
    "get_deposited_bitmap",
    "has_observation",
    "owner_of",
    "get_owner",
    "get_authority",
    "is_paused",
})


class _Rollback(Exception):
    """Raised internally to discard a simulated transaction."""


@dataclass
class _Snapshot:
    bits: TokenBitmaps
    owners: Dict[int, str]
    has_claimed: Dict[str, bool]
    nonces: Dict[str, int]
    authority: str
    paused: bool
    journal_mark: int


def validate_observation(text: str) -> str:
    if not isinstance(text, str) or not (1 <= len(text) <= MAX_OBSERVATION_LENGTH):
        raise LedgerError(RevertCode.INVALID_OBSERVATION)
    return text


class ObservationClaimer:
    """
    Claim engine for the fixed token pool.

    Callers pass `sender` explicitly; it plays the role of the transaction
    origin and is the only identity the access checks look at.
    """

    def __init__(
        self,
        collection: TokenCollection,
        journal: EventJournal,
        owner: str,
        authority: str,
        address: str,
        max_supply: int = MAX_SUPPLY,
    ):
        self.collection = collection
        self.journal = journal
        self.address = address
        self.max_supply = max_supply
        self.tokens = TokenStateStore(
            custody_check=lambda token_id: collection.owner_of(token_id) == address,
            max_supply=max_supply,
        )
        self._owner = owner
        self._authority = authority
        self._paused = False
        self._has_claimed: Dict[str, bool] = {}
        self._nonces: Dict[str, int] = {}

        self.block_number = 0
        self._lock = threading.RLock()
        self._depth = 0
        self._entered = False
        self._pending_tx_hash: Optional[str] = None
        self._last_committed: List[LedgerEvent] = []

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    def _snapshot(self) -> _Snapshot:
        return _Snapshot(
            bits=self.tokens.snapshot(),
            owners=self.collection.snapshot(),
            has_claimed=dict(self._has_claimed),
            nonces=dict(self._nonces),
            authority=self._authority,
            paused=self._paused,
            journal_mark=self.journal.mark(),
        )

    def _restore(self, snapshot: _Snapshot) -> None:
        self.tokens.restore(snapshot.bits)
        self.collection.restore(snapshot.owners)
        self._has_claimed = snapshot.has_claimed
        self._nonces = snapshot.nonces
        self._authority = snapshot.authority
        self._paused = snapshot.paused
        self.journal.discard(snapshot.journal_mark)

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """Serialize, and roll back everything on any exception."""
        with self._lock:
            snapshot = self._snapshot()
            self._depth += 1
            try:
                yield
                if self._depth == 1:
                    self._commit()
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._depth -= 1

    def _commit(self) -> None:
        if not self.journal.pending():
            return
        block_number = self.block_number + 1
        tx_hash = self._pending_tx_hash or self._next_tx_hash()
        self._last_committed = self.journal.flush(block_number, tx_hash)
        self.block_number = block_number

    def _next_tx_hash(self) -> str:
        seed = f"{self.address}:{self.block_number}:{self.journal.mark()}"
        return "0x" + keccak(text=seed).hex()

    @contextmanager
    def _non_reentrant(self) -> Iterator[None]:
        if self._entered:
            raise LedgerError(RevertCode.REENTRANT_CALL)
        self._entered = True
        try:
            yield
        finally:
            self._entered = False

    def execute(self, call: LedgerCall, tx_hash: Optional[str] = None) -> List[LedgerEvent]:
        """Run a mutating call as one transaction; returns the events it emitted."""
        method = self._resolve(call.method, MUTATING_METHODS)
        with self._lock:
            self._pending_tx_hash = tx_hash
            self._last_committed = []
            try:
                method(call.sender, *call.args)
            finally:
                self._pending_tx_hash = None
            return self._last_committed

    def simulate(self, call: LedgerCall) -> List[LedgerEvent]:
        """Dry-run a mutating call; reverts propagate, state never changes."""
        method = self._resolve(call.method, MUTATING_METHODS)
        with self._lock:
            captured: List[LedgerEvent] = []
            mark = self.journal.mark()
            try:
                with self._transaction():
                    method(call.sender, *call.args)
                    captured = self.journal.pending()[mark:]
                    raise _Rollback()
            except _Rollback:
                pass
            return captured

    def view(self, method_name: str, *args):
        return self._resolve(method_name, VIEW_METHODS)(*args)

    def _resolve(self, method_name: str, allowed: frozenset):
        if method_name not in allowed:
            raise LedgerError(RevertCode.UNKNOWN_METHOD, method_name)
        return getattr(self, method_name)

    # =========================================================================
    # ACCESS CHECKS
    # =========================================================================

    def _require_owner(self, sender: str) -> None:
        if sender != self._owner:
            raise LedgerError(RevertCode.NOT_OWNER)

    def _require_authority(self, sender: str) -> None:
        if sender != self._authority:
            raise LedgerError(RevertCode.NOT_AUTHORITY)

    def _require_not_paused(self) -> None:
        if self._paused:
            raise LedgerError(RevertCode.PAUSED)

    @staticmethod
    def _require_account(address: str) -> str:
        try:
            return normalize_address(address)
        except ValueError as e:
            raise LedgerError(RevertCode.INVALID_ADDRESS, str(e)) from e

    def _require_recipient(self, address: str) -> str:
        if is_zero_address(address):
            raise LedgerError(RevertCode.ZERO_ADDRESS)
        return self._require_account(address)

    # =========================================================================
    # ADMINISTRATION (owner only)
    # =========================================================================

    def genesis(self, mint_to: str, token_ids: Iterable[int]) -> None:
        """Deployment block: record the deployment and mint the pool to mint_to."""
        with self._transaction():
            self.journal.record(
                LedgerEventType.DEPLOYED,
                account=self.address,
                owner=self._owner,
                authority=self._authority,
                collection=self.collection.address,
                max_supply=self.max_supply,
            )
            self.collection.mint(mint_to, token_ids)

    def deposit(self, sender: str, token_ids: Iterable[int]) -> None:
        with self._transaction():
            self._require_owner(sender)
            ids = list(token_ids)
            seen = set()
            for token_id in ids:
                validate_token_id(token_id, self.max_supply)
                if self.tokens.is_claimed(token_id):
                    raise LedgerError(RevertCode.TOKEN_CLAIMED, str(token_id))
                if self.tokens.is_deposited(token_id) or token_id in seen:
                    raise LedgerError(RevertCode.ALREADY_DEPOSITED, str(token_id))
                if self.collection.owner_of(token_id) != sender:
                    raise LedgerError(RevertCode.NOT_TOKEN_HOLDER, str(token_id))
                seen.add(token_id)

            self.tokens.mark_deposited(ids)
            for token_id in ids:
                self.collection.transfer(self.address, sender, self.address, token_id)
            self.journal.record(LedgerEventType.DEPOSITED, account=sender, token_ids=ids)

    def withdraw(self, sender: str, token_ids: Iterable[int], to: str) -> None:
        with self._transaction():
            self._require_owner(sender)
            recipient = self._require_recipient(to)
            ids = list(token_ids)
            for token_id in ids:
                validate_token_id(token_id, self.max_supply)
                if not self.tokens.is_deposited(token_id) or self.collection.owner_of(token_id) != self.address:
                    raise LedgerError(RevertCode.NOT_DEPOSITED, str(token_id))

            self.tokens.clear_deposited(ids)
            for token_id in ids:
                self.collection.transfer(self.address, self.address, recipient, token_id)
            self.journal.record(LedgerEventType.WITHDRAWN, account=recipient, token_ids=ids)

    def set_authority(self, sender: str, new_authority: str) -> None:
        with self._transaction():
            self._require_owner(sender)
            authority = self._require_recipient(new_authority)
            previous = self._authority
            self._authority = authority
            self.journal.record(
                LedgerEventType.AUTHORITY_UPDATED, account=authority, previous=previous,
            )

    def reset_claim_status(self, sender: str, claimant: str) -> None:
        with self._transaction():
            self._require_owner(sender)
            claimant = self._require_recipient(claimant)
            self._has_claimed.pop(claimant, None)
            self.journal.record(LedgerEventType.CLAIM_STATUS_RESET, account=claimant)

    def reset_nonce(self, sender: str, claimant: str, value: int) -> None:
        with self._transaction():
            self._require_owner(sender)
            claimant = self._require_recipient(claimant)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise LedgerError(RevertCode.INVALID_NONCE, repr(value))
            self._nonces[claimant] = value
            self.journal.record(LedgerEventType.NONCE_RESET, account=claimant, value=value)

    def pause(self, sender: str) -> None:
        with self._transaction():
            self._require_owner(sender)
            self._require_not_paused()
            self._paused = True
            self.journal.record(LedgerEventType.PAUSED, account=sender)

    def unpause(self, sender: str) -> None:
        with self._transaction():
            self._require_owner(sender)
            if not self._paused:
                raise LedgerError(RevertCode.NOT_PAUSED)
            self._paused = False
            self.journal.record(LedgerEventType.UNPAUSED, account=sender)

    def emergency_withdraw_all(self, sender: str, to: str) -> None:
        with self._transaction():
            self._require_owner(sender)
            if not self._paused:
                raise LedgerError(RevertCode.NOT_PAUSED)
            recipient = self._require_recipient(to)
            ids = [
                token_id for token_id in range(1, self.max_supply + 1)
                if self.tokens.is_deposited(token_id)
                and self.collection.owner_of(token_id) == self.address
            ]
            self.tokens.clear_deposited(ids)
            for token_id in ids:
                self.collection.transfer(self.address, self.address, recipient, token_id)
            self.journal.record(LedgerEventType.EMERGENCY_WITHDRAWAL, account=recipient, token_ids=ids)
            logger.warning(f"Emergency withdrawal of {len(ids)} tokens to {recipient}")

    # =========================================================================
    # CLAIM PATHS
    # =========================================================================

    def claim(self, sender: str, token_id: int, observation: str, signature: str) -> None:
        """Direct path: the caller presents an authority signature."""
        with self._transaction(), self._non_reentrant():
            self._require_not_paused()
            claimant = self._require_account(sender)
            self._check_claim(claimant, token_id, observation)

            nonce = self._nonces.get(claimant, 0)
            signer = recover_claim_signer(claimant, token_id, observation, nonce, signature)
            if signer is None or signer != self._authority:
                raise LedgerError(RevertCode.INVALID_SIGNATURE)
            self._nonces[claimant] = nonce + 1

            self._settle_claim(claimant, token_id, observation, relayer=None, nonce=nonce)

    def relay_claim(self, sender: str, recipient: str, token_id: int, observation: str) -> None:
        """Relay path: the authority claims on behalf of the recipient."""
        with self._transaction(), self._non_reentrant():
            self._require_not_paused()
            claimant = self._require_recipient(recipient)
            self._check_claim(claimant, token_id, observation)
            self._require_authority(sender)

            self._settle_claim(claimant, token_id, observation, relayer=sender, nonce=None)

    def _check_claim(self, claimant: str, token_id: int, observation: str) -> None:
        if self._has_claimed.get(claimant):
            raise LedgerError(RevertCode.ALREADY_CLAIMED)
        validate_observation(observation)
        validate_token_id(token_id, self.max_supply)
        if not self.tokens.is_available(token_id):
            raise LedgerError(RevertCode.TOKEN_NOT_AVAILABLE, str(token_id))

    def _settle_claim(
        self,
        claimant: str,
        token_id: int,
        observation: str,
        relayer: Optional[str],
        nonce: Optional[int],
    ) -> None:
        self._has_claimed[claimant] = True
        self.tokens.set_claimed(token_id)
        self.tokens.set_observed(token_id)

        self.collection.transfer(self.address, self.address, claimant, token_id)

        self.journal.record(
            LedgerEventType.CLAIMED,
            token_id=token_id,
            account=claimant,
            relayer=relayer,
            nonce=nonce,
        )
        self.journal.record(
            LedgerEventType.OBSERVATION_RECORDED,
            token_id=token_id,
            account=claimant,
            text=observation,
        )

    # =========================================================================
    # OBSERVATION-ONLY PATHS
    # =========================================================================

    def add_observation(self, sender: str, token_id: int, observation: str) -> None:
        """Current holder attaches the token's one observation without a transfer."""
        with self._transaction():
            self._require_not_paused()
            self._record_observation(self._require_account(sender), token_id, observation)

    def relay_add_observation(self, sender: str, holder: str, token_id: int, observation: str) -> None:
        with self._transaction():
            self._require_not_paused()
            self._require_authority(sender)
            self._record_observation(self._require_recipient(holder), token_id, observation)

    def _record_observation(self, holder: str, token_id: int, observation: str) -> None:
        validate_token_id(token_id, self.max_supply)
        validate_observation(observation)
        if self.collection.owner_of(token_id) != holder:
            raise LedgerError(RevertCode.NOT_TOKEN_HOLDER, str(token_id))
        if self.tokens.has_observation(token_id):
            raise LedgerError(RevertCode.OBSERVATION_EXISTS, str(token_id))

        self.tokens.set_observed(token_id)
        self.journal.record(
            LedgerEventType.OBSERVATION_RECORDED,
            token_id=token_id,
            account=holder,
            text=observation,
        )

    # =========================================================================
    # VIEWS
    # =========================================================================

    def is_token_available(self, token_id: int) -> bool:
        return self.tokens.is_available(token_id)

    def get_available_tokens(self) -> List[int]:
        return self.tokens.list_available()

    def available_count(self) -> int:
        return self.tokens.available_count()

    def has_claimed(self, claimant: str) -> bool:
        return self._has_claimed.get(normalize_address(claimant), False)

    def get_nonce(self, claimant: str) -> int:
        return self._nonces.get(normalize_address(claimant), 0)

    def get_claimed_bitmap(self) -> int:
        return self.tokens.claimed_bitmap()

    def get_deposited_bitmap(self) -> int:
        return self.tokens.deposited_bitmap()

    def has_observation(self, token_id: int) -> bool:
        return self.tokens.has_observation(token_id)

    def owner_of(self, token_id: int) -> Optional[str]:
        return self.collection.owner_of(token_id)

    def get_owner(self) -> str:
        return self._owner

    def get_authority(self) -> str:
        return self._authority

    def is_paused(self) -> bool:
        return self._paused

    # =========================================================================
    # REPLAY
    # =========================================================================

    def apply_event(self, event: LedgerEvent) -> None:
        """Re-apply a persisted event without validation (restart path)."""
        payload = event.payload
        kind = event.event_type
        self.block_number = max(self.block_number, event.block_number)

        if kind == LedgerEventType.TRANSFER:
            self.collection.apply_event(event)
        elif kind == LedgerEventType.DEPLOYED:
            self._owner = payload["owner"]
            self._authority = payload["authority"]
        elif kind == LedgerEventType.DEPOSITED:
            self.tokens.mark_deposited(payload["token_ids"])
        elif kind in (LedgerEventType.WITHDRAWN, LedgerEventType.EMERGENCY_WITHDRAWAL):
            self.tokens.clear_deposited(payload["token_ids"])
        elif kind == LedgerEventType.CLAIMED:
            self._has_claimed[event.account] = True
            self.tokens.set_claimed(event.token_id)
            if payload.get("nonce") is not None:
                self._nonces[event.account] = payload["nonce"] + 1
        elif kind == LedgerEventType.OBSERVATION_RECORDED:
            self.tokens.set_observed(event.token_id)
        elif kind == LedgerEventType.AUTHORITY_UPDATED:
            self._authority = event.account
        elif kind == LedgerEventType.CLAIM_STATUS_RESET:
            self._has_claimed.pop(event.account, None)
        elif kind == LedgerEventType.NONCE_RESET:
            self._nonces[event.account] = payload["value"]
        elif kind == LedgerEventType.PAUSED:
            self._paused = True
        elif kind == LedgerEventType.UNPAUSED:
            self._paused = False
