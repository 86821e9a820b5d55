"""
Token Collection

Minimal custody registry for the 100 collectible tokens: who holds each
id, and an optional receiver hook per address that runs after a token
arrives (the equivalent of a safe-transfer receive callback).
"""
from typing import Callable, Dict, Iterable, Optional

from ...config import MAX_SUPPLY
from ...models.db_models import LedgerEventType
from ...models.ledger import LedgerEvent, ZERO_ADDRESS
from .errors import LedgerError, RevertCode
from .journal import EventJournal
from .token_state import validate_token_id

ReceiverHook = Callable[[str, str, int], None]  # (operator, from, token_id)


class TokenCollection:
    def __init__(self, journal: EventJournal, address: str, max_supply: int = MAX_SUPPLY):
        self.journal = journal
        self.address = address
        self.max_supply = max_supply
        self._owners: Dict[int, str] = {}
        self._receivers: Dict[str, ReceiverHook] = {}

    def owner_of(self, token_id: int) -> Optional[str]:
        return self._owners.get(token_id)

    def balance_of(self, holder: str) -> int:
        return sum(1 for owner in self._owners.values() if owner == holder)

    def register_receiver(self, address: str, hook: ReceiverHook) -> None:
        self._receivers[address] = hook

    def mint(self, to: str, token_ids: Iterable[int]) -> None:
        for token_id in token_ids:
            validate_token_id(token_id, self.max_supply)
            if token_id in self._owners:
                raise LedgerError(RevertCode.ALREADY_DEPOSITED, f"token {token_id} already minted")
            self._owners[token_id] = to
            self.journal.record(
                LedgerEventType.TRANSFER, token_id=token_id, account=to, sender=ZERO_ADDRESS,
            )

    def transfer(self, operator: str, from_: str, to: str, token_id: int) -> None:
        """Move custody and notify the receiver, if it registered a hook."""
        if to == ZERO_ADDRESS:
            raise LedgerError(RevertCode.ZERO_ADDRESS)
        if self._owners.get(token_id) != from_:
            raise LedgerError(RevertCode.NOT_TOKEN_HOLDER, f"token {token_id}")
        self._owners[token_id] = to
        self.journal.record(LedgerEventType.TRANSFER, token_id=token_id, account=to, sender=from_)

        hook = self._receivers.get(to)
        if hook is not None:
            hook(operator, from_, token_id)

    def apply_event(self, event: LedgerEvent) -> None:
        """Replay a TRANSFER event."""
        self._owners[event.token_id] = event.account

    def snapshot(self) -> Dict[int, str]:
        return dict(self._owners)

    def restore(self, owners: Dict[int, str]) -> None:
        self._owners = dict(owners)
