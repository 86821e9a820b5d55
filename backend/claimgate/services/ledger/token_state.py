"""
Token State Store

Availability of the fixed token pool, one bit per token id packed into
fixed-width integers. Bit i of `deposited` / `claimed` / `observed` is the
flag for token i; bit 0 is never used.

Enumeration is a linear scan over ids 1..MAX_SUPPLY. Flipping a bit is
the only write this store ever performs, which keeps every mutation a
constant-size update on a metered ledger.
"""
from dataclasses import dataclass
from typing import Callable, Iterable, List

from ...config import BITMAP_WIDTH, MAX_SUPPLY
from .errors import LedgerError, RevertCode


def validate_token_id(token_id: int, max_supply: int = MAX_SUPPLY) -> int:
    """Reject ids outside [1, max_supply]."""
    if isinstance(token_id, bool) or not isinstance(token_id, int):
        raise LedgerError(RevertCode.INVALID_TOKEN_ID, f"{token_id!r}")
    if token_id < 1 or token_id > max_supply:
        raise LedgerError(RevertCode.INVALID_TOKEN_ID, str(token_id))
    return token_id


def bit_is_set(bitmap: int, token_id: int) -> bool:
    return (bitmap >> token_id) & 1 == 1


def ids_in_bitmap(bitmap: int, max_supply: int = MAX_SUPPLY) -> List[int]:
    return [token_id for token_id in range(1, max_supply + 1) if bit_is_set(bitmap, token_id)]


@dataclass
class TokenBitmaps:
    """Raw bitmap triple. Copied wholesale for transaction snapshots."""
    deposited: int = 0
    claimed: int = 0
    observed: int = 0


class TokenStateStore:
    """
    Bit-level deposited/claimed tracking for the token pool.

    The custody check is supplied by the owner of this store (the claim
    engine) because custody lives in the token collection.
    """

    def __init__(
        self,
        custody_check: Callable[[int], bool],
        max_supply: int = MAX_SUPPLY,
    ):
        if max_supply >= BITMAP_WIDTH:
            raise ValueError(f"max_supply must fit in a {BITMAP_WIDTH}-bit bitmap")
        self.max_supply = max_supply
        self._custody_check = custody_check
        self.bits = TokenBitmaps()

    # =========================================================================
    # READS
    # =========================================================================

    def is_deposited(self, token_id: int) -> bool:
        return bit_is_set(self.bits.deposited, token_id)

    def is_claimed(self, token_id: int) -> bool:
        return bit_is_set(self.bits.claimed, token_id)

    def has_observation(self, token_id: int) -> bool:
        return bit_is_set(self.bits.observed, token_id)

    def is_available(self, token_id: int) -> bool:
        """deposited AND not claimed AND held by the pool."""
        if token_id < 1 or token_id > self.max_supply:
            return False
        return (
            self.is_deposited(token_id)
            and not self.is_claimed(token_id)
            and self._custody_check(token_id)
        )

    def list_available(self) -> List[int]:
        return [t for t in range(1, self.max_supply + 1) if self.is_available(t)]

    def available_count(self) -> int:
        return len(self.list_available())

    def deposited_bitmap(self) -> int:
        return self.bits.deposited

    def claimed_bitmap(self) -> int:
        return self.bits.claimed

    # =========================================================================
    # WRITES (called only from inside an engine transaction)
    # =========================================================================

    def mark_deposited(self, token_ids: Iterable[int]) -> None:
        for token_id in token_ids:
            self.bits.deposited |= 1 << token_id

    def clear_deposited(self, token_ids: Iterable[int]) -> None:
        for token_id in token_ids:
            self.bits.deposited &= ~(1 << token_id)

    def set_claimed(self, token_id: int) -> None:
        self.bits.claimed |= 1 << token_id

    def set_observed(self, token_id: int) -> None:
        self.bits.observed |= 1 << token_id

    def snapshot(self) -> TokenBitmaps:
        return TokenBitmaps(self.bits.deposited, self.bits.claimed, self.bits.observed)

    def restore(self, snapshot: TokenBitmaps) -> None:
        self.bits = TokenBitmaps(snapshot.deposited, snapshot.claimed, snapshot.observed)
