"""
Ledger Gateway

The only surface the service uses to reach the ledger: cost estimation,
submission, receipts and read-only calls. LocalLedgerGateway adapts the
in-process claim engine as an automining chain: a transaction is mined
into its own block as soon as it is sent, reverts are mined as failed
receipts, and the sender pays gas_used * gas_price from a tracked balance.
"""
import logging
from typing import Any, Dict, List, Optional, Protocol

from eth_utils import keccak

from ...models.ledger import LedgerCall, LedgerEvent, TxReceipt
from .claimer import ObservationClaimer
from .errors import InsufficientFundsError, LedgerError, RevertCode, TransientLedgerError

logger = logging.getLogger(__name__)


# =============================================================================
# GAS SCHEDULE
# =============================================================================

BASE_TX_GAS = 21_000
LOG_GAS = 1_875
CALLDATA_BYTE_GAS = 16

METHOD_GAS = {
    "claim": 60_000,  # includes signature recovery
    "relay_claim": 45_000,
    "add_observation": 25_000,
    "relay_add_observation": 27_000,
    "deposit": 20_000,
    "withdraw": 15_000,
    "emergency_withdraw_all": 30_000,
    "set_authority": 8_000,
    "reset_claim_status": 5_000,
    "reset_nonce": 5_000,
    "pause": 5_000,
    "unpause": 5_000,
}


def gas_for(call: LedgerCall, events: List[LedgerEvent]) -> int:
    """Deterministic gas cost of a call given the events it emits."""
    calldata = 0
    for arg in call.args:
        if isinstance(arg, str):
            calldata += len(arg.encode("utf-8"))
        elif isinstance(arg, (list, tuple)):
            calldata += 32 * len(arg)
        else:
            calldata += 32
    return BASE_TX_GAS + METHOD_GAS.get(call.method, 30_000) + CALLDATA_BYTE_GAS * calldata + LOG_GAS * len(events)


class LedgerGateway(Protocol):
    """Async ledger access used by the relay executor and the routers."""

    async def estimate_gas(self, call: LedgerCall) -> int: ...

    async def send_transaction(self, call: LedgerCall, gas_limit: int) -> str: ...

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt: ...

    async def call(self, method: str, *args: Any) -> Any: ...

    async def get_balance(self, address: str) -> int: ...


class LocalLedgerGateway:
    """Automining adapter over an in-process ObservationClaimer."""

    def __init__(
        self,
        claimer: ObservationClaimer,
        gas_price_wei: int = 20 * 10 ** 9,
        balances: Optional[Dict[str, int]] = None,
    ):
        self.claimer = claimer
        self.gas_price_wei = gas_price_wei
        # Only tracked senders pay; others are externally funded wallets
        self.balances: Dict[str, int] = dict(balances or {})
        self._receipts: Dict[str, TxReceipt] = {}
        self._sent = 0

    async def estimate_gas(self, call: LedgerCall) -> int:
        """Dry-run the call. A revert surfaces here as LedgerError."""
        events = self.claimer.simulate(call)
        return gas_for(call, events)

    async def send_transaction(self, call: LedgerCall, gas_limit: int) -> str:
        max_fee = gas_limit * self.gas_price_wei
        if call.sender in self.balances and self.balances[call.sender] < max_fee:
            raise InsufficientFundsError(
                f"{call.sender} balance {self.balances[call.sender]} < max fee {max_fee}"
            )

        self._sent += 1
        tx_hash = "0x" + keccak(text=f"{call.sender}:{call.method}:{self._sent}:{call.args!r}").hex()
        receipt = self._mine(call, gas_limit, tx_hash)
        self._receipts[tx_hash] = receipt

        if call.sender in self.balances:
            self.balances[call.sender] -= receipt.gas_used * self.gas_price_wei
        logger.info(
            f"Mined {call.method} tx={tx_hash[:10]} block={receipt.block_number} "
            f"status={receipt.status} gas={receipt.gas_used}/{gas_limit}"
        )
        return tx_hash

    def _mine(self, call: LedgerCall, gas_limit: int, tx_hash: str) -> TxReceipt:
        try:
            required = gas_for(call, self.claimer.simulate(call))
            if required > gas_limit:
                return self._failed(tx_hash, gas_limit, RevertCode.OUT_OF_GAS, f"needs {required}")
            events = self.claimer.execute(call, tx_hash=tx_hash)
        except LedgerError as e:
            return self._failed(tx_hash, BASE_TX_GAS, e.code, str(e))

        block_number = events[0].block_number if events else self.claimer.block_number
        return TxReceipt(
            tx_hash=tx_hash,
            status=1,
            block_number=block_number,
            gas_used=gas_for(call, events),
        )

    def _failed(self, tx_hash: str, gas_used: int, code: RevertCode, reason: str) -> TxReceipt:
        return TxReceipt(
            tx_hash=tx_hash,
            status=0,
            block_number=self.claimer.block_number,
            gas_used=gas_used,
            revert_code=code.value,
            revert_reason=reason,
        )

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        receipt = self._receipts.get(tx_hash)
        if receipt is None:
            raise TransientLedgerError(f"Receipt for {tx_hash} not found")
        return receipt

    async def call(self, method: str, *args: Any) -> Any:
        return self.claimer.view(method, *args)

    async def get_balance(self, address: str) -> int:
        return self.balances.get(address, 0)


async def submit_and_wait(
    gateway: LedgerGateway,
    call: LedgerCall,
    gas_margin_percent: int = 20,
    timeout: float = 120.0,
) -> TxReceipt:
    """One-shot submission for owner and direct-claim calls. Reverts raise LedgerError."""
    estimate = await gateway.estimate_gas(call)
    tx_hash = await gateway.send_transaction(call, estimate * (100 + gas_margin_percent) // 100)
    receipt = await gateway.wait_for_receipt(tx_hash, timeout=timeout)
    if not receipt.succeeded:
        try:
            code = RevertCode(receipt.revert_code)
        except ValueError:
            code = RevertCode.UNKNOWN_METHOD
        raise LedgerError(code, receipt.revert_reason)
    return receipt
