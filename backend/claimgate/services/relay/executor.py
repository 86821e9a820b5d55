"""
Relay Executor

Submits relay claims on behalf of claimants and pays for them from the
authority (relayer) account.

Core Principles:
1. Cost is estimated first and padded by a safety margin (default 20%).
2. Only transient provider errors are retried, with exponential backoff
   (2s, 4s, 8s for the default base). A ledger revert or an insufficient
   balance aborts immediately; retrying cannot help.
3. Every ultimate failure produces a manual-claim artifact: an authority
   signature bound to the claimant's current nonce, so the claimant can
   finish through the direct claim path.
4. In optimistic mode the confirmation runs as a background task owned by
   the executor, not by the request, and writes to the status store.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from eth_account.signers.local import LocalAccount

from ... import metrics
from ...models.db_models import RelayStatus
from ...models.ledger import LedgerCall, TxReceipt
from ..ledger.errors import InsufficientFundsError, LedgerError, TransientLedgerError
from ..ledger.gateway import LedgerGateway
from ..ledger.signatures import claim_message_hash, sign_claim
from .status_store import RelayStatusStore

logger = logging.getLogger(__name__)


# =============================================================================
# RESULTS
# =============================================================================

@dataclass(frozen=True)
class ManualClaimArtifact:
    """Everything the claimant needs to submit the direct claim themselves."""
    signature: str
    nonce: int
    message_hash: str
    authority: str
    token_id: int
    observation: str
    manual_claim_required: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "nonce": self.nonce,
            "messageHash": self.message_hash,
            "authority": self.authority,
            "tokenId": self.token_id,
            "observation": self.observation,
            "manualClaimRequired": self.manual_claim_required,
        }


@dataclass
class RelayResult:
    status: RelayStatus
    recipient: str
    token_id: int
    observation: str
    attempts: int
    handle: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    fallback: Optional[ManualClaimArtifact] = None

    @property
    def confirmed(self) -> bool:
        return self.status == RelayStatus.CONFIRMED

    @property
    def pending(self) -> bool:
        return self.status == RelayStatus.PENDING


class _Abort(Exception):
    """Non-recoverable submission failure."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


# =============================================================================
# EXECUTOR
# =============================================================================

class RelayExecutor:

    def __init__(
        self,
        gateway: LedgerGateway,
        authority: LocalAccount,
        status_store: RelayStatusStore,
        optimistic: bool = False,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        gas_margin_percent: int = 20,
        confirm_timeout: float = 120.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_confirmed: Optional[Callable[[RelayResult], None]] = None,
    ):
        self.gateway = gateway
        self.authority = authority
        self.status_store = status_store
        self.optimistic = optimistic
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.gas_margin_percent = gas_margin_percent
        self.confirm_timeout = confirm_timeout
        self._sleep = sleep
        self._on_confirmed = on_confirmed
        self._tasks: Set[asyncio.Task] = set()

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return self.backoff_base ** attempt

    async def relay_claim(self, recipient: str, token_id: int, observation: str) -> RelayResult:
        """Submit relay_claim for recipient; confirm or fall back."""
        call = LedgerCall(
            method="relay_claim",
            sender=self.authority.address,
            args=(recipient, token_id, observation),
        )
        started = time.monotonic()
        result = RelayResult(
            status=RelayStatus.PENDING,
            recipient=recipient,
            token_id=token_id,
            observation=observation,
            attempts=0,
        )

        try:
            result.handle = await self._submit(call, result)
        except _Abort as e:
            result.error, result.error_code = str(e), e.code
            await self._fall_back(result)
            metrics.RELAY_LATENCY_SECONDS.observe(time.monotonic() - started)
            return result

        self.status_store.record_pending(
            handle=result.handle,
            method=call.method,
            recipient=recipient,
            token_id=token_id,
            observation=observation,
            attempt_count=result.attempts,
        )

        if self.optimistic:
            task = asyncio.create_task(self._confirm(result, started))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            logger.info(f"Relay for token {token_id} broadcast as {result.handle[:10]}, confirming in background")
            return result

        return await self._confirm(result, started)

    async def _submit(self, call: LedgerCall, result: RelayResult) -> str:
        """Estimate, pad and send, retrying transient errors only."""
        last_error = "no attempt made"
        while result.attempts < self.max_attempts:
            result.attempts += 1
            try:
                estimate = await self.gateway.estimate_gas(call)
                gas_limit = estimate * (100 + self.gas_margin_percent) // 100
                tx_hash = await self.gateway.send_transaction(call, gas_limit)
                metrics.RELAY_ATTEMPTS_TOTAL.labels(result="sent").inc()
                return tx_hash
            except TransientLedgerError as e:
                metrics.RELAY_ATTEMPTS_TOTAL.labels(result="transient_error").inc()
                last_error = str(e)
                logger.warning(
                    f"Relay attempt {result.attempts}/{self.max_attempts} for token "
                    f"{result.token_id} failed: {e}"
                )
                if result.attempts < self.max_attempts:
                    await self._sleep(self.backoff_delay(result.attempts))
            except LedgerError as e:
                metrics.RELAY_ATTEMPTS_TOTAL.labels(result="reverted").inc()
                logger.error(f"Relay for token {result.token_id} reverted: {e}")
                raise _Abort(str(e), e.code.value) from e
            except InsufficientFundsError as e:
                metrics.RELAY_ATTEMPTS_TOTAL.labels(result="insufficient_funds").inc()
                logger.error(f"Relayer cannot pay for token {result.token_id}: {e}")
                raise _Abort(str(e), "INSUFFICIENT_FUNDS") from e
        raise _Abort(f"Retries exhausted after {result.attempts} attempts: {last_error}", "RETRIES_EXHAUSTED")

    async def _confirm(self, result: RelayResult, started: float) -> RelayResult:
        try:
            receipt = await self._wait_for_receipt(result.handle)
        except TransientLedgerError as e:
            result.error, result.error_code = f"Confirmation failed: {e}", "CONFIRMATION_FAILED"
            await self._fall_back(result)
        else:
            result.block_number = receipt.block_number
            result.gas_used = receipt.gas_used
            if receipt.succeeded:
                result.status = RelayStatus.CONFIRMED
                self.status_store.mark_confirmed(result.handle, receipt.block_number, receipt.gas_used)
                logger.info(
                    f"Relay claim confirmed: token {result.token_id} -> {result.recipient} "
                    f"block={receipt.block_number} gas={receipt.gas_used}"
                )
                if self._on_confirmed is not None:
                    self._on_confirmed(result)
            else:
                result.error = receipt.revert_reason or "Transaction reverted"
                result.error_code = receipt.revert_code
                await self._fall_back(result)
        metrics.RELAY_LATENCY_SECONDS.observe(time.monotonic() - started)
        return result

    async def _wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.gateway.wait_for_receipt(tx_hash, timeout=self.confirm_timeout)
            except TransientLedgerError as e:
                if attempt >= self.max_attempts:
                    raise
                logger.warning(f"Receipt lookup {attempt}/{self.max_attempts} for {tx_hash[:10]} failed: {e}")
                await self._sleep(self.backoff_delay(attempt))

    async def _fall_back(self, result: RelayResult) -> None:
        """Mark the relay failed and attach a manual-claim artifact when possible."""
        try:
            result.fallback = await self.build_manual_claim(result.recipient, result.token_id, result.observation)
            result.status = RelayStatus.MANUAL_FALLBACK
        except (TransientLedgerError, LedgerError) as e:
            logger.error(f"Could not build manual claim for {result.recipient}: {e}")
            result.status = RelayStatus.FAILED

        if result.handle is not None:
            self.status_store.mark_failed(
                result.handle,
                error=result.error or "relay failed",
                fallback=result.fallback.to_dict() if result.fallback else None,
                block_number=result.block_number,
            )
        logger.warning(
            f"Relay for token {result.token_id} failed ({result.error_code}); "
            f"status={result.status.value}"
        )

    async def build_manual_claim(self, recipient: str, token_id: int, observation: str) -> ManualClaimArtifact:
        """Sign the direct-claim authorization for the claimant's current nonce."""
        nonce = await self.gateway.call("get_nonce", recipient)
        digest = claim_message_hash(recipient, token_id, observation, nonce)
        signature = sign_claim(self.authority.key, recipient, token_id, observation, nonce)
        return ManualClaimArtifact(
            signature=signature,
            nonce=nonce,
            message_hash="0x" + digest.hex(),
            authority=self.authority.address,
            token_id=token_id,
            observation=observation,
        )

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for background confirmations (shutdown path)."""
        if self._tasks:
            logger.info(f"Draining {len(self._tasks)} background confirmations")
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
