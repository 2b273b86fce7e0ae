"""
Execution backends.

A backend applies signed transactions to some chain state and exposes a
reader over that same state. The forked backend applies to a disposable
anvil fork; the live backend broadcasts for real. The resolver treats them
identically.
"""

import logging
from typing import Any, Optional, Protocol

from web3 import Web3

from .chain import CALL_ERRORS, TRANSIENT_ERRORS, ChainReader
from .errors import ChainReadFailure, StepReverted
from .models import Receipt, SignedTransaction

logger = logging.getLogger(__name__)


class ExecutionBackend(Protocol):
    label: str
    disposable: bool
    reader: ChainReader

    def publish(self, signed: SignedTransaction) -> Receipt:
        ...


class _RawPublisher:
    def __init__(self, reader: ChainReader, receipt_timeout: float = 30.0):
        self.reader = reader
        self.receipt_timeout = receipt_timeout

    def publish(self, signed: SignedTransaction) -> Receipt:
        """Send once and wait for the receipt. Never retried."""
        w3 = self.reader.w3
        try:
            tx_hash = w3.eth.send_raw_transaction(signed.raw)
            found = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TRANSIENT_ERRORS + CALL_ERRORS as exc:
            raise StepReverted(
                f"{self.label} backend refused transaction: {exc}",
                tx_hash=signed.tx_hash,
                nonce=signed.intent.nonce,
            ) from exc
        receipt = Receipt(
            tx_hash=Web3.to_hex(tx_hash),
            status=int(found["status"]),
            block_number=int(found["blockNumber"]),
            gas_used=int(found["gasUsed"]),
        )
        logger.debug("%s published %s in block %s", self.label, receipt.tx_hash, receipt.block_number)
        return receipt


class ForkBackend(_RawPublisher):
    """Backend over an anvil fork. State can be snapshotted, reverted and re-forked."""

    label = "fork"
    disposable = True

    def _rpc(self, method: str, params: list) -> Any:
        try:
            response = self.reader.w3.provider.make_request(method, params)
        except TRANSIENT_ERRORS + CALL_ERRORS as exc:
            raise ChainReadFailure(f"{method} failed: {exc}") from exc
        if "error" in response:
            raise ChainReadFailure(f"{method} failed: {response['error']}")
        return response.get("result")

    def snapshot(self) -> str:
        return self._rpc("evm_snapshot", [])

    def revert(self, snapshot_id: str) -> None:
        if not self._rpc("evm_revert", [snapshot_id]):
            raise ChainReadFailure(f"evm_revert refused snapshot {snapshot_id}")

    def reset(self, upstream_url: str, block_number: Optional[int] = None) -> None:
        """Re-fork from ``upstream_url`` (at its head unless a block is given)."""
        forking = {"jsonRpcUrl": upstream_url}
        if block_number is not None:
            forking["blockNumber"] = block_number
        self._rpc("anvil_reset", [{"forking": forking}])
        logger.info("Fork reset to %s", "head" if block_number is None else block_number)


class LiveBackend(_RawPublisher):
    """Backend that broadcasts to the public network. Nothing here is reversible."""

    label = "live"
    disposable = False
