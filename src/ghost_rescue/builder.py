"""Turn transaction intents into signed, ready-to-broadcast transactions."""

from typing import Dict, List, Mapping, Optional

from web3 import Web3

from .chain import selector
from .errors import InvalidIntent
from .models import SignedTransaction, TxIntent
from .signer import Signer


class NonceLedger:
    """
    Per-account nonce counters for one pipeline run.

    Seeded once from chain state and incremented locally; never re-queried
    mid-run so the local plan cannot race the chain.
    """

    def __init__(self, observed: Mapping[str, int]):
        self._start: Dict[str, int] = dict(observed)
        self._next: Dict[str, int] = dict(observed)
        self._issued: Dict[str, List[int]] = {address: [] for address in observed}

    def next(self, address: str) -> int:
        if address not in self._next:
            raise KeyError(f"No observed nonce for {address}")
        nonce = self._next[address]
        self._next[address] = nonce + 1
        self._issued[address].append(nonce)
        return nonce

    def start(self, address: str) -> int:
        return self._start[address]

    def issued(self, address: str) -> List[int]:
        return list(self._issued.get(address, ()))


class TransactionBuilder:
    """Validates intents and signs them. No network access."""

    def build(self, intent: TxIntent, signer: Signer, step: Optional[str] = None) -> SignedTransaction:
        self.validate(intent, signer, step)
        raw, tx_hash = signer.sign_transaction(intent.to_tx_dict())
        return SignedTransaction(intent=intent, raw=raw, tx_hash=tx_hash)

    def validate(self, intent: TxIntent, signer: Signer, step: Optional[str] = None) -> None:
        for name in ("value", "gas_limit", "nonce", "gas_price", "priority_fee", "chain_id"):
            amount = getattr(intent, name)
            if amount is None:
                raise InvalidIntent(f"{name} is missing", step=step)
            if isinstance(amount, bool) or not isinstance(amount, int):
                raise InvalidIntent(f"{name} must be an integer", step=step, **{name: amount})
            if amount < 0:
                raise InvalidIntent(f"{name} must not be negative", step=step, **{name: amount})
        if intent.gas_limit == 0:
            raise InvalidIntent("gas_limit must be positive", step=step)
        if intent.priority_fee > intent.gas_price:
            raise InvalidIntent(
                "priority fee exceeds max fee",
                step=step,
                priority_fee=intent.priority_fee,
                gas_price=intent.gas_price,
            )
        if not Web3.is_checksum_address(intent.target):
            raise InvalidIntent("target is not a checksummed address", step=step, target=intent.target)
        if intent.sender != signer.address:
            raise InvalidIntent(
                "signer does not control the sender account",
                step=step,
                sender=intent.sender,
                signer=signer.address,
            )
        self._validate_data(intent, step)

    def _validate_data(self, intent: TxIntent, step: Optional[str]) -> None:
        data = intent.data or b""
        shape = intent.shape
        if shape is None:
            return
        if shape.signature is None:
            if data:
                raise InvalidIntent(f"{shape.name} takes no call data", step=step, length=len(data))
            return
        if data[:4] != selector(shape.signature):
            raise InvalidIntent(
                f"call data does not start with the selector of {shape.signature}", step=step
            )
        if (len(data) - 4) % 32:
            raise InvalidIntent(
                f"call data for {shape.signature} is not word aligned", step=step, length=len(data)
            )
