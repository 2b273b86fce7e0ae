"""Data model shared by the rescue pipeline components."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class ExecutionMode(Enum):
    DRY_RUN = "DRY_RUN"
    COMMIT = "COMMIT"


@dataclass(frozen=True)
class CallShape:
    """
    Known shape of a call: the function signature (``None`` for a plain
    value transfer) and the gas limit budgeted for it.
    """

    name: str
    signature: Optional[str]
    gas_limit: int


@dataclass(frozen=True)
class TxIntent:
    sender: str
    target: str
    value: int
    gas_limit: int
    nonce: int
    gas_price: int
    priority_fee: int
    chain_id: int
    data: bytes = b""
    shape: Optional[CallShape] = None

    def to_tx_dict(self) -> dict:
        return {
            "type": 2,
            "chainId": self.chain_id,
            "nonce": self.nonce,
            "to": self.target,
            "value": self.value,
            "gas": self.gas_limit,
            "maxFeePerGas": self.gas_price,
            "maxPriorityFeePerGas": self.priority_fee,
            "data": self.data,
        }


@dataclass(frozen=True)
class SignedTransaction:
    intent: TxIntent
    raw: bytes
    tx_hash: str

    @property
    def raw_hex(self) -> str:
        return "0x" + self.raw.hex()


@dataclass(frozen=True)
class Observation:
    """A value read from chain or fork state just before the step that consumes it."""

    name: str
    value: int
    step: str


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    status: int
    block_number: Optional[int]
    gas_used: int

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class Bundle:
    """Ordered transactions targeting one block. Order is on-chain execution order."""

    transactions: Tuple[SignedTransaction, ...]
    target_block: int
    min_timestamp: int = 0
    max_timestamp: Optional[int] = None

    @property
    def raw_transactions(self) -> Tuple[str, ...]:
        return tuple(tx.raw_hex for tx in self.transactions)


@dataclass(frozen=True)
class WireBundle:
    """A bundle as read back from its wire form."""

    raw_transactions: Tuple[str, ...]
    target_block: int
    min_timestamp: int
    max_timestamp: Optional[int] = None


@dataclass(frozen=True)
class RelayAck:
    """Relay acknowledgement. Accepted for consideration, not included."""

    relay_url: str
    target_block: int
    bundle_hash: Optional[str]
    authenticated: bool
