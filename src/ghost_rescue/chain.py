"""
Read-only chain access.

Transport failures are retried with bounded exponential backoff and, once the
retries run out, wrapped into ``ChainReadFailure``. A read the node refuses
outright (a revert, a malformed argument) is not retried and raises
``CallRejected``.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import requests
from eth_abi import decode, encode
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception

from .errors import CallRejected, ChainReadFailure
from .models import Receipt

logger = logging.getLogger(__name__)

# Transport failures. Only these are retried.
TRANSIENT_ERRORS = (
    requests.exceptions.RequestException,
    OSError,
    TimeExhausted,
)

# The node answered and refused: reverts, bad arguments, JSON-RPC errors.
CALL_ERRORS = (
    Web3Exception,
    ValueError,
)


def selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


def argument_types(signature: str) -> List[str]:
    inner = signature[signature.index("(") + 1 : signature.rindex(")")]
    return [item.strip() for item in inner.split(",") if item.strip()]


def encode_call(signature: str, *args: Any) -> bytes:
    """ABI-encode a call: 4-byte selector followed by the packed arguments."""
    return selector(signature) + encode(argument_types(signature), list(args))


class ChainReader:
    """
    Read-only queries against one node.

    Args:
        w3: Connected Web3 instance.
        attempts: Total tries per read before giving up.
        backoff: Multiplier for the exponential wait between tries, in seconds.
    """

    def __init__(self, w3: Web3, attempts: int = 3, backoff: float = 0.5, max_wait: float = 8.0):
        self.w3 = w3
        self._retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=backoff, max=max_wait),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    @classmethod
    def from_url(cls, url: str, attempts: int = 3, **kwargs) -> "ChainReader":
        return cls(Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": 10})), attempts=attempts, **kwargs)

    def _read(self, what: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return self._retrying.copy()(fn, *args)
        except TRANSIENT_ERRORS as exc:
            raise ChainReadFailure(f"Could not read {what}: {exc}") from exc
        except CALL_ERRORS as exc:
            raise CallRejected(f"Node rejected {what}: {exc}") from exc

    def chain_id(self) -> int:
        return int(self._read("chain id", lambda: self.w3.eth.chain_id))

    def gas_price(self) -> int:
        return int(self._read("gas price", lambda: self.w3.eth.gas_price))

    def block_number(self) -> int:
        return int(self._read("block number", lambda: self.w3.eth.block_number))

    def nonce(self, address: str) -> int:
        return int(self._read(f"nonce of {address}", self.w3.eth.get_transaction_count, address))

    def balance(self, address: str) -> int:
        return int(self._read(f"balance of {address}", self.w3.eth.get_balance, address))

    def call(self, contract: str, signature: str, *args: Any) -> bytes:
        data = encode_call(signature, *args)
        result = self._read(
            f"{signature} on {contract}",
            self.w3.eth.call,
            {"to": contract, "data": Web3.to_hex(data)},
        )
        return bytes(result)

    def call_uint(self, contract: str, signature: str, *args: Any) -> int:
        raw = self.call(contract, signature, *args)
        if len(raw) < 32:
            raise ChainReadFailure(
                f"{signature} returned {len(raw)} bytes, expected a uint256", contract=contract
            )
        (value,) = decode(["uint256"], raw[:32])
        return int(value)

    def receipt(self, tx_hash: str) -> Optional[Receipt]:
        def fetch():
            try:
                return self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        found = self._read(f"receipt of {tx_hash}", fetch)
        if found is None:
            return None
        return Receipt(
            tx_hash=tx_hash,
            status=int(found["status"]),
            block_number=int(found["blockNumber"]),
            gas_used=int(found["gasUsed"]),
        )

    def was_included(self, tx_hash: str, block_number: Optional[int] = None) -> bool:
        """True when ``tx_hash`` is mined (in ``block_number``, if given)."""
        receipt = self.receipt(tx_hash)
        if receipt is None:
            return False
        return block_number is None or receipt.block_number == block_number

    def read_many(self, reads: Dict[str, Callable[[], Any]]) -> Dict[str, Any]:
        """Issue independent reads concurrently. Purely a latency optimisation."""
        with ThreadPoolExecutor(max_workers=max(1, len(reads))) as pool:
            futures = {name: pool.submit(fn) for name, fn in reads.items()}
            return {name: future.result() for name, future in futures.items()}
