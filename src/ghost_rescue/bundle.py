"""
Bundle assembly and the ``eth_sendBundle`` wire format.

    {"jsonrpc":"2.0","id":1,"method":"eth_sendBundle",
     "params":[{"txs":["0x..",..],"blockNumber":"0x..","minTimestamp":0}]}

The ``txs`` array is the on-chain execution order. Serialization is compact
and deterministic; whatever bytes come out of ``serialize`` are exactly the
bytes that get signed and sent.
"""

import json
import logging
from typing import Optional, Sequence

from .chain import ChainReader
from .models import Bundle, SignedTransaction, WireBundle

logger = logging.getLogger(__name__)

SEND_BUNDLE = "eth_sendBundle"


class BundleAssembler:
    def __init__(self, reader: ChainReader, min_timestamp: int = 0, max_timestamp: Optional[int] = None):
        self.reader = reader
        self.min_timestamp = min_timestamp
        self.max_timestamp = max_timestamp

    def assemble(self, transactions: Sequence[SignedTransaction]) -> Bundle:
        """Bundle ``transactions`` in the given order for the block after the current head."""
        if not transactions:
            raise ValueError("Cannot assemble an empty bundle")
        target_block = self.reader.block_number() + 1
        bundle = Bundle(
            transactions=tuple(transactions),
            target_block=target_block,
            min_timestamp=self.min_timestamp,
            max_timestamp=self.max_timestamp,
        )
        logger.info("Assembled %d transactions for block %d", len(bundle.transactions), target_block)
        return bundle


def serialize(bundle: Bundle, request_id: int = 1) -> bytes:
    params = {
        "txs": list(bundle.raw_transactions),
        "blockNumber": hex(bundle.target_block),
        "minTimestamp": bundle.min_timestamp,
    }
    if bundle.max_timestamp is not None:
        params["maxTimestamp"] = bundle.max_timestamp
    request = {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": SEND_BUNDLE,
        "params": [params],
    }
    return json.dumps(request, separators=(",", ":")).encode("utf-8")


def parse(body: bytes) -> WireBundle:
    request = json.loads(body)
    if request.get("method") != SEND_BUNDLE:
        raise ValueError(f"Not an {SEND_BUNDLE} request: {request.get('method')!r}")
    (params,) = request["params"]
    return WireBundle(
        raw_transactions=tuple(params["txs"]),
        target_block=int(params["blockNumber"], 16),
        min_timestamp=int(params.get("minTimestamp", 0)),
        max_timestamp=params.get("maxTimestamp"),
    )
