"""
Relay authentication and submission.

Relays whose host matches a configured pattern (Flashbots by default) require
a signature header over the exact request body:

    X-Flashbots-Signature: <signer address>:<EIP-191 signature of keccak256(body) as 0x-hex text>

Other relays get no header at all. The signature is computed on the final
serialized bytes, immediately before they are posted.
"""

import logging
from typing import Iterable, Optional, Protocol, Set
from urllib.parse import urlparse

import requests
from web3 import Web3

from .bundle import serialize
from .errors import RelayUnavailable, StaleBundle, SubmissionRejected
from .models import Bundle, RelayAck
from .signer import Signer

logger = logging.getLogger(__name__)

AUTH_HEADER = "X-Flashbots-Signature"


def payload_digest(body: bytes) -> str:
    return Web3.to_hex(Web3.keccak(body))


class RelayAuthenticator(Protocol):
    authenticated: bool

    def headers(self, body: bytes) -> dict:
        ...


class NoAuth:
    authenticated = False

    def headers(self, body: bytes) -> dict:
        return {}


class SignatureAuth:
    """Signs the keccak hash of the payload with a reputation-bound identity key."""

    authenticated = True

    def __init__(self, signer: Signer):
        self.signer = signer

    def headers(self, body: bytes) -> dict:
        signature = self.signer.sign_text(payload_digest(body))
        return {AUTH_HEADER: f"{self.signer.address}:{signature}"}


def requires_auth(relay_url: str, patterns: Iterable[str]) -> bool:
    host = (urlparse(relay_url).hostname or "").lower()
    return any(host == pattern or host.endswith("." + pattern) for pattern in patterns)


def authenticator_for(relay_url: str, signer: Signer, patterns: Iterable[str]) -> RelayAuthenticator:
    if requires_auth(relay_url, patterns):
        return SignatureAuth(signer)
    return NoAuth()


class RelaySubmitter:
    """
    Posts bundles to one relay.

    Each target block is submitted at most once per submitter. Nothing is
    retried: a failed post means the caller rebuilds from scratch.
    """

    def __init__(
        self,
        relay_url: str,
        authenticator: RelayAuthenticator,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ):
        self.relay_url = relay_url
        self.authenticator = authenticator
        self.session = session or requests.Session()
        self.timeout = timeout
        self._submitted: Set[int] = set()

    def submit(self, bundle: Bundle, request_id: int = 1) -> RelayAck:
        if bundle.target_block in self._submitted:
            raise StaleBundle(
                "A bundle for this block was already submitted; rebuild instead",
                target_block=bundle.target_block,
            )
        body = serialize(bundle, request_id)
        headers = {"Content-Type": "application/json"}
        headers.update(self.authenticator.headers(body))
        self._submitted.add(bundle.target_block)

        logger.info(
            "Submitting %d transactions for block %d to %s",
            len(bundle.transactions),
            bundle.target_block,
            self.relay_url,
        )
        try:
            response = self.session.post(self.relay_url, data=body, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise RelayUnavailable(
                f"Relay unreachable: {exc}", relay=self.relay_url, target_block=bundle.target_block
            ) from exc

        if not response.ok:
            raise SubmissionRejected(
                "Relay returned an HTTP error",
                relay=self.relay_url,
                status=response.status_code,
                body=response.text[:200],
            )
        try:
            result = response.json()
        except ValueError:
            raise SubmissionRejected(
                "Relay response is not JSON", relay=self.relay_url, body=response.text[:200]
            ) from None
        if result.get("error"):
            raise SubmissionRejected(
                f"Relay rejected bundle: {result['error']}",
                relay=self.relay_url,
                target_block=bundle.target_block,
            )

        outcome = result.get("result")
        if isinstance(outcome, dict):
            bundle_hash = outcome.get("bundleHash")
        elif isinstance(outcome, str):
            bundle_hash = outcome
        else:
            bundle_hash = None
        return RelayAck(
            relay_url=self.relay_url,
            target_block=bundle.target_block,
            bundle_hash=bundle_hash,
            authenticated=self.authenticator.authenticated,
        )
