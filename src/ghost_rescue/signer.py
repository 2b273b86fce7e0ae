"""Signing capability consumed by the builder and the relay authenticator."""

from typing import Protocol, Tuple

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3


class Signer(Protocol):
    label: str

    @property
    def address(self) -> str:
        ...

    def sign_transaction(self, tx: dict) -> Tuple[bytes, str]:
        ...

    def sign_text(self, text: str) -> str:
        ...


class LocalSigner:
    """
    Signer backed by an in-process eth-account key.

    The key itself is never exposed through ``repr`` or attributes other than
    the wrapped account.
    """

    def __init__(self, private_key: str, label: str = ""):
        self._account = Account.from_key(private_key)
        self.label = label or self._account.address

    def __repr__(self) -> str:
        return f"LocalSigner(label={self.label!r}, address={self.address})"

    @property
    def address(self) -> str:
        return self._account.address

    def sign_transaction(self, tx: dict) -> Tuple[bytes, str]:
        """Sign a transaction dict and return ``(raw_bytes, 0x-hash)``."""
        signed = self._account.sign_transaction(tx)
        return bytes(signed.raw_transaction), Web3.to_hex(signed.hash)

    def sign_text(self, text: str) -> str:
        """EIP-191 personal-message signature over ``text``, 0x-prefixed."""
        signed = self._account.sign_message(encode_defunct(text=text))
        return Web3.to_hex(signed.signature)
