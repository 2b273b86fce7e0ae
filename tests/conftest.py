"""Shared fakes: an in-memory chain that understands the rescue contracts."""

import copy
import json

import pytest
from eth_abi import decode
from eth_account import Account
from web3 import Web3

from ghost_rescue.chain import selector
from ghost_rescue.config import RescueConfig
from ghost_rescue.models import Receipt
from ghost_rescue.pipeline import RescuePipeline
from ghost_rescue.relay import RelaySubmitter, authenticator_for
from ghost_rescue.resolver import DependencyResolver
from ghost_rescue.signer import LocalSigner
from ghost_rescue.steps import (
    DISTRIBUTE,
    DISTRIBUTE_ERC20,
    GAS_ROLE,
    TRANSFER,
    VICTIM_ROLE,
    WITHDRAW,
    BALANCE_OF,
    GET_ERC20_BALANCE,
    split_rescue_steps,
)

GAS_KEY = "0x" + "11" * 32
VICTIM_KEY = "0x" + "22" * 32
AUTH_KEY = "0x" + "33" * 32

GAS_ADDRESS = Account.from_key(GAS_KEY).address
VICTIM_ADDRESS = Account.from_key(VICTIM_KEY).address
AUTH_ADDRESS = Account.from_key(AUTH_KEY).address


def _address(byte: str) -> str:
    return Web3.to_checksum_address("0x" + byte * 20)


WSTETH = _address("a1")
OBOL = _address("a2")
SPLIT_MAIN = _address("a3")
SPLIT_PROXY = _address("a4")
SAFE = _address("a5")
CO_RECIPIENT = _address("a6")

ONE_TOKEN = 10**18


def make_env(**overrides):
    env = {
        "PROVIDER_URL": "http://127.0.0.1:8545",
        "RELAY_URL": "https://relay.flashbots.net",
        "VICTIM_PK": VICTIM_KEY,
        "GAS_PK": GAS_KEY,
        "FLASHBOTS_SIGNATURE_PK": AUTH_KEY,
        "WSTETH_ADDRESS": WSTETH,
        "OBOLLIDOSPLIT_ADDRESS": OBOL,
        "SPLITMAIN_ADDRESS": SPLIT_MAIN,
        "SPLITPROXY_ADDRESS": SPLIT_PROXY,
        "SPLITPROXY_ACCOUNTS": f"[{VICTIM_ADDRESS},{CO_RECIPIENT}]",
        "SPLITPROXY_AMOUNTS": "[500000,500000]",
        "SAFE_ADDRESS": SAFE,
    }
    env.update(overrides)
    return {key: value for key, value in env.items() if value is not None}


class FakeChain:
    """
    Just enough of mainnet for the rescue: the Obol split pushes wstETH into
    SplitMain, SplitMain credits recipients by allocation, withdraw moves the
    credit into the recipient's token balance, transfer moves tokens.
    """

    def __init__(self, obol_pending=ONE_TOKEN, gas_price=100, block_number=1000, chain_id=1):
        self.gas_price = gas_price
        self.block_number = block_number
        self.chain_id = chain_id
        self.included = {}
        self.state = {
            "eth": {GAS_ADDRESS: 10**20},
            "token": {},
            "withdrawable": {},
            "split_pending": 0,
            "obol_pending": obol_pending,
            "nonces": {GAS_ADDRESS: 7, VICTIM_ADDRESS: 3},
        }

    def apply(self, signed) -> Receipt:
        intent = signed.intent
        state = self.state
        if state["nonces"].get(intent.sender, 0) != intent.nonce:
            return Receipt(signed.tx_hash, 0, self.block_number, 0)
        state["nonces"][intent.sender] = intent.nonce + 1

        status = 1
        data = intent.data
        head, body = data[:4], data[4:]
        if intent.target == OBOL and head == selector(DISTRIBUTE):
            state["split_pending"] += state["obol_pending"]
            state["obol_pending"] = 0
        elif intent.target == SPLIT_MAIN and head == selector(DISTRIBUTE_ERC20):
            _, _, accounts, amounts, _, _ = decode(
                ["address", "address", "address[]", "uint32[]", "uint32", "address"], body
            )
            pending, state["split_pending"] = state["split_pending"], 0
            for account, share in zip(accounts, amounts):
                account = Web3.to_checksum_address(account)
                credit = pending * share // 1_000_000
                state["withdrawable"][account] = state["withdrawable"].get(account, 0) + credit
        elif intent.target == SPLIT_MAIN and head == selector(WITHDRAW):
            account, _, _ = decode(["address", "uint256", "address[]"], body)
            account = Web3.to_checksum_address(account)
            amount = state["withdrawable"].pop(account, 0)
            state["token"][account] = state["token"].get(account, 0) + amount
        elif intent.target == WSTETH and head == selector(TRANSFER):
            recipient, amount = decode(["address", "uint256"], body)
            recipient = Web3.to_checksum_address(recipient)
            held = state["token"].get(intent.sender, 0)
            if held < amount:
                status = 0
            else:
                state["token"][intent.sender] = held - amount
                state["token"][recipient] = state["token"].get(recipient, 0) + amount
        elif not data:
            state["eth"][intent.target] = state["eth"].get(intent.target, 0) + intent.value
        if status and intent.value:
            state["eth"][intent.sender] = state["eth"].get(intent.sender, 0) - intent.value
        return Receipt(signed.tx_hash, status, self.block_number, intent.gas_limit)


class FakeReader:
    def __init__(self, chain: FakeChain):
        self.chain = chain
        self.calls = []

    def gas_price(self):
        return self.chain.gas_price

    def chain_id(self):
        return self.chain.chain_id

    def block_number(self):
        return self.chain.block_number

    def nonce(self, address):
        return self.chain.state["nonces"].get(address, 0)

    def balance(self, address):
        return self.chain.state["eth"].get(address, 0)

    def call_uint(self, contract, signature, *args):
        self.calls.append((contract, signature, args))
        state = self.chain.state
        if contract == SPLIT_MAIN and signature == GET_ERC20_BALANCE:
            return state["withdrawable"].get(args[0], 0)
        if contract == WSTETH and signature == BALANCE_OF:
            return state["token"].get(args[0], 0)
        raise AssertionError(f"unexpected call {signature} on {contract}")

    def read_many(self, reads):
        return {name: fn() for name, fn in reads.items()}

    def was_included(self, tx_hash, block_number=None):
        return self.chain.included.get(tx_hash) == block_number


class FakeBackend:
    def __init__(self, chain: FakeChain, label="fork", disposable=True):
        self.chain = chain
        self.label = label
        self.disposable = disposable
        self.reader = FakeReader(chain)
        self.published = []
        self.reverts = 0
        self._snapshots = {}

    def snapshot(self):
        snapshot_id = hex(len(self._snapshots) + self.reverts + 1)
        self._snapshots[snapshot_id] = copy.deepcopy(self.chain.state)
        return snapshot_id

    def revert(self, snapshot_id):
        self.chain.state = self._snapshots.pop(snapshot_id)
        self.reverts += 1

    def publish(self, signed):
        self.published.append(signed)
        return self.chain.apply(signed)


class FakeResponse:
    def __init__(self, status=200, payload=None, text=None):
        self.status_code = status
        self.ok = 200 <= status < 300
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    def __init__(self, responses=None, error=None):
        self.calls = []
        self.responses = list(responses or [])
        self.error = error

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append({"url": url, "data": data, "headers": dict(headers or {})})
        if self.error is not None:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        return FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "result": {"bundleHash": "0xb0b"}})


@pytest.fixture
def config():
    return RescueConfig.from_env(make_env())


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def backend(chain):
    return FakeBackend(chain)


@pytest.fixture
def signers():
    return {
        GAS_ROLE: LocalSigner(GAS_KEY, label=GAS_ROLE),
        VICTIM_ROLE: LocalSigner(VICTIM_KEY, label=VICTIM_ROLE),
    }


@pytest.fixture
def steps(config):
    return split_rescue_steps(config, VICTIM_ADDRESS)


@pytest.fixture
def resolver(steps, signers, config):
    return DependencyResolver(steps, signers, config.gas_policy)


def build_pipeline(config, dry_run_backend, commit_backend=None, session=None, reader=None):
    """A pipeline over fakes. Sleeping advances the live chain by one block."""
    reader = reader or FakeReader(dry_run_backend.chain)

    def advance(_seconds):
        reader.chain.block_number += 1

    signers = {
        GAS_ROLE: LocalSigner(GAS_KEY, label=GAS_ROLE),
        VICTIM_ROLE: LocalSigner(VICTIM_KEY, label=VICTIM_ROLE),
    }
    submitter = RelaySubmitter(
        config.relay_url,
        authenticator_for(config.relay_url, LocalSigner(AUTH_KEY), config.auth_relay_patterns),
        session=session if session is not None else FakeSession(),
    )
    return RescuePipeline(
        config,
        reader,
        dry_run_backend,
        commit_backend or dry_run_backend,
        submitter,
        signers,
        split_rescue_steps(config, VICTIM_ADDRESS),
        sleep=advance,
        poll_interval=0,
    )
