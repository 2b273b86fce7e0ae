"""
Rescue configuration.

Everything the pipeline needs from the operator is collected here once,
validated eagerly, and passed into the pipeline constructor. Nothing else in
the package reads the environment.

Usage:
    from ghost_rescue.config import RescueConfig

    config = RescueConfig.from_env(dotenv_path=".env")
"""

import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from dotenv import load_dotenv
from web3 import Web3

from .errors import ConfigError

# SplitMain expresses allocations in millionths.
PERCENTAGE_SCALE = 1_000_000
UINT32_MAX = 2**32 - 1

DEFAULT_GAS_LIMITS: Dict[str, int] = {
    "transfer_eth": 21000,
    "transfer_token": 80000,
    "distribute_obol": 262000,
    "distribute_splitmain": 250000,
    "withdraw_splitmain": 200000,
}

REQUIRED_VARS = (
    "PROVIDER_URL",
    "RELAY_URL",
    "VICTIM_PK",
    "GAS_PK",
    "FLASHBOTS_SIGNATURE_PK",
    "WSTETH_ADDRESS",
    "OBOLLIDOSPLIT_ADDRESS",
    "SPLITMAIN_ADDRESS",
    "SPLITPROXY_ADDRESS",
    "SPLITPROXY_ACCOUNTS",
    "SPLITPROXY_AMOUNTS",
    "SAFE_ADDRESS",
)

_PRIVATE_KEY = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class GasPolicy:
    """
    Gas pricing for one pipeline run.

    The chain's gas price is scaled by ``100 + premium_percent`` with floor
    division, so a base of 100 and a premium of 20 applies exactly 120.
    """

    premium_percent: int = 20
    priority_fee: Optional[int] = None
    fill_headroom_percent: int = 0
    gas_limits: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_GAS_LIMITS))

    def apply(self, base_gas_price: int) -> int:
        return base_gas_price * (100 + self.premium_percent) // 100

    def priority_for(self, applied_gas_price: int) -> int:
        if self.priority_fee is None:
            return applied_gas_price
        return min(self.priority_fee, applied_gas_price)

    def gas_limit(self, call_type: str) -> int:
        try:
            return self.gas_limits[call_type]
        except KeyError:
            raise ConfigError([f"No gas limit configured for call type '{call_type}'"]) from None

    def gas_to_fill(self, applied_gas_price: int) -> int:
        """Wei sent to the compromised account to pay for the token sweep."""
        cost = applied_gas_price * self.gas_limit("transfer_token")
        return cost * (100 + self.fill_headroom_percent) // 100


@dataclass(frozen=True)
class RescueConfig:
    provider_url: str
    fork_url: str
    relay_url: str
    victim_key: str = field(repr=False)
    gas_key: str = field(repr=False)
    auth_key: str = field(repr=False)
    wsteth_address: str
    obol_lido_split_address: str
    split_main_address: str
    split_proxy_address: str
    split_accounts: Tuple[str, ...]
    split_amounts: Tuple[int, ...]
    safe_address: str
    gas_policy: GasPolicy = field(default_factory=GasPolicy)
    mismatch_tolerance_bps: int = 50
    read_attempts: int = 3
    auth_relay_patterns: Tuple[str, ...] = ("flashbots.net",)
    min_timestamp: int = 0
    max_timestamp: Optional[int] = None

    @classmethod
    def from_env(
        cls, env: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = None
    ) -> "RescueConfig":
        """
        Build a config from environment variables.

        Args:
            env: Mapping to read instead of ``os.environ``. When omitted the
                ``.env`` file is loaded first.
            dotenv_path: Explicit ``.env`` location.

        Raises:
            ConfigError: listing every missing or invalid variable.
        """
        if env is None:
            load_dotenv(dotenv_path)
            env = os.environ
        return _Parser(env).build()


class _Parser:
    def __init__(self, env: Mapping[str, str]):
        self.env = env
        self.problems: List[str] = []

    def build(self) -> RescueConfig:
        for name in REQUIRED_VARS:
            if not (self.env.get(name) or "").strip():
                self.problems.append(f"{name} is not set")
        if self.problems:
            raise ConfigError(self.problems)

        provider_url = self.url("PROVIDER_URL")
        fork_url = self.url("FORK_URL", default=provider_url)
        relay_url = self.url("RELAY_URL")
        victim_key = self.key("VICTIM_PK")
        gas_key = self.key("GAS_PK")
        auth_key = self.key("FLASHBOTS_SIGNATURE_PK")
        accounts = tuple(self.address_value("SPLITPROXY_ACCOUNTS", item) for item in self.items("SPLITPROXY_ACCOUNTS"))
        amounts = self.split_amounts()
        if accounts and amounts and len(accounts) != len(amounts):
            self.problems.append(
                f"SPLITPROXY_ACCOUNTS has {len(accounts)} entries but SPLITPROXY_AMOUNTS has {len(amounts)}"
            )

        premium = self.integer("GAS_PRICE_PREMIUM_PERCENT", 20)
        if premium is not None and premium <= 0:
            self.problems.append("GAS_PRICE_PREMIUM_PERCENT must be greater than 0")
        policy = GasPolicy(
            premium_percent=premium or 20,
            priority_fee=self.integer("PRIORITY_FEE_WEI", None),
            fill_headroom_percent=self.integer("GAS_FILL_HEADROOM_PERCENT", 0) or 0,
            gas_limits=self.gas_limits(),
        )

        read_attempts = self.integer("READ_ATTEMPTS", 3)
        if read_attempts is not None and read_attempts < 1:
            self.problems.append("READ_ATTEMPTS must be at least 1")

        config = RescueConfig(
            provider_url=provider_url,
            fork_url=fork_url,
            relay_url=relay_url,
            victim_key=victim_key,
            gas_key=gas_key,
            auth_key=auth_key,
            wsteth_address=self.address("WSTETH_ADDRESS"),
            obol_lido_split_address=self.address("OBOLLIDOSPLIT_ADDRESS"),
            split_main_address=self.address("SPLITMAIN_ADDRESS"),
            split_proxy_address=self.address("SPLITPROXY_ADDRESS"),
            split_accounts=accounts,
            split_amounts=amounts,
            safe_address=self.address("SAFE_ADDRESS"),
            gas_policy=policy,
            mismatch_tolerance_bps=self.integer("MISMATCH_TOLERANCE_BPS", 50) or 0,
            read_attempts=read_attempts or 3,
            auth_relay_patterns=self.patterns(),
            min_timestamp=self.integer("MIN_TIMESTAMP", 0) or 0,
            max_timestamp=self.integer("MAX_TIMESTAMP", None),
        )
        if self.problems:
            raise ConfigError(self.problems)
        return config

    def raw(self, name: str) -> str:
        return (self.env.get(name) or "").strip()

    def url(self, name: str, default: str = "") -> str:
        value = self.raw(name) or default
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            self.problems.append(f"{name} must be an http(s) URL")
        return value

    def key(self, name: str) -> str:
        value = self.raw(name)
        if not _PRIVATE_KEY.match(value):
            # Never echo the value back.
            self.problems.append(f"{name} is not a 32-byte hex private key")
            return ""
        return value if value.startswith("0x") else "0x" + value

    def address(self, name: str) -> str:
        return self.address_value(name, self.raw(name))

    def address_value(self, name: str, value: str) -> str:
        if not Web3.is_address(value):
            self.problems.append(f"{name} contains an invalid address: {value!r}")
            return value
        return Web3.to_checksum_address(value)

    def items(self, name: str) -> List[str]:
        value = self.raw(name).strip("[]")
        items = [item.strip() for item in value.split(",") if item.strip()]
        if not items:
            self.problems.append(f"{name} must list at least one entry")
        return items

    def split_amounts(self) -> Tuple[int, ...]:
        amounts = []
        for item in self.items("SPLITPROXY_AMOUNTS"):
            try:
                amount = int(item)
            except ValueError:
                self.problems.append(f"SPLITPROXY_AMOUNTS contains a non-integer entry: {item!r}")
                continue
            if not 0 <= amount <= UINT32_MAX:
                self.problems.append(f"SPLITPROXY_AMOUNTS entry {amount} does not fit in uint32")
            amounts.append(amount)
        if amounts and sum(amounts) != PERCENTAGE_SCALE:
            self.problems.append(
                f"SPLITPROXY_AMOUNTS must sum to {PERCENTAGE_SCALE}, got {sum(amounts)}"
            )
        return tuple(amounts)

    def integer(self, name: str, default: Optional[int]) -> Optional[int]:
        value = self.raw(name)
        if not value:
            return default
        try:
            parsed = int(value, 16) if value.lower().startswith("0x") else int(value)
        except ValueError:
            self.problems.append(f"{name} must be an integer, got {value!r}")
            return default
        if parsed < 0:
            self.problems.append(f"{name} must not be negative")
            return default
        return parsed

    def gas_limits(self) -> Dict[str, int]:
        limits = dict(DEFAULT_GAS_LIMITS)
        for call_type in DEFAULT_GAS_LIMITS:
            override = self.integer(f"GAS_LIMIT_{call_type.upper()}", None)
            if override is not None:
                if override < 21000:
                    self.problems.append(f"GAS_LIMIT_{call_type.upper()} must be at least 21000")
                limits[call_type] = override
        return limits

    def patterns(self) -> Tuple[str, ...]:
        value = self.raw("AUTH_RELAY_PATTERNS")
        if not value:
            return ("flashbots.net",)
        return tuple(item.strip().lower() for item in value.split(",") if item.strip())
