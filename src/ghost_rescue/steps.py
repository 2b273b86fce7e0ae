"""
The rescue sequence.

Steps run in declared order. A dependent step names the observation it
needs; the resolver reads it right before building that step, after every
earlier step has been applied to the backend.

The shipped scenario drains wstETH stuck behind an Obol Lido split:

    1. distribute_obol       ObolLidoSplit.distribute()
    2. distribute_splitmain  SplitMain.distributeERC20(...)
    3. withdraw_splitmain    SplitMain.withdraw(victim, 0, [wstETH])     needs: withdrawable
    4. fund_gas              gas wallet -> victim, gas_to_fill wei
    5. sweep_token           wstETH.transfer(safe, amount)              needs: token_balance
"""

from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple

from .chain import ChainReader, encode_call
from .config import RescueConfig
from .models import CallShape, Observation

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

DISTRIBUTE = "distribute()"
DISTRIBUTE_ERC20 = "distributeERC20(address,address,address[],uint32[],uint32,address)"
WITHDRAW = "withdraw(address,uint256,address[])"
TRANSFER = "transfer(address,uint256)"
GET_ERC20_BALANCE = "getERC20Balance(address,address)"
BALANCE_OF = "balanceOf(address)"

GAS_ROLE = "gas"
VICTIM_ROLE = "victim"


@dataclass(frozen=True)
class StepContext:
    """What a step sees when it is built."""

    gas_price: int
    gas_to_fill: int
    observation: Optional[Observation]
    observations: Mapping[str, Observation]


@dataclass(frozen=True)
class ObservationSpec:
    name: str
    description: str
    read: Callable[[ChainReader], int]
    require_positive: bool = True


@dataclass(frozen=True)
class RescueStep:
    name: str
    sender: str
    target: str
    call_type: str
    signature: Optional[str] = None
    args: Callable[[StepContext], tuple] = lambda ctx: ()
    value: Callable[[StepContext], int] = lambda ctx: 0
    observe: Optional[ObservationSpec] = None
    report: Optional[Callable[[ChainReader], Dict[str, int]]] = None

    @property
    def dependent(self) -> bool:
        return self.observe is not None

    def shape(self, gas_limit: int) -> CallShape:
        return CallShape(name=self.call_type, signature=self.signature, gas_limit=gas_limit)

    def call_data(self, ctx: StepContext) -> bytes:
        if self.signature is None:
            return b""
        return encode_call(self.signature, *self.args(ctx))


def split_rescue_steps(config: RescueConfig, victim: str) -> Tuple[RescueStep, ...]:
    """Build the five-step wstETH rescue for ``victim``."""
    wsteth = config.wsteth_address
    split_main = config.split_main_address
    safe = config.safe_address

    withdrawable = ObservationSpec(
        name="withdrawable",
        description="wstETH withdrawable from SplitMain",
        read=lambda reader: reader.call_uint(split_main, GET_ERC20_BALANCE, victim, wsteth),
    )
    token_balance = ObservationSpec(
        name="token_balance",
        description="wstETH held by the compromised account",
        read=lambda reader: reader.call_uint(wsteth, BALANCE_OF, victim),
    )

    return (
        RescueStep(
            name="distribute_obol",
            sender=GAS_ROLE,
            target=config.obol_lido_split_address,
            call_type="distribute_obol",
            signature=DISTRIBUTE,
        ),
        RescueStep(
            name="distribute_splitmain",
            sender=GAS_ROLE,
            target=split_main,
            call_type="distribute_splitmain",
            signature=DISTRIBUTE_ERC20,
            args=lambda ctx: (
                config.split_proxy_address,
                wsteth,
                list(config.split_accounts),
                list(config.split_amounts),
                0,
                ZERO_ADDRESS,
            ),
        ),
        RescueStep(
            name="withdraw_splitmain",
            sender=GAS_ROLE,
            target=split_main,
            call_type="withdraw_splitmain",
            signature=WITHDRAW,
            # SplitMain withdraws the full token balance; the observation
            # gates the step on there being something to withdraw.
            args=lambda ctx: (victim, 0, [wsteth]),
            observe=withdrawable,
        ),
        RescueStep(
            name="fund_gas",
            sender=GAS_ROLE,
            target=victim,
            call_type="transfer_eth",
            value=lambda ctx: ctx.gas_to_fill,
            report=lambda reader: {"victim_eth": reader.balance(victim)},
        ),
        RescueStep(
            name="sweep_token",
            sender=VICTIM_ROLE,
            target=wsteth,
            call_type="transfer_token",
            signature=TRANSFER,
            args=lambda ctx: (safe, ctx.observation.value),
            observe=token_balance,
            report=lambda reader: {
                "victim_wsteth": reader.call_uint(wsteth, BALANCE_OF, victim),
                "safe_wsteth": reader.call_uint(wsteth, BALANCE_OF, safe),
                "victim_eth": reader.balance(victim),
            },
        ),
    )
