"""
Dependency-aware step resolution.

The resolver walks the rescue steps in their declared order against one
execution backend. Independent steps are built straight from the pass's
chain snapshot (gas price, chain id, nonces). Dependent steps first read
their observation from the backend, which by then reflects every earlier
step, and only then get built. Every built step is published to the backend
so the next observation sees its effect.

A DRY_RUN pass needs a disposable backend and is reverted when it ends. A
COMMIT pass leaves its effects in place. Observations are never carried from
one pass into another: the commit pass re-reads everything and is compared
against the dry run with ``check_drift``.
"""

import logging
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar

from .backends import ExecutionBackend
from .builder import NonceLedger, TransactionBuilder
from .config import GasPolicy
from .errors import (
    InsufficientBalance,
    PipelineCancelled,
    RescueError,
    SimulationMismatch,
    StepReverted,
)
from .models import ExecutionMode, Observation, Receipt, SignedTransaction, TxIntent
from .signer import Signer
from .steps import RescueStep, StepContext

logger = logging.getLogger(__name__)

T = TypeVar("T")


def on_snapshot(backend: ExecutionBackend, run: Callable[[], T]) -> T:
    """
    Call ``run`` on a snapshot of a disposable backend and revert afterwards.

    When ``run`` fails, a failing revert is logged and the original error is
    the one that propagates.
    """
    snapshot_id = backend.snapshot()
    try:
        result = run()
    except BaseException:
        try:
            backend.revert(snapshot_id)
        except RescueError as exc:
            logger.error("Could not revert %s snapshot %s: %s", backend.label, snapshot_id, exc)
        raise
    backend.revert(snapshot_id)
    return result


class CancelToken:
    """Cooperative cancellation, checked between steps."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = "cancelled"

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, step: Optional[str] = None) -> None:
        if self.cancelled:
            raise PipelineCancelled(f"Pipeline cancelled: {self.reason}", step=step)


@dataclass(frozen=True)
class StepOutput:
    step: str
    signed: SignedTransaction
    receipt: Receipt
    observation: Optional[Observation] = None
    report: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class Resolution:
    mode: ExecutionMode
    backend: str
    base_gas_price: int
    gas_price: int
    start_nonces: Mapping[str, int]
    outputs: Tuple[StepOutput, ...]

    @property
    def signed_transactions(self) -> Tuple[SignedTransaction, ...]:
        return tuple(output.signed for output in self.outputs)

    @property
    def observations(self) -> Dict[str, Observation]:
        return {
            output.observation.name: output.observation
            for output in self.outputs
            if output.observation is not None
        }


class DependencyResolver:
    """
    Resolves an ordered step list into signed transactions.

    Args:
        steps: Steps in execution order. Never reordered.
        signers: Signer per sender role named by the steps.
        policy: Gas pricing and per-call-type gas limits.
        builder: Transaction builder, a default one if omitted.
        cancel: Token checked before every step.
    """

    def __init__(
        self,
        steps: Sequence[RescueStep],
        signers: Mapping[str, Signer],
        policy: GasPolicy,
        builder: Optional[TransactionBuilder] = None,
        cancel: Optional[CancelToken] = None,
    ):
        missing = {step.sender for step in steps} - set(signers)
        if missing:
            raise ValueError(f"No signer for sender role(s): {', '.join(sorted(missing))}")
        self.steps = tuple(steps)
        self.signers = dict(signers)
        self.policy = policy
        self.builder = builder or TransactionBuilder()
        self.cancel = cancel or CancelToken()

    def resolve(self, backend: ExecutionBackend, mode: ExecutionMode) -> Resolution:
        if mode == ExecutionMode.DRY_RUN:
            if not backend.disposable:
                raise ValueError(f"Dry runs need a disposable backend, got {backend.label}")
            return on_snapshot(backend, partial(self._run, backend, mode))
        return self._run(backend, mode)

    def _run(self, backend: ExecutionBackend, mode: ExecutionMode) -> Resolution:
        reader = backend.reader
        logger.info("Resolving %d steps (%s on %s)", len(self.steps), mode.value, backend.label)

        reads = {"gas_price": reader.gas_price, "chain_id": reader.chain_id}
        for role, signer in self.signers.items():
            reads[f"nonce:{role}"] = partial(reader.nonce, signer.address)
        chain = reader.read_many(reads)

        base_gas_price = chain["gas_price"]
        gas_price = self.policy.apply(base_gas_price)
        priority_fee = self.policy.priority_for(gas_price)
        gas_to_fill = self.policy.gas_to_fill(gas_price)
        ledger = NonceLedger(
            {signer.address: chain[f"nonce:{role}"] for role, signer in self.signers.items()}
        )
        logger.info(
            "Gas price %d -> %d wei, gas to fill %d wei", base_gas_price, gas_price, gas_to_fill
        )

        outputs: List[StepOutput] = []
        observations: Dict[str, Observation] = {}
        for step in self.steps:
            self.cancel.check(step.name)
            signer = self.signers[step.sender]

            observation = None
            if step.dependent:
                observation = self._observe(step, reader)
                observations[observation.name] = observation

            ctx = StepContext(
                gas_price=gas_price,
                gas_to_fill=gas_to_fill,
                observation=observation,
                observations=dict(observations),
            )
            gas_limit = self.policy.gas_limit(step.call_type)
            intent = TxIntent(
                sender=signer.address,
                target=step.target,
                value=step.value(ctx),
                gas_limit=gas_limit,
                nonce=ledger.next(signer.address),
                gas_price=gas_price,
                priority_fee=priority_fee,
                chain_id=chain["chain_id"],
                data=step.call_data(ctx),
                shape=step.shape(gas_limit),
            )
            signed = self.builder.build(intent, signer, step.name)
            logger.info(
                "%s: %s nonce=%d value=%d -> %s",
                step.name,
                intent.sender,
                intent.nonce,
                intent.value,
                intent.target,
            )

            receipt = backend.publish(signed)
            if not receipt.succeeded:
                raise StepReverted(
                    f"Step reverted on {backend.label}",
                    step=step.name,
                    tx_hash=receipt.tx_hash,
                    sender=intent.sender,
                    nonce=intent.nonce,
                )

            report = step.report(reader) if step.report else {}
            for key, amount in report.items():
                logger.info("%s: %s = %d", step.name, key, amount)

            outputs.append(
                StepOutput(
                    step=step.name,
                    signed=signed,
                    receipt=receipt,
                    observation=observation,
                    report=report,
                )
            )

        return Resolution(
            mode=mode,
            backend=backend.label,
            base_gas_price=base_gas_price,
            gas_price=gas_price,
            start_nonces={address: ledger.start(address) for address in _addresses(self.signers)},
            outputs=tuple(outputs),
        )

    def _observe(self, step: RescueStep, reader) -> Observation:
        wanted = step.observe
        value = wanted.read(reader)
        logger.info("%s: %s = %d", step.name, wanted.description, value)
        if wanted.require_positive and value <= 0:
            raise InsufficientBalance(
                f"Nothing to rescue: {wanted.description} is {value}",
                step=step.name,
                observation=wanted.name,
                value=value,
            )
        return Observation(name=wanted.name, value=value, step=step.name)


def _addresses(signers: Mapping[str, Signer]) -> List[str]:
    return list(dict.fromkeys(signer.address for signer in signers.values()))


def check_drift(estimate: Resolution, final: Resolution, tolerance_bps: int) -> None:
    """
    Raise ``SimulationMismatch`` when a committed observation moved more than
    ``tolerance_bps`` away from its dry-run estimate, or went missing.
    """
    committed = final.observations
    for name, expected in estimate.observations.items():
        actual = committed.get(name)
        if actual is None:
            raise SimulationMismatch(
                f"Observation {name} missing from the commit pass", step=expected.step
            )
        drift = abs(actual.value - expected.value)
        if drift * 10_000 > expected.value * tolerance_bps:
            raise SimulationMismatch(
                f"{name} moved between dry run and commit",
                step=actual.step,
                dry_run=expected.value,
                commit=actual.value,
                tolerance_bps=tolerance_bps,
            )
