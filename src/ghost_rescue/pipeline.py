"""
End-to-end rescue pipeline.

One attempt:

    1. dry run every step on the disposable fork (reverted afterwards)
    2. commit pass: re-read gas price, nonces and every observation, rebuild
       and re-sign every step against the commit backend (a fork is rolled
       back once the pass ends)
    3. abort if any observation drifted past the tolerance
    4. assemble the commit pass's transactions for head + 1
    5. sign the serialized payload (if the relay wants it) and submit once

Any failure aborts the attempt and discards everything it built. A new
attempt always starts from fresh reads; a bundle is never resubmitted.
"""

import logging
import time
from dataclasses import dataclass, replace
from functools import partial
from typing import Callable, Mapping, Optional, Sequence

from .backends import ExecutionBackend, ForkBackend, LiveBackend
from .bundle import BundleAssembler
from .chain import ChainReader
from .config import RescueConfig
from .models import Bundle, ExecutionMode, RelayAck
from .relay import RelaySubmitter, authenticator_for
from .resolver import CancelToken, DependencyResolver, Resolution, check_drift, on_snapshot
from .signer import LocalSigner, Signer
from .steps import GAS_ROLE, VICTIM_ROLE, RescueStep, split_rescue_steps

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptOutcome:
    estimate: Resolution
    final: Resolution
    bundle: Optional[Bundle] = None
    ack: Optional[RelayAck] = None
    # None until inclusion has been checked.
    included: Optional[bool] = None


class RescuePipeline:
    """
    Orchestrates dry run, commit, assembly and submission.

    Args:
        config: Validated rescue configuration.
        reader: Reader over the live chain (block head, inclusion checks).
        dry_run_backend: Disposable backend for the dry-run pass.
        commit_backend: Backend for the commit pass. A live backend
            broadcasts publicly, so no bundle is assembled after it.
        submitter: Relay submitter.
        signers: Signer per sender role.
        steps: Ordered rescue steps.
        refork_url: When set, disposable backends are re-forked from this
            upstream before each pass so observations track the live head.
    """

    def __init__(
        self,
        config: RescueConfig,
        reader: ChainReader,
        dry_run_backend: ExecutionBackend,
        commit_backend: ExecutionBackend,
        submitter: RelaySubmitter,
        signers: Mapping[str, Signer],
        steps: Sequence[RescueStep],
        refork_url: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = 1.0,
    ):
        self.config = config
        self.reader = reader
        self.dry_run_backend = dry_run_backend
        self.commit_backend = commit_backend
        self.submitter = submitter
        self.cancel = cancel or CancelToken()
        self.resolver = DependencyResolver(steps, signers, config.gas_policy, cancel=self.cancel)
        self.assembler = BundleAssembler(reader, config.min_timestamp, config.max_timestamp)
        self.refork_url = refork_url
        self.sleep = sleep
        self.poll_interval = poll_interval

    @classmethod
    def from_config(cls, config: RescueConfig, commit_live: bool = False, **kwargs) -> "RescuePipeline":
        live_reader = ChainReader.from_url(config.provider_url, attempts=config.read_attempts)
        if config.fork_url == config.provider_url:
            fork_reader = live_reader
            refork_url = None
        else:
            fork_reader = ChainReader.from_url(config.fork_url, attempts=config.read_attempts)
            refork_url = config.provider_url
        fork = ForkBackend(fork_reader)
        commit = LiveBackend(live_reader) if commit_live else fork

        signers = {
            GAS_ROLE: LocalSigner(config.gas_key, label=GAS_ROLE),
            VICTIM_ROLE: LocalSigner(config.victim_key, label=VICTIM_ROLE),
        }
        auth_signer = LocalSigner(config.auth_key, label="relay-auth")
        submitter = RelaySubmitter(
            config.relay_url,
            authenticator_for(config.relay_url, auth_signer, config.auth_relay_patterns),
        )
        steps = split_rescue_steps(config, signers[VICTIM_ROLE].address)
        return cls(
            config,
            live_reader,
            fork,
            commit,
            submitter,
            signers,
            steps,
            refork_url=refork_url,
            **kwargs,
        )

    def attempt(self, submit: bool = True) -> AttemptOutcome:
        self._refork(self.dry_run_backend)
        estimate = self.resolver.resolve(self.dry_run_backend, ExecutionMode.DRY_RUN)
        self.cancel.check("commit")

        commit = self.commit_backend
        if commit.disposable:
            self._refork(commit)
            # Rolled back before assembly: anvil mines a block per published
            # transaction, and the head read for the target must be untouched.
            final = on_snapshot(commit, partial(self.resolver.resolve, commit, ExecutionMode.COMMIT))
        else:
            final = self.resolver.resolve(commit, ExecutionMode.COMMIT)
        check_drift(estimate, final, self.config.mismatch_tolerance_bps)

        if not commit.disposable:
            logger.warning("Sequence broadcast on %s; no bundle assembled", commit.label)
            return AttemptOutcome(estimate=estimate, final=final)

        self.cancel.check("assemble")
        bundle = self.assembler.assemble(final.signed_transactions)
        ack = None
        if submit:
            self.cancel.check("submit")
            ack = self.submitter.submit(bundle)
            logger.info("Relay accepted bundle for block %d (%s)", bundle.target_block, ack.bundle_hash)
        return AttemptOutcome(estimate=estimate, final=final, bundle=bundle, ack=ack)

    def wait_for_inclusion(self, bundle: Bundle) -> bool:
        """Block until the target block has passed, then check the last transaction landed in it."""
        while self.reader.block_number() < bundle.target_block:
            self.cancel.check("inclusion")
            self.sleep(self.poll_interval)
        last = bundle.transactions[-1]
        return self.reader.was_included(last.tx_hash, bundle.target_block)

    def run_until_included(self, max_attempts: int = 5) -> AttemptOutcome:
        """
        Keep rebuilding and submitting until a bundle lands.

        Each attempt is a full fresh run. Fatal errors propagate immediately;
        a missed block just starts the next attempt.
        """
        outcome = None
        for number in range(1, max_attempts + 1):
            logger.info("Rescue attempt %d/%d", number, max_attempts)
            outcome = self.attempt(submit=True)
            if outcome.bundle is None:
                return outcome
            included = self.wait_for_inclusion(outcome.bundle)
            outcome = replace(outcome, included=included)
            if included:
                logger.info("Bundle included in block %d", outcome.bundle.target_block)
                return outcome
            logger.warning("Inclusion missed for block %d; rebuilding", outcome.bundle.target_block)
        return outcome

    def _refork(self, backend: ExecutionBackend) -> None:
        if self.refork_url and isinstance(backend, ForkBackend):
            backend.reset(self.refork_url)
