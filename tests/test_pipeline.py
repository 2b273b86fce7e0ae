import copy
import json

import pytest

from ghost_rescue.bundle import parse
from ghost_rescue.errors import (
    ChainReadFailure,
    InsufficientBalance,
    PipelineCancelled,
    SimulationMismatch,
    SubmissionRejected,
)
from ghost_rescue.models import ExecutionMode
from ghost_rescue.relay import AUTH_HEADER

from conftest import (
    ONE_TOKEN,
    SAFE,
    FakeBackend,
    FakeChain,
    FakeResponse,
    FakeSession,
    build_pipeline,
)


class AutominingFork(FakeBackend):
    """Mines a block per published transaction, like anvil; reverts restore the head."""

    def __init__(self, chain):
        super().__init__(chain)
        self.heads = {}

    def snapshot(self):
        snapshot_id = super().snapshot()
        self.heads[snapshot_id] = self.chain.block_number
        return snapshot_id

    def revert(self, snapshot_id):
        super().revert(snapshot_id)
        self.chain.block_number = self.heads.pop(snapshot_id)

    def publish(self, signed):
        receipt = super().publish(signed)
        self.chain.block_number += 1
        return receipt


class BrokenRevertFork(FakeBackend):
    def revert(self, snapshot_id):
        raise ChainReadFailure(f"evm_revert refused snapshot {snapshot_id}")


class TestAttempt:
    def test_dry_run_only(self, config, backend, chain):
        session = FakeSession()
        pipeline = build_pipeline(config, backend, session=session)
        before = copy.deepcopy(chain.state)

        outcome = pipeline.attempt(submit=False)

        assert outcome.estimate.mode == ExecutionMode.DRY_RUN
        assert outcome.final.mode == ExecutionMode.COMMIT
        assert outcome.bundle.target_block == 1001
        assert outcome.bundle.transactions == outcome.final.signed_transactions
        assert outcome.ack is None
        assert outcome.included is None
        assert session.calls == []
        # Both passes ran on the fork and were rolled back.
        assert len(backend.published) == 10
        assert backend.reverts == 2
        assert chain.state == before

    def test_submits_commit_pass(self, config, backend):
        session = FakeSession()
        pipeline = build_pipeline(config, backend, session=session)

        outcome = pipeline.attempt()

        (call,) = session.calls
        wire = parse(call["data"])
        assert wire.raw_transactions == outcome.bundle.raw_transactions
        assert wire.target_block == 1001
        assert AUTH_HEADER in call["headers"]
        assert outcome.ack.bundle_hash == "0xb0b"

    def test_nothing_to_rescue_submits_nothing(self, config):
        backend = FakeBackend(FakeChain(obol_pending=0))
        session = FakeSession()
        pipeline = build_pipeline(config, backend, session=session)

        with pytest.raises(InsufficientBalance):
            pipeline.attempt()

        assert session.calls == []
        assert backend.reverts == 1

    def test_state_moved_between_passes(self, config):
        dry_run = FakeBackend(FakeChain())
        commit = FakeBackend(FakeChain(obol_pending=ONE_TOKEN * 3))
        session = FakeSession()
        pipeline = build_pipeline(config, dry_run, commit_backend=commit, session=session)

        with pytest.raises(SimulationMismatch):
            pipeline.attempt()

        assert session.calls == []
        assert commit.reverts == 1

    def test_cancelled_before_submit(self, config, backend):
        session = FakeSession()
        pipeline = build_pipeline(config, backend, session=session)
        pipeline.cancel.cancel("operator abort")

        with pytest.raises(PipelineCancelled):
            pipeline.attempt()

        assert backend.published == []
        assert session.calls == []

    def test_live_commit_builds_no_bundle(self, config, chain):
        dry_run = FakeBackend(chain)
        live = FakeBackend(chain, label="live", disposable=False)
        session = FakeSession()
        pipeline = build_pipeline(config, dry_run, commit_backend=live, session=session)

        outcome = pipeline.attempt()

        assert outcome.bundle is None
        assert outcome.final.backend == "live"
        assert len(live.published) == 5
        assert chain.state["token"][SAFE] == ONE_TOKEN // 2
        assert session.calls == []


class TestRunUntilIncluded:
    def test_included_first_time(self, config, backend, chain):
        pipeline = build_pipeline(config, backend)

        def land(tx_hash, block_number=None):
            return block_number == 1001

        pipeline.reader.was_included = land

        outcome = pipeline.run_until_included(max_attempts=3)

        assert outcome.included is True
        assert outcome.bundle.target_block == 1001
        assert chain.block_number == 1001

    def test_missed_block_rebuilds_for_the_next(self, config, backend):
        session = FakeSession()
        pipeline = build_pipeline(config, backend, session=session)
        pipeline.reader.was_included = lambda tx_hash, block_number=None: block_number == 1002

        outcome = pipeline.run_until_included(max_attempts=3)

        assert outcome.included is True
        assert outcome.bundle.target_block == 1002
        blocks = [json.loads(call["data"])["params"][0]["blockNumber"] for call in session.calls]
        assert blocks == ["0x3e9", "0x3ea"]

    def test_gives_up_after_max_attempts(self, config, backend):
        session = FakeSession()
        pipeline = build_pipeline(config, backend, session=session)

        outcome = pipeline.run_until_included(max_attempts=2)

        assert outcome.included is False
        assert len(session.calls) == 2

    def test_relay_rejection_is_fatal(self, config, backend):
        session = FakeSession([FakeResponse(500, text="internal error")])
        pipeline = build_pipeline(config, backend, session=session)

        with pytest.raises(SubmissionRejected) as exc_info:
            pipeline.run_until_included(max_attempts=3)

        assert exc_info.value.details["status"] == 500
        assert len(session.calls) == 1


class TestSharedForkNode:
    def test_target_block_ignores_blocks_mined_by_the_commit_pass(self, config, chain):
        fork = AutominingFork(chain)
        pipeline = build_pipeline(config, fork)

        outcome = pipeline.attempt(submit=False)

        assert len(fork.published) == 10
        assert chain.block_number == 1000
        assert outcome.bundle.target_block == 1001

    def test_inclusion_is_checked_in_the_target_block(self, config, chain):
        fork = AutominingFork(chain)
        session = FakeSession()
        pipeline = build_pipeline(config, fork, session=session)
        checked = []

        def land(tx_hash, block_number=None):
            checked.append(block_number)
            return True

        pipeline.reader.was_included = land

        outcome = pipeline.run_until_included(max_attempts=1)

        assert outcome.included is True
        assert checked == [1001]
        assert json.loads(session.calls[0]["data"])["params"][0]["blockNumber"] == "0x3e9"

    def test_failed_revert_keeps_the_commit_error(self, config):
        dry_run = FakeBackend(FakeChain())
        commit = BrokenRevertFork(FakeChain(obol_pending=0))
        session = FakeSession()
        pipeline = build_pipeline(config, dry_run, commit_backend=commit, session=session)

        with pytest.raises(InsufficientBalance) as exc_info:
            pipeline.attempt()

        assert exc_info.value.step == "withdraw_splitmain"
        assert session.calls == []
