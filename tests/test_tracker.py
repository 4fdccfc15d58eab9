import pytest

from balance_sweeper.amounts import Amount
from balance_sweeper.errors import ConnectivityError, ExecutionFailure, SubmissionRejected
from balance_sweeper.models import DispatchPlan, TransferMode
from balance_sweeper.tracker import (
    AttemptState,
    DispatchOutcome,
    DispatchTracker,
    Outcome,
    StatusKind,
    StatusUpdate,
)

from conftest import DEST, FakeChain, FakeKeypair, dropped, finalized, in_block, pooled


def drain_plan(tip=0):
    return DispatchPlan(destination=DEST, mode=TransferMode.DRAIN_ACCOUNT, amount=None, tip=Amount(tip))


def run(statuses=(), submit_error=None, **kwargs):
    chain = FakeChain(statuses=statuses, submit_error=submit_error)
    tracker = DispatchTracker(drain_plan(), **kwargs)
    report = tracker.run(chain, FakeKeypair())
    return chain, tracker, report


def test_included_and_finalized_is_a_sweep() -> None:
    chain, tracker, report = run([pooled(), in_block(), finalized()])
    assert report.state is AttemptState.FINALIZED
    assert report.outcome is Outcome.SWEPT
    assert report.succeeded
    assert report.block_hash == "0xb1"
    assert report.extrinsic_hash == "0xfeed"
    assert chain.subscription.unsubscribed == 1


def test_included_with_dispatch_error_is_execution_failure() -> None:
    failure = ExecutionFailure("Module", "InsufficientBalance")
    chain, tracker, report = run([pooled(), in_block(success=False, error=failure), finalized()])
    # stops watching at inclusion: nothing left to learn
    assert report.state is AttemptState.INCLUDED
    assert report.outcome is Outcome.EXECUTION_FAILED
    assert report.error is failure
    assert str(report.error) == "Module.InsufficientBalance"
    assert report.status_updates == 2
    assert chain.subscription.unsubscribed == 1


def test_without_finalization_wait_stops_at_inclusion() -> None:
    chain, tracker, report = run([pooled(), in_block(), finalized()], wait_for_finalization=False)
    assert report.state is AttemptState.INCLUDED
    assert report.outcome is Outcome.SWEPT
    assert report.status_updates == 2


def test_pool_rejection_on_submit() -> None:
    chain, tracker, report = run(submit_error=SubmissionRejected("Invalid Transaction: Inability to pay some fees"))
    assert report.state is AttemptState.REJECTED
    assert report.outcome is Outcome.REJECTED
    assert "Inability to pay" in str(report.error)


def test_invalid_status_is_rejection() -> None:
    invalid = StatusUpdate(StatusKind.INVALID, extrinsic_hash="0xfeed", detail="invalid")
    chain, tracker, report = run([pooled(), invalid])
    assert report.state is AttemptState.REJECTED
    assert chain.subscription.unsubscribed == 1


def test_dropped_from_pool() -> None:
    chain, tracker, report = run([pooled(), dropped()])
    assert report.state is AttemptState.DROPPED
    assert report.outcome is Outcome.DROPPED
    assert chain.subscription.unsubscribed == 1


def test_stream_ending_without_verdict_is_dropped() -> None:
    chain, tracker, report = run([pooled()])
    assert report.state is AttemptState.DROPPED
    assert report.detail == "status stream ended"
    assert chain.subscription.unsubscribed == 1


def test_connection_loss_is_dropped() -> None:
    chain, tracker, report = run(submit_error=ConnectivityError("socket closed"))
    assert report.state is AttemptState.DROPPED
    assert "socket closed" in report.detail


def test_status_budget_bounds_pending_attempt() -> None:
    chain, tracker, report = run([pooled()] * 10, max_status_updates=3)
    assert report.state is AttemptState.DROPPED
    assert report.status_updates == 3
    assert chain.subscription.unsubscribed == 1


def test_status_budget_keeps_inclusion_verdict() -> None:
    chain, tracker, report = run([pooled(), in_block()] + [pooled()] * 5, max_status_updates=3)
    assert report.state is AttemptState.INCLUDED
    assert report.outcome is Outcome.SWEPT


def test_drop_after_inclusion_keeps_verdict() -> None:
    chain, tracker, report = run([pooled(), in_block(), dropped()])
    assert report.state is AttemptState.INCLUDED
    assert report.outcome is Outcome.SWEPT


def test_retracted_block_returns_to_pending() -> None:
    retracted = StatusUpdate(StatusKind.RETRACTED, extrinsic_hash="0xfeed", block_hash="0xb1")
    chain, tracker, report = run([pooled(), in_block(block_hash="0xb1"), retracted, in_block(block_hash="0xb2"), finalized("0xb2")])
    assert report.state is AttemptState.FINALIZED
    assert report.block_hash == "0xb2"


def test_finalized_without_in_block_implies_inclusion() -> None:
    chain, tracker, report = run([pooled(), finalized()])
    assert report.state is AttemptState.FINALIZED
    assert report.outcome is Outcome.SWEPT


def test_updates_after_settling_are_ignored() -> None:
    tracker = DispatchTracker(drain_plan())
    tracker.state = AttemptState.SUBMITTING
    assert tracker.on_status(dropped()) is True
    assert tracker.on_status(in_block()) is True
    assert tracker.state is AttemptState.DROPPED


def test_tracker_cannot_be_reused() -> None:
    chain, tracker, report = run([pooled(), in_block(), finalized()])
    with pytest.raises(RuntimeError):
        tracker.run(chain, FakeKeypair())


def test_max_status_updates_must_be_positive() -> None:
    with pytest.raises(ValueError):
        DispatchTracker(drain_plan(), max_status_updates=0)


def test_finalized_in_another_block_updates_block_hash() -> None:
    chain, tracker, report = run([pooled(), in_block(block_hash="0xb1"), finalized("0xb9")])
    assert report.state is AttemptState.FINALIZED
    assert report.block_hash == "0xb9"
    assert report.outcome is Outcome.SWEPT


def test_finalized_in_another_block_carries_its_verdict() -> None:
    failure = ExecutionFailure("Module", "InsufficientBalance")
    finalized_elsewhere = StatusUpdate(
        StatusKind.FINALIZED,
        extrinsic_hash="0xfeed",
        block_hash="0xb9",
        outcome=DispatchOutcome(success=False, error=failure),
    )
    chain, tracker, report = run([pooled(), in_block(block_hash="0xb1"), finalized_elsewhere])
    assert report.block_hash == "0xb9"
    assert report.outcome is Outcome.EXECUTION_FAILED
    assert report.error is failure


def test_connection_loss_is_recorded_as_error() -> None:
    lost = ConnectivityError("socket closed")
    chain, tracker, report = run([], submit_error=lost)
    assert report.outcome is Outcome.DROPPED
    assert report.error is lost
