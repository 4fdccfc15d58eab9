"""
Lifecycle of one submitted sweep extrinsic.

The chain client pushes status updates into DispatchTracker.on_status; the
tracker maps them onto an explicit state machine, decides when observation
ends and unsubscribes exactly once on the way out.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .amounts import Amount
from .errors import ConnectivityError, ExecutionFailure, SubmissionRejected
from .models import BalanceSnapshot, DispatchPlan, TriggerEvent


class AttemptState(Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    PENDING = "pending"
    INCLUDED = "included"
    FINALIZED = "finalized"
    REJECTED = "rejected"
    DROPPED = "dropped"


TERMINAL_STATES = frozenset({AttemptState.FINALIZED, AttemptState.REJECTED, AttemptState.DROPPED})

_ALLOWED = {
    AttemptState.IDLE: {AttemptState.SUBMITTING},
    AttemptState.SUBMITTING: {
        AttemptState.PENDING,
        AttemptState.INCLUDED,
        AttemptState.FINALIZED,
        AttemptState.REJECTED,
        AttemptState.DROPPED,
    },
    AttemptState.PENDING: {
        AttemptState.INCLUDED,
        AttemptState.FINALIZED,
        AttemptState.REJECTED,
        AttemptState.DROPPED,
    },
    # retracted blocks send the extrinsic back to the pool
    AttemptState.INCLUDED: {AttemptState.PENDING, AttemptState.FINALIZED},
}


class StatusKind(Enum):
    POOLED = "pooled"
    RETRACTED = "retracted"
    IN_BLOCK = "in_block"
    FINALIZED = "finalized"
    DROPPED = "dropped"
    INVALID = "invalid"


@dataclass(frozen=True)
class DispatchOutcome:
    """Execution-time verdict of an included extrinsic."""

    success: bool
    error: Optional[ExecutionFailure] = None


@dataclass(frozen=True)
class StatusUpdate:
    kind: StatusKind
    extrinsic_hash: Optional[str] = None
    block_hash: Optional[str] = None
    outcome: Optional[DispatchOutcome] = None
    detail: Optional[str] = None


class Outcome(Enum):
    SWEPT = "swept"
    EXECUTION_FAILED = "execution_failed"
    REJECTED = "rejected"
    DROPPED = "dropped"
    # attempts that never reached submission
    SKIPPED = "skipped"
    ERRORED = "errored"


@dataclass
class AttemptReport:
    trigger: Optional[TriggerEvent] = None
    snapshot: Optional[BalanceSnapshot] = None
    fee_estimate: Optional[Amount] = None
    plan: Optional[DispatchPlan] = None
    state: AttemptState = AttemptState.IDLE
    outcome: Optional[Outcome] = None
    extrinsic_hash: Optional[str] = None
    block_hash: Optional[str] = None
    error: Optional[Exception] = None
    detail: Optional[str] = None
    status_updates: int = 0

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SWEPT


class DispatchTracker:
    """
    Drives one plan from submission to a terminal state.

    INCLUDED is not terminal: with wait_for_finalization the tracker keeps
    watching until FINALIZED or until max_status_updates is used up. Either
    way the inclusion verdict decides success.
    """

    def __init__(self, plan: DispatchPlan, max_status_updates: int = 32, wait_for_finalization: bool = True):
        if max_status_updates < 1:
            raise ValueError("max_status_updates must be at least 1")
        self.plan = plan
        self.max_status_updates = max_status_updates
        self.wait_for_finalization = wait_for_finalization
        self.state = AttemptState.IDLE
        self.extrinsic_hash = None
        self.block_hash = None
        self.error = None
        self.detail = None
        self.updates_seen = 0
        self._inclusion = None
        self._done = False
        self._subscription = None
        self._unsubscribed = False

    @property
    def done(self) -> bool:
        return self._done

    def _transition(self, new_state: AttemptState):
        if new_state not in _ALLOWED.get(self.state, ()):
            raise RuntimeError(f"Illegal transition {self.state.name} -> {new_state.name}")
        logging.debug(f"Attempt state {self.state.name} -> {new_state.name}")
        self.state = new_state

    def run(self, chain, signer) -> AttemptReport:
        """Submits the plan through `chain` and blocks until the attempt settles."""
        self._transition(AttemptState.SUBMITTING)
        try:
            chain.submit(self.plan, signer, self.on_status)
        except SubmissionRejected as e:
            self._reject(e)
        except ConnectivityError as e:
            if self.error is None:
                self.error = e
            self._stream_ended(f"connection lost: {e}")
        finally:
            if not self._done:
                self._stream_ended("status stream ended")
            self._unsubscribe()
        return self.report()

    def on_status(self, update: StatusUpdate, subscription=None) -> bool:
        """Feeds one status update. Returns True once observation is over."""
        if subscription is not None:
            self._subscription = subscription
        if self._done:
            self._unsubscribe()
            return True

        self.updates_seen += 1
        if update.extrinsic_hash:
            self.extrinsic_hash = update.extrinsic_hash
        kind = update.kind

        if kind is StatusKind.POOLED:
            if self.state is AttemptState.SUBMITTING:
                self._transition(AttemptState.PENDING)
                logging.info(f"Extrinsic accepted by the pool: {self.extrinsic_hash}")

        elif kind is StatusKind.RETRACTED:
            if self.state is AttemptState.INCLUDED:
                logging.warning(f"Block {self.block_hash} retracted, extrinsic back in the pool")
                self._transition(AttemptState.PENDING)
                self._inclusion = None
                self.block_hash = None

        elif kind is StatusKind.IN_BLOCK:
            self._include(update)
            if not self._inclusion.success or not self.wait_for_finalization:
                self._settle()

        elif kind is StatusKind.FINALIZED:
            moved = update.block_hash is not None and update.block_hash != self.block_hash
            if self.state is not AttemptState.INCLUDED or (moved and update.outcome is not None):
                self._include(update)
            elif moved:
                self.block_hash = update.block_hash
            self._transition(AttemptState.FINALIZED)
            logging.info(f"Block finalized: {self.block_hash}")
            self._settle()

        elif kind is StatusKind.DROPPED:
            self._stream_ended(update.detail or "dropped from the pool")

        elif kind is StatusKind.INVALID:
            if self.state is AttemptState.INCLUDED:
                self._settle()
            else:
                self._reject(SubmissionRejected(update.detail or "extrinsic became invalid"))

        if not self._done and self.updates_seen >= self.max_status_updates:
            self._stream_ended(f"no terminal status after {self.updates_seen} updates")

        if self._done:
            self._unsubscribe()
        return self._done

    def _include(self, update: StatusUpdate):
        if self.state is not AttemptState.INCLUDED:
            self._transition(AttemptState.INCLUDED)
        self.block_hash = update.block_hash
        self._inclusion = update.outcome or DispatchOutcome(success=True)
        if self._inclusion.success:
            logging.info(f"Transaction included at blockHash {self.block_hash}")
        else:
            self.error = self._inclusion.error
            logging.error(f"Transaction included at blockHash {self.block_hash} but failed: {self.error}")

    def _reject(self, error: SubmissionRejected):
        if self.state is AttemptState.INCLUDED:
            self._settle()
            return
        self.error = error
        self._transition(AttemptState.REJECTED)
        self._settle()

    def _stream_ended(self, reason: str):
        # keep the inclusion verdict; only un-included attempts are dropped
        if self.state is not AttemptState.INCLUDED:
            self.detail = reason
            self._transition(AttemptState.DROPPED)
        else:
            logging.warning(f"Stopped watching before finality: {reason}")
        self._settle()

    def _settle(self):
        self._done = True

    def _unsubscribe(self):
        if self._subscription is None or self._unsubscribed:
            return
        self._unsubscribed = True
        try:
            self._subscription.unsubscribe()
        except Exception as e:
            logging.warning(f"Failed to unsubscribe from extrinsic status: {e}")

    def report(self) -> AttemptReport:
        if self.state is AttemptState.REJECTED:
            outcome = Outcome.REJECTED
        elif self.state is AttemptState.DROPPED:
            outcome = Outcome.DROPPED
        elif self._inclusion is not None:
            outcome = Outcome.SWEPT if self._inclusion.success else Outcome.EXECUTION_FAILED
        else:
            outcome = None
        return AttemptReport(
            plan=self.plan,
            state=self.state,
            outcome=outcome,
            extrinsic_hash=self.extrinsic_hash,
            block_hash=self.block_hash,
            error=self.error,
            detail=self.detail,
            status_updates=self.updates_seen,
        )
