import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from .config import SweeperConfig
from .engine import decide, fee_reserve
from .errors import ConnectivityError
from .models import TransferMode, TriggerEvent
from .tracker import AttemptReport, DispatchTracker, Outcome


class SingleFlightGuard:
    """Non-blocking check-and-set flag: at most one sweep attempt at a time."""

    def __init__(self):
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self):
        # raises RuntimeError if released twice
        self._lock.release()

    @property
    def held(self) -> bool:
        return self._lock.locked()


@dataclass
class SweepContext:
    """Process-scoped state handed to the agent: client, signer, config, guard."""

    chain: object
    keypair: object
    config: SweeperConfig
    guard: SingleFlightGuard = field(default_factory=SingleFlightGuard)
    stop_event: threading.Event = field(default_factory=threading.Event)

    @property
    def source_address(self) -> str:
        return self.keypair.ss58_address


class SweepAgent:
    """
    Binds trigger events to sweep attempts.

    A trigger that arrives while an attempt is in flight is logged and
    dropped. Otherwise the attempt runs on a worker thread so the trigger
    source is never blocked by RPC calls or the extrinsic status stream.
    """

    def __init__(self, context: SweepContext):
        self.context = context
        self.last_report = None

    def on_trigger(self, event: TriggerEvent) -> Optional[threading.Thread]:
        guard = self.context.guard
        if not guard.try_acquire():
            logging.info(f"Sweep already in flight, ignoring {event.source} trigger #{event.sequence}")
            return None

        worker = threading.Thread(
            target=self._run_guarded,
            args=(event,),
            name=f"sweep-{event.sequence}",
            daemon=True,
        )
        try:
            worker.start()
        except RuntimeError:
            guard.release()
            raise
        return worker

    def _run_guarded(self, event: TriggerEvent):
        try:
            self.run_attempt(event)
        finally:
            self.context.guard.release()

    def run_attempt(self, event: Optional[TriggerEvent] = None) -> AttemptReport:
        """
        One sweep attempt. The caller must hold the guard.

        Balance and fee errors end the attempt as ERRORED; dispatch errors are
        turned into a tracker report. Nothing propagates out of here except
        BaseException subclasses (KeyboardInterrupt, SystemExit).
        """
        ctx = self.context
        cfg = ctx.config
        chain = ctx.chain
        report = AttemptReport(trigger=event)

        try:
            snapshot = chain.get_balances(ctx.source_address)
            report.snapshot = snapshot
            logging.info(
                f"Free: {snapshot.free}, Reserved: {snapshot.reserved}, "
                f"Locked: {snapshot.locked}, Available: {snapshot.available}"
            )
            if snapshot.available == 0:
                report.outcome = Outcome.SKIPPED
                report.detail = "No transferable balance available to sweep."
                return self._finish(report)

            hint = None if cfg.transfer_mode is TransferMode.DRAIN_ACCOUNT else snapshot.available
            fee_estimate = chain.estimate_fee(cfg.transfer_mode, cfg.target_address, hint, ctx.keypair)
            report.fee_estimate = fee_estimate
            logging.info(f"Estimated Fee: {chain.format(fee_estimate)}")
        except ConnectivityError as e:
            report.outcome = Outcome.ERRORED
            report.error = e
            self._reconnect()
            return self._finish(report)
        except Exception as e:
            report.outcome = Outcome.ERRORED
            report.error = e
            return self._finish(report)

        plan = decide(
            snapshot,
            fee_estimate,
            cfg.target_address,
            cfg.transfer_mode,
            cfg.fee_policy,
            cfg.tip_policy,
            min_drain=cfg.min_drain,
        )
        if plan is None:
            report.outcome = Outcome.SKIPPED
            report.detail = self._skip_reason(snapshot.available, fee_estimate)
            return self._finish(report)

        logging.info(f"Sweeping {plan.describe(chain.token_decimals, chain.token_symbol)}")
        tracker = DispatchTracker(
            plan,
            max_status_updates=cfg.max_status_updates,
            wait_for_finalization=cfg.wait_for_finalization,
        )
        try:
            dispatched = tracker.run(chain, ctx.keypair)
        except Exception as e:
            dispatched = tracker.report()
            dispatched.error = e
            if dispatched.outcome is None:
                dispatched.outcome = Outcome.DROPPED
        if isinstance(dispatched.error, ConnectivityError):
            self._reconnect()

        dispatched.trigger = event
        dispatched.snapshot = snapshot
        dispatched.fee_estimate = fee_estimate
        return self._finish(dispatched)

    def _skip_reason(self, available, fee_estimate) -> str:
        cfg = self.context.config
        fmt = self.context.chain.format
        if (
            cfg.transfer_mode is TransferMode.DRAIN_ACCOUNT
            and cfg.min_drain is not None
            and available < cfg.min_drain
        ):
            return f"Available {fmt(available)} below MIN_DRAIN_AMOUNT {fmt(cfg.min_drain)}, drain skipped."
        reserve = fee_reserve(cfg.fee_policy, fee_estimate)
        return f"Balance {fmt(available)} insufficient to cover fee reserve {fmt(reserve)}."

    def _reconnect(self):
        reconnect = getattr(self.context.chain, "reconnect", None)
        if reconnect is None:
            return
        try:
            reconnect()
        except ConnectivityError as e:
            logging.warning(f"{e}; will retry on the next trigger")

    def _finish(self, report: AttemptReport) -> AttemptReport:
        self.last_report = report
        what = ""
        if report.plan is not None:
            what = report.plan.describe(self.context.chain.token_decimals, self.context.chain.token_symbol)

        outcome = report.outcome
        if outcome is Outcome.SWEPT:
            logging.info(
                f"✅ Sweep Successful! {what} | state {report.state.name} | "
                f"Hash: {report.extrinsic_hash} | Block: {report.block_hash}"
            )
            if self.context.config.exit_on_success:
                logging.info("Exit on success enabled, stopping agent.")
                self.context.stop_event.set()
        elif outcome is Outcome.EXECUTION_FAILED:
            logging.error(
                f"❌ Transaction Failed with error: {report.error} | {what} | "
                f"Hash: {report.extrinsic_hash} | Block: {report.block_hash}"
            )
        elif outcome is Outcome.REJECTED:
            logging.error(f"❌ Transaction Rejected: {report.error} | {what} | state {report.state.name}")
        elif outcome is Outcome.DROPPED:
            logging.warning(
                f"Transaction Dropped: {report.detail or report.error} | {what} | "
                f"state {report.state.name} | Hash: {report.extrinsic_hash}"
            )
        elif outcome is Outcome.ERRORED:
            logging.error(f"Error during sweep: {type(report.error).__name__}: {report.error}")
        elif report.detail:
            logging.info(report.detail)
        return report
