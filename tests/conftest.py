import threading

import pytest

from balance_sweeper.amounts import Amount
from balance_sweeper.config import SweeperConfig
from balance_sweeper.models import BalanceSnapshot, NoTip, ProportionalBuffer, TransferMode
from balance_sweeper.tracker import DispatchOutcome, StatusKind, StatusUpdate

UNIT = 1_000_000_000_000
DEST = "5DestinationAddress"


def snapshot(available, free=None, reserved=0, locked=0) -> BalanceSnapshot:
    return BalanceSnapshot(
        free=Amount(free if free is not None else available),
        reserved=Amount(reserved),
        locked=Amount(locked),
        available=Amount(available),
    )


def pooled():
    return StatusUpdate(StatusKind.POOLED, extrinsic_hash="0xfeed", detail="ready")


def in_block(success=True, error=None, block_hash="0xb1"):
    return StatusUpdate(
        StatusKind.IN_BLOCK,
        extrinsic_hash="0xfeed",
        block_hash=block_hash,
        outcome=DispatchOutcome(success=success, error=error),
    )


def finalized(block_hash="0xb1"):
    return StatusUpdate(
        StatusKind.FINALIZED,
        extrinsic_hash="0xfeed",
        block_hash=block_hash,
        outcome=DispatchOutcome(success=True),
    )


def dropped():
    return StatusUpdate(StatusKind.DROPPED, extrinsic_hash="0xfeed", detail="dropped")


class FakeKeypair:
    ss58_address = "5SourceAddress"


class FakeSubscription:
    def __init__(self):
        self.unsubscribed = 0

    def unsubscribe(self):
        self.unsubscribed += 1


class FakeChain:
    """In-memory chain client with scripted balances, fees and statuses."""

    token_decimals = 12
    token_symbol = "UNIT"

    def __init__(
        self,
        available=UNIT,
        fee=100_000_000,
        statuses=(),
        balance_error=None,
        fee_error=None,
        submit_error=None,
        hold_submit=None,
    ):
        self.available = available
        self.fee = Amount(fee)
        self.statuses = list(statuses)
        self.balance_error = balance_error
        self.fee_error = fee_error
        self.submit_error = submit_error
        self.hold_submit = hold_submit
        self.submit_started = threading.Event()
        self.balance_calls = 0
        self.fee_calls = []
        self.submissions = []
        self.reconnects = 0
        self.subscription = FakeSubscription()

    def format(self, amount):
        return f"{amount} planck"

    def reconnect(self):
        self.reconnects += 1

    def get_balances(self, address):
        self.balance_calls += 1
        if self.balance_error is not None:
            raise self.balance_error
        return snapshot(self.available)

    def estimate_fee(self, mode, destination, amount, signer):
        self.fee_calls.append((mode, destination, amount))
        if self.fee_error is not None:
            raise self.fee_error
        return self.fee

    def submit(self, plan, signer, on_status):
        self.submissions.append(plan)
        self.submit_started.set()
        if self.hold_submit is not None:
            self.hold_submit.wait(5)
        if self.submit_error is not None:
            raise self.submit_error
        for update in self.statuses:
            if on_status(update, self.subscription):
                return


def make_config(**overrides) -> SweeperConfig:
    values = dict(
        ws_endpoint="ws://127.0.0.1:9944",
        source_seed="//Alice",
        target_address=DEST,
        transfer_mode=TransferMode.DRAIN_ACCOUNT,
        fee_policy=ProportionalBuffer("1.1"),
        tip_policy=NoTip(),
    )
    values.update(overrides)
    return SweeperConfig(**values)


@pytest.fixture
def keypair():
    return FakeKeypair()
