"""Balance sweeper for Substrate-based chains."""

from .agent import SingleFlightGuard, SweepAgent, SweepContext
from .amounts import ZERO, Amount
from .engine import decide, fee_reserve
from .models import (
    BalanceSnapshot,
    DispatchPlan,
    ExactFee,
    FixedBuffer,
    LeftoverCappedAt,
    NoTip,
    ProportionalBuffer,
    TransferMode,
    TriggerEvent,
)
from .tracker import AttemptReport, AttemptState, DispatchTracker, Outcome, StatusKind, StatusUpdate

__version__ = "0.1.0"
