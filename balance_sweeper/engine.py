import logging
from typing import Optional

from .amounts import ZERO, Amount
from .errors import PolicyViolation
from .models import (
    BalanceSnapshot,
    DispatchPlan,
    FeePolicy,
    TipPolicy,
    TransferMode,
)


def fee_reserve(fee_policy: FeePolicy, fee_estimate: Amount) -> Amount:
    """Turns a raw fee estimate into the safety-adjusted reserve."""
    return fee_policy.reserve(Amount(fee_estimate))


def decide(
    snapshot: BalanceSnapshot,
    fee_estimate: Amount,
    destination: str,
    transfer_mode: TransferMode,
    fee_policy: FeePolicy,
    tip_policy: TipPolicy,
    min_drain: Optional[Amount] = None,
) -> Optional[DispatchPlan]:
    """
    Decides whether to sweep and with what amount and tip.

    Pure function: no I/O, identical inputs give an identical plan.
    Returns None when nothing should be sent.

    Drain mode always plans "send everything"; the runtime's transfer_all
    computes the exact value and pays the fee out of the drained balance.
    Only the tip is decided here: min(cap, max(0, available - reserve)).
    `min_drain` is an explicit opt-in threshold below which a drain is skipped.

    Keep-alive mode sends exactly available - reserve, never tips, and
    refuses to send zero.
    """
    available = snapshot.available
    if available == 0:
        return None

    try:
        reserve = fee_reserve(fee_policy, fee_estimate)
        leftover = available.saturating_sub(reserve)

        if transfer_mode is TransferMode.DRAIN_ACCOUNT:
            if min_drain is not None and available < min_drain:
                logging.debug(f"Available {available} below drain threshold {min_drain}")
                return None
            tip = tip_policy.tip_for(leftover)
            if tip > leftover:
                raise PolicyViolation(f"Tip {tip} exceeds leftover {leftover}")
            return DispatchPlan(
                destination=destination,
                mode=transfer_mode,
                amount=None,
                tip=tip,
            )

        if transfer_mode is TransferMode.KEEP_ALIVE:
            if available <= reserve:
                return None
            amount = available - reserve
            return DispatchPlan(
                destination=destination,
                mode=transfer_mode,
                amount=amount,
                tip=ZERO,
            )

        raise PolicyViolation(f"Unknown transfer mode: {transfer_mode!r}")

    except PolicyViolation as e:
        logging.warning(f"Sweep plan rejected: {e}")
        return None
