"""Domain models and sweep policies."""

from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from typing import Optional, Union

from .amounts import ZERO, Amount
from .errors import PolicyViolation


class TransferMode(Enum):
    # transfer_all(keep_alive=False): may reap the account
    DRAIN_ACCOUNT = "drain"
    # transfer_keep_alive(value): never drops below the existential deposit
    KEEP_ALIVE = "keep_alive"


@dataclass(frozen=True)
class BalanceSnapshot:
    """Point-in-time balances of one address. Only `available` is acted on."""

    free: Amount
    reserved: Amount
    locked: Amount
    available: Amount

    def __post_init__(self):
        for name in ("free", "reserved", "locked", "available"):
            object.__setattr__(self, name, Amount(getattr(self, name)))


# --- fee policies -----------------------------------------------------------

@dataclass(frozen=True)
class FixedBuffer:
    """Reserve a fixed amount, ignoring the live estimate."""

    buffer: Amount

    def __post_init__(self):
        object.__setattr__(self, "buffer", Amount(self.buffer))

    def reserve(self, fee_estimate: Amount) -> Amount:
        return self.buffer


@dataclass(frozen=True)
class ProportionalBuffer:
    """Reserve ceil(estimate * ratio); ratio is held as an exact Fraction."""

    ratio: Fraction

    def __post_init__(self):
        ratio = self.ratio
        if isinstance(ratio, float):
            ratio = str(ratio)
        ratio = Fraction(ratio)
        if ratio <= 1:
            raise PolicyViolation(f"Proportional fee ratio must exceed 1, got {ratio}")
        object.__setattr__(self, "ratio", ratio)

    def reserve(self, fee_estimate: Amount) -> Amount:
        return Amount(fee_estimate).scale_ceil(self.ratio)


@dataclass(frozen=True)
class ExactFee:
    """Reserve exactly the estimate. Meant for keep-alive transfers."""

    def reserve(self, fee_estimate: Amount) -> Amount:
        return Amount(fee_estimate)


FeePolicy = Union[FixedBuffer, ProportionalBuffer, ExactFee]


# --- tip policies -----------------------------------------------------------

@dataclass(frozen=True)
class NoTip:
    def tip_for(self, leftover: Amount) -> Amount:
        return ZERO


@dataclass(frozen=True)
class LeftoverCappedAt:
    """Offer whatever is left after the fee reserve, up to `cap`."""

    cap: Amount

    def __post_init__(self):
        object.__setattr__(self, "cap", Amount(self.cap))

    def tip_for(self, leftover: Amount) -> Amount:
        return min(self.cap, Amount(leftover))


TipPolicy = Union[NoTip, LeftoverCappedAt]


@dataclass(frozen=True)
class DispatchPlan:
    destination: str
    mode: TransferMode
    # None means "send everything" (drain mode)
    amount: Optional[Amount]
    tip: Amount = ZERO

    @property
    def drains(self) -> bool:
        return self.amount is None

    def describe(self, decimals: int = 0, symbol: str = None) -> str:
        if self.drains:
            what = "ALL (drain)"
        else:
            what = self.amount.format_units(decimals, symbol) if decimals else str(self.amount)
        tip = self.tip.format_units(decimals, symbol) if decimals else str(self.tip)
        return f"{what} -> {self.destination} | tip {tip}"


@dataclass(frozen=True)
class TriggerEvent:
    """One tick from a trigger source."""

    source: str
    sequence: int
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
