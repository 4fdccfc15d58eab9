from fractions import Fraction

from .errors import AmountUnderflow, PolicyViolation


class Amount(int):
    """
    Non-negative balance in the ledger's smallest unit (Planck).

    Python integers never overflow, so the only check needed is the lower
    bound: subtraction below zero raises AmountUnderflow instead of wrapping.
    """

    __slots__ = ()

    def __new__(cls, value=0):
        if isinstance(value, str):
            value = int(value.strip())
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"Amount requires an integer, got {type(value).__name__}")
        if value < 0:
            raise AmountUnderflow(f"Amount cannot be negative: {value}")
        return super().__new__(cls, value)

    def __repr__(self):
        return f"Amount({int(self)})"

    def __str__(self):
        return int.__repr__(self)

    def __add__(self, other):
        if not isinstance(other, int):
            return NotImplemented
        return Amount(int(self) + int(other))

    __radd__ = __add__

    def __sub__(self, other):
        if not isinstance(other, int):
            return NotImplemented
        result = int(self) - int(other)
        if result < 0:
            raise AmountUnderflow(f"{int(self)} - {int(other)} underflows")
        return Amount(result)

    def __rsub__(self, other):
        if not isinstance(other, int):
            return NotImplemented
        return Amount(other) - self

    def saturating_sub(self, other) -> "Amount":
        """Subtract, clamping at zero."""
        return Amount(max(0, int(self) - int(other)))

    def scale_ceil(self, ratio) -> "Amount":
        """Multiply by an exact ratio and round up. No floats involved."""
        ratio = Fraction(ratio)
        if ratio < 0:
            raise PolicyViolation(f"Scaling ratio must be non-negative: {ratio}")
        numerator = int(self) * ratio.numerator
        # ceil division on integers
        return Amount(-(-numerator // ratio.denominator))

    def format_units(self, decimals: int, symbol: str = None, places: int = 4) -> str:
        """Render in whole-token units (truncated), e.g. '1.2345 DOT'."""
        whole, frac = divmod(int(self), 10 ** decimals)
        text = str(whole)
        if decimals and places:
            text += "." + str(frac).zfill(decimals)[:places]
        return f"{text} {symbol}" if symbol else text


ZERO = Amount(0)
