"""Pass/fail judgment policies for a single reading.

A policy maps (reading, expected voltage) to `JUDGE.GOOD` or `JUDGE.NOT_GOOD`.
Bounds are inclusive. Anything that is not a finite number (an `"error"` cell,
None, NaN) is always NOT_GOOD.
"""

from __future__ import annotations

import math
from typing import Any

from chamberbench.types import JUDGE
from chamberbench.util.defaults import (
    DEFAULT_TOLERANCE,
    FIXED_RANGE_HIGH,
    FIXED_RANGE_LOW,
)

# relative slack on the band edges so e*(1-tol) itself judges G despite float rounding
_EDGE_EPS = 1e-9


def is_numeric(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


class JudgmentPolicy:
    name = "base"

    def bounds(self, expected: float) -> tuple[float, float]:
        raise NotImplementedError

    def judge(self, value: Any, expected: float) -> str:
        if not is_numeric(value):
            return JUDGE.NOT_GOOD
        lo, hi = self.bounds(expected)
        eps = _EDGE_EPS * max(abs(lo), abs(hi))
        return JUDGE.GOOD if lo - eps <= value <= hi + eps else JUDGE.NOT_GOOD

    def describe(self) -> str:
        return self.name

    def __repr__(self):
        return f"{self.__class__.__name__}({self.describe()})"


class PercentTolerance(JudgmentPolicy):
    """G iff the reading lies within +/- `tolerance` (fraction) of expected."""

    name = "percent_tolerance"

    def __init__(self, tolerance: float = DEFAULT_TOLERANCE):
        if not 0 < tolerance < 1:
            raise ValueError(f"tolerance must be in (0, 1), got {tolerance}")
        self.tolerance = tolerance

    def bounds(self, expected: float) -> tuple[float, float]:
        band = abs(expected * self.tolerance)
        return expected - band, expected + band

    def describe(self) -> str:
        return f"+/-{self.tolerance * 100:g}%"


class FixedRange(JudgmentPolicy):
    """G iff `low <= reading <= high`, whatever the expected voltage."""

    name = "fixed_range"

    def __init__(self, low: float = FIXED_RANGE_LOW, high: float = FIXED_RANGE_HIGH):
        if low > high:
            raise ValueError(f"empty range [{low}, {high}]")
        self.low = low
        self.high = high

    def bounds(self, expected: float) -> tuple[float, float]:
        return self.low, self.high

    def describe(self) -> str:
        return f"{self.low:g}V..{self.high:g}V"


def get_policy(name: str, tolerance: float = DEFAULT_TOLERANCE) -> JudgmentPolicy:
    match name:
        case PercentTolerance.name:
            return PercentTolerance(tolerance)
        case FixedRange.name:
            return FixedRange()
        case _:
            raise ValueError(f"Unknown judgment policy: {name}")
