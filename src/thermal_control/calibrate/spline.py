"""
Calibration tables and their spline interpolants.

The fitted curve is only ever used for display (converting a live RPM back to
an equivalent duty), never to drive the fan.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.interpolate import CubicSpline


@dataclass(frozen=True)
class CalibrationPoint:
    duty: float  # Commanded duty (%)
    response: float  # Stabilized response (RPM)


def fit_spline(xs: Sequence[float], ys: Sequence[float]) -> Optional[Callable[[float], float]]:
    """
    Fit a natural cubic spline through (xs, ys).

    Abscissae are sorted and duplicates collapsed (first occurrence wins),
    which keeps the fit defined for non-monotonic data.

    Returns:
        Callable interpolant, or None with fewer than two distinct points
    """
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    order = np.argsort(x, kind="stable")
    x, y = x[order], y[order]
    x, first = np.unique(x, return_index=True)
    y = y[first]

    if len(x) < 2:
        return None
    if len(x) == 2:
        return lambda v: float(np.interp(v, x, y))

    spline = CubicSpline(x, y, bc_type="natural", extrapolate=True)
    return lambda v: float(spline(v))


@dataclass(frozen=True)
class CalibrationTable:
    """Measured duty -> response points, sorted by duty ascending."""

    points: Tuple[CalibrationPoint, ...]
    updated_at: float = 0.0  # Unix timestamp

    @classmethod
    def from_pairs(cls, pairs: Sequence[Sequence[float]], updated_at: float = 0.0) -> "CalibrationTable":
        points = sorted(
            (CalibrationPoint(float(d), float(r)) for d, r in pairs), key=lambda p: p.duty
        )
        return cls(tuple(points), float(updated_at))

    def to_pairs(self) -> List[List[float]]:
        return [[p.duty, p.response] for p in self.points]

    def is_monotonic(self) -> bool:
        """True when response never decreases as duty increases."""
        responses = [p.response for p in self.points]
        return all(b >= a for a, b in zip(responses, responses[1:]))

    def response_for(self, duty: float) -> Optional[float]:
        """Expected response at ``duty`` (clamped to the measured duty range)."""
        if not self.points:
            return None
        duties = [p.duty for p in self.points]
        fn = fit_spline(duties, [p.response for p in self.points])
        if fn is None:
            return self.points[0].response
        return max(0.0, fn(float(np.clip(duty, min(duties), max(duties)))))

    def duty_for(self, response: float) -> Optional[float]:
        """
        Equivalent duty for a measured ``response``.

        Tolerates local non-monotonicity: duplicate responses are collapsed
        and the result is clipped to 0-100.
        """
        if not self.points:
            return None
        responses = [p.response for p in self.points]
        fn = fit_spline(responses, [p.duty for p in self.points])
        if fn is None:
            return self.points[0].duty
        value = fn(float(np.clip(response, min(responses), max(responses))))
        return float(np.clip(value, 0.0, 100.0))
