"""
Piecewise-linear curve evaluation with hysteresis and rate limiting.

A curve maps a driving sensor value (usually °C) to an actuator output
(usually duty %). Two implicit anchors bound every curve at the corners of
its declared domain, so evaluation is defined for any input.
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..data import ConfigurationRejected

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_SENSORS = ("APU",)


@dataclass(frozen=True)
class CurvePoint:
    """Single (input, output) pair, e.g. (temperature °C, duty %)."""

    input: float
    output: float


@dataclass(frozen=True)
class Curve:
    """
    Ordered set of curve points with unique inputs.

    Inputs are snapped to ``resolution`` and both coordinates are clamped to
    their ranges. Build curves with ``from_pairs`` or ``insert`` so these
    invariants hold; the constructor itself does not validate.
    """

    points: Tuple[CurvePoint, ...] = ()
    input_range: Tuple[float, float] = (0.0, 100.0)
    output_range: Tuple[float, float] = (0.0, 100.0)
    resolution: float = 1.0

    @classmethod
    def from_pairs(
        cls,
        pairs: Iterable[Sequence[float]],
        input_range: Tuple[float, float] = (0.0, 100.0),
        output_range: Tuple[float, float] = (0.0, 100.0),
        resolution: float = 1.0,
    ) -> "Curve":
        """
        Build a normalized curve from raw ``[input, output]`` pairs.

        Raises:
            ConfigurationRejected: Empty point set, non-numeric values, or
                no room left to separate colliding inputs.
        """
        if resolution <= 0:
            raise ConfigurationRejected(f"Curve resolution must be > 0, got {resolution}")
        if input_range[0] >= input_range[1] or output_range[0] > output_range[1]:
            raise ConfigurationRejected(
                f"Invalid curve ranges: input={input_range}, output={output_range}"
            )

        curve = cls((), tuple(input_range), tuple(output_range), resolution)
        for pair in pairs or ():
            try:
                x, y = pair
                point = CurvePoint(float(x), float(y))
            except (TypeError, ValueError):
                raise ConfigurationRejected(f"Malformed curve point: {pair!r}")
            if not (np.isfinite(point.input) and np.isfinite(point.output)):
                raise ConfigurationRejected(f"Non-finite curve point: {pair!r}")
            curve = curve.insert(point)

        if not curve.points:
            raise ConfigurationRejected("Curve needs at least one point")
        return curve

    def clamp(self, point: CurvePoint) -> CurvePoint:
        """Snap the input to the resolution grid and clamp both coordinates."""
        lo, hi = self.input_range
        out_lo, out_hi = self.output_range
        snapped = round(point.input / self.resolution) * self.resolution
        return CurvePoint(
            float(min(max(snapped, lo), hi)),
            float(min(max(point.output, out_lo), out_hi)),
        )

    def insert(self, point: CurvePoint) -> "Curve":
        """
        Return a new curve with ``point`` added.

        A point already sitting at the same input is kept but nudged one
        resolution step away (upwards if there is room, else downwards),
        cascading into further neighbours if needed.
        """
        new = self.clamp(point)
        others = [p for p in self.points if p.input != new.input]
        collided = [p for p in self.points if p.input == new.input]

        points = sorted(others + [new], key=lambda p: p.input)
        for old in collided:
            idx = points.index(new)
            moved = self._nudge(points[: idx + 1] + [old] + points[idx + 1 :], idx, 1)
            if moved is None:
                moved = self._nudge(points[:idx] + [old] + points[idx:], idx + 1, -1)
            if moved is None:
                raise ConfigurationRejected(
                    f"No room to insert point at input {new.input}: curve is full"
                )
            points = moved

        self._check_sorted(points)
        return replace(self, points=tuple(points))

    def remove(self, input_value: float) -> "Curve":
        """Return a new curve without the point at ``input_value``."""
        target = self.clamp(CurvePoint(input_value, 0.0)).input
        remaining = tuple(p for p in self.points if p.input != target)
        if not remaining:
            raise ConfigurationRejected("Curve needs at least one point")
        return replace(self, points=remaining)

    def _nudge(
        self, points: List[CurvePoint], fixed: int, direction: int
    ) -> Optional[List[CurvePoint]]:
        """Push points after (or before) ``fixed`` apart; None when out of range."""
        lo, hi = self.input_range
        step = direction * self.resolution
        result = list(points)
        i = fixed + direction
        while 0 <= i < len(result):
            prev = result[i - direction]
            cur = result[i]
            if (cur.input - prev.input) * direction > 0:
                break
            moved = prev.input + step
            if not lo <= moved <= hi:
                return None
            result[i] = CurvePoint(moved, cur.output)
            i += direction
        return result

    @staticmethod
    def _check_sorted(points: List[CurvePoint]) -> None:
        for a, b in zip(points, points[1:]):
            if b.input <= a.input:
                raise ConfigurationRejected(
                    f"Curve inputs not strictly increasing: {a.input} then {b.input}"
                )

    def nodes(self) -> Tuple[np.ndarray, np.ndarray]:
        """Curve nodes including the implicit anchors (user points win on ties)."""
        lo, hi = self.input_range
        out_lo, out_hi = self.output_range
        inputs = [p.input for p in self.points]
        outputs = [p.output for p in self.points]
        if not inputs or inputs[0] > lo:
            inputs.insert(0, lo)
            outputs.insert(0, out_lo)
        if inputs[-1] < hi:
            inputs.append(hi)
            outputs.append(out_hi)
        return np.asarray(inputs, dtype=float), np.asarray(outputs, dtype=float)

    def to_pairs(self) -> List[List[float]]:
        return [[p.input, p.output] for p in self.points]


def interpolate(curve: Curve, x: float) -> float:
    """Piecewise-linear output at ``x``; inputs outside the domain are clamped."""
    xs, ys = curve.nodes()
    lo, hi = curve.input_range
    return float(np.interp(min(max(x, lo), hi), xs, ys))


def step_toward(current: float, target: float, max_step: Optional[float]) -> float:
    """Move ``current`` toward ``target`` by at most ``max_step`` (None = jump)."""
    if max_step is None:
        return target
    if target > current:
        return min(current + max_step, target)
    return max(current - max_step, target)


def _normalize_sensor(name: str) -> str:
    return name.replace(" ", "").upper()


def driving_value(
    temperatures: Dict[str, float],
    sensors: Sequence[str] = (),
    fallback: Sequence[str] = DEFAULT_FALLBACK_SENSORS,
) -> Optional[float]:
    """
    Reduce several sensor readings to one driving value.

    Takes the maximum across the selected sensors that are present (hottest
    wins). When none of them reports, the fallback sensors are tried in the
    same way.
    """
    by_name = {_normalize_sensor(k): v for k, v in temperatures.items()}
    for names in (sensors, fallback):
        values = [by_name[n] for n in map(_normalize_sensor, names) if n in by_name]
        if values:
            return float(max(values))
    return None


class CurveEvaluator:
    """
    Stateful curve evaluation for one control loop.

    The raw target is only recomputed once the sensor value moved at least
    ``hysteresis`` away from the value of the last recomputation. The output
    then walks toward the accepted target by at most ``rate_limit`` per call.
    """

    def __init__(
        self,
        curve: Curve,
        hysteresis: float = 0.0,
        rate_limit: Optional[float] = None,
    ):
        self.curve = curve
        self.hysteresis = hysteresis
        self.rate_limit = rate_limit

        self.anchor: Optional[float] = None  # Sensor value at last recomputation
        self.target: Optional[float] = None

    def reset(self) -> None:
        """Forget anchor and target; the next call recomputes from scratch."""
        self.anchor = None
        self.target = None

    def evaluate(self, sensor_value: float, previous_output: Optional[float]) -> float:
        """
        Next output for ``sensor_value``.

        Args:
            sensor_value: Current driving value
            previous_output: Output of the previous tick, None on the first
                tick (the output then jumps straight to the target)

        Returns:
            Next output, never more than ``rate_limit`` away from
            ``previous_output``
        """
        if (
            self.target is None
            or self.anchor is None
            or abs(sensor_value - self.anchor) >= self.hysteresis
        ):
            self.target = interpolate(self.curve, sensor_value)
            self.anchor = sensor_value

        if previous_output is None:
            return self.target

        next_output = step_toward(previous_output, self.target, self.rate_limit)
        logger.debug(
            f"Curve: sensor={sensor_value:.1f} anchor={self.anchor:.1f} target={self.target:.1f} "
            f"prev={previous_output:.1f} next={next_output:.1f} step_limit={self.rate_limit}"
        )
        return next_output
