"""
Operating modes and per-domain mode state machines.

A mode is a small tagged value (``Disabled``, ``Manual``, ``CurveMode``);
state machines match on it explicitly every tick. Modes only change through
configuration writes, never on their own.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

from ..data import Setting
from .curve import Curve, CurveEvaluator, driving_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Disabled:
    """Fan handed back to platform firmware once on entry, then left alone."""

    pass


@dataclass(frozen=True)
class Manual:
    """Fixed value, reasserted at poll cadence."""

    value: float


@dataclass(frozen=True)
class CurveMode:
    """Output driven by a curve over the hottest selected sensor."""

    curve: Curve
    poll_interval: float = 2.0  # Seconds
    hysteresis: float = 2.0  # Sensor units (°C)
    rate_limit: Optional[float] = None  # Max output change per tick, None = unlimited
    sensors: Tuple[str, ...] = ()


Mode = Union[Disabled, Manual, CurveMode]


def mode_name(mode: Optional[Mode]) -> str:
    if isinstance(mode, Disabled):
        return "disabled"
    if isinstance(mode, Manual):
        return "manual"
    if isinstance(mode, CurveMode):
        return "curve"
    return "none"


class FanStateMachine:
    """
    Fan domain: Disabled / Manual(duty) / Curve.

    ``tick`` proposes the next duty; the caller ``commit``s it once the
    actuator accepted it, so a failed write never advances rate limiting.
    Switching between Manual and Curve (or editing the curve) keeps the last
    committed duty, so the rate limit also covers the switch. Only entering
    Disabled or ``reset`` forgets it.
    """

    def __init__(self, output_range: Tuple[float, float] = (0.0, 100.0)):
        self.output_range = output_range
        self.mode: Optional[Mode] = None
        self.output: Optional[float] = None  # Last committed output
        self._evaluator: Optional[CurveEvaluator] = None
        self.handover_pending = False  # Firmware handover owed after entering Disabled

    def reset(self) -> None:
        """Forget all runtime state; the next tick behaves like a fresh mode entry."""
        self.mode = None
        self.output = None
        self._evaluator = None
        self.handover_pending = False

    def _enter(self, mode: Mode) -> None:
        logger.info(f"Fan mode change: {mode_name(self.mode)} -> {mode_name(mode)}")
        self.mode = mode
        self.handover_pending = isinstance(mode, Disabled)
        if self.handover_pending:
            self.output = None  # Firmware owns the fan from here on
        if isinstance(mode, CurveMode):
            self._evaluator = CurveEvaluator(
                mode.curve, hysteresis=mode.hysteresis, rate_limit=mode.rate_limit
            )
        else:
            self._evaluator = None

    def tick(
        self, mode: Mode, temperatures: Optional[Dict[str, float]] = None
    ) -> Optional[float]:
        """
        Evaluate one tick.

        Args:
            mode: Mode from the configuration snapshot of this tick
            temperatures: Current named temperatures, None if the read failed

        Returns:
            Duty to command, or None when nothing should be commanded
        """
        if mode != self.mode:
            self._enter(mode)

        if isinstance(mode, Disabled):
            return None

        if isinstance(mode, Manual):
            lo, hi = self.output_range
            return float(min(max(mode.value, lo), hi))

        if isinstance(mode, CurveMode):
            if temperatures is None:
                return None
            value = driving_value(temperatures, mode.sensors)
            if value is None:
                logger.warning(
                    f"No reading for sensors {list(mode.sensors)} (have {sorted(temperatures)})"
                )
                return None
            return self._evaluator.evaluate(value, self.output)

        raise TypeError(f"Unknown mode: {mode!r}")

    def commit(self, output: float) -> None:
        """Record an output the actuator accepted."""
        self.output = output


class SettingStateMachine:
    """
    Power and battery channels: a profile ``Setting`` maps to a mode.

    Enabled settings become ``Manual(value)`` after clamping and snapping;
    disabled or missing settings become ``Disabled`` for this channel only.
    """

    def __init__(
        self,
        name: str,
        lower: Optional[float] = None,
        upper: Optional[float] = None,
        step: Optional[float] = None,
    ):
        self.name = name
        self.lower = lower
        self.upper = upper
        self.step = step
        self.mode: Optional[Mode] = None

    def normalize(self, value: float) -> float:
        if self.step:
            value = round(value / self.step) * self.step
        if self.lower is not None:
            value = max(value, self.lower)
        if self.upper is not None:
            value = min(value, self.upper)
        return float(value)

    def mode_for(self, setting: Optional[Setting]) -> Mode:
        if setting is None or not setting.enabled:
            return Disabled()
        return Manual(self.normalize(setting.value))

    def tick(self, setting: Optional[Setting]) -> Optional[float]:
        """Target for this channel, None when the channel is disabled."""
        mode = self.mode_for(setting)
        if mode != self.mode:
            detail = f" ({mode.value:g})" if isinstance(mode, Manual) else ""
            logger.info(f"{self.name}: {mode_name(self.mode)} -> {mode_name(mode)}{detail}")
            self.mode = mode
        if isinstance(mode, Manual):
            return mode.value
        return None
