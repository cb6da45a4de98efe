"""Fan calibration: sweep duty levels and record the stabilized RPM of each."""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import numpy as np

from ..control.modes import Mode
from ..hardware import HardwareError
from .spline import CalibrationPoint, CalibrationTable

logger = logging.getLogger(__name__)

DEFAULT_SWEEP = (100.0, 80.0, 60.0, 40.0, 20.0)


class CalibrationError(Exception):
    """Calibration could not produce a usable table."""

    pass


class CalibrationCancelled(CalibrationError):
    """Calibration was cancelled; the prior mode has been restored."""

    pass


class CalibrationTimeout(CalibrationError):
    """A sweep level did not stabilize before its timeout."""

    def __init__(self, duty: float, samples: List[float]):
        super().__init__(f"duty {duty:g}% did not stabilize ({len(samples)} samples)")
        self.duty = duty
        self.samples = samples

    def fallback_value(self) -> Optional[float]:
        """Median of whatever was collected, None if nothing was."""
        if not self.samples:
            return None
        return float(np.median(self.samples))


@dataclass(frozen=True)
class StabilizationPolicy:
    window: int = 5  # Samples in the sliding window
    stddev_threshold: float = 50.0  # RPM
    sample_interval: float = 1.0  # Seconds between samples
    level_timeout: float = 30.0  # Seconds per duty level


class StabilityWindow:
    """Sliding window of response samples for stability detection."""

    def __init__(self, size: int):
        self.size = max(1, size)
        self.samples = deque(maxlen=self.size)

    def add(self, value: float) -> None:
        self.samples.append(value)

    def is_full(self) -> bool:
        return len(self.samples) >= self.size

    def stddev(self) -> Optional[float]:
        if not self.samples:
            return None
        return float(np.std(self.samples))  # Population std-dev

    def is_stable(self, threshold: float) -> bool:
        return self.is_full() and self.stddev() < threshold

    def value(self) -> float:
        """Median resists single-sample outliers better than the mean."""
        return float(np.median(self.samples))


LevelCallback = Callable[[float, Optional[CalibrationPoint], str], None]


class CalibrationEngine:
    """
    Drive the fan through a duty sweep and measure the response.

    The fan mode in effect when calibration starts is restored verbatim when
    it ends, whether it completed, failed or was cancelled. While running,
    ``hold`` is set so the fan control loop stays out of the way.
    """

    def __init__(
        self,
        hardware,
        get_mode: Callable[[], Mode],
        restore_mode: Callable[[Mode], None],
        hold: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.hardware = hardware
        self.get_mode = get_mode
        self.restore_mode = restore_mode
        self.hold = hold or threading.Event()
        self.clock = clock

    @staticmethod
    def sweep_levels(duty_sweep: Optional[Sequence[float]] = None) -> List[float]:
        """Distinct levels in descending order, always ending with 0."""
        levels = [float(d) for d in (duty_sweep if duty_sweep is not None else DEFAULT_SWEEP)]
        for duty in levels:
            if not 0 <= duty <= 100:
                raise ValueError(f"Sweep duty must be 0-100, got {duty}")
        return sorted(set(levels) | {0.0}, reverse=True)

    def run_calibration(
        self,
        duty_sweep: Optional[Sequence[float]] = None,
        policy: Optional[StabilizationPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
        on_level: Optional[LevelCallback] = None,
    ) -> CalibrationTable:
        """
        Run one calibration session.

        Args:
            duty_sweep: Duty levels (%); 0 is always added
            policy: Stabilization policy
            cancel_event: Set to cancel; checked between levels and on
                every sampling wait
            on_level: Called after each level with (duty, point, reason)

        Returns:
            Table sorted by duty ascending

        Raises:
            CalibrationCancelled: cancel_event was set
            CalibrationError: fewer than two levels produced a reading
        """
        levels = self.sweep_levels(duty_sweep)
        policy = policy or StabilizationPolicy()
        cancel_event = cancel_event or threading.Event()

        snapshot = self.get_mode()
        self.hold.set()
        logger.info(f"Calibration started: levels={[f'{d:g}' for d in levels]}")
        try:
            points: List[CalibrationPoint] = []
            for duty in levels:
                if cancel_event.is_set():
                    raise CalibrationCancelled("cancelled")

                response, reason = self._measure_level(duty, policy, cancel_event)
                point = CalibrationPoint(duty, response) if response is not None else None
                if point is not None:
                    points.append(point)
                    logger.info(f"Calibration: {duty:g}% -> {response:.0f} RPM ({reason})")
                else:
                    logger.warning(f"Calibration: {duty:g}% produced no readings, skipped")
                if on_level is not None:
                    on_level(duty, point, reason)

            if len(points) < 2:
                raise CalibrationError(f"Only {len(points)} level(s) produced readings")

            table = CalibrationTable(
                tuple(sorted(points, key=lambda p: p.duty)), updated_at=time.time()
            )
            if not table.is_monotonic():
                logger.warning(f"Calibration result is not monotonic in RPM: {table.to_pairs()}")
            return table
        finally:
            self.restore_mode(snapshot)
            self.hold.clear()
            logger.info("Calibration finished, fan mode restored")

    def _measure_level(
        self, duty: float, policy: StabilizationPolicy, cancel_event: threading.Event
    ):
        """Returns (response, reason); response is None when nothing was read."""
        try:
            return self._wait_for_stable(duty, policy, cancel_event), "stable"
        except CalibrationTimeout as e:
            logger.warning(f"Calibration: {e}, using median of samples")
            return e.fallback_value(), f"timeout_after_{policy.level_timeout:g}s"

    def _wait_for_stable(
        self, duty: float, policy: StabilizationPolicy, cancel_event: threading.Event
    ) -> float:
        window = StabilityWindow(policy.window)
        collected: List[float] = []
        commanded = False
        start = self.clock()

        while True:
            if not commanded:
                try:
                    self.hardware.apply_fan_duty(int(round(duty)))
                    commanded = True
                except HardwareError as e:
                    logger.warning(f"Calibration: setting {duty:g}% failed: {e}")

            if cancel_event.wait(policy.sample_interval):
                raise CalibrationCancelled("cancelled")

            if commanded:
                try:
                    reading = self.hardware.read_thermal()
                except HardwareError as e:
                    logger.debug(f"Calibration: read failed: {e}")
                else:
                    rpms = reading.fan_rpms
                    rpm = float(sum(rpms) / len(rpms)) if rpms else 0.0
                    window.add(rpm)
                    collected.append(rpm)
                    if window.is_stable(policy.stddev_threshold):
                        return window.value()

            if self.clock() - start >= policy.level_timeout:
                raise CalibrationTimeout(duty, collected)
