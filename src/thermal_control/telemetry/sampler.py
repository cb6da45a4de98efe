"""Periodic telemetry sampling into a time-bounded buffer."""

import logging
import threading
import time
from collections import deque
from typing import Callable, List, Optional

from ..data import TelemetrySample
from ..hardware import HardwareError

logger = logging.getLogger(__name__)

SampleListener = Callable[[TelemetrySample], None]


class RetentionBuffer:
    """
    Ordered telemetry samples bounded by age.

    Timestamps are non-decreasing. Every append drops samples older than
    ``retain_seconds`` relative to the newest one. Readers get copies.
    """

    def __init__(self, retain_seconds: float):
        self.retain_seconds = retain_seconds
        self._samples = deque()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def append(self, sample: TelemetrySample) -> None:
        with self._lock:
            if self._samples and sample.timestamp < self._samples[-1].timestamp:
                raise ValueError(
                    f"Out-of-order sample: {sample.timestamp} < {self._samples[-1].timestamp}"
                )
            self._samples.append(sample)
            cutoff = sample.timestamp - self.retain_seconds
            while self._samples and self._samples[0].timestamp < cutoff:
                self._samples.popleft()

    def snapshot(self, since: Optional[float] = None) -> List[TelemetrySample]:
        """Samples with ``timestamp >= since`` (all when None), oldest first."""
        with self._lock:
            if since is None:
                return list(self._samples)
            return [s for s in self._samples if s.timestamp >= since]

    def latest(self) -> Optional[TelemetrySample]:
        with self._lock:
            return self._samples[-1] if self._samples else None


class TelemetrySampler:
    """
    Builds one ``TelemetrySample`` per tick from the hardware collaborator.

    A failed thermal read produces no sample. A failed power read produces a
    sample without a battery snapshot. If the wall clock steps backwards,
    timestamps are held at the newest sample until the clock catches up.
    """

    def __init__(
        self,
        hardware,
        retain_seconds: float = 1800.0,
        clock: Callable[[], float] = time.time,
    ):
        self.hardware = hardware
        self.buffer = RetentionBuffer(retain_seconds)
        self.clock = clock
        self._listeners: List[SampleListener] = []
        self._clock_behind = False

    def add_listener(self, listener: SampleListener) -> None:
        self._listeners.append(listener)

    def tick(self, retain_seconds: Optional[float] = None) -> Optional[TelemetrySample]:
        """
        Take one sample.

        Args:
            retain_seconds: Retention for this tick, picks up config changes

        Returns:
            The new sample, or None when the thermal read failed
        """
        if retain_seconds is not None:
            self.buffer.retain_seconds = retain_seconds

        try:
            thermal = self.hardware.read_thermal()
        except HardwareError as e:
            logger.warning(f"Telemetry: thermal read failed: {e}")
            return None

        battery = None
        try:
            battery = self.hardware.read_power_state().battery
        except HardwareError as e:
            logger.debug(f"Telemetry: power read failed: {e}")

        sample = TelemetrySample(
            timestamp=self._timestamp(),
            named_temperatures=dict(thermal.named_temperatures),
            fan_rpms=tuple(thermal.fan_rpms),
            battery=battery,
        )
        self.buffer.append(sample)

        for listener in self._listeners:
            listener(sample)
        return sample

    def _timestamp(self) -> float:
        now = self.clock()
        newest = self.buffer.latest()
        if newest is None or now >= newest.timestamp:
            if self._clock_behind:
                logger.info("Telemetry: wall clock caught up")
                self._clock_behind = False
            return now
        if not self._clock_behind:
            logger.warning(
                f"Telemetry: wall clock stepped back {newest.timestamp - now:.0f}s, "
                f"holding timestamps at {newest.timestamp:.0f}"
            )
            self._clock_behind = True
        return newest.timestamp

    def get_recent_samples(self, since: Optional[float] = None) -> List[TelemetrySample]:
        return self.buffer.snapshot(since)

    def latest(self) -> Optional[TelemetrySample]:
        return self.buffer.latest()
