"""
Control service: one periodic thread per domain plus the telemetry sampler.

Every loop takes a single config snapshot per tick, so a concurrent write is
seen either entirely or not at all. Domains share nothing but the hardware
collaborator, the config store and the active-profile reference.
"""

import logging
import signal
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence

from ..calibrate.calibrator import (
    CalibrationCancelled,
    CalibrationEngine,
    CalibrationError,
    StabilizationPolicy,
)
from ..calibrate.spline import CalibrationTable
from ..config import ConfigStore, ControlConfig
from ..data import Profile, TelemetrySample
from ..hardware import HardwareError
from ..telemetry.sampler import TelemetrySampler
from .modes import CurveMode, FanStateMachine, Mode, SettingStateMachine
from .profiles import ProfileSelector
from .reapply import IntervalReapplier, ReapplicationController

logger = logging.getLogger(__name__)

IDLE_FAN_INTERVAL = 0.5  # Seconds, outside Curve mode
CHARGE_RATE_STEP = 0.05  # C
CHARGE_LIMIT_RANGE = (25.0, 100.0)  # %
MIN_TDP_WATTS = 1.0


class PeriodicTask(threading.Thread):
    """
    Daemon thread calling ``tick`` every ``interval()`` seconds until stopped.

    An exception escaping ``tick`` is logged and the loop carries on.
    """

    def __init__(self, name: str, stop_event: Optional[threading.Event] = None):
        super().__init__(name=name, daemon=True)
        self.stop_event = stop_event or threading.Event()

    def interval(self) -> float:
        raise NotImplementedError

    def tick(self) -> None:
        raise NotImplementedError

    def run(self) -> None:
        logger.info(f"{self.name} loop started")
        while not self.stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception(f"{self.name}: unexpected error, continuing")
            if self.stop_event.wait(self.interval()):
                break
        logger.info(f"{self.name} loop stopped")


class FanLoop(PeriodicTask):
    def __init__(
        self,
        store: ConfigStore,
        hardware,
        hold: threading.Event,
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__("fan", stop_event)
        self.store = store
        self.hardware = hardware
        self.hold = hold
        self.machine = FanStateMachine()

    def interval(self) -> float:
        mode = self.store.snapshot().fan.mode
        if isinstance(mode, CurveMode):
            return mode.poll_interval
        return IDLE_FAN_INTERVAL

    def reset(self) -> None:
        self.machine.reset()

    def tick(self) -> None:
        if self.hold.is_set():
            return  # Calibration owns the fan

        mode = self.store.snapshot().fan.mode
        temperatures = None
        if isinstance(mode, CurveMode):
            try:
                temperatures = self.hardware.read_thermal().named_temperatures
            except HardwareError as e:
                logger.warning(f"Fan: temperature read failed: {e}")

        target = self.machine.tick(mode, temperatures)

        if self.machine.handover_pending:
            try:
                self.hardware.restore_auto_fan()
                self.machine.handover_pending = False
                logger.info("Fan: control handed back to firmware")
            except HardwareError as e:
                logger.warning(f"Fan: firmware handover failed: {e}")

        if target is None:
            return

        duty = int(round(target))
        try:
            self.hardware.apply_fan_duty(duty)
        except HardwareError as e:
            logger.warning(f"Fan: setting {duty}% failed: {e}")
            return
        self.machine.commit(target)
        logger.debug(f"Fan: {duty}%")


class PowerLoop(PeriodicTask):
    """TDP and thermal-limit channels of the active profile."""

    def __init__(
        self,
        store: ConfigStore,
        hardware,
        selector: ProfileSelector,
        clock: Callable[[], float] = time.monotonic,
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__("power", stop_event)
        self.store = store
        self.hardware = hardware
        self.selector = selector
        self.clock = clock

        self.tdp_mode = SettingStateMachine("tdp", lower=MIN_TDP_WATTS)
        self.thermal_mode = SettingStateMachine("thermal_limit")
        self.tdp = ReapplicationController("tdp", hardware.apply_tdp)
        self.thermal = ReapplicationController("thermal_limit", hardware.apply_thermal_limit)

    def interval(self) -> float:
        return self.store.snapshot().power.poll_interval

    def tick(self) -> None:
        cfg = self.store.snapshot()
        tdp_observed = thermal_observed = None
        try:
            state = self.hardware.read_power_state()
        except HardwareError as e:
            logger.warning(f"Power: read failed: {e}")
        else:
            tdp_observed, thermal_observed = state.tdp_watts, state.thermal_limit_c
            # Independent of telemetry samples
            self.selector.observe(state.ac_present)

        _, profile = self.selector.active(cfg.profiles)
        if profile is None:
            return  # Power source not known yet

        self.thermal_mode.lower, self.thermal_mode.upper = cfg.power.thermal_limit_range
        tdp_target = self.tdp_mode.tick(profile.tdp_watts)
        thermal_target = self.thermal_mode.tick(profile.thermal_limit_c)
        if tdp_target is None and thermal_target is None:
            return

        now = self.clock()
        self.tdp.poll(tdp_target, tdp_observed, now, cfg.power.tdp_policy())
        self.thermal.poll(thermal_target, thermal_observed, now, cfg.power.thermal_policy())


class BatteryLoop(PeriodicTask):
    """
    Charge rate and charge limit of the active profile.

    These cannot be read back, so they are applied on change and then
    periodically.
    """

    def __init__(
        self,
        store: ConfigStore,
        hardware,
        selector: ProfileSelector,
        clock: Callable[[], float] = time.monotonic,
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__("battery", stop_event)
        self.store = store
        self.hardware = hardware
        self.selector = selector
        self.clock = clock

        self.rate_mode = SettingStateMachine("charge_rate", lower=0.0, upper=1.0, step=CHARGE_RATE_STEP)
        self.limit_mode = SettingStateMachine("charge_limit", *CHARGE_LIMIT_RANGE)
        self.rate = IntervalReapplier("charge_rate", lambda v: hardware.apply_charge_rate(*v))
        self.limit = IntervalReapplier("charge_limit", hardware.apply_charge_limit)

    def interval(self) -> float:
        return self.store.snapshot().battery.poll_interval

    def tick(self) -> None:
        cfg = self.store.snapshot()
        _, profile = self.selector.active(cfg.profiles)
        if profile is None:
            return

        now = self.clock()
        interval = cfg.battery.reapply_seconds

        rate = self.rate_mode.tick(profile.charge_rate_c)
        desired_rate = None if rate is None else (round(rate, 2), profile.soc_threshold_pct)
        self.rate.poll(desired_rate, now, interval)
        self.limit.poll(self.limit_mode.tick(profile.charge_limit_max_pct), now, interval)


class TelemetryLoop(PeriodicTask):
    def __init__(
        self,
        store: ConfigStore,
        sampler: TelemetrySampler,
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__("telemetry", stop_event)
        self.store = store
        self.sampler = sampler

    def interval(self) -> float:
        return self.store.snapshot().telemetry.poll_interval

    def tick(self) -> None:
        self.sampler.tick(self.store.snapshot().telemetry.retain_seconds)


class ControlService:
    """
    Owns the domain loops and exposes the control operations.

    Reads from callers return snapshots; writes go through the config store
    and are picked up by the loops on their next tick.
    """

    def __init__(
        self,
        store: ConfigStore,
        hardware,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.hardware = hardware
        self.clock = clock

        self._stop = threading.Event()
        self.fan_hold = threading.Event()
        self.selector = ProfileSelector()
        self.sampler = TelemetrySampler(hardware, store.snapshot().telemetry.retain_seconds)
        self.sampler.add_listener(self.selector.on_sample)

        self.fan_loop = FanLoop(store, hardware, self.fan_hold, self._stop)
        self.power_loop = PowerLoop(store, hardware, self.selector, clock, self._stop)
        self.battery_loop = BatteryLoop(store, hardware, self.selector, clock, self._stop)
        self.telemetry_loop = TelemetryLoop(store, self.sampler, self._stop)

        self._calibration_lock = threading.Lock()
        self._calibration_thread: Optional[threading.Thread] = None
        self._calibration_cancel = threading.Event()
        self._calibration_status: Dict[str, object] = {"state": "idle"}

    @property
    def loops(self) -> List[PeriodicTask]:
        return [self.telemetry_loop, self.fan_loop, self.power_loop, self.battery_loop]

    # Lifecycle

    def start(self) -> None:
        logger.info("Starting control service")
        for loop in self.loops:
            loop.start()

    def stop(self, timeout: float = 5.0) -> None:
        logger.info("Stopping control service")
        self._calibration_cancel.set()
        self._stop.set()
        for loop in self.loops:
            if loop.is_alive():
                loop.join(timeout)
        thread = self._calibration_thread
        if thread is not None and thread.is_alive():
            thread.join(timeout)

    def run_forever(self) -> None:
        """Run until SIGINT/SIGTERM."""

        def _shutdown(signum, frame):
            logger.info("Shutdown signal received. Stopping...")
            self._stop.set()

        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)

        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        finally:
            self.stop()

    # Configuration

    def config(self) -> ControlConfig:
        return self.store.snapshot()

    def update_config(self, fn: Callable[[ControlConfig], ControlConfig]) -> ControlConfig:
        return self.store.update(fn)

    def set_fan_mode(self, mode: Mode) -> ControlConfig:
        return self.store.set_fan_mode(mode)

    def set_profile(self, source: str, profile: Profile) -> ControlConfig:
        return self.store.set_profile(source, profile)

    # Calibration

    def _restore_fan_mode(self, mode: Mode) -> None:
        if self.store.snapshot().fan.mode != mode:
            self.store.set_fan_mode(mode)
        # Hardware was driven by the sweep; re-enter the mode from scratch
        self.fan_loop.reset()

    def start_calibration(
        self, domain: str = "fan", sweep: Optional[Sequence[float]] = None
    ) -> bool:
        """
        Start a calibration session in the background.

        Returns:
            False if a session is already running
        """
        if domain != "fan":
            raise ValueError(f"Calibration not supported for domain '{domain}'")

        with self._calibration_lock:
            if self._calibration_thread is not None and self._calibration_thread.is_alive():
                return False
            self._calibration_cancel = threading.Event()
            self._calibration_status = {"state": "running", "completed_levels": 0}
            self._calibration_thread = threading.Thread(
                target=self._run_calibration,
                args=(sweep, self._calibration_cancel),
                name="calibration",
                daemon=True,
            )
            self._calibration_thread.start()
        return True

    def _run_calibration(self, sweep: Optional[Sequence[float]], cancel: threading.Event) -> None:
        cfg = self.store.snapshot().calibration
        engine = CalibrationEngine(
            self.hardware,
            get_mode=lambda: self.store.snapshot().fan.mode,
            restore_mode=self._restore_fan_mode,
            hold=self.fan_hold,
        )
        policy = StabilizationPolicy(
            window=cfg.window,
            stddev_threshold=cfg.stddev_threshold,
            sample_interval=cfg.sample_interval,
            level_timeout=cfg.level_timeout,
        )

        def on_level(duty, point, reason):
            status = dict(self._calibration_status)
            status["completed_levels"] = int(status.get("completed_levels", 0)) + 1
            status["last_level"] = {"duty": duty, "reason": reason}
            self._calibration_status = status

        try:
            table = engine.run_calibration(
                sweep or cfg.sweep, policy, cancel_event=cancel, on_level=on_level
            )
        except CalibrationCancelled:
            logger.info("Calibration cancelled")
            self._calibration_status = {"state": "cancelled"}
            return
        except (CalibrationError, ValueError) as e:
            logger.error(f"Calibration failed: {e}")
            self._calibration_status = {"state": "failed", "error": str(e)}
            return

        self.store.set_calibration(table)
        self._calibration_status = {"state": "completed", "points": table.to_pairs()}

    def cancel_calibration(self) -> bool:
        thread = self._calibration_thread
        if thread is None or not thread.is_alive():
            return False
        self._calibration_cancel.set()
        return True

    def calibration_status(self) -> Dict[str, object]:
        return dict(self._calibration_status)

    # Telemetry

    def get_recent_samples(self, since: Optional[float] = None) -> List[TelemetrySample]:
        return self.sampler.get_recent_samples(since)

    def estimated_fan_duty(self) -> Optional[float]:
        """Duty equivalent of the latest measured RPM (display only)."""
        table: Optional[CalibrationTable] = self.store.snapshot().fan.calibration
        sample = self.sampler.latest()
        if table is None or sample is None:
            return None
        return table.duty_for(sample.mean_rpm)
