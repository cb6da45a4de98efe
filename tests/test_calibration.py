"""Tests for the calibration engine and calibration tables."""

import itertools
import threading

import pytest

from thermal_control.calibrate.calibrator import (
    CalibrationCancelled,
    CalibrationEngine,
    CalibrationError,
    CalibrationTimeout,
    StabilizationPolicy,
    StabilityWindow,
)
from thermal_control.calibrate.spline import CalibrationTable, fit_spline
from thermal_control.control.curve import Curve
from thermal_control.control.modes import CurveMode, Disabled, Manual, mode_name

FAST = StabilizationPolicy(window=3, stddev_threshold=50.0, sample_interval=0.001, level_timeout=5.0)

PRIOR_MODES = [
    Disabled(),
    Manual(40.0),
    CurveMode(
        Curve.from_pairs([(45, 10), (80, 90)]),
        poll_interval=1.0,
        hysteresis=3.0,
        rate_limit=7.5,
        sensors=("CPU", "DDR"),
    ),
]


def linear_fan(duty: int):
    return (duty * 50.0,) if duty > 0 else ()


class ModeHolder:
    def __init__(self, mode):
        self.mode = mode
        self.restored = []

    def get(self):
        return self.mode

    def restore(self, mode):
        self.restored.append(mode)
        self.mode = mode


def make_engine(hardware, holder, clock=None):
    kwargs = {"clock": clock} if clock is not None else {}
    return CalibrationEngine(hardware, holder.get, holder.restore, threading.Event(), **kwargs)


class TestStabilityWindow:
    def test_not_stable_until_full(self) -> None:
        w = StabilityWindow(3)
        w.add(1000.0)
        w.add(1000.0)
        assert not w.is_stable(50.0)

    def test_stable_when_spread_small(self) -> None:
        w = StabilityWindow(3)
        for v in (1000.0, 1010.0, 1005.0):
            w.add(v)
        assert w.is_stable(50.0)
        assert w.value() == 1005.0

    def test_unstable_when_spread_large(self) -> None:
        w = StabilityWindow(3)
        for v in (1000.0, 2000.0, 3000.0):
            w.add(v)
        assert not w.is_stable(50.0)

    def test_window_slides(self) -> None:
        w = StabilityWindow(2)
        for v in (5000.0, 1000.0, 1000.0):
            w.add(v)
        assert w.is_stable(1.0)


class TestSweepLevels:
    def test_default_sweep_adds_zero(self) -> None:
        assert CalibrationEngine.sweep_levels() == [100.0, 80.0, 60.0, 40.0, 20.0, 0.0]

    def test_deduplicated_and_descending(self) -> None:
        assert CalibrationEngine.sweep_levels([20, 100, 20]) == [100.0, 20.0, 0.0]

    def test_out_of_range_rejected(self) -> None:
        with pytest.raises(ValueError):
            CalibrationEngine.sweep_levels([120])


class TestCalibrationEngine:
    def test_measures_each_level(self, hardware) -> None:
        hardware.rpm_for_duty = linear_fan
        holder = ModeHolder(Manual(40.0))
        table = make_engine(hardware, holder).run_calibration([100, 50], FAST)

        assert table.to_pairs() == [[0.0, 0.0], [50.0, 2500.0], [100.0, 5000.0]]
        assert table.updated_at > 0
        assert [c[1] for c in hardware.calls if c[0] == "fan"] == [100, 50, 0]

    @pytest.mark.parametrize("prior", PRIOR_MODES, ids=mode_name)
    def test_restores_mode_on_completion(self, hardware, prior) -> None:
        hardware.rpm_for_duty = linear_fan
        holder = ModeHolder(prior)
        engine = make_engine(hardware, holder)
        engine.run_calibration([100], FAST)
        assert holder.restored == [prior]
        assert holder.mode == prior
        assert not engine.hold.is_set()

    def test_holds_fan_while_running(self, hardware) -> None:
        hardware.rpm_for_duty = linear_fan
        holder = ModeHolder(Manual(40.0))
        engine = make_engine(hardware, holder)
        held = []
        hardware.on_apply_fan = lambda duty: held.append(engine.hold.is_set())
        engine.run_calibration([100], FAST)
        assert held and all(held)

    @pytest.mark.parametrize("prior", PRIOR_MODES, ids=mode_name)
    def test_cancel_restores_mode(self, hardware, prior) -> None:
        hardware.rpm_for_duty = linear_fan
        holder = ModeHolder(prior)
        engine = make_engine(hardware, holder)
        cancel = threading.Event()

        def cancel_at_half(duty):
            if duty == 50:
                cancel.set()

        hardware.on_apply_fan = cancel_at_half
        with pytest.raises(CalibrationCancelled):
            engine.run_calibration([100, 50], FAST, cancel_event=cancel)
        assert holder.restored == [prior]
        assert not engine.hold.is_set()
        # Nothing was commanded after the cancelled level
        assert [c[1] for c in hardware.calls if c[0] == "fan"] == [100, 50]

    def test_cancel_before_start(self, hardware) -> None:
        holder = ModeHolder(Manual(40.0))
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CalibrationCancelled):
            make_engine(hardware, holder).run_calibration([100], FAST, cancel_event=cancel)
        assert hardware.calls == []
        assert holder.restored == [Manual(40.0)]

    def test_timeout_falls_back_to_median(self, hardware) -> None:
        noisy = itertools.cycle([(1000.0,), (2000.0,), (3000.0,)])
        hardware.rpm_for_duty = lambda duty: next(noisy)
        ticks = itertools.count(0.0, 1.0)
        engine = make_engine(hardware, ModeHolder(Manual(40.0)), clock=lambda: next(ticks))
        reasons = []
        policy = StabilizationPolicy(window=3, stddev_threshold=50.0, sample_interval=0.001, level_timeout=3.0)

        table = engine.run_calibration(
            [100], policy, on_level=lambda duty, point, reason: reasons.append(reason)
        )
        assert [p.response for p in table.points] == [2000.0, 2000.0]
        assert all(r.startswith("timeout") for r in reasons)

    def test_timeout_median_covers_whole_level(self, hardware) -> None:
        readings = {100: iter([1000.0, 3000.0, 5000.0]), 0: iter([0.0, 0.0])}
        hardware.rpm_for_duty = lambda duty: (next(readings[duty]),)
        ticks = itertools.count(0.0, 1.0)
        engine = make_engine(hardware, ModeHolder(Manual(40.0)), clock=lambda: next(ticks))
        policy = StabilizationPolicy(window=2, stddev_threshold=50.0, sample_interval=0.001, level_timeout=3.0)

        table = engine.run_calibration([100], policy)
        # Last window alone would give 4000
        assert table.to_pairs() == [[0.0, 0.0], [100.0, 3000.0]]

    def test_no_readings_fails_and_restores(self, hardware) -> None:
        hardware.fail_thermal = True
        holder = ModeHolder(Manual(40.0))
        ticks = itertools.count(0.0, 1.0)
        engine = make_engine(hardware, holder, clock=lambda: next(ticks))
        with pytest.raises(CalibrationError):
            engine.run_calibration([100], FAST)
        assert holder.restored == [Manual(40.0)]

    def test_failed_duty_command_retried(self, hardware) -> None:
        hardware.rpm_for_duty = linear_fan
        hardware.fail_writes = 2
        table = make_engine(hardware, ModeHolder(Manual(40.0))).run_calibration([100], FAST)
        assert table.to_pairs() == [[0.0, 0.0], [100.0, 5000.0]]

    def test_non_monotonic_result_accepted(self, hardware) -> None:
        hardware.rpm_for_duty = lambda duty: {100: (2900.0,), 50: (3000.0,), 0: ()}[duty]
        table = make_engine(hardware, ModeHolder(Manual(40.0))).run_calibration([100, 50], FAST)
        assert not table.is_monotonic()
        assert len(table.points) == 3


class TestCalibrationTimeout:
    def test_fallback_value(self) -> None:
        assert CalibrationTimeout(50.0, [1.0, 9.0, 5.0]).fallback_value() == 5.0
        assert CalibrationTimeout(50.0, []).fallback_value() is None


class TestCalibrationTable:
    TABLE = CalibrationTable.from_pairs([(100, 5000), (0, 0), (50, 2500)])

    def test_sorted_by_duty(self) -> None:
        assert [p.duty for p in self.TABLE.points] == [0.0, 50.0, 100.0]

    def test_forward_lookup(self) -> None:
        assert self.TABLE.response_for(50) == pytest.approx(2500.0)
        assert self.TABLE.response_for(25) == pytest.approx(1250.0)

    def test_inverse_lookup(self) -> None:
        assert self.TABLE.duty_for(3750) == pytest.approx(75.0)

    def test_inverse_lookup_clamped(self) -> None:
        assert self.TABLE.duty_for(99999) == pytest.approx(100.0)
        assert self.TABLE.duty_for(-10) == pytest.approx(0.0)

    def test_inverse_lookup_tolerates_non_monotonic(self) -> None:
        table = CalibrationTable.from_pairs([(0, 0), (50, 3000), (100, 2900), (75, 3000)])
        duty = table.duty_for(2950)
        assert 0.0 <= duty <= 100.0

    def test_empty_table(self) -> None:
        table = CalibrationTable(())
        assert table.duty_for(1000) is None
        assert table.response_for(50) is None


class TestFitSpline:
    def test_too_few_points(self) -> None:
        assert fit_spline([1.0], [2.0]) is None

    def test_two_points_linear(self) -> None:
        fn = fit_spline([0.0, 10.0], [0.0, 100.0])
        assert fn(5.0) == pytest.approx(50.0)

    def test_passes_through_knots(self) -> None:
        xs, ys = [0.0, 20.0, 60.0, 100.0], [0.0, 1500.0, 3800.0, 5200.0]
        fn = fit_spline(xs, ys)
        for x, y in zip(xs, ys):
            assert fn(x) == pytest.approx(y)

    def test_duplicate_abscissae_collapsed(self) -> None:
        fn = fit_spline([0.0, 50.0, 50.0, 100.0], [0.0, 10.0, 20.0, 30.0])
        assert fn(50.0) == pytest.approx(10.0)
