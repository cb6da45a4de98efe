"""Tests for the fan and setting mode state machines."""

import pytest

from thermal_control.control.curve import Curve
from thermal_control.control.modes import (
    CurveMode,
    Disabled,
    FanStateMachine,
    Manual,
    SettingStateMachine,
    mode_name,
)
from thermal_control.data import Setting

CURVE = Curve.from_pairs([(40, 0), (60, 40), (75, 80), (85, 100)])


class TestFanStateMachine:
    def test_disabled_commands_nothing(self) -> None:
        m = FanStateMachine()
        assert m.tick(Disabled(), {"APU": 90.0}) is None

    def test_entering_disabled_requests_handover_once(self) -> None:
        m = FanStateMachine()
        m.tick(Manual(50.0))
        assert not m.handover_pending
        m.tick(Disabled())
        assert m.handover_pending
        m.handover_pending = False
        m.tick(Disabled())
        assert not m.handover_pending

    def test_manual_reasserts_value(self) -> None:
        m = FanStateMachine()
        assert m.tick(Manual(40.0)) == 40.0
        m.commit(40.0)
        assert m.tick(Manual(40.0)) == 40.0

    def test_manual_value_clamped(self) -> None:
        m = FanStateMachine()
        assert m.tick(Manual(150.0)) == 100.0
        assert m.tick(Manual(-5.0)) == 0.0

    def test_curve_without_reading_commands_nothing(self) -> None:
        m = FanStateMachine()
        assert m.tick(CurveMode(CURVE), None) is None
        assert m.tick(CurveMode(CURVE, sensors=("GPU",)), {"Battery": 30.0}) is None

    def test_curve_follows_committed_output(self) -> None:
        m = FanStateMachine()
        mode = CurveMode(CURVE, hysteresis=0.0, rate_limit=10.0)
        assert m.tick(mode, {"APU": 85.0}) == 100.0
        m.commit(100.0)
        assert m.tick(mode, {"APU": 40.0}) == 90.0

    def test_uncommitted_output_does_not_advance(self) -> None:
        m = FanStateMachine()
        mode = CurveMode(CURVE, hysteresis=0.0, rate_limit=10.0)
        m.tick(mode, {"APU": 85.0})
        m.commit(100.0)
        assert m.tick(mode, {"APU": 40.0}) == 90.0  # Write fails, no commit
        assert m.tick(mode, {"APU": 40.0}) == 90.0

    def test_curve_edit_keeps_committed_output(self) -> None:
        m = FanStateMachine()
        m.tick(CurveMode(CURVE, rate_limit=10.0), {"APU": 85.0})
        m.commit(100.0)
        # Edited parameters re-anchor the sensor, the ramp continues from 100
        out = m.tick(CurveMode(CURVE, rate_limit=5.0, hysteresis=3.0), {"APU": 40.0})
        assert out == 95.0

    def test_manual_to_curve_is_rate_limited(self) -> None:
        m = FanStateMachine()
        m.tick(Manual(70.0))
        m.commit(70.0)
        assert m.tick(CurveMode(CURVE, rate_limit=10.0), {"APU": 40.0}) == 60.0

    def test_disabled_forgets_output(self) -> None:
        m = FanStateMachine()
        mode = CurveMode(CURVE, rate_limit=10.0)
        m.tick(mode, {"APU": 85.0})
        m.commit(100.0)
        m.tick(Disabled())
        assert m.output is None
        assert m.tick(mode, {"APU": 40.0}) == 0.0

    def test_reset_forces_fresh_entry(self) -> None:
        m = FanStateMachine()
        mode = CurveMode(CURVE, rate_limit=10.0)
        m.tick(mode, {"APU": 85.0})
        m.commit(100.0)
        m.reset()
        assert m.tick(mode, {"APU": 40.0}) == 0.0

    def test_mode_names(self) -> None:
        assert mode_name(Disabled()) == "disabled"
        assert mode_name(Manual(1.0)) == "manual"
        assert mode_name(CurveMode(CURVE)) == "curve"
        assert mode_name(None) == "none"


class TestSettingStateMachine:
    def test_disabled_setting_is_disabled_mode(self) -> None:
        m = SettingStateMachine("tdp", lower=1.0)
        assert m.tick(Setting(enabled=False, value=25.0)) is None
        assert m.mode == Disabled()

    def test_missing_setting_is_disabled_mode(self) -> None:
        assert SettingStateMachine("tdp").tick(None) is None

    def test_enabled_setting_is_manual(self) -> None:
        m = SettingStateMachine("tdp", lower=1.0)
        assert m.tick(Setting(enabled=True, value=25.0)) == 25.0
        assert m.mode == Manual(25.0)

    def test_value_snapped_and_clamped(self) -> None:
        m = SettingStateMachine("charge_rate", lower=0.0, upper=1.0, step=0.05)
        assert m.tick(Setting(True, 0.33)) == pytest.approx(0.35)
        assert m.tick(Setting(True, 1.7)) == 1.0

    def test_lower_bound(self) -> None:
        m = SettingStateMachine("charge_limit", 25.0, 100.0)
        assert m.tick(Setting(True, 10.0)) == 25.0
