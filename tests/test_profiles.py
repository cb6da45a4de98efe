"""Tests for AC/battery profile selection."""

from thermal_control.control.profiles import ProfileSelector
from thermal_control.data import AC, BATTERY, BatterySnapshot, Profile, Setting, TelemetrySample

PROFILES = {
    AC: Profile(tdp_watts=Setting(True, 28.0)),
    BATTERY: Profile(tdp_watts=Setting(True, 15.0)),
}


class TestProfileSelector:
    def test_unknown_source_has_no_profile(self) -> None:
        assert ProfileSelector().active(PROFILES) == (None, None)

    def test_ac_present_selects_ac(self) -> None:
        sel = ProfileSelector()
        assert sel.observe(True) == AC
        assert sel.active(PROFILES) == (AC, PROFILES[AC])

    def test_swap_to_battery(self) -> None:
        sel = ProfileSelector(AC)
        sel.observe(False)
        source, profile = sel.active(PROFILES)
        assert source == BATTERY
        assert profile.tdp_watts.value == 15.0

    def test_unknown_presence_keeps_previous(self) -> None:
        sel = ProfileSelector()
        sel.observe(False)
        assert sel.observe(None) == BATTERY

    def test_sample_listener(self) -> None:
        sel = ProfileSelector()
        sel.on_sample(TelemetrySample(1.0, battery=BatterySnapshot(ac_present=True)))
        assert sel.source == AC
        sel.on_sample(TelemetrySample(2.0))  # Power read failed
        assert sel.source == AC
