"""Shared fakes: a scriptable hardware collaborator and a manual clock."""

from typing import Callable, Dict, List, Optional, Tuple

import pytest

from thermal_control.data import BatterySnapshot, PowerState, ThermalReading
from thermal_control.hardware import TransientReadFailure, TransientWriteFailure


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeHardware:
    """
    In-memory stand-in for ``HardwareController``.

    Reads return the current attributes; writes are recorded in ``calls`` and
    update the attributes so later reads see them.
    """

    def __init__(self):
        self.temperatures: Dict[str, float] = {"APU": 50.0, "CPU": 48.0}
        self.rpms: Tuple[float, ...] = (2000.0,)
        self.rpm_for_duty: Optional[Callable[[int], Tuple[float, ...]]] = None
        self.ac_present: Optional[bool] = True
        self.tdp_watts: Optional[float] = 28.0
        self.thermal_limit_c: Optional[float] = 100.0

        self.fail_thermal = False
        self.fail_power = False
        self.fail_writes = 0  # Number of upcoming writes that fail
        self.on_apply_fan: Optional[Callable[[int], None]] = None

        self.duty: Optional[int] = None
        self.calls: List[tuple] = []

    def _write(self, *call) -> None:
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise TransientWriteFailure(f"{call[0]} failed")
        self.calls.append(call)

    def writes(self, name: str) -> List[tuple]:
        return [c[1:] for c in self.calls if c[0] == name]

    # Reads

    def read_thermal(self) -> ThermalReading:
        if self.fail_thermal:
            raise TransientReadFailure("thermal unavailable")
        rpms = self.rpms
        if self.rpm_for_duty is not None and self.duty is not None:
            rpms = self.rpm_for_duty(self.duty)
        return ThermalReading(named_temperatures=dict(self.temperatures), fan_rpms=tuple(rpms))

    def read_power_state(self) -> PowerState:
        if self.fail_power:
            raise TransientReadFailure("power unavailable")
        battery = BatterySnapshot(ac_present=self.ac_present, percentage=80)
        return PowerState(
            tdp_watts=self.tdp_watts,
            thermal_limit_c=self.thermal_limit_c,
            ac_present=self.ac_present,
            battery=battery,
        )

    # Writes

    def apply_fan_duty(self, percentage: int) -> None:
        if self.on_apply_fan is not None:
            self.on_apply_fan(percentage)
        self._write("fan", percentage)
        self.duty = percentage

    def restore_auto_fan(self) -> None:
        self._write("auto_fan")
        self.duty = None

    def apply_tdp(self, watts: float) -> None:
        self._write("tdp", watts)

    def apply_thermal_limit(self, celsius: float) -> None:
        self._write("thermal_limit", celsius)

    def apply_charge_rate(self, c_rate: float, soc_threshold: Optional[float] = None) -> None:
        self._write("charge_rate", c_rate, soc_threshold)

    def apply_charge_limit(self, max_pct: float) -> None:
        self._write("charge_limit", max_pct)


@pytest.fixture
def hardware() -> FakeHardware:
    return FakeHardware()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(1000.0)
