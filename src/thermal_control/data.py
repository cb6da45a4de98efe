"""Data models shared by the sampler, the control loops and the configuration."""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


class ConfigurationRejected(ValueError):
    """Malformed configuration write; the previous configuration stays active."""

    pass


@dataclass(frozen=True)
class BatterySnapshot:
    """Battery and charger electricals as reported by the EC."""

    ac_present: Optional[bool] = None
    percentage: Optional[int] = None  # State of charge (%)
    charging: Optional[bool] = None
    discharging: Optional[bool] = None
    present_voltage_mv: Optional[int] = None
    present_rate_ma: Optional[int] = None
    remaining_capacity_mah: Optional[int] = None
    last_full_charge_capacity_mah: Optional[int] = None
    cycle_count: Optional[int] = None


@dataclass(frozen=True)
class ThermalReading:
    """Parsed output of one thermal read."""

    named_temperatures: Dict[str, float]
    fan_rpms: Tuple[float, ...] = ()


@dataclass(frozen=True)
class PowerState:
    """Parsed output of one power-state read."""

    tdp_watts: Optional[float] = None  # Effective TDP (minimum of the limits)
    thermal_limit_c: Optional[float] = None
    ac_present: Optional[bool] = None
    battery: Optional[BatterySnapshot] = None


@dataclass(frozen=True)
class TelemetrySample:
    """
    One telemetry observation.

    Immutable once created; the sampler is the only producer.
    """

    timestamp: float  # Unix timestamp (seconds)
    named_temperatures: Dict[str, float] = field(default_factory=dict)
    fan_rpms: Tuple[float, ...] = ()
    battery: Optional[BatterySnapshot] = None

    @property
    def mean_rpm(self) -> float:
        """Average RPM across reported fans (0 when none spin)."""
        if not self.fan_rpms:
            return 0.0
        return float(sum(self.fan_rpms) / len(self.fan_rpms))

    def to_dict(self) -> dict:
        """Flatten for CSV export."""
        d = {"timestamp": self.timestamp}
        for name, temp in sorted(self.named_temperatures.items()):
            d[f"T_{name}"] = temp
        for i, rpm in enumerate(self.fan_rpms):
            d[f"fan{i}_rpm"] = rpm
        if self.battery is not None:
            d["ac_present"] = self.battery.ac_present
            d["battery_pct"] = self.battery.percentage
            d["battery_rate_ma"] = self.battery.present_rate_ma
            d["battery_voltage_mv"] = self.battery.present_voltage_mv
        return d


@dataclass(frozen=True)
class Setting:
    """A profile value plus whether it should be applied at all."""

    enabled: bool = False
    value: float = 0.0  # Kept even when disabled


@dataclass(frozen=True)
class Profile:
    """Per power-source bundle of power and battery settings."""

    tdp_watts: Setting = Setting()
    thermal_limit_c: Setting = Setting()
    charge_rate_c: Setting = Setting()
    soc_threshold_pct: Optional[float] = None  # Applies to charge_rate_c
    charge_limit_max_pct: Setting = Setting()


AC = "ac"
BATTERY = "battery"
POWER_SOURCES = (AC, BATTERY)
