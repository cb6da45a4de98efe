"""
Configuration: YAML file <-> immutable ``ControlConfig`` snapshots.

Readers take one snapshot per tick and never see a half-applied write;
``ConfigStore.update`` validates a candidate completely before swapping it in.
"""

import logging
import os
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

import yaml

from .calibrate.spline import CalibrationTable
from .control.curve import Curve
from .control.modes import CurveMode, Disabled, Manual, Mode, mode_name
from .control.reapply import ReapplyPolicy
from .data import AC, BATTERY, POWER_SOURCES, ConfigurationRejected, Profile, Setting

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "THERMAL_CONTROL_CONFIG"
DEFAULT_CONFIG_PATH = "config.yaml"

DEFAULT_CURVE_POINTS = ((40, 0), (60, 40), (75, 80), (85, 100))
MIN_POLL_MS = 200


@dataclass(frozen=True)
class HardwareSettings:
    framework_tool: str = "framework_tool"
    ryzenadj: Optional[str] = "ryzenadj"
    max_retries: int = 3
    retry_delay: float = 0.1  # Seconds, doubled per retry
    command_timeout: float = 10.0  # Seconds


@dataclass(frozen=True)
class TelemetrySettings:
    poll_ms: int = 1000
    retain_seconds: float = 1800.0

    @property
    def poll_interval(self) -> float:
        return max(self.poll_ms, MIN_POLL_MS) / 1000.0


def default_curve_mode() -> CurveMode:
    return CurveMode(curve=Curve.from_pairs(DEFAULT_CURVE_POINTS))


@dataclass(frozen=True)
class FanSettings:
    """
    Fan domain configuration.

    Manual duty and curve settings are kept while another mode is active so
    switching back restores them.
    """

    mode_name: str = "disabled"
    manual_duty: float = 0.0
    curve: CurveMode = field(default_factory=default_curve_mode)
    calibration: Optional[CalibrationTable] = None

    @property
    def mode(self) -> Mode:
        if self.mode_name == "manual":
            return Manual(self.manual_duty)
        if self.mode_name == "curve":
            return self.curve
        return Disabled()

    def with_mode(self, mode: Mode) -> "FanSettings":
        if isinstance(mode, Manual):
            return replace(self, mode_name="manual", manual_duty=float(mode.value))
        if isinstance(mode, CurveMode):
            return replace(self, mode_name="curve", curve=mode)
        if isinstance(mode, Disabled):
            return replace(self, mode_name="disabled")
        raise ConfigurationRejected(f"Unknown fan mode: {mode!r}")


@dataclass(frozen=True)
class PowerSettings:
    poll_ms: int = 2000
    tolerance_watts: float = 1.0
    tolerance_c: float = 1.0
    quiet_window_seconds: float = 10.0
    cooldown_seconds: float = 30.0
    thermal_limit_range: Tuple[float, float] = (40.0, 100.0)

    @property
    def poll_interval(self) -> float:
        return max(self.poll_ms, MIN_POLL_MS) / 1000.0

    def tdp_policy(self) -> ReapplyPolicy:
        return ReapplyPolicy(
            self.tolerance_watts, self.quiet_window_seconds, self.cooldown_seconds
        )

    def thermal_policy(self) -> ReapplyPolicy:
        return ReapplyPolicy(self.tolerance_c, self.quiet_window_seconds, self.cooldown_seconds)


@dataclass(frozen=True)
class BatterySettings:
    poll_ms: int = 1000
    reapply_seconds: float = 1800.0

    @property
    def poll_interval(self) -> float:
        return max(self.poll_ms, MIN_POLL_MS) / 1000.0


@dataclass(frozen=True)
class CalibrationSettings:
    sweep: Tuple[float, ...] = (100.0, 80.0, 60.0, 40.0, 20.0)
    window: int = 5
    stddev_threshold: float = 50.0  # RPM
    sample_interval: float = 1.0
    level_timeout: float = 30.0


def default_profiles() -> Dict[str, Profile]:
    return {AC: Profile(), BATTERY: Profile()}


@dataclass(frozen=True)
class ControlConfig:
    """Complete, validated configuration snapshot."""

    hardware: HardwareSettings = HardwareSettings()
    telemetry: TelemetrySettings = TelemetrySettings()
    fan: FanSettings = field(default_factory=FanSettings)
    profiles: Dict[str, Profile] = field(default_factory=default_profiles)
    power: PowerSettings = PowerSettings()
    battery: BatterySettings = BatterySettings()
    calibration: CalibrationSettings = CalibrationSettings()


# Parsing


def _section(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationRejected(f"'{key}' must be a mapping, got {type(value).__name__}")
    return value


def _number(raw: Dict[str, Any], key: str, default: float, minimum: Optional[float] = None) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool):
        raise ConfigurationRejected(f"'{key}' must be a number, got {value!r}")
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ConfigurationRejected(f"'{key}' must be a number, got {value!r}")
    if minimum is not None and value < minimum:
        raise ConfigurationRejected(f"'{key}' must be >= {minimum:g}, got {value:g}")
    return value


def _setting(raw: Any, name: str) -> Setting:
    if raw is None:
        return Setting()
    if not isinstance(raw, dict):
        raise ConfigurationRejected(f"'{name}' must be a mapping with 'enabled' and 'value'")
    return Setting(enabled=bool(raw.get("enabled", False)), value=_number(raw, "value", 0.0))


def _parse_curve(raw: Dict[str, Any]) -> CurveMode:
    sensors = raw.get("sensors") or []
    if isinstance(sensors, str):
        sensors = [sensors]
    if not isinstance(sensors, list):
        raise ConfigurationRejected("'fan.curve.sensors' must be a list of sensor names")

    rate = _number(raw, "rate_limit_pct_per_step", 100.0)
    if rate <= 0:
        raise ConfigurationRejected("'fan.curve.rate_limit_pct_per_step' must be > 0")

    return CurveMode(
        curve=Curve.from_pairs(raw.get("points", DEFAULT_CURVE_POINTS)),
        poll_interval=max(_number(raw, "poll_ms", 2000, minimum=0), MIN_POLL_MS) / 1000.0,
        hysteresis=_number(raw, "hysteresis_c", 2.0, minimum=0),
        rate_limit=None if rate >= 100 else rate,
        sensors=tuple(str(s) for s in sensors),
    )


def _parse_fan(raw: Dict[str, Any]) -> FanSettings:
    name = str(raw.get("mode") or "disabled").lower()
    if name not in ("disabled", "manual", "curve"):
        raise ConfigurationRejected(f"Unknown fan mode '{name}'")

    manual = _section(raw, "manual")
    duty = _number(manual, "duty_pct", 0.0)
    if not 0 <= duty <= 100:
        raise ConfigurationRejected(f"'fan.manual.duty_pct' must be 0-100, got {duty:g}")

    calibration = None
    cal = _section(raw, "calibration")
    if cal:
        try:
            calibration = CalibrationTable.from_pairs(
                cal.get("points") or [], updated_at=cal.get("updated_at", 0)
            )
        except (TypeError, ValueError):
            raise ConfigurationRejected("'fan.calibration.points' must be [duty, rpm] pairs")

    return FanSettings(
        mode_name=name,
        manual_duty=duty,
        curve=_parse_curve(_section(raw, "curve")),
        calibration=calibration,
    )


def _parse_profile(raw: Dict[str, Any]) -> Profile:
    soc = raw.get("charge_rate_soc_threshold_pct")
    return Profile(
        tdp_watts=_setting(raw.get("tdp_watts"), "tdp_watts"),
        thermal_limit_c=_setting(raw.get("thermal_limit_c"), "thermal_limit_c"),
        charge_rate_c=_setting(raw.get("charge_rate_c"), "charge_rate_c"),
        soc_threshold_pct=None if soc is None else _number(raw, "charge_rate_soc_threshold_pct", 0),
        charge_limit_max_pct=_setting(raw.get("charge_limit_max_pct"), "charge_limit_max_pct"),
    )


def parse_config(raw: Optional[Dict[str, Any]]) -> ControlConfig:
    """
    Build a validated config from a raw mapping (as loaded from YAML).

    Missing keys take defaults; malformed values raise ConfigurationRejected.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationRejected("Configuration root must be a mapping")

    hw = _section(raw, "hardware")
    hardware = HardwareSettings(
        framework_tool=str(hw.get("framework_tool", "framework_tool")),
        ryzenadj=hw.get("ryzenadj", "ryzenadj") or None,
        max_retries=int(_number(hw, "max_retries", 3, minimum=1)),
        retry_delay=_number(hw, "retry_delay", 0.1, minimum=0),
        command_timeout=_number(hw, "command_timeout", 10.0, minimum=0),
    )

    tel = _section(raw, "telemetry")
    telemetry = TelemetrySettings(
        poll_ms=int(_number(tel, "poll_ms", 1000, minimum=0)),
        retain_seconds=_number(tel, "retain_seconds", 1800, minimum=0),
    )

    prof = _section(raw, "profiles")
    unknown = set(prof) - set(POWER_SOURCES)
    if unknown:
        raise ConfigurationRejected(f"Unknown profile(s): {sorted(unknown)}")
    profiles = {source: _parse_profile(_section(prof, source)) for source in POWER_SOURCES}

    pw = _section(raw, "power")
    thermal_range = pw.get("thermal_limit_range", [40, 100])
    try:
        lo, hi = (float(v) for v in thermal_range)
    except (TypeError, ValueError):
        raise ConfigurationRejected("'power.thermal_limit_range' must be [min, max]")
    if lo > hi:
        raise ConfigurationRejected("'power.thermal_limit_range' min exceeds max")
    power = PowerSettings(
        poll_ms=int(_number(pw, "poll_ms", 2000, minimum=0)),
        tolerance_watts=_number(pw, "tolerance_watts", 1.0, minimum=0),
        tolerance_c=_number(pw, "tolerance_c", 1.0, minimum=0),
        quiet_window_seconds=_number(pw, "quiet_window_seconds", 10.0, minimum=0),
        cooldown_seconds=_number(pw, "cooldown_seconds", 30.0, minimum=0),
        thermal_limit_range=(lo, hi),
    )

    bat = _section(raw, "battery")
    battery = BatterySettings(
        poll_ms=int(_number(bat, "poll_ms", 1000, minimum=0)),
        reapply_seconds=_number(bat, "reapply_seconds", 1800, minimum=1),
    )

    cal = _section(raw, "calibration")
    sweep = cal.get("sweep", list(CalibrationSettings.sweep))
    try:
        sweep = tuple(float(d) for d in sweep)
    except (TypeError, ValueError):
        raise ConfigurationRejected("'calibration.sweep' must be a list of duty percentages")
    if not sweep or any(not 0 <= d <= 100 for d in sweep):
        raise ConfigurationRejected("'calibration.sweep' duties must be 0-100")
    calibration = CalibrationSettings(
        sweep=sweep,
        window=int(_number(cal, "window", 5, minimum=2)),
        stddev_threshold=_number(cal, "stddev_threshold", 50.0, minimum=0),
        sample_interval=_number(cal, "sample_interval", 1.0, minimum=0.05),
        level_timeout=_number(cal, "level_timeout", 30.0, minimum=0),
    )

    return ControlConfig(
        hardware=hardware,
        telemetry=telemetry,
        fan=_parse_fan(_section(raw, "fan")),
        profiles=profiles,
        power=power,
        battery=battery,
        calibration=calibration,
    )


# Serialization


def _setting_dict(setting: Setting) -> Dict[str, Any]:
    return {"enabled": setting.enabled, "value": setting.value}


def _profile_dict(profile: Profile) -> Dict[str, Any]:
    d = {
        "tdp_watts": _setting_dict(profile.tdp_watts),
        "thermal_limit_c": _setting_dict(profile.thermal_limit_c),
        "charge_rate_c": _setting_dict(profile.charge_rate_c),
        "charge_limit_max_pct": _setting_dict(profile.charge_limit_max_pct),
    }
    if profile.soc_threshold_pct is not None:
        d["charge_rate_soc_threshold_pct"] = profile.soc_threshold_pct
    return d


def config_to_dict(cfg: ControlConfig) -> Dict[str, Any]:
    """Inverse of ``parse_config``; the result is plain YAML-safe data."""
    curve = cfg.fan.curve
    fan: Dict[str, Any] = {
        "mode": cfg.fan.mode_name,
        "manual": {"duty_pct": cfg.fan.manual_duty},
        "curve": {
            "sensors": list(curve.sensors),
            "points": curve.curve.to_pairs(),
            "poll_ms": int(round(curve.poll_interval * 1000)),
            "hysteresis_c": curve.hysteresis,
            "rate_limit_pct_per_step": 100.0 if curve.rate_limit is None else curve.rate_limit,
        },
    }
    if cfg.fan.calibration is not None:
        fan["calibration"] = {
            "points": cfg.fan.calibration.to_pairs(),
            "updated_at": cfg.fan.calibration.updated_at,
        }

    return {
        "hardware": {
            "framework_tool": cfg.hardware.framework_tool,
            "ryzenadj": cfg.hardware.ryzenadj,
            "max_retries": cfg.hardware.max_retries,
            "retry_delay": cfg.hardware.retry_delay,
            "command_timeout": cfg.hardware.command_timeout,
        },
        "telemetry": {
            "poll_ms": cfg.telemetry.poll_ms,
            "retain_seconds": cfg.telemetry.retain_seconds,
        },
        "fan": fan,
        "profiles": {source: _profile_dict(p) for source, p in cfg.profiles.items()},
        "power": {
            "poll_ms": cfg.power.poll_ms,
            "tolerance_watts": cfg.power.tolerance_watts,
            "tolerance_c": cfg.power.tolerance_c,
            "quiet_window_seconds": cfg.power.quiet_window_seconds,
            "cooldown_seconds": cfg.power.cooldown_seconds,
            "thermal_limit_range": list(cfg.power.thermal_limit_range),
        },
        "battery": {
            "poll_ms": cfg.battery.poll_ms,
            "reapply_seconds": cfg.battery.reapply_seconds,
        },
        "calibration": {
            "sweep": list(cfg.calibration.sweep),
            "window": cfg.calibration.window,
            "stddev_threshold": cfg.calibration.stddev_threshold,
            "sample_interval": cfg.calibration.sample_interval,
            "level_timeout": cfg.calibration.level_timeout,
        },
    }


def default_config_path() -> Path:
    return Path(os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)


def load_config(path: Union[str, Path]) -> ControlConfig:
    """Load configuration from YAML file; a missing file yields defaults."""
    path = Path(path)
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError:
        logger.info(f"No config at {path}, using defaults")
        return ControlConfig()
    except yaml.YAMLError as e:
        raise ConfigurationRejected(f"Error parsing {path}: {e}")
    return parse_config(raw)


def save_config(path: Union[str, Path], cfg: ControlConfig) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w") as f:
        yaml.safe_dump(config_to_dict(cfg), f, default_flow_style=False, sort_keys=False)
    os.replace(tmp, path)


class ConfigStore:
    """
    Holder of the active configuration snapshot.

    Writes are serialized; each write round-trips through ``parse_config`` so
    only configurations that could be loaded back from disk become active.
    """

    def __init__(self, config: Optional[ControlConfig] = None, path: Optional[Path] = None):
        self._config = config or ControlConfig()
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ConfigStore":
        return cls(load_config(path), Path(path))

    def snapshot(self) -> ControlConfig:
        return self._config

    def update(self, fn: Callable[[ControlConfig], ControlConfig]) -> ControlConfig:
        """
        Apply ``fn`` to the current snapshot and make the result active.

        Raises:
            ConfigurationRejected: ``fn`` raised it or the result does not
                validate; the previous snapshot stays active
        """
        with self._lock:
            candidate = fn(self._config)
            try:
                validated = parse_config(config_to_dict(candidate))
            except ConfigurationRejected:
                raise
            except (TypeError, ValueError, AttributeError) as e:
                raise ConfigurationRejected(f"Invalid configuration: {e}")
            self._config = validated

            if self.path is not None:
                try:
                    save_config(self.path, validated)
                except OSError as e:
                    logger.error(f"Failed to persist config to {self.path}: {e}")
        return validated

    # Convenience writers

    def set_fan_mode(self, mode: Mode) -> ControlConfig:
        logger.info(f"Config: fan mode -> {mode_name(mode)}")
        return self.update(lambda c: replace(c, fan=c.fan.with_mode(mode)))

    def set_profile(self, source: str, profile: Profile) -> ControlConfig:
        if source not in POWER_SOURCES:
            raise ConfigurationRejected(f"Unknown power source '{source}'")
        return self.update(lambda c: replace(c, profiles={**c.profiles, source: profile}))

    def set_calibration(self, table: CalibrationTable) -> ControlConfig:
        return self.update(lambda c: replace(c, fan=replace(c.fan, calibration=table)))

