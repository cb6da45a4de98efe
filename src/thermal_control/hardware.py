"""Hardware access through the vendor command-line tools."""

import logging
import re
import shutil
import subprocess
import time
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple, Type

from .data import BatterySnapshot, PowerState, ThermalReading

logger = logging.getLogger(__name__)


class HardwareError(Exception):
    """Hardware access error."""

    pass


class TransientReadFailure(HardwareError):
    """A sensor or actuator read did not succeed this tick."""

    pass


class TransientWriteFailure(HardwareError):
    """An actuation command did not succeed this tick."""

    pass


_TEMP_RE = re.compile(r"^([A-Za-z0-9_ ]+):\s*(-?\d+)\s*C\b")
_RPM_RE = re.compile(r"Fan\s+Speed:\s*(\d+)\s*RPM", re.IGNORECASE)
_RYZENADJ_ROW_RE = re.compile(r"^\|\s*([^|]+?)\s*\|\s*([+-]?(?:\d+\.)?\d+)\s*\|\s*(?:[^|]*)\|\s*$")


def parse_thermal(stdout: str) -> ThermalReading:
    """
    Parse ``framework_tool --thermal`` output.

    Temperature lines look like ``APU:    62 C``; fan lines like
    ``Fan Speed:  2300 RPM``. Stopped fans (0 RPM) are not reported.
    """
    temps: Dict[str, float] = {}
    rpms: List[float] = []
    for line in stdout.splitlines():
        line = line.strip()
        match = _TEMP_RE.match(line)
        if match:
            temps[match.group(1).strip()] = float(match.group(2))
            continue
        match = _RPM_RE.search(line)
        if match:
            rpm = int(match.group(1))
            if rpm > 0:
                rpms.append(float(rpm))
    return ThermalReading(named_temperatures=temps, fan_rpms=tuple(rpms))


def _first_int(rest: str, suffix: str = "") -> Optional[int]:
    for token in rest.split():
        if suffix:
            if not token.endswith(suffix):
                continue
            token = token[: -len(suffix)]
        if token.isdigit():
            return int(token)
    return None


def parse_power(stdout: str) -> BatterySnapshot:
    """Parse ``framework_tool --power -vv`` output."""
    fields: Dict[str, object] = {}
    for line in stdout.splitlines():
        line = line.strip()
        lower = line.lower()
        if line.startswith("AC is:"):
            fields["ac_present"] = "connected" in lower and "not connected" not in lower
        elif "Battery LFCC:" in line:
            fields["last_full_charge_capacity_mah"] = _first_int(line.split("Battery LFCC:", 1)[1])
        elif "Battery Capacity:" in line:
            fields["remaining_capacity_mah"] = _first_int(line.split("Battery Capacity:", 1)[1])
        elif "Charge level:" in line:
            fields["percentage"] = _first_int(line.split("Charge level:", 1)[1].replace("%", " "))
        elif "Present Voltage:" in line:
            match = re.search(r"(\d+(?:\.\d+)?)", line.split("Present Voltage:", 1)[1])
            if match:
                fields["present_voltage_mv"] = int(float(match.group(1)) * 1000)
        elif "Charger Voltage:" in line:
            mv = _first_int(line.split("Charger Voltage:", 1)[1], "mV")
            if mv is not None:
                fields["present_voltage_mv"] = mv
        elif "Present Rate:" in line:
            fields["present_rate_ma"] = _first_int(line.split("Present Rate:", 1)[1])
        elif "Charger Current:" in line:
            ma = _first_int(line.split("Charger Current:", 1)[1], "mA")
            if ma is not None:
                fields["present_rate_ma"] = ma
        elif "Cycle Count:" in line:
            fields["cycle_count"] = _first_int(line.split("Cycle Count:", 1)[1])
        elif ":" not in line and "discharging" in lower:
            fields["discharging"] = True
        elif ":" not in line and "charging" in lower:
            fields["charging"] = True
    return BatterySnapshot(**fields)


def parse_ryzenadj_info(stdout: str) -> Tuple[Optional[float], Optional[float]]:
    """
    Parse ``ryzenadj --info --dump-table`` output.

    Returns:
        (tdp_watts, thermal_limit_c); TDP is the smallest of the STAPM/PPT
        limits, as that is the one the platform actually enforces.
    """
    limits: List[float] = []
    thermal_limit: Optional[float] = None
    for line in stdout.splitlines():
        line = line.strip()
        if not line.startswith("|") or line.startswith("|-"):
            continue
        match = _RYZENADJ_ROW_RE.match(line)
        if not match:
            continue
        name = match.group(1).strip().upper()
        value = float(match.group(2))
        if "STAPM LIMIT" in name or "PPT LIMIT FAST" in name or "PPT LIMIT SLOW" in name:
            limits.append(value)
        if "THM LIMIT CORE" in name or "TCTL" in name:
            thermal_limit = float(round(value))
    tdp = float(max(round(min(limits)), 1)) if limits else None
    return tdp, thermal_limit


class HardwareController:
    """Read sensors and drive actuators via ``framework_tool`` and ``ryzenadj``."""

    def __init__(
        self,
        framework_tool: str = "framework_tool",
        ryzenadj: Optional[str] = "ryzenadj",
        max_retries: int = 3,
        retry_delay: float = 0.1,
        command_timeout: float = 60.0,
    ):
        self.framework_tool = framework_tool
        self.ryzenadj = ryzenadj
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.command_timeout = command_timeout

    @classmethod
    def from_settings(cls, settings) -> "HardwareController":
        return cls(
            framework_tool=settings.framework_tool,
            ryzenadj=settings.ryzenadj,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            command_timeout=settings.command_timeout,
        )

    def missing_tools(self) -> List[str]:
        """Configured tools that cannot be found on PATH."""
        tools = [self.framework_tool] + ([self.ryzenadj] if self.ryzenadj else [])
        return [tool for tool in tools if shutil.which(tool) is None]

    def _run(
        self,
        binary: Optional[str],
        args: Sequence[str],
        error: Type[HardwareError],
    ) -> str:
        """Run a tool with bounded retries; raises ``error`` on final failure."""
        if not binary:
            raise error("tool not configured")

        last_error = ""
        for attempt in range(self.max_retries):
            try:
                result = subprocess.run(
                    [binary, *args],
                    capture_output=True,
                    text=True,
                    check=True,
                    timeout=self.command_timeout,
                )
                return result.stdout
            except FileNotFoundError:
                # Retrying will not make the binary appear
                raise error(f"{binary} not found")
            except subprocess.CalledProcessError as e:
                last_error = f"exit {e.returncode}: {(e.stderr or '').strip()}"
            except subprocess.TimeoutExpired:
                last_error = f"timed out after {self.command_timeout}s"

            if attempt < self.max_retries - 1:
                time.sleep(self.retry_delay * (2**attempt))

        raise error(f"{binary} {' '.join(args)}: {last_error}")

    # Reads

    def read_thermal(self) -> ThermalReading:
        out = self._run(self.framework_tool, ["--thermal"], TransientReadFailure)
        reading = parse_thermal(out)
        if not reading.named_temperatures and not reading.fan_rpms:
            raise TransientReadFailure("unparsable thermal output")
        return reading

    def read_power_state(self) -> PowerState:
        """
        Combined power-source, battery and power-limit state.

        Either half may be unavailable; only when both fail is the read a
        failure.
        """
        battery: Optional[BatterySnapshot] = None
        tdp: Optional[float] = None
        thermal_limit: Optional[float] = None
        errors = []

        try:
            battery = parse_power(
                self._run(self.framework_tool, ["--power", "-vv"], TransientReadFailure)
            )
        except TransientReadFailure as e:
            errors.append(str(e))

        if self.ryzenadj:
            try:
                tdp, thermal_limit = parse_ryzenadj_info(
                    self._run(self.ryzenadj, ["--info", "--dump-table"], TransientReadFailure)
                )
            except TransientReadFailure as e:
                errors.append(str(e))

        if battery is None and tdp is None and thermal_limit is None:
            raise TransientReadFailure("; ".join(errors) or "no power information")

        ac_present = battery.ac_present if battery is not None else None
        return PowerState(
            tdp_watts=tdp,
            thermal_limit_c=thermal_limit,
            ac_present=ac_present,
            battery=replace(battery, ac_present=ac_present) if battery is not None else None,
        )

    # Writes

    def apply_fan_duty(self, percentage: int) -> None:
        """Set fan duty (0-100 percentage) on all fans."""
        if not 0 <= percentage <= 100:
            raise ValueError(f"Fan duty must be 0-100, got {percentage}")
        self._run(self.framework_tool, ["--fansetduty", str(int(percentage))], TransientWriteFailure)

    def restore_auto_fan(self) -> None:
        """Hand fan control back to the platform firmware."""
        self._run(self.framework_tool, ["--autofanctrl"], TransientWriteFailure)

    def apply_tdp(self, watts: float) -> None:
        """Set STAPM, fast and slow PPT limits together."""
        mw = str(int(round(watts * 1000)))
        self._run(
            self.ryzenadj,
            ["--stapm-limit", mw, "--fast-limit", mw, "--slow-limit", mw],
            TransientWriteFailure,
        )

    def apply_thermal_limit(self, celsius: float) -> None:
        self._run(self.ryzenadj, ["--tctl-temp", str(int(round(celsius)))], TransientWriteFailure)

    def apply_charge_rate(self, c_rate: float, soc_threshold: Optional[float] = None) -> None:
        args = ["--charge-rate-limit", f"{c_rate:.3f}"]
        if soc_threshold is not None:
            args.append(str(int(round(soc_threshold))))
        self._run(self.framework_tool, args, TransientWriteFailure)

    def apply_charge_limit(self, max_pct: float) -> None:
        self._run(
            self.framework_tool, ["--charge-limit", str(int(round(max_pct)))], TransientWriteFailure
        )
