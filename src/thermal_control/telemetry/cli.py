"""CLI for live telemetry monitoring."""

import sys
import time
from pathlib import Path

from tqdm import tqdm

from ..config import ConfigStore
from ..core.utils import write_samples_csv
from ..data import ConfigurationRejected
from ..hardware import HardwareController
from .sampler import TelemetrySampler


def _status_line(sample) -> str:
    temps = " ".join(f"{k}={v:.0f}°C" for k, v in sorted(sample.named_temperatures.items()))
    rpms = "/".join(f"{r:.0f}" for r in sample.fan_rpms) or "0"
    line = f"{temps} | fan {rpms} RPM"
    if sample.battery is not None and sample.battery.percentage is not None:
        source = "AC" if sample.battery.ac_present else "BAT"
        line += f" | {source} {sample.battery.percentage}%"
    return line


def monitor_mode(args) -> None:
    """Sample telemetry and print it; optionally dump the buffer to CSV."""
    print("\n" + "=" * 70)
    print("THERMAL TELEMETRY")
    print("=" * 70 + "\n")

    try:
        cfg = ConfigStore.from_file(args.config).snapshot()
    except ConfigurationRejected as e:
        print(f"✗ Invalid configuration: {e}")
        sys.exit(1)

    hardware = HardwareController.from_settings(cfg.hardware)
    if hardware.framework_tool in hardware.missing_tools():
        print(f"✗ {hardware.framework_tool} not found")
        sys.exit(1)

    sampler = TelemetrySampler(hardware, cfg.telemetry.retain_seconds)
    interval = cfg.telemetry.poll_interval
    deadline = time.monotonic() + args.duration if args.duration else None

    print(f"Sampling every {interval:g}s (Press Ctrl+C to stop)\n")
    try:
        with tqdm(desc="Samples", unit="sample", bar_format="{desc}: {n_fmt} {postfix}") as pbar:
            while deadline is None or time.monotonic() < deadline:
                sample = sampler.tick()
                if sample is not None:
                    pbar.set_postfix_str(_status_line(sample))
                    pbar.update(1)
                time.sleep(interval)
    except KeyboardInterrupt:
        print("\nStopped")

    if args.output:
        output_path = Path(args.output)
        rows = write_samples_csv(output_path, sampler.get_recent_samples())
        print(f"\n✓ {rows} samples saved to: {output_path}")
