"""CLI for fan calibration."""

import sys
import threading

from tqdm import tqdm

from ..config import ConfigStore
from ..data import ConfigurationRejected
from ..hardware import HardwareController, HardwareError
from .calibrator import (
    CalibrationCancelled,
    CalibrationEngine,
    CalibrationError,
    StabilizationPolicy,
)


def calibrate_mode(args) -> None:
    """Sweep the fan, store the measured table in the config file and print it."""
    print("\n" + "=" * 70)
    print("FAN CALIBRATION")
    print("=" * 70 + "\n")

    try:
        store = ConfigStore.from_file(args.config)
    except ConfigurationRejected as e:
        print(f"✗ Invalid configuration: {e}")
        sys.exit(1)

    cfg = store.snapshot()
    hardware = HardwareController.from_settings(cfg.hardware)
    if hardware.framework_tool in hardware.missing_tools():
        print(f"✗ {hardware.framework_tool} not found")
        sys.exit(1)

    sweep = args.sweep or cfg.calibration.sweep
    try:
        levels = CalibrationEngine.sweep_levels(sweep)
    except ValueError as e:
        print(f"✗ {e}")
        sys.exit(1)

    policy = StabilizationPolicy(
        window=cfg.calibration.window,
        stddev_threshold=cfg.calibration.stddev_threshold,
        sample_interval=cfg.calibration.sample_interval,
        level_timeout=cfg.calibration.level_timeout,
    )

    def restore(mode):
        # No fan loop here to resume the mode; a running service re-commands it
        try:
            hardware.restore_auto_fan()
        except HardwareError as e:
            tqdm.write(f"✗ Failed to hand fan back to firmware: {e}")

    engine = CalibrationEngine(hardware, get_mode=lambda: cfg.fan.mode, restore_mode=restore)
    cancel = threading.Event()

    print(f"Levels: {', '.join(f'{d:g}%' for d in levels)}")
    print(f"Up to {policy.level_timeout:g}s per level\n")

    with tqdm(total=len(levels), desc="Calibrating", unit="level") as pbar:

        def on_level(duty, point, reason):
            if point is None:
                tqdm.write(f"  ✗ {duty:g}%: no readings")
            else:
                tqdm.write(f"  ✓ {duty:g}% -> {point.response:.0f} RPM ({reason})")
            pbar.update(1)

        try:
            table = engine.run_calibration(levels, policy, cancel_event=cancel, on_level=on_level)
        except KeyboardInterrupt:
            cancel.set()
            print("\n\nInterrupted by user")
            sys.exit(1)
        except CalibrationCancelled:
            print("\n\nCalibration cancelled")
            sys.exit(1)
        except CalibrationError as e:
            print(f"\n✗ Calibration failed: {e}")
            sys.exit(1)

    store.set_calibration(table)
    print(f"\n✓ Calibration saved to: {store.path}\n")
    print(f"{'Duty %':>8}  {'RPM':>8}")
    print("-" * 18)
    for duty, rpm in table.to_pairs():
        print(f"{duty:>8.0f}  {rpm:>8.0f}")
    if not table.is_monotonic():
        print("\n⚠ RPM does not rise monotonically with duty; check the fan")
