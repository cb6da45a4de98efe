"""
CLI interface for the control service.
"""

import sys

from ..config import ConfigStore
from ..core.utils import is_root
from ..data import ConfigurationRejected
from ..hardware import HardwareController
from .controller import ControlService
from .modes import mode_name


def run_mode(args) -> None:
    """
    Run the control service until interrupted.
    """
    print("\n" + "=" * 70)
    print("THERMAL CONTROL - SERVICE")
    print("=" * 70 + "\n")

    if not is_root():
        print("⚠ Not running as root; actuator commands will likely fail")

    try:
        store = ConfigStore.from_file(args.config)
    except ConfigurationRejected as e:
        print(f"✗ Invalid configuration: {e}")
        sys.exit(1)

    cfg = store.snapshot()
    hardware = HardwareController.from_settings(cfg.hardware)
    missing = hardware.missing_tools()
    for tool in missing:
        print(f"✗ {tool} not found")
    if hardware.framework_tool in missing:
        sys.exit(1)

    print(f"Config: {store.path}")
    print(f"Fan mode: {mode_name(cfg.fan.mode)}")
    print(f"Telemetry: every {cfg.telemetry.poll_interval:g}s, {cfg.telemetry.retain_seconds:g}s retained")
    print("\nStarting controller... (Press Ctrl+C to stop)")

    service = ControlService(store, hardware)
    try:
        service.run_forever()
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"\n✗ Fatal error: {e}")
        sys.exit(1)
