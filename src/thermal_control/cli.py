"""Command-line interface for thermal and power control."""

import argparse
import logging
import sys

from dotenv import load_dotenv

from .calibrate.cli import calibrate_mode
from .config import default_config_path
from .control.cli import run_mode
from .telemetry.cli import monitor_mode


def main() -> None:
    """Main entry point."""
    load_dotenv()
    parser = argparse.ArgumentParser(
        description="Fan, power and battery control for Framework laptops",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Example usage:
  # Run the control service
  sudo thermal-control run --config config.yaml

  # Calibrate the fan (duty -> RPM)
  sudo thermal-control calibrate --sweep 100 75 50 25

  # Watch telemetry for a minute and keep it
  sudo thermal-control monitor --duration 60 --output telemetry.csv

The config path defaults to $THERMAL_CONTROL_CONFIG, then config.yaml.
        """,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log control decisions (debug level)",
    )

    subparsers = parser.add_subparsers(
        dest="command", help="Command to run", required=True
    )

    def add_config(p):
        p.add_argument(
            "--config",
            default=str(default_config_path()),
            help="Path to configuration YAML file (default: %(default)s)",
        )

    run_parser = subparsers.add_parser("run", help="Run the control service")
    add_config(run_parser)

    calibrate_parser = subparsers.add_parser(
        "calibrate", help="Measure fan RPM across duty levels"
    )
    add_config(calibrate_parser)
    calibrate_parser.add_argument(
        "--sweep",
        type=float,
        nargs="+",
        help="Duty levels in %% (0 is always included; default from config)",
    )

    monitor_parser = subparsers.add_parser("monitor", help="Sample and show telemetry")
    add_config(monitor_parser)
    monitor_parser.add_argument(
        "--duration",
        type=float,
        help="Stop after this many seconds (default: until Ctrl+C)",
    )
    monitor_parser.add_argument(
        "--output",
        help="Write retained samples to this CSV file on exit",
    )

    args = parser.parse_args()

    # Configure logging to stdout
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    if args.command == "run":
        run_mode(args)
    elif args.command == "calibrate":
        calibrate_mode(args)
    elif args.command == "monitor":
        monitor_mode(args)


if __name__ == "__main__":
    main()
