#!/usr/bin/env python3
"""
SwitchBot BLE Ingester - Main Entry Point

Listens to SwitchBot sensor advertisements via BLE, keeps one reading per
device per minute, and stores it in InfluxDB.

Usage:
    python main.py --help                 # Show help
    python main.py ingest                 # Run the ingestion service
    python main.py scan -d 30             # Print decoded readings for 30 seconds
    python main.py devices list           # Show the device catalog
    python main.py devices add --address AA:BB:CC:DD:EE:FF --type "Hub 2" --name Office
    python main.py import-csv --device-id AA:BB:CC:DD:EE:FF --file export.csv

Environment Setup:
    Copy and configure the environment file:
    cp .env.sample .env
    # Edit .env with your settings

Requirements:
    - Python 3.10+
    - Bluetooth adapter available
    - InfluxDB 2.x server accessible
    - Proper permissions for BLE access
"""

import sys

from src.cli.commands import cli


def check_environment():
    """Check if the environment is properly set up."""
    issues = []

    if sys.version_info < (3, 10):
        issues.append(f"Python 3.10+ required, found {sys.version_info.major}.{sys.version_info.minor}")

    return issues


def main():
    """Main entry point with environment validation."""
    issues = check_environment()
    if issues:
        print("Environment Issues Found:")
        for issue in issues:
            print(f"   - {issue}")
        sys.exit(1)

    try:
        cli()
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
