#!/usr/bin/env python3
"""
Ruuvi Collector - Main Entry Point

Collects telemetry from configured RuuviTag sensors over Bluetooth Low
Energy and writes it to InfluxDB.

Usage:
    python main.py --help                 # Show help
    python main.py run                    # Start the collector
    python main.py discover               # Scan for Ruuvi devices
    python main.py decode HEX             # Decode one payload
    python main.py check-config           # Validate configuration

Environment Setup:
    cp .env.sample .env                   # runtime settings
    cp config.sample.json config.json     # sink and device mapping
"""

import sys

from ruuvi_collector.cli.commands import cli


def main():
    """Main entry point."""
    if len(sys.argv) == 1:
        sys.argv.append("--help")
    cli()


if __name__ == "__main__":
    main()
