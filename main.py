#!/usr/bin/env python3
"""
ThermSmart - Main Entry Point

Usage:
    python main.py --help                 # Show help
    python main.py listen [ADDRESSES]     # Print readings as they arrive
    python main.py monitor                # Periodic collection
    python main.py devices                # Discover sensors
    python main.py time ADDRESS [--sync]  # Read or set a sensor clock

Environment Setup:
    Copy and configure the environment file:
    cp .env.sample .env
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from thermsmart.cli.commands import cli


def main():
    """Run the CLI."""
    try:
        cli()
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
