#!/usr/bin/env python3
"""
catalogsync - Quota-aware seller catalog enumeration

Main entry point for running the CLI from a source checkout.

Usage:
    python main.py scan --account-id 123456
    python main.py sync --config config/catalogsync.yaml --output items.json
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent / "src"))

from catalogsync.cli import cli


if __name__ == '__main__':
    cli()
