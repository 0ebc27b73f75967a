#!/usr/bin/env python3
"""
Database Connection Check Script

Verifies that the configured database is reachable. Configuration comes from
``--config`` (YAML) or from the environment / ``.env`` file.

Usage:
    python scripts/check_connection.py --config config/resilience.yaml --list-tables
"""

import sys

from dbresilience.cli import main

if __name__ == "__main__":
    sys.exit(main())
