#!/usr/bin/env python3
"""Autotune Prep CLI launcher script.

This is a convenience script that can be run directly from the scripts directory.
The actual implementation is in autotune_prep.autotune_cli for proper package integration.

Usage:
    python scripts/autotune_cli.py <command> [options]

Or install the package and use:
    autotune-prep <command> [options]
    python -m autotune_prep.autotune_cli <command> [options]
"""

from autotune_prep.autotune_cli import main

if __name__ == "__main__":
    main()
