#!/usr/bin/env python3
"""
Recalculate stored hierarchy levels.

Resets roots to 0, repeats the level repair pass until nothing changes (or
the configured ceiling is reached), then verifies that every parent sits
strictly above its children and prints the level distribution.

Usage:
    python catalog/database/recalculate_levels.py [--structure filters|categories|all]
"""

import argparse
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from catalog.engine import build_engine
from catalog.models import Structure


def print_summary(summary):
    print("=" * 60)
    print(f"{summary.structure.value.upper()}: {summary.total_nodes} nodes")
    print("=" * 60)
    print(f"Roots reset to level 0: {summary.roots_reset}")
    for i, updated in enumerate(summary.updates_per_iteration, start=1):
        print(f"  Iteration {i}: updated {updated} node(s)")
    print(f"Total updates: {summary.total_updates} in {summary.iterations} iteration(s)")

    print("\nLevel distribution:")
    for level, count in sorted(summary.level_distribution.items()):
        print(f"  Level {level}: {count} node(s)")

    if summary.warning is not None:
        print(f"\n⚠ {summary.warning}")
    else:
        print("\n✓ All levels consistent")


def main():
    parser = argparse.ArgumentParser(description="Recalculate hierarchy levels")
    parser.add_argument("--structure", choices=["filters", "categories", "all"], default="filters")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)

    structures = list(Structure) if args.structure == "all" else [Structure(args.structure)]
    engine = build_engine()
    exit_code = 0
    try:
        for structure in structures:
            summary = engine.recalculate_levels(structure)
            print_summary(summary)
            if summary.warning is not None:
                exit_code = 1
    finally:
        engine.store.connection.close()
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
