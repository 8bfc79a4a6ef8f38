#!/usr/bin/env python3
"""
Validate the filter DAG and category trees without changing anything.

Reports cycles, level mismatches, orphaned nodes, duplicate names, products
tagged with inactive filters and parent categories that still hold products.
Exits non-zero when any error-level issue is found.

Usage:
    python catalog/database/validate_hierarchy.py [--structure filters|categories|all]
"""

import argparse
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from catalog.engine import build_engine
from catalog.models import Structure


def print_report(report):
    print("=" * 60)
    print(f"{report.structure.value.upper()} AUDIT")
    print("=" * 60)
    if not report.issues:
        print("✓ No issues found")
        return

    kinds = sorted({issue.kind for issue in report.issues})
    for kind in kinds:
        issues = report.by_kind(kind)
        print(f"\n{kind} ({len(issues)}):")
        for issue in issues:
            marker = "✗" if issue.severity == "error" else "⚠"
            print(f"  {marker} {issue.message}")
    print(f"\n{len(report.errors)} error(s), {len(report.warnings)} warning(s)")


def main():
    parser = argparse.ArgumentParser(description="Validate hierarchy consistency")
    parser.add_argument("--structure", choices=["filters", "categories", "all"], default="all")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)

    structures = list(Structure) if args.structure == "all" else [Structure(args.structure)]
    engine = build_engine()
    ok = True
    try:
        for structure in structures:
            report = engine.audit(structure)
            print_report(report)
            ok = ok and report.ok
    finally:
        engine.store.connection.close()
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
