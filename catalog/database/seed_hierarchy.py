#!/usr/bin/env python3
"""
Seed the default category trees and filter DAG.

Everything goes through the engine, so levels, slugs and acyclicity are
enforced exactly as for live mutations. Run init_graph.py first.

Usage:
    python catalog/database/seed_hierarchy.py [--file path.yaml] [--skip-categories] [--skip-filters]
"""

import argparse
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import yaml

from catalog.engine import build_engine

DEFAULT_SEED_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), "default_hierarchy.yaml")


def seed_categories(engine, trees: dict) -> int:
    created = 0

    def _create(nodes, hierarchy, parent_id=None, depth=0):
        nonlocal created
        for node in nodes or []:
            category = engine.create_category(node["name"], hierarchy=hierarchy, parent_id=parent_id,
                                              is_featured=node.get("featured", False))
            created += 1
            print(f"   {'  ' * depth}✓ {category.name} (level {category.level})")
            _create(node.get("children"), hierarchy, category.id, depth + 1)

    for hierarchy, roots in trees.items():
        print(f"\n📂 {hierarchy}")
        _create(roots, hierarchy)
    return created


def seed_filters(engine, filters: list) -> int:
    ids_by_name = {}
    for entry in filters:
        parent_ids = []
        for parent_name in entry.get("parents", []):
            if parent_name not in ids_by_name:
                raise ValueError(f'Parent filter "{parent_name}" not found for "{entry["name"]}"')
            parent_ids.append(ids_by_name[parent_name])
        created = engine.create_custom_filter(entry["name"], parent_ids, entry.get("featured", False))
        ids_by_name[entry["name"]] = created.id
        parents = f" (parents: {', '.join(entry['parents'])})" if entry.get("parents") else ""
        print(f"   ✓ {created.name}{parents} level {created.level}")
    return len(ids_by_name)


def main():
    parser = argparse.ArgumentParser(description="Seed default categories and filters")
    parser.add_argument("--file", default=DEFAULT_SEED_FILE, help="Seed YAML file")
    parser.add_argument("--skip-categories", action="store_true")
    parser.add_argument("--skip-filters", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING)

    with open(args.file, 'r', encoding='utf-8') as f:
        seed = yaml.safe_load(f) or {}

    engine = build_engine()
    try:
        if not args.skip_categories:
            print("🌳 Creating category trees...")
            count = seed_categories(engine, seed.get("categories", {}))
            print(f"\n✅ {count} categories created")
        if not args.skip_filters:
            print("\n🏷  Creating custom filters...")
            count = seed_filters(engine, seed.get("filters", []))
            print(f"\n✅ {count} filters created")
    finally:
        engine.store.connection.close()


if __name__ == "__main__":
    main()
