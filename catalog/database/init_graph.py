#!/usr/bin/env python3
"""
Catalog Graph Schema Initializer

Creates unique-id constraints and lookup indexes for Category, CustomFilter
and Product on the configured backend (Neo4j or FalkorDB).

Usage:
    python catalog/database/init_graph.py [--backend neo4j|falkordb]
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from catalog.config_loader import get_config
from catalog.database import get_connection

UNIQUE_IDS = ["Category", "CustomFilter", "Product"]

INDEXES = [
    ("Category", "hierarchy"),
    ("Category", "level"),
    ("Category", "is_featured"),
    ("CustomFilter", "level"),
    ("CustomFilter", "is_featured"),
]


def neo4j_schema_queries() -> list[str]:
    queries = [
        f"CREATE CONSTRAINT {label.lower()}_id IF NOT EXISTS FOR (n:{label}) REQUIRE n.id IS UNIQUE"
        for label in UNIQUE_IDS
    ]
    queries += [
        f"CREATE INDEX {label.lower()}_{prop} IF NOT EXISTS FOR (n:{label}) ON (n.{prop})"
        for label, prop in INDEXES
    ]
    return queries


def falkordb_schema_queries() -> list[str]:
    # FalkorDB needs an index on a property before it can be made unique
    return [
        f"CREATE INDEX FOR (n:{label}) ON (n.{prop})"
        for label, prop in [(label, "id") for label in UNIQUE_IDS] + INDEXES
    ]


def _run_all(conn, queries: list[str]):
    for query in queries:
        try:
            conn.run(query)
            print(f"   ✓ {query[:70]}...")
        except Exception as e:
            msg = str(e).lower()
            if "already exists" in msg or "equivalent" in msg or "already indexed" in msg:
                print(f"   ⊘ Already exists: {query[:60]}...")
            else:
                print(f"   ⚠ {e}")


def init_neo4j(conn):
    print(f"🔗 Connecting to Neo4j at {conn.uri}...")
    print("📋 Creating schema...")
    _run_all(conn, neo4j_schema_queries())
    print("\n✅ Neo4j schema initialized!")


def init_falkordb(conn):
    print(f"🔗 Connecting to FalkorDB at {conn.host}:{conn.port} (graph '{conn.graph_name}')...")
    print("📋 Creating indexes...")
    _run_all(conn, falkordb_schema_queries())

    print("\n🔒 Creating unique constraints...")
    graph = conn.connect()
    for label in UNIQUE_IDS:
        try:
            graph.create_node_unique_constraint(label, "id")
            print(f"   ✓ {label}.id is unique")
        except Exception as e:
            if "already exists" in str(e).lower():
                print(f"   ⊘ Already exists: {label}.id")
            else:
                print(f"   ⚠ {label}.id: {e}")
    print("\n✅ FalkorDB schema initialized!")


def main():
    parser = argparse.ArgumentParser(description="Create catalog graph constraints and indexes")
    parser.add_argument("--backend", choices=["neo4j", "falkordb"],
                        help="Override the backend from hierarchy_config.yaml")
    args = parser.parse_args()

    config = get_config()
    if args.backend:
        config = config.model_copy(update={"graph": config.graph.model_copy(update={"backend": args.backend})})

    conn = get_connection(config)
    try:
        if config.graph.backend == "falkordb":
            init_falkordb(conn)
        else:
            init_neo4j(conn)
    finally:
        conn.close()


if __name__ == "__main__":
    main()
