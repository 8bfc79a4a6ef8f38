"""Catalog hierarchy engine: category trees and custom filter DAG over a graph store."""
