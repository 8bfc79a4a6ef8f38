"""Hierarchy Auditor: read-only diagnostics."""

from catalog.logic.hierarchy_auditor import find_cycle_members
from catalog.models import Structure


class TestFindCycleMembers:
    def test_two_node_cycle(self):
        assert find_cycle_members({"a": ["b"], "b": ["a"], "c": []}, max_depth=20) == ["a", "b"]

    def test_depth_bound(self):
        ring = {str(i): [str((i + 1) % 5)] for i in range(5)}
        assert find_cycle_members(ring, max_depth=3) == []
        assert len(find_cycle_members(ring, max_depth=5)) == 5

    def test_diamond_is_acyclic(self):
        assert find_cycle_members({"D": ["B", "C"], "B": ["A"], "C": ["A"], "A": []}, 20) == []


class TestFilterAudit:
    def test_clean_diamond(self, auditor, diamond):
        report = auditor.audit("filters")
        assert report.structure is Structure.FILTERS
        assert report.ok
        assert report.issues == []

    def test_level_mismatch_and_bad_edge(self, auditor, diamond):
        diamond.nodes["CustomFilter"]["D"]["level"] = 1
        report = auditor.audit("filters")
        assert not report.ok
        kinds = report.by_kind("level")
        # B->D and C->D edges plus D's own expected level
        assert len(kinds) == 3
        assert any(i.details.get("expected") == 2 for i in kinds)

    def test_cycle_reported(self, auditor, diamond):
        diamond.edges["CustomFilter"].add(("A", "D"))
        report = auditor.audit(Structure.FILTERS)
        cycle_ids = {i.details["id"] for i in report.by_kind("cycle")}
        assert cycle_ids == {"A", "B", "C", "D"}

    def test_orphan_and_duplicates(self, auditor, diamond):
        diamond.add_filter("E", "Denim", level=2)
        report = auditor.audit("filters")
        assert [i.details["id"] for i in report.by_kind("orphaned")] == ["E"]
        dupes = report.by_kind("duplicate-name")
        assert dupes[0].details["ids"] == ["D", "E"]
        assert all(i.severity == "warning" for i in dupes)

    def test_inactive_filter_with_products(self, auditor, diamond):
        diamond.nodes["CustomFilter"]["C"]["is_active"] = False
        diamond.tag("p1", "C")
        report = auditor.audit("filters")
        issues = report.by_kind("inactive-tag")
        assert len(issues) == 1
        assert issues[0].details == {"id": "C", "product_count": 1}
        assert report.ok


class TestCategoryAudit:
    def test_parent_with_products(self, auditor, store):
        store.add_category("clothing", "Clothing")
        store.add_category("tops", "Tops", level=1, parent_id="clothing")
        store.place("p1", "clothing")
        report = auditor.audit("categories")
        issues = report.by_kind("parent-with-products")
        assert [i.details["id"] for i in issues] == ["clothing"]
        assert not report.ok

    def test_sibling_duplicate_names_only(self, auditor, store):
        store.add_category("l-tops", "Tops", hierarchy="ladies")
        store.add_category("g-tops", "Tops", hierarchy="gents")
        assert auditor.audit("categories").by_kind("duplicate-name") == []
        store.add_category("l-tops-2", "tops", hierarchy="ladies")
        assert len(auditor.audit("categories").by_kind("duplicate-name")) == 1
