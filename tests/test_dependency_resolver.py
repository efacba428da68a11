"""Tests for syncstore.dependency_resolver module."""

from dataclasses import dataclass

import pytest

from syncstore.dependency_resolver import DependencyResolver
from syncstore.errors import DependencyCycleError


@pytest.fixture
def resolver():
    r = DependencyResolver()
    r.register_dependency("Todo", "User")
    r.register_dependency("Comment", "Todo")
    return r


class TestLevels:
    """compute_level over static and dynamic edges."""

    def test_independent_type_is_level_zero(self, resolver):
        assert resolver.compute_level("User") == 0
        assert resolver.compute_level("Unknown") == 0

    def test_chain_levels(self, resolver):
        assert resolver.compute_level("Todo") == 1
        assert resolver.compute_level("Comment") == 2

    def test_level_is_longest_chain(self, resolver):
        resolver.register_dependency("Attachment", "Comment")
        resolver.register_dependency("Attachment", "User")
        assert resolver.compute_level("Attachment") == 3

    def test_dynamic_edge_visible_on_next_call(self, resolver):
        assert resolver.compute_level("User") == 0
        resolver.register_dependency("User", "Organization")
        assert resolver.compute_level("User") == 1
        assert resolver.compute_level("Comment") == 3

    def test_register_is_idempotent(self, resolver):
        resolver.register_dependency("Todo", "User")
        assert resolver.get_dependencies("Todo") == {"User"}
        assert resolver.compute_level("Todo") == 1


class TestCycles:
    """Edges that would close a cycle are rejected."""

    def test_direct_cycle_rejected(self, resolver):
        with pytest.raises(DependencyCycleError) as exc:
            resolver.register_dependency("User", "Todo")
        assert exc.value.dependent == "User"
        assert resolver.get_dependencies("User") == set()

    def test_transitive_cycle_rejected_and_graph_unchanged(self, resolver):
        with pytest.raises(DependencyCycleError):
            resolver.register_dependency("User", "Comment")
        assert resolver.compute_level("User") == 0
        assert resolver.compute_level("Comment") == 2
        assert not resolver.has_circular_dependencies()

    def test_self_edge_rejected(self, resolver):
        with pytest.raises(DependencyCycleError):
            resolver.register_dependency("User", "User")

    def test_cycle_error_is_value_error(self, resolver):
        with pytest.raises(ValueError):
            resolver.register_dependency("User", "Todo")


class TestQueries:
    """Ordering helpers and introspection."""

    def test_depends_on_is_transitive(self, resolver):
        assert resolver.depends_on("Comment", "User")
        assert resolver.depends_on("Todo", "User")
        assert not resolver.depends_on("User", "Comment")
        assert not resolver.depends_on("User", "User")

    def test_dependents_of(self, resolver):
        assert resolver.dependents_of("User") == {"Todo"}
        assert resolver.dependents_of("Comment") == set()

    def test_sort_by_dependency_order_is_stable(self, resolver):
        @dataclass
        class Row:
            model_type: str
            n: int

        rows = [Row("Comment", 1), Row("User", 2), Row("Todo", 3), Row("User", 4), Row("Comment", 5)]
        ordered = resolver.sort_by_dependency_order(rows, key=lambda r: r.model_type)
        assert [r.n for r in ordered] == [2, 4, 3, 1, 5]

    def test_clear_and_debug_info(self, resolver):
        info = resolver.debug_info()
        assert "Comment (level 2) -> Todo" in info
        resolver.clear()
        assert resolver.model_types() == []
        assert resolver.compute_level("Comment") == 0
