"""
Tests for low-level code resolution and the LLC cache.
"""
import pytest

from mrp.errors import CyclicBomError
from mrp.llc import (
    BomEdge,
    BomGraph,
    LLCCache,
    LowLevelCodeResolver,
    find_violations,
    resolve_low_level_codes,
)
from mrp.net_change import NetChangeTracker, net_change_scope


def graph_of(*pairs, products=()):
    return BomGraph([BomEdge(p, c) for p, c in pairs], products)


class TestResolveLowLevelCodes:
    """Fixpoint relaxation over the BOM edge list."""

    def test_chain(self):
        """A three-level chain gets codes 0, 1, 2."""
        result = resolve_low_level_codes(graph_of((1, 2), (2, 3)))
        assert result.codes == {1: 0, 2: 1, 3: 2}
        assert result.order == [1, 2, 3]

    def test_multi_parent_takes_deepest(self):
        """A component used at depth 1 and depth 2 gets LLC 2."""
        # 1 -> 2 -> 4 and 1 -> 4 directly
        result = resolve_low_level_codes(graph_of((1, 2), (2, 4), (1, 4), (3, 4)))
        assert result.codes[4] == 2
        assert result.codes[3] == 0

    def test_invariant_holds_for_every_edge(self):
        """Every edge satisfies LLC(C) >= LLC(P) + 1."""
        graph = graph_of((1, 2), (1, 3), (2, 3), (3, 5), (4, 5), (5, 6), (2, 6))
        result = resolve_low_level_codes(graph)
        assert find_violations(result.codes, graph) == []
        for edge in graph.edges:
            assert result.codes[edge.component_id] > result.codes[edge.parent_id]

    def test_isolated_products_get_zero(self):
        """Products without edges have LLC 0."""
        result = resolve_low_level_codes(graph_of((1, 2), products=[7, 8]))
        assert result.codes[7] == 0
        assert result.codes[8] == 0

    def test_empty_graph(self):
        """No products, no codes."""
        result = resolve_low_level_codes(BomGraph([]))
        assert result.codes == {}
        assert result.order == []

    def test_order_ties_broken_by_product_id(self):
        """Same LLC sorts by product id."""
        result = resolve_low_level_codes(graph_of((5, 9), (3, 9), products=[4]))
        assert result.order == [3, 4, 5, 9]

    def test_tiers(self):
        """Products grouped per level."""
        result = resolve_low_level_codes(graph_of((1, 2), (1, 3), (2, 4)))
        assert result.tiers() == [[1], [2, 3], [4]]


class TestCycleDetection:
    """A cyclic graph never yields an assignment."""

    def test_two_node_cycle(self):
        """1 -> 2 -> 1 raises with the cycle edges."""
        with pytest.raises(CyclicBomError) as exc:
            resolve_low_level_codes(graph_of((1, 2), (2, 1)))
        edges = set(exc.value.cycle_edges)
        assert edges == {(1, 2), (2, 1)}

    def test_component_feeding_back_into_ancestor(self):
        """C feeds back into its grandparent."""
        with pytest.raises(CyclicBomError) as exc:
            resolve_low_level_codes(graph_of((1, 2), (2, 3), (3, 1), (1, 4)))
        assert set(exc.value.cycle_edges) == {(1, 2), (2, 3), (3, 1)}

    def test_self_reference(self):
        """A product listed as its own component."""
        with pytest.raises(CyclicBomError) as exc:
            resolve_low_level_codes(graph_of((1, 1)))
        assert exc.value.cycle_edges == [(1, 1)]

    def test_cycle_edges_form_a_closed_path(self):
        """Each reported edge ends where the next one starts."""
        graph = graph_of((1, 2), (2, 3), (3, 4), (4, 2), (1, 5))
        cycle = graph.find_cycle()
        assert cycle
        for (_, child), (parent, _) in zip(cycle, cycle[1:] + cycle[:1]):
            assert child == parent

    def test_acyclic_graph_has_no_cycle(self):
        assert graph_of((1, 2), (2, 3), (1, 3)).find_cycle() == []


class TestBomGraph:
    """Ancestor / descendant walks."""

    def test_ancestors_and_descendants(self):
        graph = graph_of((1, 2), (2, 3), (4, 3), (3, 5))
        assert graph.ancestors(3) == {1, 2, 4}
        assert graph.descendants(2) == {3, 5}
        assert graph.ancestors(1) == set()

    def test_duplicate_edges_collapse(self):
        """The same line listed twice is one edge."""
        graph = BomGraph([BomEdge(1, 2, 10, 1), BomEdge(1, 2, 10, 1)])
        assert len(graph.edges) == 1


class TestLLCCache:
    """Company-scoped cache with subgraph invalidation."""

    def test_resolver_caches_per_company(self):
        """Second resolve with the same structure is served from cache."""
        cache = LLCCache()
        resolver = LowLevelCodeResolver(cache)
        graph = graph_of((1, 2))
        first = resolver.resolve(1, graph)
        assert cache.get(1) is first
        assert resolver.resolve(1, graph) is first
        assert cache.get(2) is None

    def test_invalidate_walks_ancestors_and_descendants(self):
        """Changing 3 invalidates its whole chain but not unrelated products."""
        cache = LLCCache()
        graph = graph_of((1, 2), (2, 3), (3, 4), (5, 6))
        cache.put(1, resolve_low_level_codes(graph), graph)

        affected = cache.invalidate_subgraph(1, 3)

        assert affected == {1, 2, 3, 4}
        assert cache.get(1) is None
        assert cache.cached_code(1, 3) is None
        assert cache.cached_code(1, 5) == 0
        assert cache.cached_code(1, 6) == 1

    def test_invalidate_follows_new_edges(self):
        """Edges only present after the change are walked too."""
        cache = LLCCache()
        before = graph_of((1, 2), products=[3, 4])
        cache.put(1, resolve_low_level_codes(before), before)
        after = graph_of((1, 2), (2, 3), (3, 4))

        affected = cache.invalidate_edge(1, 2, 3, after)

        assert affected == {1, 2, 3, 4}

    def test_changed_structure_recomputes(self):
        """A structural change detected without invalidation still recomputes."""
        resolver = LowLevelCodeResolver(LLCCache())
        resolver.resolve(1, graph_of((1, 2)))
        result = resolver.resolve(1, graph_of((1, 2), (2, 3)))
        assert result.codes[3] == 2

    def test_recompute_after_invalidation(self):
        cache = LLCCache()
        resolver = LowLevelCodeResolver(cache)
        resolver.resolve(1, graph_of((1, 2)))
        cache.invalidate_subgraph(1, 2)
        assert cache.dirty_products(1) == {1, 2}
        resolver.resolve(1, graph_of((1, 2)))
        assert cache.dirty_products(1) == set()

    def test_invalidate_company(self):
        cache = LLCCache()
        graph = graph_of((1, 2))
        cache.put(7, resolve_low_level_codes(graph), graph)
        cache.invalidate_company(7)
        assert cache.get(7) is None
        assert cache.invalidate_subgraph(7, 1) == set()


class TestNetChange:
    """Dirty product tracking and the scope of a net-change run."""

    def test_scope_covers_descendants_and_nets_ancestors(self):
        graph = graph_of((1, 2), (2, 3), (4, 3), products=[5])
        affected, planned = net_change_scope(graph, {2})
        assert affected == {2, 3}
        assert planned == {1, 2, 3, 4}

    def test_unknown_products_ignored(self):
        affected, planned = net_change_scope(graph_of((1, 2)), {99})
        assert affected == set()
        assert planned == set()

    def test_clear_keeps_later_marks(self):
        tracker = NetChangeTracker()
        tracker.mark_dirty(1, 10, 11)
        tracker.mark_dirty(2, 10)
        tracker.clear(1, {10})
        assert tracker.dirty_products(1) == {11}
        assert tracker.dirty_products(2) == {10}
        tracker.clear(1)
        assert tracker.dirty_products(1) == set()

    def test_incremental_threshold(self):
        tracker = NetChangeTracker()
        assert not tracker.should_use_incremental(1, 10, 0.2)
        tracker.mark_dirty(1, 1)
        assert tracker.should_use_incremental(1, 10, 0.2)
        tracker.mark_dirty(1, 2)
        assert not tracker.should_use_incremental(1, 10, 0.2)
        assert not tracker.should_use_incremental(1, 0, 0.2)
