"""
MRP Engine - Low-Level Codes
============================

Computes each product's low-level code (LLC): the depth of the deepest BOM
chain in which it appears as a component. Products are planned in ascending
LLC order so that every parent is netted before its components.

Features:
- BOM graph as an explicit edge list over dense integer indexes
- Fixpoint relaxation: LLC[c] = max(LLC[c], LLC[p] + 1) until stable
- Cycle detection with the offending edges reported
- Company-scoped cache with subgraph invalidation (ancestors + descendants)

Invariant:
    for every active edge (P -> C): LLC(C) >= LLC(P) + 1
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from .errors import CyclicBomError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# GRAPH
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BomEdge:
    """Parent -> component relationship from one active BOM line."""
    parent_id: int
    component_id: int
    bom_id: int = 0
    line_id: int = 0


class BomGraph:
    """
    BOM structure of one company.

    Product ids are mapped to dense indexes so the relaxation can run over
    plain integer arrays.
    """

    def __init__(self, edges: Iterable[BomEdge], product_ids: Iterable[int] = ()):
        self.edges: List[BomEdge] = sorted(
            set(edges), key=lambda e: (e.parent_id, e.component_id, e.bom_id, e.line_id)
        )

        ids: Set[int] = set(product_ids)
        for edge in self.edges:
            ids.add(edge.parent_id)
            ids.add(edge.component_id)
        self.product_ids: List[int] = sorted(ids)
        self.index: Dict[int, int] = {pid: i for i, pid in enumerate(self.product_ids)}

        self.parent_idx = np.array([self.index[e.parent_id] for e in self.edges], dtype=np.int64)
        self.child_idx = np.array([self.index[e.component_id] for e in self.edges], dtype=np.int64)

        self._children: Dict[int, Set[int]] = defaultdict(set)
        self._parents: Dict[int, Set[int]] = defaultdict(set)
        for edge in self.edges:
            self._children[edge.parent_id].add(edge.component_id)
            self._parents[edge.component_id].add(edge.parent_id)

    def __len__(self) -> int:
        return len(self.product_ids)

    @property
    def signature(self) -> Tuple[Tuple[int, int], ...]:
        """Structural fingerprint: the distinct (parent, component) pairs."""
        return tuple(sorted({(e.parent_id, e.component_id) for e in self.edges}))

    def children(self, product_id: int) -> Set[int]:
        return set(self._children.get(product_id, ()))

    def parents(self, product_id: int) -> Set[int]:
        return set(self._parents.get(product_id, ()))

    def _walk(self, start: int, neighbours: Dict[int, Set[int]]) -> Set[int]:
        seen: Set[int] = set()
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for nxt in neighbours.get(current, ()):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        seen.discard(start)
        return seen

    def ancestors(self, product_id: int) -> Set[int]:
        return self._walk(product_id, self._parents)

    def descendants(self, product_id: int) -> Set[int]:
        return self._walk(product_id, self._children)

    def find_cycle(self) -> List[Tuple[int, int]]:
        """
        Return the edges of one cycle, or [] if the graph is acyclic.

        Iterative DFS with white/grey/black colouring.
        """
        WHITE, GREY, BLACK = 0, 1, 2
        colour: Dict[int, int] = {pid: WHITE for pid in self.product_ids}
        parent_of: Dict[int, int] = {}

        for root in self.product_ids:
            if colour[root] != WHITE:
                continue
            stack = [(root, iter(sorted(self._children.get(root, ()))))]
            colour[root] = GREY
            while stack:
                node, it = stack[-1]
                advanced = False
                for child in it:
                    if colour[child] == WHITE:
                        colour[child] = GREY
                        parent_of[child] = node
                        stack.append((child, iter(sorted(self._children.get(child, ())))))
                        advanced = True
                        break
                    if colour[child] == GREY:
                        # back edge node -> child closes a cycle
                        path = [node]
                        while path[-1] != child:
                            path.append(parent_of[path[-1]])
                        path.reverse()
                        cycle = list(zip(path, path[1:]))
                        cycle.append((node, child))
                        return cycle
                if not advanced:
                    colour[node] = BLACK
                    stack.pop()
        return []


# ═══════════════════════════════════════════════════════════════════════════════
# RESOLVER
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class LLCResult:
    """Low-level codes plus the processing order derived from them."""
    codes: Dict[int, int]
    order: List[int]
    passes: int
    signature: Tuple[Tuple[int, int], ...] = ()

    @property
    def max_level(self) -> int:
        return max(self.codes.values(), default=0)

    def tiers(self) -> List[List[int]]:
        """Products grouped by LLC, ascending."""
        grouped: Dict[int, List[int]] = defaultdict(list)
        for product_id in self.order:
            grouped[self.codes[product_id]].append(product_id)
        return [grouped[level] for level in sorted(grouped)]


def resolve_low_level_codes(graph: BomGraph) -> LLCResult:
    """
    Assign low-level codes by iterative relaxation.

    Each pass relaxes every edge at once. An acyclic graph with n products
    stabilises within n passes; still changing after n + 1 passes means a cycle.

    Raises:
        CyclicBomError: if no consistent assignment exists
    """
    n = len(graph)
    llc = np.zeros(n, dtype=np.int64)
    max_passes = n + 1
    passes = 0

    if len(graph.edges):
        converged = False
        while passes < max_passes:
            passes += 1
            updated = llc.copy()
            np.maximum.at(updated, graph.child_idx, llc[graph.parent_idx] + 1)
            if np.array_equal(updated, llc):
                converged = True
                break
            llc = updated

        if not converged:
            cycle = graph.find_cycle()
            logger.error(f"LLC relaxation did not converge after {passes} passes; cycle {cycle}")
            raise CyclicBomError(cycle)
    else:
        passes = 1

    codes = {pid: int(llc[i]) for i, pid in enumerate(graph.product_ids)}
    order = sorted(graph.product_ids, key=lambda pid: (codes[pid], pid))
    return LLCResult(codes=codes, order=order, passes=passes, signature=graph.signature)


def find_violations(codes: Dict[int, int], graph: BomGraph) -> List[BomEdge]:
    """Edges breaking LLC(C) >= LLC(P) + 1."""
    return [
        e for e in graph.edges
        if codes.get(e.component_id, 0) < codes.get(e.parent_id, 0) + 1
    ]


# ═══════════════════════════════════════════════════════════════════════════════
# CACHE
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class _CacheEntry:
    result: LLCResult
    graph: BomGraph
    dirty: Set[int] = field(default_factory=set)


class LLCCache:
    """
    Company-scoped cache of resolved low-level codes.

    A structural change to a product, BOM or BOM line can move LLC values in
    both directions through the graph, so invalidation marks the changed
    product together with all of its ancestors and descendants.
    """

    def __init__(self):
        self._entries: Dict[int, _CacheEntry] = {}
        self._lock = threading.RLock()

    def get(self, company_id: int) -> Optional[LLCResult]:
        """Cached result, or None if missing or partially invalidated."""
        with self._lock:
            entry = self._entries.get(company_id)
            if entry is None or entry.dirty:
                return None
            return entry.result

    def put(self, company_id: int, result: LLCResult, graph: BomGraph) -> None:
        with self._lock:
            self._entries[company_id] = _CacheEntry(result=result, graph=graph)

    def cached_code(self, company_id: int, product_id: int) -> Optional[int]:
        """LLC of one product if its cached value is still valid."""
        with self._lock:
            entry = self._entries.get(company_id)
            if entry is None or product_id in entry.dirty:
                return None
            return entry.result.codes.get(product_id)

    def dirty_products(self, company_id: int) -> Set[int]:
        with self._lock:
            entry = self._entries.get(company_id)
            return set(entry.dirty) if entry else set()

    def invalidate_subgraph(
        self,
        company_id: int,
        product_id: int,
        graph: Optional[BomGraph] = None,
    ) -> Set[int]:
        """
        Invalidate a product plus every ancestor and descendant.

        The walk runs over the cached graph and, when given, the post-change
        graph, so both removed and added edges are followed.

        Returns the invalidated product ids.
        """
        with self._lock:
            entry = self._entries.get(company_id)
            if entry is None:
                return set()

            affected = {product_id}
            for g in (entry.graph, graph):
                if g is None:
                    continue
                affected |= g.ancestors(product_id)
                affected |= g.descendants(product_id)

            entry.dirty |= affected

        logger.info(f"LLC cache invalidated for company {company_id}: {sorted(affected)}")
        return affected

    def invalidate_edge(
        self,
        company_id: int,
        parent_id: int,
        component_id: int,
        graph: Optional[BomGraph] = None,
    ) -> Set[int]:
        """Invalidate after a BOM line between parent and component changed."""
        affected = self.invalidate_subgraph(company_id, parent_id, graph)
        affected |= self.invalidate_subgraph(company_id, component_id, graph)
        return affected

    def invalidate_company(self, company_id: int) -> None:
        with self._lock:
            self._entries.pop(company_id, None)
        logger.info(f"LLC cache cleared for company {company_id}")


class LowLevelCodeResolver:
    """
    LLC resolution with optional caching.

    Usage:
        resolver = LowLevelCodeResolver(LLCCache())
        result = resolver.resolve(company_id, graph)
        for tier in result.tiers():
            ...
    """

    def __init__(self, cache: Optional[LLCCache] = None):
        self.cache = cache

    def resolve(self, company_id: int, graph: BomGraph) -> LLCResult:
        if self.cache is not None:
            cached = self.cache.get(company_id)
            if cached is not None and cached.signature == graph.signature:
                logger.info(f"Low-level codes for company {company_id} loaded from cache")
                return _extend_result(cached, graph)

        result = resolve_low_level_codes(graph)
        logger.info(
            f"Resolved low-level codes for company {company_id}: "
            f"{len(result.codes)} products, max level {result.max_level}, {result.passes} passes"
        )

        if self.cache is not None:
            self.cache.put(company_id, result, graph)
        return result


def _extend_result(cached: LLCResult, graph: BomGraph) -> LLCResult:
    """Add products unknown to the cached result (never components, so LLC 0)."""
    missing = [pid for pid in graph.product_ids if pid not in cached.codes]
    if not missing:
        return cached
    codes = dict(cached.codes)
    for pid in missing:
        codes[pid] = 0
    order = sorted(codes, key=lambda pid: (codes[pid], pid))
    return LLCResult(codes=codes, order=order, passes=cached.passes, signature=cached.signature)
