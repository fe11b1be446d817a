"""
MRP Engine - Net Change
=======================

Tracks products whose planning inputs changed since they were last planned.

A net-change run re-plans the changed products and everything below them in
the BOM (their dependent demand may have moved). The parents of those
products are netted too, without recommendations, so dependent demand is
rebuilt from every source and not just from the changed branch.

Usage:
    tracker = NetChangeTracker()
    tracker.mark_dirty(company_id, product_id)
    affected, planned = net_change_scope(graph, tracker.dirty_products(company_id))
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Dict, Iterable, Optional, Set, Tuple

from .llc import BomGraph

logger = logging.getLogger(__name__)


class NetChangeTracker:
    """Company-scoped set of dirty product ids."""

    def __init__(self):
        self._dirty: Dict[int, Set[int]] = defaultdict(set)
        self._lock = threading.Lock()

    def mark_dirty(self, company_id: int, *product_ids: int) -> None:
        if not product_ids:
            return
        with self._lock:
            self._dirty[company_id].update(product_ids)
        logger.debug(f"Marked products {sorted(product_ids)} of company {company_id} dirty")

    def dirty_products(self, company_id: int) -> Set[int]:
        with self._lock:
            return set(self._dirty.get(company_id, ()))

    def clear(self, company_id: int, product_ids: Optional[Iterable[int]] = None) -> None:
        """Forget all dirty products, or only `product_ids` (marks made since stay)."""
        with self._lock:
            if product_ids is None:
                self._dirty.pop(company_id, None)
            else:
                self._dirty[company_id].difference_update(product_ids)

    def should_use_incremental(self, company_id: int, total_products: int, max_ratio: float) -> bool:
        """Net change pays off only while few products are dirty."""
        dirty = len(self.dirty_products(company_id))
        if total_products == 0 or dirty == 0:
            return False
        return dirty / total_products < max_ratio


def net_change_scope(graph: BomGraph, dirty: Iterable[int]) -> Tuple[Set[int], Set[int]]:
    """
    Returns (affected, planned).

    affected: dirty products plus all their descendants; these get
    recommendations. planned: affected plus all their ancestors; these are
    netted so dependent demand reaching `affected` is complete.
    """
    affected: Set[int] = set()
    for pid in dirty:
        if pid not in graph.index:
            continue
        affected.add(pid)
        affected |= graph.descendants(pid)

    planned = set(affected)
    for pid in affected:
        planned |= graph.ancestors(pid)
    return affected, planned
