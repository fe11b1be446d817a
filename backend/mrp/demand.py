"""
MRP Engine - Demand Aggregation
===============================

Collects gross requirements per product:
- independent demand: confirmed sales-order lines due within the horizon,
  plus open material demand of released work orders when WIP is considered
- dependent demand: pushed down from parents as they are planned

Requirements are grouped into date buckets for netting. Demand dated before
the horizon start lands in the first bucket.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .models import ZERO, BomHeader, BomLine, DemandSource, IndependentDemandLine

logger = logging.getLogger(__name__)


@dataclass
class GrossRequirement:
    """One contribution to a product's gross requirement."""
    product_id: int
    quantity: Decimal
    required_date: date
    source_type: DemandSource
    source_id: Optional[int] = None  # sales line id, or parent product id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "quantity": str(self.quantity),
            "required_date": self.required_date.isoformat(),
            "source_type": self.source_type.value,
            "source_id": self.source_id,
        }


@dataclass
class DemandBucket:
    """Gross requirements falling on one date."""
    bucket_date: date
    quantity: Decimal = ZERO
    requirements: List[GrossRequirement] = field(default_factory=list)

    @property
    def primary_source(self) -> Optional[GrossRequirement]:
        """Largest contribution, used to label recommendations."""
        if not self.requirements:
            return None
        return max(self.requirements, key=lambda r: r.quantity)


class DemandAggregator:
    """
    Gross requirement collector for one run.

    Usage:
        aggregator = DemandAggregator(horizon_start, horizon_end)
        aggregator.add_independent(sales_lines)
        ...
        buckets = aggregator.buckets_for(product_id)
        aggregator.add_dependent(explode_bom(parent_id, bom, lines, quantity, release_date))
    """

    def __init__(self, horizon_start: date, horizon_end: date):
        self.horizon_start = horizon_start
        self.horizon_end = horizon_end
        self._requirements: Dict[int, List[GrossRequirement]] = defaultdict(list)
        self._lock = threading.Lock()

    def in_horizon(self, day: date) -> bool:
        return self.horizon_start <= day <= self.horizon_end

    def add_independent(
        self,
        lines: Iterable[IndependentDemandLine],
        source_type: DemandSource = DemandSource.SALES_ORDER,
    ) -> int:
        """Register demand lines due within the horizon. Returns the count accepted."""
        accepted = 0
        with self._lock:
            for line in lines:
                if line.quantity <= 0 or not self.in_horizon(line.required_date):
                    continue
                self._requirements[line.product_id].append(GrossRequirement(
                    product_id=line.product_id,
                    quantity=line.quantity,
                    required_date=line.required_date,
                    source_type=source_type,
                    source_id=line.source_id,
                ))
                accepted += 1
        return accepted

    def push_dependent(
        self,
        component_id: int,
        quantity: Decimal,
        required_date: date,
        parent_product_id: int,
    ) -> None:
        if quantity <= 0:
            return
        with self._lock:
            self._requirements[component_id].append(GrossRequirement(
                product_id=component_id,
                quantity=quantity,
                required_date=required_date,
                source_type=DemandSource.DEPENDENT_DEMAND,
                source_id=parent_product_id,
            ))

    def add_dependent(self, requirements: Iterable[GrossRequirement]) -> None:
        for req in requirements:
            self.push_dependent(req.product_id, req.quantity, req.required_date, req.source_id)

    def requirements_for(self, product_id: int) -> List[GrossRequirement]:
        with self._lock:
            reqs = list(self._requirements.get(product_id, ()))
        return sorted(reqs, key=lambda r: (r.required_date, r.source_type.value, r.source_id or 0))

    def dependent_total(self, product_id: int) -> Decimal:
        return sum(
            (r.quantity for r in self.requirements_for(product_id)
             if r.source_type == DemandSource.DEPENDENT_DEMAND),
            ZERO,
        )

    def buckets_for(self, product_id: int) -> List[DemandBucket]:
        """Gross requirements grouped by date, ascending."""
        buckets: Dict[date, DemandBucket] = {}
        for req in self.requirements_for(product_id):
            bucket_date = max(req.required_date, self.horizon_start)
            bucket = buckets.get(bucket_date)
            if bucket is None:
                bucket = buckets[bucket_date] = DemandBucket(bucket_date)
            bucket.quantity += req.quantity
            bucket.requirements.append(req)
        return [buckets[d] for d in sorted(buckets)]


def explode_bom(
    parent_id: int,
    bom: BomHeader,
    lines: Iterable[BomLine],
    parent_quantity: Decimal,
    required_date: date,
) -> List[GrossRequirement]:
    """
    Component requirements for `parent_quantity` units of the parent.

    Component demand is due on `required_date`, the date the parent's
    production has to start (or, for a phantom, the date the phantom itself
    is needed).
    """
    requirements = []
    for line in sorted(lines, key=lambda l: (l.line_number, l.id)):
        qty = line.required_quantity(parent_quantity, bom.quantity)
        if qty <= 0:
            continue
        requirements.append(GrossRequirement(
            product_id=line.component_id,
            quantity=qty,
            required_date=required_date,
            source_type=DemandSource.DEPENDENT_DEMAND,
            source_id=parent_id,
        ))
    logger.debug(f"Exploded {parent_quantity} x product {parent_id} into {len(requirements)} components")
    return requirements
