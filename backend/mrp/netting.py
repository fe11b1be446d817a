"""
MRP Engine - Net Requirements
=============================

Time-phased netting of gross requirements against supply.

Per demand bucket (ascending dates):

    projected  = available + receipts due on/before the bucket - gross so far
    shortage   = safety_stock - projected        (safety stock optional)
    net        = max(0, shortage)

Each planned order is credited back to the projected balance so a shortage
is never ordered twice.

Available stock is floored by the product's negative stock policy:
    never    -> max(available, 0)
    limited  -> max(available, -limit)
    allowed  -> unbounded
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from .demand import DemandBucket
from .models import (
    ZERO,
    Product,
    ReceiptSource,
    ScheduledReceipt,
    StockRecord,
    negative_stock_floor,
)

logger = logging.getLogger(__name__)


@dataclass
class SupplyPosition:
    """Stock and open supply of one product at the start of the horizon."""
    product_id: int
    on_hand: Decimal = ZERO
    reserved: Decimal = ZERO
    available: Decimal = ZERO  # floored
    unfloored_available: Decimal = ZERO
    receipts: List[ScheduledReceipt] = field(default_factory=list)

    @property
    def negative_stock_impact(self) -> bool:
        return self.available < 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "on_hand": str(self.on_hand),
            "reserved": str(self.reserved),
            "available": str(self.available),
            "unfloored_available": str(self.unfloored_available),
            "scheduled_receipts": str(sum((r.quantity for r in self.receipts), ZERO)),
        }


@dataclass
class NetRequirement:
    """Unmet quantity for one demand bucket."""
    product_id: int
    required_date: date
    gross: Decimal
    net: Decimal
    planned_quantity: Decimal
    projected_before: Decimal
    receipts_applied: Decimal = ZERO
    safety_stock: Decimal = ZERO
    negative_stock_impact: bool = False
    bucket: Optional[DemandBucket] = None


def _passes_warehouse_filters(warehouse_id: int, filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    include = filters.get("include")
    exclude = filters.get("exclude")
    if include and warehouse_id not in include:
        return False
    if exclude and warehouse_id in exclude:
        return False
    return True


class NetRequirementsCalculator:
    """
    Nets demand buckets against available supply.

    Args:
        include_safety_stock: hold back safety stock as already consumed
        consider_wip: count open work orders as scheduled receipts
    """

    def __init__(self, include_safety_stock: bool = True, consider_wip: bool = True):
        self.include_safety_stock = include_safety_stock
        self.consider_wip = consider_wip

    def supply_position(
        self,
        product: Product,
        stock: Iterable[StockRecord],
        receipts: Iterable[ScheduledReceipt],
        warehouse_filters: Optional[Dict[str, Any]] = None,
    ) -> SupplyPosition:
        position = SupplyPosition(product_id=product.id)

        for record in stock:
            if not _passes_warehouse_filters(record.warehouse_id, warehouse_filters):
                continue
            position.on_hand += record.quantity_on_hand
            position.reserved += record.quantity_reserved

        position.unfloored_available = position.on_hand - position.reserved
        floor = negative_stock_floor(product.negative_stock_policy, product.negative_stock_limit)
        if floor is None:
            position.available = position.unfloored_available
        else:
            position.available = max(position.unfloored_available, floor)

        position.receipts = sorted(
            (
                r for r in receipts
                if r.quantity > 0
                and (self.consider_wip or r.source != ReceiptSource.WORK_ORDER)
            ),
            key=lambda r: (r.expected_date, r.source_id or 0),
        )
        return position

    def calculate(
        self,
        product: Product,
        buckets: List[DemandBucket],
        position: SupplyPosition,
        lot_sizer: Optional[Callable[[Decimal], Decimal]] = None,
    ) -> List[NetRequirement]:
        """
        Net requirements per bucket, in date order.

        `lot_sizer` maps a shortage to the quantity that will actually be
        ordered; that quantity is credited to the projected balance.
        """
        safety = product.safety_stock if self.include_safety_stock else ZERO
        projected = position.available
        receipts = position.receipts
        receipt_idx = 0
        first_shortage = True
        results: List[NetRequirement] = []

        for bucket in buckets:
            received = ZERO
            while receipt_idx < len(receipts) and receipts[receipt_idx].expected_date <= bucket.bucket_date:
                received += receipts[receipt_idx].quantity
                receipt_idx += 1
            projected += received

            projected_before = projected
            projected -= bucket.quantity
            shortage = safety - projected

            if shortage <= 0:
                continue

            planned = lot_sizer(shortage) if lot_sizer else shortage
            results.append(NetRequirement(
                product_id=product.id,
                required_date=bucket.bucket_date,
                gross=bucket.quantity,
                net=shortage,
                planned_quantity=planned,
                projected_before=projected_before,
                receipts_applied=received,
                safety_stock=safety,
                negative_stock_impact=first_shortage and position.negative_stock_impact,
                bucket=bucket,
            ))
            first_shortage = False
            projected += planned

        logger.debug(
            f"Netted product {product.id}: {len(buckets)} buckets, "
            f"available {position.available}, {len(results)} shortages"
        )
        return results
