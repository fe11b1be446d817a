"""
MRP Engine - Recommendation Generator
=====================================

Turns a net shortfall into a typed, lot-sized, prioritized recommendation.

Lot sizing:
    1. round up to the nearest multiple of order_multiple (if set)
    2. raise to at least minimum_order_qty

Priority from slack = (required_date - today) in days:
    slack <= 0               -> critical
    slack <= lead_time / 2   -> high
    slack <= lead_time       -> medium
    otherwise                -> low

Transfer / reschedule / cancel / expedite types belong to a reconciliation
pass against existing open orders and are never emitted here.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import ROUND_CEILING, Decimal
from typing import List, Optional

from .models import (
    ZERO,
    MrpPriority,
    MrpRecommendation,
    Product,
    RecommendationStatus,
    raise_priority,
    recommendation_type_for,
)
from .netting import NetRequirement
from .scheduling import ScheduleResult

logger = logging.getLogger(__name__)


def lot_size(
    net: Decimal,
    minimum_order_qty: Decimal = ZERO,
    order_multiple: Optional[Decimal] = None,
) -> Decimal:
    """Order quantity for a net requirement."""
    if net <= 0:
        return ZERO
    qty = net
    if order_multiple is not None and order_multiple > 0:
        qty = (net / order_multiple).to_integral_value(rounding=ROUND_CEILING) * order_multiple
    if minimum_order_qty and qty < minimum_order_qty:
        qty = minimum_order_qty
    return qty


def product_lot_size(product: Product, net: Decimal) -> Decimal:
    return lot_size(net, product.minimum_order_qty, product.order_multiple)


def priority_for(required_date: date, today: date, lead_time_days: int) -> MrpPriority:
    slack = (required_date - today).days
    if slack <= 0:
        return MrpPriority.CRITICAL
    if slack * 2 <= lead_time_days:
        return MrpPriority.HIGH
    if slack <= lead_time_days:
        return MrpPriority.MEDIUM
    return MrpPriority.LOW


class RecommendationGenerator:
    """
    Builds MrpRecommendation records for one run.

    Args:
        today: the run's notion of "now", fixed for the whole run
    """

    def __init__(self, today: date):
        self.today = today

    def generate(
        self,
        run_id: int,
        company_id: int,
        product: Product,
        requirement: NetRequirement,
        schedule: ScheduleResult,
    ) -> MrpRecommendation:
        quantity = requirement.planned_quantity
        if quantity <= 0:
            quantity = product_lot_size(product, requirement.net)

        priority = priority_for(requirement.required_date, self.today, product.lead_time_days)

        reasons: List[str] = []
        if schedule.expedite_eligible:
            reasons.append(
                f"Release date {schedule.release_date.isoformat()} is before today "
                f"({self.today.isoformat()}); expedite required"
            )
        elif schedule.is_urgent:
            reasons.append("Order must be released today")
        if requirement.negative_stock_impact:
            priority = raise_priority(priority, MrpPriority.HIGH)
            reasons.append("Available stock is negative")

        source = requirement.bucket.primary_source if requirement.bucket else None

        recommendation = MrpRecommendation(
            run_id=run_id,
            company_id=company_id,
            product_id=product.id,
            recommendation_type=recommendation_type_for(product.make_or_buy),
            quantity=quantity,
            order_date=schedule.release_date,
            required_date=requirement.required_date,
            priority=priority,
            status=RecommendationStatus.PENDING,
            gross_requirement=requirement.gross,
            net_requirement=requirement.net,
            is_urgent=schedule.is_urgent,
            expedite_eligible=schedule.expedite_eligible,
            urgency_reason="; ".join(reasons) or None,
            demand_source_type=source.source_type.value if source else None,
            demand_source_id=source.source_id if source else None,
            calculation_details={
                "gross_requirement": str(requirement.gross),
                "net_requirement": str(requirement.net),
                "projected_before": str(requirement.projected_before),
                "receipts_applied": str(requirement.receipts_applied),
                "safety_stock": str(requirement.safety_stock),
                "lead_time_days": product.lead_time_days,
                "calendar_days": schedule.calendar_days,
                "minimum_order_qty": str(product.minimum_order_qty),
                "order_multiple": str(product.order_multiple) if product.order_multiple is not None else None,
                "negative_stock_impact": requirement.negative_stock_impact,
                "demand_sources": (
                    [r.to_dict() for r in requirement.bucket.requirements] if requirement.bucket else []
                ),
            },
        )
        logger.debug(
            f"Recommendation for product {product.id}: {recommendation.recommendation_type.value} "
            f"{quantity} release {schedule.release_date} need {requirement.required_date} ({priority.value})"
        )
        return recommendation
