"""
MRP Engine - Domain Models
==========================

Records consumed and produced by the MRP engine.

Master data (products, BOMs, stock, open orders, sales lines) is owned by the
surrounding ERP and only read here. Runs and recommendations are produced by
the engine.

Every enumerated field is a closed str-Enum. The behaviour attached to a tag is
written as a plain function over the tag (see "TAG BEHAVIOUR" below).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

ZERO = Decimal("0")
ONE = Decimal("1")


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class MakeOrBuy(str, Enum):
    """Procurement type of a product."""
    MAKE = "make"
    BUY = "buy"


class NegativeStockPolicy(str, Enum):
    """How far available stock may drop below zero during netting."""
    NEVER = "never"
    LIMITED = "limited"
    ALLOWED = "allowed"


class BomStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    OBSOLETE = "obsolete"


class BomType(str, Enum):
    MANUFACTURING = "manufacturing"
    ENGINEERING = "engineering"
    PHANTOM = "phantom"  # components pass through to the parent


class CalendarDayType(str, Enum):
    WORKING = "working"
    HOLIDAY = "holiday"
    MAINTENANCE = "maintenance"
    SHUTDOWN = "shutdown"


class MrpRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RecommendationType(str, Enum):
    """Type of MRP recommendation."""
    PURCHASE_ORDER = "purchase_order"
    WORK_ORDER = "work_order"
    TRANSFER = "transfer"
    RESCHEDULE_IN = "reschedule_in"
    RESCHEDULE_OUT = "reschedule_out"
    CANCEL = "cancel"
    EXPEDITE = "expedite"


class RecommendationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIONED = "actioned"
    EXPIRED = "expired"


class MrpPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReceiptSource(str, Enum):
    """Origin of a scheduled receipt."""
    PURCHASE_ORDER = "purchase_order"
    WORK_ORDER = "work_order"


class DemandSource(str, Enum):
    """Origin of a gross requirement."""
    SALES_ORDER = "sales_order"
    DEPENDENT_DEMAND = "dependent_demand"
    WORK_ORDER = "work_order"  # materials of a released work order


# ═══════════════════════════════════════════════════════════════════════════════
# TAG BEHAVIOUR
# ═══════════════════════════════════════════════════════════════════════════════

_RUN_TRANSITIONS = {
    MrpRunStatus.PENDING: {MrpRunStatus.RUNNING, MrpRunStatus.CANCELLED, MrpRunStatus.FAILED},
    MrpRunStatus.RUNNING: {MrpRunStatus.COMPLETED, MrpRunStatus.FAILED, MrpRunStatus.CANCELLED},
    MrpRunStatus.COMPLETED: set(),
    MrpRunStatus.FAILED: set(),
    MrpRunStatus.CANCELLED: set(),
}

_PRIORITY_ORDER = {
    MrpPriority.CRITICAL: 1,
    MrpPriority.HIGH: 2,
    MrpPriority.MEDIUM: 3,
    MrpPriority.LOW: 4,
}


def can_cancel(status: MrpRunStatus) -> bool:
    return status in (MrpRunStatus.PENDING, MrpRunStatus.RUNNING)


def is_final(status: MrpRunStatus) -> bool:
    return status in (MrpRunStatus.COMPLETED, MrpRunStatus.FAILED, MrpRunStatus.CANCELLED)


def can_transition(current: MrpRunStatus, target: MrpRunStatus) -> bool:
    return target in _RUN_TRANSITIONS[current]


def can_approve(status: RecommendationStatus) -> bool:
    return status == RecommendationStatus.PENDING


def can_reject(status: RecommendationStatus) -> bool:
    return status == RecommendationStatus.PENDING


def priority_sort_order(priority: MrpPriority) -> int:
    """Sort key, critical first."""
    return _PRIORITY_ORDER[priority]


def raise_priority(priority: MrpPriority, floor: MrpPriority) -> MrpPriority:
    """Return the more urgent of the two priorities."""
    if priority_sort_order(floor) < priority_sort_order(priority):
        return floor
    return priority


def is_available(day_type: CalendarDayType) -> bool:
    return day_type == CalendarDayType.WORKING


def negative_stock_floor(policy: NegativeStockPolicy, limit: Decimal) -> Optional[Decimal]:
    """
    Lowest value available stock may take during netting.

    Returns None when stock may go arbitrarily negative.
    """
    if policy == NegativeStockPolicy.NEVER:
        return ZERO
    if policy == NegativeStockPolicy.LIMITED:
        return -abs(limit)
    return None


def participates_in_explosion(status: BomStatus, bom_type: BomType) -> bool:
    """Only active manufacturing or phantom BOMs drive planning."""
    return status == BomStatus.ACTIVE and bom_type in (BomType.MANUFACTURING, BomType.PHANTOM)


def recommendation_type_for(make_or_buy: MakeOrBuy) -> RecommendationType:
    if make_or_buy == MakeOrBuy.BUY:
        return RecommendationType.PURCHASE_ORDER
    return RecommendationType.WORK_ORDER


# ═══════════════════════════════════════════════════════════════════════════════
# MASTER DATA
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Product:
    """Planning attributes of a product."""
    id: int
    company_id: int
    sku: str
    name: str = ""
    make_or_buy: MakeOrBuy = MakeOrBuy.BUY
    lead_time_days: int = 0
    safety_stock: Decimal = ZERO
    reorder_point: Decimal = ZERO
    minimum_order_qty: Decimal = ZERO
    order_multiple: Optional[Decimal] = None
    negative_stock_policy: NegativeStockPolicy = NegativeStockPolicy.NEVER
    negative_stock_limit: Decimal = ZERO
    is_active: bool = True
    low_level_code: Optional[int] = None  # cached, written by the LLC resolver

    def is_below_reorder_point(self, total_stock: Decimal) -> bool:
        return self.reorder_point > 0 and total_stock < self.reorder_point

    def is_below_safety_stock(self, total_stock: Decimal) -> bool:
        return total_stock < self.safety_stock

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "sku": self.sku,
            "name": self.name,
            "make_or_buy": self.make_or_buy.value,
            "lead_time_days": self.lead_time_days,
            "safety_stock": str(self.safety_stock),
            "reorder_point": str(self.reorder_point),
            "minimum_order_qty": str(self.minimum_order_qty),
            "order_multiple": str(self.order_multiple) if self.order_multiple is not None else None,
            "negative_stock_policy": self.negative_stock_policy.value,
            "negative_stock_limit": str(self.negative_stock_limit),
            "low_level_code": self.low_level_code,
        }


@dataclass
class BomHeader:
    id: int
    company_id: int
    product_id: int  # the parent assembly
    status: BomStatus = BomStatus.ACTIVE
    bom_type: BomType = BomType.MANUFACTURING
    quantity: Decimal = ONE  # parent quantity the lines are expressed for
    is_default: bool = False
    bom_number: str = ""

    @property
    def participates(self) -> bool:
        return participates_in_explosion(self.status, self.bom_type)

    @property
    def is_phantom(self) -> bool:
        return self.bom_type == BomType.PHANTOM


@dataclass
class BomLine:
    id: int
    bom_id: int
    component_id: int
    quantity_per: Decimal
    line_number: int = 0
    scrap_percentage: Decimal = ZERO

    def required_quantity(self, parent_quantity: Decimal, base_quantity: Decimal = ONE) -> Decimal:
        """Component quantity for `parent_quantity` units of the parent."""
        scrap_factor = ONE + self.scrap_percentage / Decimal(100)
        return parent_quantity / base_quantity * self.quantity_per * scrap_factor


@dataclass
class StockRecord:
    product_id: int
    warehouse_id: int
    quantity_on_hand: Decimal = ZERO
    quantity_reserved: Decimal = ZERO

    @property
    def available(self) -> Decimal:
        return self.quantity_on_hand - self.quantity_reserved


@dataclass
class ScheduledReceipt:
    """Open purchase/work order already promising supply."""
    product_id: int
    quantity: Decimal
    expected_date: date
    source: ReceiptSource = ReceiptSource.PURCHASE_ORDER
    source_id: Optional[int] = None


@dataclass
class IndependentDemandLine:
    """Confirmed sales-order line, or open material demand of a released work order."""
    product_id: int
    quantity: Decimal
    required_date: date
    source_id: Optional[int] = None


@dataclass
class CalendarDay:
    company_id: int
    calendar_date: date
    day_type: CalendarDayType = CalendarDayType.WORKING
    description: str = ""


# ═══════════════════════════════════════════════════════════════════════════════
# RUN OUTPUT
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class MrpRecommendation:
    """One actionable order proposal produced by a run."""
    run_id: int
    company_id: int
    product_id: int
    recommendation_type: RecommendationType
    quantity: Decimal
    order_date: date
    required_date: date
    priority: MrpPriority
    status: RecommendationStatus = RecommendationStatus.PENDING
    id: Optional[int] = None
    gross_requirement: Decimal = ZERO
    net_requirement: Decimal = ZERO
    is_urgent: bool = False
    expedite_eligible: bool = False
    urgency_reason: Optional[str] = None
    demand_source_type: Optional[str] = None
    demand_source_id: Optional[int] = None
    calculation_details: Dict[str, Any] = field(default_factory=dict)

    def identity(self) -> tuple:
        """Comparable content, independent of storage ids."""
        return (
            self.product_id,
            self.recommendation_type.value,
            self.quantity,
            self.order_date,
            self.required_date,
            self.priority.value,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "company_id": self.company_id,
            "product_id": self.product_id,
            "recommendation_type": self.recommendation_type.value,
            "quantity": str(self.quantity),
            "order_date": self.order_date.isoformat(),
            "required_date": self.required_date.isoformat(),
            "priority": self.priority.value,
            "status": self.status.value,
            "gross_requirement": str(self.gross_requirement),
            "net_requirement": str(self.net_requirement),
            "is_urgent": self.is_urgent,
            "expedite_eligible": self.expedite_eligible,
            "urgency_reason": self.urgency_reason,
            "demand_source_type": self.demand_source_type,
            "demand_source_id": self.demand_source_id,
            "calculation_details": self.calculation_details,
        }


@dataclass
class MrpRun:
    """Lifecycle record of one engine invocation."""
    company_id: int
    horizon_start: date
    horizon_end: date
    id: Optional[int] = None
    run_number: str = ""
    name: Optional[str] = None
    status: MrpRunStatus = MrpRunStatus.PENDING
    respect_lead_times: bool = True
    include_safety_stock: bool = True
    consider_wip: bool = True
    product_filters: Dict[str, Any] = field(default_factory=dict)
    net_change: bool = False
    warehouse_filters: Dict[str, Any] = field(default_factory=dict)

    products_total: int = 0
    products_processed: int = 0
    recommendations_count: int = 0
    warnings_count: int = 0
    warnings_summary: Dict[str, Any] = field(default_factory=dict)
    failure_reason: Optional[str] = None

    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    recommendations: List[MrpRecommendation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_number": self.run_number,
            "name": self.name,
            "company_id": self.company_id,
            "status": self.status.value,
            "horizon_start": self.horizon_start.isoformat(),
            "horizon_end": self.horizon_end.isoformat(),
            "respect_lead_times": self.respect_lead_times,
            "include_safety_stock": self.include_safety_stock,
            "consider_wip": self.consider_wip,
            "net_change": self.net_change,
            "products_total": self.products_total,
            "products_processed": self.products_processed,
            "recommendations_count": self.recommendations_count,
            "warnings_count": self.warnings_count,
            "warnings_summary": self.warnings_summary,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "recommendations": [r.to_dict() for r in self.recommendations],
        }
