"""
═══════════════════════════════════════════════════════════════════════════════
                    MRP ENGINE - MATERIAL REQUIREMENTS PLANNING
═══════════════════════════════════════════════════════════════════════════════

Given a BOM graph, stock, open supply, confirmed demand and a planning horizon,
computes what must be bought or made, when, and in what quantity.

Architecture:
    ┌─────────────────────────────────────────────────────────────────┐
    │  Run Orchestrator (lifecycle, company lock, cancellation)        │
    ├─────────────────────────────────────────────────────────────────┤
    │  LLC Resolver ──► processing order (ascending low-level code)   │
    ├─────────────────────────────────────────────────────────────────┤
    │  per product:                                                   │
    │    Demand Aggregator ─► Net Requirements ─► Lead-Time Scheduler │
    │      ─► Recommendation Generator ─► dependent demand to children │
    └─────────────────────────────────────────────────────────────────┘

Usage:
    from mrp import MRPService, InMemoryMasterData, CompanyCalendar

    service = MRPService.from_master_data(data, CompanyCalendar())
    run = service.run_mrp(company_id=1, horizon_start=start, horizon_end=end)
"""

from .calendar import CalendarProvider, CompanyCalendar
from .config import MRPConfig, configure_logging, get_config, reset_config
from .db import SqlRunStore, init_db, make_engine
from .demand import DemandAggregator, DemandBucket, GrossRequirement, explode_bom
from .errors import (
    ConcurrentRunError,
    CyclicBomError,
    InvalidTransitionError,
    LockTimeoutError,
    MissingCalendarDataError,
    MRPError,
    MRPValidationError,
    ProductComputationError,
    RunNotFoundError,
)
from .llc import BomEdge, BomGraph, LLCCache, LLCResult, LowLevelCodeResolver, resolve_low_level_codes
from .locks import CompanyRunLock
from .models import (
    BomHeader,
    BomLine,
    BomStatus,
    BomType,
    CalendarDay,
    CalendarDayType,
    DemandSource,
    IndependentDemandLine,
    MakeOrBuy,
    MrpPriority,
    MrpRecommendation,
    MrpRun,
    MrpRunStatus,
    NegativeStockPolicy,
    Product,
    ReceiptSource,
    RecommendationStatus,
    RecommendationType,
    ScheduledReceipt,
    StockRecord,
)
from .net_change import NetChangeTracker, net_change_scope
from .netting import NetRequirement, NetRequirementsCalculator, SupplyPosition
from .orchestrator import CancellationToken, MRPService, MrpRunRequest, validate_deadline, validate_request
from .recommendations import RecommendationGenerator, lot_size, priority_for
from .reporting import recommendations_to_dataframe, run_summary
from .repositories import InMemoryMasterData, InMemoryRunStore, RunStore, WorkOrderDemandSource
from .scheduling import LeadTimeScheduler, ScheduleResult

__all__ = [
    # Models
    "Product",
    "BomHeader",
    "BomLine",
    "StockRecord",
    "ScheduledReceipt",
    "IndependentDemandLine",
    "CalendarDay",
    "MrpRun",
    "MrpRecommendation",
    "MakeOrBuy",
    "NegativeStockPolicy",
    "BomStatus",
    "BomType",
    "CalendarDayType",
    "MrpRunStatus",
    "RecommendationType",
    "RecommendationStatus",
    "MrpPriority",
    "ReceiptSource",
    "DemandSource",
    # Errors
    "MRPError",
    "MRPValidationError",
    "ConcurrentRunError",
    "LockTimeoutError",
    "CyclicBomError",
    "MissingCalendarDataError",
    "ProductComputationError",
    "InvalidTransitionError",
    "RunNotFoundError",
    # Config
    "MRPConfig",
    "get_config",
    "reset_config",
    "configure_logging",
    # Components
    "CalendarProvider",
    "CompanyCalendar",
    "BomEdge",
    "BomGraph",
    "LLCCache",
    "LLCResult",
    "LowLevelCodeResolver",
    "resolve_low_level_codes",
    "DemandAggregator",
    "DemandBucket",
    "GrossRequirement",
    "explode_bom",
    "NetRequirementsCalculator",
    "NetRequirement",
    "SupplyPosition",
    "LeadTimeScheduler",
    "ScheduleResult",
    "RecommendationGenerator",
    "lot_size",
    "priority_for",
    "CompanyRunLock",
    "NetChangeTracker",
    "net_change_scope",
    # Orchestration
    "MRPService",
    "MrpRunRequest",
    "CancellationToken",
    "validate_request",
    "validate_deadline",
    # Persistence / reporting
    "RunStore",
    "WorkOrderDemandSource",
    "InMemoryMasterData",
    "InMemoryRunStore",
    "SqlRunStore",
    "make_engine",
    "init_db",
    "recommendations_to_dataframe",
    "run_summary",
]

__version__ = "0.1.0"
