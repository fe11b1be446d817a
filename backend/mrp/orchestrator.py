"""
MRP Engine - Run Orchestrator
=============================

Owns the run lifecycle and drives the planning components in low-level-code
order.

Flow per run:
1. Validate the request (no record is created on failure)
2. Take the company lock, create the run record, move it to running
3. Resolve low-level codes over the participating BOM graph
4. For each LLC tier, for each product:
       demand buckets -> netting -> scheduling -> recommendations
       and push dependent demand to the components
5. Move the run to completed / failed / cancelled and release the lock

State machine:
    pending -> running -> {completed, failed, cancelled}
    pending -> {cancelled, failed}

Entry points:
- run_mrp(): validate, lock (non-blocking) and execute in one call.
  A busy company raises ConcurrentRunError.
- create_run() + execute_run(): queued execution. The lock is awaited up to
  lock_timeout_seconds; a timeout fails the run.

Net change: invalidate_cache() and mark_product_dirty() record changed
products. A run with net_change=True re-plans only those products and their
components while few products are dirty, and falls back to a full run
otherwise.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .calendar import CalendarProvider, CompanyCalendar
from .config import MRPConfig, get_config
from .demand import DemandAggregator, GrossRequirement, explode_bom
from .errors import (
    ConcurrentRunError,
    InvalidTransitionError,
    LockTimeoutError,
    MRPError,
    MRPValidationError,
    ProductComputationError,
    RunNotFoundError,
)
from .llc import BomEdge, BomGraph, LLCCache, LowLevelCodeResolver
from .locks import CompanyRunLock
from .models import (
    ZERO,
    BomHeader,
    BomLine,
    DemandSource,
    MakeOrBuy,
    MrpPriority,
    MrpRecommendation,
    MrpRun,
    MrpRunStatus,
    Product,
    RecommendationType,
    can_cancel,
    can_transition,
)
from .net_change import NetChangeTracker, net_change_scope
from .netting import NetRequirementsCalculator
from .recommendations import RecommendationGenerator, product_lot_size
from .repositories import (
    BomRepository,
    InMemoryMasterData,
    InMemoryRunStore,
    ProductRepository,
    RunStore,
    SalesOrderRepository,
    ScheduledReceiptSource,
    StockRepository,
    WorkOrderDemandSource,
)
from .scheduling import LeadTimeScheduler

logger = logging.getLogger(__name__)

MAX_WARNING_EXAMPLES = 3


# ═══════════════════════════════════════════════════════════════════════════════
# REQUEST
# ═══════════════════════════════════════════════════════════════════════════════

class MrpRunRequest(BaseModel):
    """Validated invocation parameters."""
    company_id: int
    horizon_start: date
    horizon_end: date
    name: Optional[str] = Field(None, max_length=255)
    respect_lead_times: Optional[bool] = None
    include_safety_stock: Optional[bool] = None
    consider_wip: Optional[bool] = None
    net_change: bool = False
    product_filters: Dict[str, Any] = Field(default_factory=dict)
    warehouse_filters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("product_filters", mode="before")
    @classmethod
    def check_product_filters(cls, v):
        if v is None:
            return {}
        unknown = set(v) - {"product_ids", "make_or_buy"}
        if unknown:
            raise ValueError(f"Unknown product filters: {sorted(unknown)}")
        if "product_ids" in v:
            v = {**v, "product_ids": [int(pid) for pid in v["product_ids"]]}
        if "make_or_buy" in v:
            v = {**v, "make_or_buy": MakeOrBuy(v["make_or_buy"]).value}
        return v

    @field_validator("warehouse_filters", mode="before")
    @classmethod
    def check_warehouse_filters(cls, v):
        if v is None:
            return {}
        unknown = set(v) - {"include", "exclude"}
        if unknown:
            raise ValueError(f"Unknown warehouse filters: {sorted(unknown)}")
        return {key: [int(w) for w in ids] for key, ids in v.items()}

    @model_validator(mode="after")
    def check_horizon(self):
        if self.horizon_start >= self.horizon_end:
            raise ValueError("Planning horizon start must be before horizon end")
        return self


def validate_request(**kwargs: Any) -> MrpRunRequest:
    """Build a request, mapping pydantic errors to MRPValidationError."""
    try:
        return MrpRunRequest(**kwargs)
    except ValidationError as e:
        messages = [err["msg"] for err in e.errors()]
        raise MRPValidationError("; ".join(messages), messages) from e


def validate_deadline(deadline: Optional[datetime]) -> None:
    """Deadlines are compared with the aware engine clock."""
    if deadline is not None and deadline.tzinfo is None:
        message = "Deadline must be timezone-aware"
        raise MRPValidationError(message, [message])


# ═══════════════════════════════════════════════════════════════════════════════
# RUN CONTROL
# ═══════════════════════════════════════════════════════════════════════════════

class CancellationToken:
    """Cooperative cancellation flag, checked between products."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Cancelled by request") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


class WarningCollector:
    """Non-fatal findings grouped by type, with a few examples each."""

    def __init__(self, max_examples: int = MAX_WARNING_EXAMPLES):
        self.max_examples = max_examples
        self._groups: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def add(self, warning_type: str, example: str) -> None:
        with self._lock:
            group = self._groups.setdefault(warning_type, {"count": 0, "examples": []})
            group["count"] += 1
            if len(group["examples"]) < self.max_examples:
                group["examples"].append(example)

    @property
    def count(self) -> int:
        return sum(g["count"] for g in self._groups.values())

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            return {k: {"count": g["count"], "examples": list(g["examples"])} for k, g in self._groups.items()}


@dataclass
class ProductPlan:
    """Output of planning one product, committed by the run loop."""
    product_id: int
    recommendations: List[MrpRecommendation] = field(default_factory=list)
    dependent_demand: List[GrossRequirement] = field(default_factory=list)


@dataclass
class _RunContext:
    run: MrpRun
    today: date
    products: Dict[int, Product]
    in_scope: Set[int]
    explosion_boms: Dict[int, BomHeader]
    bom_lines: Dict[int, List[BomLine]]
    aggregator: DemandAggregator
    calculator: NetRequirementsCalculator
    scheduler: LeadTimeScheduler
    generator: RecommendationGenerator
    warnings: WarningCollector


class _StopRun(Exception):
    """Internal: cancellation or deadline observed between products."""


# ═══════════════════════════════════════════════════════════════════════════════
# SERVICE
# ═══════════════════════════════════════════════════════════════════════════════

class MRPService:
    """
    MRP engine entry point.

    Usage:
        service = MRPService.from_master_data(data, calendar)
        run = service.run_mrp(company_id=1, horizon_start=date(2025, 1, 1),
                              horizon_end=date(2025, 3, 31))
        for rec in run.recommendations:
            print(rec.product_id, rec.quantity, rec.order_date)
    """

    def __init__(
        self,
        products: ProductRepository,
        boms: BomRepository,
        stock: StockRepository,
        sales_orders: SalesOrderRepository,
        receipts: ScheduledReceiptSource,
        calendar: Optional[CalendarProvider] = None,
        run_store: Optional[RunStore] = None,
        config: Optional[MRPConfig] = None,
        lock: Optional[CompanyRunLock] = None,
        llc_cache: Optional[LLCCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
        work_orders: Optional[WorkOrderDemandSource] = None,
        net_change_tracker: Optional[NetChangeTracker] = None,
    ):
        self.config = config or get_config()
        self.products = products
        self.boms = boms
        self.stock = stock
        self.sales_orders = sales_orders
        self.receipts = receipts
        self.work_orders = work_orders
        self.calendar = calendar or CompanyCalendar(self.config.working_weekdays)
        self.run_store = run_store or InMemoryRunStore()
        self.lock = lock or CompanyRunLock()
        if llc_cache is None and self.config.llc_cache_enabled:
            llc_cache = LLCCache()
        self.llc_cache = llc_cache
        self.resolver = LowLevelCodeResolver(llc_cache)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.net_change_tracker = net_change_tracker or NetChangeTracker()

        self._tokens: Dict[int, CancellationToken] = {}
        self._state_lock = threading.Lock()

    @classmethod
    def from_master_data(
        cls,
        data: InMemoryMasterData,
        calendar: Optional[CalendarProvider] = None,
        **kwargs: Any,
    ) -> "MRPService":
        kwargs.setdefault("work_orders", data)
        return cls(data, data, data, data, data, calendar=calendar, **kwargs)

    def today(self) -> date:
        return self.clock().date()

    # ═══════════════════════════════════════════════════════════════════════════
    # ENTRY POINTS
    # ═══════════════════════════════════════════════════════════════════════════

    def run_mrp(
        self,
        company_id: int,
        horizon_start: date,
        horizon_end: date,
        name: Optional[str] = None,
        respect_lead_times: Optional[bool] = None,
        include_safety_stock: Optional[bool] = None,
        consider_wip: Optional[bool] = None,
        net_change: bool = False,
        product_filters: Optional[Dict[str, Any]] = None,
        warehouse_filters: Optional[Dict[str, Any]] = None,
        deadline: Optional[datetime] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> MrpRun:
        """
        Validate, lock and execute a run synchronously.

        Raises:
            MRPValidationError: invalid inputs (no run record is created)
            ConcurrentRunError: the company already has an active run

        Any later error is recorded on the returned run (status failed).
        """
        request = validate_request(
            company_id=company_id,
            horizon_start=horizon_start,
            horizon_end=horizon_end,
            name=name,
            respect_lead_times=respect_lead_times,
            include_safety_stock=include_safety_stock,
            consider_wip=consider_wip,
            net_change=net_change,
            product_filters=product_filters,
            warehouse_filters=warehouse_filters,
        )
        validate_deadline(deadline)

        owner: Any = f"invocation-{uuid.uuid4().hex[:8]}"
        if not self.lock.try_acquire(company_id, owner):
            active = self.lock.owner(company_id)
            logger.warning(f"Rejected MRP run for company {company_id}: run {active} is active")
            raise ConcurrentRunError(company_id, active if isinstance(active, int) else None)

        try:
            run = self._create_record(request)
            self.lock.transfer(company_id, owner, run.id)
            owner = run.id
            token = self._register_token(run.id, cancellation)
            return self._execute(run, token, deadline)
        finally:
            self.lock.release(company_id, owner)

    def create_run(
        self,
        company_id: int,
        horizon_start: date,
        horizon_end: date,
        **options: Any,
    ) -> MrpRun:
        """Validate and store a pending run for later execute_run()."""
        request = validate_request(
            company_id=company_id,
            horizon_start=horizon_start,
            horizon_end=horizon_end,
            **options,
        )
        run = self._create_record(request)
        self._register_token(run.id, None)
        return run

    def execute_run(self, run_id: int, deadline: Optional[datetime] = None) -> MrpRun:
        """
        Execute a pending run, waiting up to lock_timeout_seconds for the
        company lock.
        """
        validate_deadline(deadline)
        run = self._load(run_id, with_recommendations=False)
        if run.status == MrpRunStatus.CANCELLED:
            logger.info(f"MRP run {run_id} was cancelled before execution")
            return self._load(run_id)
        if run.status != MrpRunStatus.PENDING:
            raise InvalidTransitionError(run.status.value, MrpRunStatus.RUNNING.value)

        token = self._register_token(run.id, self._tokens.get(run.id))
        try:
            self.lock.acquire(run.company_id, run.id, timeout=self.config.lock_timeout_seconds)
        except LockTimeoutError as e:
            self._tokens.pop(run.id, None)
            self._fail(run, e)
            return self._load(run_id)

        try:
            return self._execute(run, token, deadline)
        finally:
            self.lock.release(run.company_id, run.id)

    def cancel_run(self, run_id: int, reason: str = "Cancelled by request") -> MrpRun:
        """
        Request cancellation of a pending or running run.

        A pending run is cancelled immediately; a running run stops at the
        next product boundary. Recommendations already written are kept.
        """
        with self._state_lock:
            run = self._load(run_id, with_recommendations=False)
            if not can_cancel(run.status):
                raise InvalidTransitionError(run.status.value, MrpRunStatus.CANCELLED.value)

            token = self._tokens.get(run_id)
            if token is not None:
                token.cancel(reason)

            if run.status == MrpRunStatus.PENDING:
                run.status = MrpRunStatus.CANCELLED
                run.failure_reason = reason
                run.completed_at = self.clock()
                self.run_store.update_run(run)
                self._tokens.pop(run_id, None)

        logger.warning(f"Cancellation requested for MRP run {run_id}: {reason}")
        return self._load(run_id)

    def get_run(self, run_id: int) -> MrpRun:
        return self._load(run_id)

    def list_recommendations(
        self,
        run_id: int,
        recommendation_type: Optional[RecommendationType] = None,
        priority: Optional[MrpPriority] = None,
        product_id: Optional[int] = None,
    ) -> List[MrpRecommendation]:
        return self.run_store.list_recommendations(run_id, recommendation_type, priority, product_id)

    def run_statistics(self, run_id: int) -> Dict[str, Any]:
        run = self._load(run_id, with_recommendations=False)
        stats = self.run_store.run_statistics(run_id)
        stats.update({
            "run_id": run.id,
            "run_number": run.run_number,
            "status": run.status.value,
            "products_total": run.products_total,
            "products_processed": run.products_processed,
            "warnings_count": run.warnings_count,
        })
        return stats

    # ═══════════════════════════════════════════════════════════════════════════
    # MASTER DATA CHANGES
    # ═══════════════════════════════════════════════════════════════════════════

    def invalidate_cache(self, company_id: int, product_id: Optional[int] = None) -> Set[int]:
        """
        Record a structural change (product, BOM or BOM line) of `product_id`.

        Cached low-level codes of the product and of everything above and
        below it are invalidated, and the product is marked dirty for the
        next net-change run. Without a product the company's whole LLC cache
        is dropped.

        Returns the product ids whose cached codes were invalidated.
        """
        if product_id is None:
            if self.llc_cache is not None:
                self.llc_cache.invalidate_company(company_id)
            return set()

        self.net_change_tracker.mark_dirty(company_id, product_id)
        if self.llc_cache is None:
            return set()
        return self.llc_cache.invalidate_subgraph(company_id, product_id)

    def mark_product_dirty(self, company_id: int, *product_ids: int) -> None:
        """Record a non-structural change (stock, demand, lead time, lot sizing)."""
        self.net_change_tracker.mark_dirty(company_id, *product_ids)

    def products_needing_attention(self, company_id: int, limit: int = 10) -> List[Dict[str, Any]]:
        """Active products whose available stock is below their reorder point."""
        result = []
        for product in self.products.list_products(company_id):
            if product.reorder_point <= 0:
                continue
            total_stock = sum((s.available for s in self.stock.stock_for(company_id, product.id)), ZERO)
            if not product.is_below_reorder_point(total_stock):
                continue
            result.append({
                "id": product.id,
                "sku": product.sku,
                "name": product.name,
                "current_stock": str(total_stock),
                "reorder_point": str(product.reorder_point),
                "safety_stock": str(product.safety_stock),
                "is_below_safety": product.is_below_safety_stock(total_stock),
            })
            if len(result) >= limit:
                break
        return result

    # ═══════════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    def _load(self, run_id: int, with_recommendations: bool = True) -> MrpRun:
        run = self.run_store.get_run(run_id, with_recommendations=with_recommendations)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def _register_token(self, run_id: int, token: Optional[CancellationToken]) -> CancellationToken:
        token = token or CancellationToken()
        self._tokens[run_id] = token
        return token

    def _create_record(self, request: MrpRunRequest) -> MrpRun:
        run = MrpRun(
            company_id=request.company_id,
            horizon_start=request.horizon_start,
            horizon_end=request.horizon_end,
            run_number=self.run_store.next_run_number(request.company_id),
            name=request.name,
            status=MrpRunStatus.PENDING,
            respect_lead_times=self._option(request.respect_lead_times, self.config.respect_lead_times),
            include_safety_stock=self._option(request.include_safety_stock, self.config.include_safety_stock),
            consider_wip=self._option(request.consider_wip, self.config.consider_wip),
            net_change=request.net_change,
            product_filters=dict(request.product_filters),
            warehouse_filters=dict(request.warehouse_filters),
            created_at=self.clock(),
        )
        run = self.run_store.create_run(run)
        logger.info(
            f"Created MRP run {run.id} ({run.run_number}) for company {run.company_id}, "
            f"horizon {run.horizon_start} - {run.horizon_end}"
        )
        return run

    @staticmethod
    def _option(value: Optional[bool], default: bool) -> bool:
        return default if value is None else value

    def _transition(self, run: MrpRun, target: MrpRunStatus) -> None:
        """Move a run to `target`, checking the stored status."""
        with self._state_lock:
            stored = self._load(run.id, with_recommendations=False)
            if not can_transition(stored.status, target):
                raise InvalidTransitionError(stored.status.value, target.value)
            run.status = target
            if target == MrpRunStatus.RUNNING:
                run.started_at = self.clock()
            else:
                run.completed_at = self.clock()
            self.run_store.update_run(run)

    def _fail(self, run: MrpRun, error: BaseException) -> None:
        run.failure_reason = str(error) or error.__class__.__name__
        try:
            self._transition(run, MrpRunStatus.FAILED)
        except InvalidTransitionError:
            logger.error(f"MRP run {run.id} could not be marked failed from its current state")
            return
        logger.error(f"MRP run {run.id} failed: {run.failure_reason}")

    def _execute(self, run: MrpRun, token: CancellationToken, deadline: Optional[datetime]) -> MrpRun:
        warnings = WarningCollector()
        try:
            try:
                self._transition(run, MrpRunStatus.RUNNING)
            except InvalidTransitionError:
                current = self._load(run.id, with_recommendations=False)
                if current.status == MrpRunStatus.CANCELLED:
                    return self._load(run.id)
                raise

            logger.info(f"MRP run {run.id} started for company {run.company_id}")
            replanned = self._plan(run, token, deadline, warnings)

            run.warnings_count = warnings.count
            run.warnings_summary = warnings.summary()
            self._transition(run, MrpRunStatus.COMPLETED)
            self.net_change_tracker.clear(run.company_id, replanned)
            logger.info(
                f"MRP run {run.id} completed: {run.products_processed} products, "
                f"{run.recommendations_count} recommendations, {run.warnings_count} warnings"
            )
        except _StopRun:
            run.warnings_count = warnings.count
            run.warnings_summary = warnings.summary()
            run.failure_reason = token.reason
            self._transition(run, MrpRunStatus.CANCELLED)
            logger.warning(
                f"MRP run {run.id} cancelled after {run.products_processed}/{run.products_total} products: "
                f"{token.reason}"
            )
        except MRPError as e:
            run.warnings_count = warnings.count
            run.warnings_summary = warnings.summary()
            self._fail(run, e)
        except Exception as e:
            logger.exception(f"Unexpected error in MRP run {run.id}")
            run.warnings_count = warnings.count
            run.warnings_summary = warnings.summary()
            self._fail(run, e)
        finally:
            self._tokens.pop(run.id, None)

        return self._load(run.id)

    def _check_stop(self, token: CancellationToken, deadline: Optional[datetime]) -> None:
        if deadline is not None and not token.is_cancelled and self.clock() >= deadline:
            token.cancel(f"Deadline {deadline.isoformat()} exceeded")
        if token.is_cancelled:
            raise _StopRun()

    # ═══════════════════════════════════════════════════════════════════════════
    # PLANNING
    # ═══════════════════════════════════════════════════════════════════════════

    def _plan(
        self,
        run: MrpRun,
        token: CancellationToken,
        deadline: Optional[datetime],
        warnings: WarningCollector,
    ) -> Set[int]:
        """Plan every product in LLC order. Returns the dirty products re-planned."""
        self._check_stop(token, deadline)
        company_id = run.company_id
        products = {p.id: p for p in self.products.list_products(company_id)}
        in_scope = self._select_products(run, products)
        dirty = self.net_change_tracker.dirty_products(company_id) & set(products)

        graph, explosion_boms, bom_lines = self._build_graph(company_id, products, warnings)
        llc = self.resolver.resolve(company_id, graph)
        self.products.update_low_level_codes(
            company_id, {pid: code for pid, code in llc.codes.items() if pid in products}
        )

        planned = set(products)
        if run.net_change:
            affected, planned = self._net_change_scope(run, graph, products, dirty)
            in_scope &= affected

        aggregator = DemandAggregator(run.horizon_start, run.horizon_end)
        sales_lines = []
        for line in self.sales_orders.confirmed_lines(company_id, run.horizon_start, run.horizon_end):
            if line.product_id not in products:
                warnings.add("demand_for_unknown_product", f"Sales line {line.source_id} for product {line.product_id}")
                continue
            sales_lines.append(line)
        accepted = aggregator.add_independent(sales_lines)

        if run.consider_wip and self.work_orders is not None:
            material_lines = []
            for line in self.work_orders.open_material_demand(company_id, run.horizon_start, run.horizon_end):
                if line.product_id not in products:
                    warnings.add(
                        "demand_for_unknown_product",
                        f"Work order {line.source_id} material {line.product_id}",
                    )
                    continue
                material_lines.append(line)
            accepted += aggregator.add_independent(material_lines, DemandSource.WORK_ORDER)

        ctx = _RunContext(
            run=run,
            today=self.today(),
            products=products,
            in_scope=in_scope,
            explosion_boms=explosion_boms,
            bom_lines=bom_lines,
            aggregator=aggregator,
            calculator=NetRequirementsCalculator(run.include_safety_stock, run.consider_wip),
            scheduler=LeadTimeScheduler(self.calendar, self.config.max_calendar_lookback_days),
            generator=RecommendationGenerator(self.today()),
            warnings=warnings,
        )

        tiers = [[pid for pid in tier if pid in planned] for tier in llc.tiers()]
        tiers = [tier for tier in tiers if tier]
        run.products_total = sum(len(t) for t in tiers)
        run.products_processed = 0
        self.run_store.update_run(run)
        logger.info(
            f"MRP run {run.id}: {run.products_total} products in {len(tiers)} levels, "
            f"{accepted} independent demand lines"
        )

        workers = max(1, int(self.config.max_workers))
        executor = ThreadPoolExecutor(max_workers=workers) if workers > 1 else None
        try:
            for tier in tiers:
                if executor is not None and len(tier) > 1:
                    self._check_stop(token, deadline)
                    plans = list(executor.map(lambda pid: self._plan_product(ctx, pid), tier))
                    for plan in plans:
                        self._check_stop(token, deadline)
                        self._commit(ctx, plan)
                else:
                    for pid in tier:
                        self._check_stop(token, deadline)
                        self._commit(ctx, self._plan_product(ctx, pid))
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        return dirty & in_scope

    def _net_change_scope(
        self,
        run: MrpRun,
        graph: BomGraph,
        products: Dict[int, Product],
        dirty: Set[int],
    ) -> Tuple[Set[int], Set[int]]:
        """(products getting recommendations, products to net) of a net-change run."""
        everything = set(products)
        if not self.net_change_tracker.should_use_incremental(
            run.company_id, len(products), self.config.incremental_max_dirty_ratio
        ):
            logger.info(
                f"MRP run {run.id}: {len(dirty)} of {len(products)} products dirty, running full MRP"
            )
            return everything, everything

        affected, planned = net_change_scope(graph, dirty)
        affected &= everything
        planned &= everything
        logger.info(
            f"MRP run {run.id}: net change over {len(dirty)} dirty products, "
            f"{len(affected)} affected, {len(planned)} netted"
        )
        return affected, planned

    def _select_products(self, run: MrpRun, products: Dict[int, Product]) -> Set[int]:
        """Products that may receive recommendations."""
        selected = set(products)
        filters = run.product_filters or {}
        if filters.get("product_ids"):
            selected &= set(filters["product_ids"])
        if filters.get("make_or_buy"):
            wanted = MakeOrBuy(filters["make_or_buy"])
            selected = {pid for pid in selected if products[pid].make_or_buy == wanted}
        return selected

    def _build_graph(
        self,
        company_id: int,
        products: Dict[int, Product],
        warnings: WarningCollector,
    ):
        """Participating BOM edges, plus the BOM each product explodes through."""
        edges: List[BomEdge] = []
        candidates: Dict[int, List[BomHeader]] = {}
        bom_lines: Dict[int, List[BomLine]] = {}

        for header in self.boms.list_headers(company_id):
            if header.product_id not in products:
                continue
            if not header.participates:
                warnings.add(
                    "excluded_bom",
                    f"BOM {header.bom_number or header.id} of product {header.product_id} "
                    f"is {header.status.value}/{header.bom_type.value}",
                )
                continue
            if header.quantity <= 0:
                warnings.add(
                    "invalid_bom_quantity",
                    f"BOM {header.bom_number or header.id} of product {header.product_id} "
                    f"has base quantity {header.quantity}",
                )
                continue
            lines = []
            for line in self.boms.lines_for(company_id, header.id):
                if line.component_id not in products:
                    warnings.add(
                        "unknown_component",
                        f"BOM {header.id} line {line.line_number} references inactive product {line.component_id}",
                    )
                    continue
                lines.append(line)
                edges.append(BomEdge(header.product_id, line.component_id, header.id, line.id))
            bom_lines[header.id] = lines
            candidates.setdefault(header.product_id, []).append(header)

        explosion_boms = {
            pid: sorted(headers, key=lambda h: (not h.is_default, h.id))[0]
            for pid, headers in candidates.items()
        }
        for product in products.values():
            if product.make_or_buy == MakeOrBuy.MAKE and product.id not in explosion_boms:
                warnings.add("make_without_bom", f"Product {product.sku} ({product.id}) has no active BOM")

        return BomGraph(edges, products.keys()), explosion_boms, bom_lines

    def _plan_product(self, ctx: _RunContext, product_id: int) -> ProductPlan:
        """Net, schedule and explode one product. Touches no shared state."""
        product = ctx.products[product_id]
        plan = ProductPlan(product_id=product_id)
        buckets = ctx.aggregator.buckets_for(product_id)
        if not buckets:
            return plan

        run = ctx.run
        header = ctx.explosion_boms.get(product_id)
        lines = ctx.bom_lines.get(header.id, []) if header else []

        try:
            if header is not None and header.is_phantom:
                for bucket in buckets:
                    plan.dependent_demand.extend(
                        explode_bom(product_id, header, lines, bucket.quantity, bucket.bucket_date)
                    )
                return plan

            position = ctx.calculator.supply_position(
                product,
                self.stock.stock_for(run.company_id, product_id),
                self.receipts.open_receipts(run.company_id, product_id),
                run.warehouse_filters,
            )
            requirements = ctx.calculator.calculate(
                product, buckets, position, lot_sizer=lambda net: product_lot_size(product, net)
            )

            for requirement in requirements:
                schedule = ctx.scheduler.schedule(
                    run.company_id,
                    requirement.required_date,
                    product.lead_time_days,
                    ctx.today,
                    run.respect_lead_times,
                )
                if product_id in ctx.in_scope:
                    plan.recommendations.append(
                        ctx.generator.generate(run.id, run.company_id, product, requirement, schedule)
                    )
                if header is not None and product.make_or_buy == MakeOrBuy.MAKE:
                    plan.dependent_demand.extend(
                        explode_bom(product_id, header, lines, requirement.planned_quantity, schedule.release_date)
                    )
        except MRPError:
            raise
        except Exception as e:
            raise ProductComputationError(product_id, str(e)) from e

        return plan

    def _commit(self, ctx: _RunContext, plan: ProductPlan) -> None:
        """Serial write-back of one product's results."""
        run = ctx.run
        ctx.aggregator.add_dependent(plan.dependent_demand)
        if plan.recommendations:
            self.run_store.add_recommendations(run.id, plan.recommendations)
            run.recommendations_count += len(plan.recommendations)

        run.products_processed += 1
        run.warnings_count = ctx.warnings.count
        self.run_store.update_run(run)

        every = max(1, self.config.progress_every)
        if run.products_processed % every == 0 or run.products_processed == run.products_total:
            logger.info(
                f"MRP run {run.id} progress: {run.products_processed}/{run.products_total} products, "
                f"{run.recommendations_count} recommendations"
            )
