"""
MRP Engine - Repositories
=========================

Data-access boundary of the engine. Every call takes the company id
explicitly; there is no ambient tenant context.

Read side (owned by the surrounding ERP):
- ProductRepository (write access limited to low_level_code)
- BomRepository
- StockRepository
- SalesOrderRepository
- ScheduledReceiptSource
- WorkOrderDemandSource

Write side (owned by the engine):
- RunStore: MrpRun and MrpRecommendation records

In-memory implementations are provided for embedding and tests; master data
can be bulk-loaded from pandas DataFrames.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from .models import (
    ZERO,
    BomHeader,
    BomLine,
    BomStatus,
    BomType,
    IndependentDemandLine,
    MakeOrBuy,
    MrpPriority,
    MrpRecommendation,
    MrpRun,
    NegativeStockPolicy,
    Product,
    ReceiptSource,
    RecommendationType,
    ScheduledReceipt,
    StockRecord,
    priority_sort_order,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# INTERFACES
# ═══════════════════════════════════════════════════════════════════════════════

class ProductRepository(ABC):
    @abstractmethod
    def list_products(self, company_id: int) -> List[Product]:
        """Active products of a company."""

    @abstractmethod
    def update_low_level_codes(self, company_id: int, codes: Dict[int, int]) -> None:
        """Persist the cached low-level codes."""


class BomRepository(ABC):
    @abstractmethod
    def list_headers(self, company_id: int) -> List[BomHeader]:
        """All BOM headers of a company, whatever their status."""

    @abstractmethod
    def lines_for(self, company_id: int, bom_id: int) -> List[BomLine]:
        pass


class StockRepository(ABC):
    @abstractmethod
    def stock_for(self, company_id: int, product_id: int) -> List[StockRecord]:
        pass


class SalesOrderRepository(ABC):
    @abstractmethod
    def confirmed_lines(self, company_id: int, start: date, end: date) -> List[IndependentDemandLine]:
        """Confirmed sales-order lines due within [start, end]."""


class ScheduledReceiptSource(ABC):
    @abstractmethod
    def open_receipts(self, company_id: int, product_id: int) -> List[ScheduledReceipt]:
        pass


class WorkOrderDemandSource(ABC):
    @abstractmethod
    def open_material_demand(self, company_id: int, start: date, end: date) -> List[IndependentDemandLine]:
        """Unissued materials of released work orders starting within [start, end]."""


class RunStore(ABC):
    """Persistence of runs and their recommendations."""

    @abstractmethod
    def next_run_number(self, company_id: int) -> str:
        pass

    @abstractmethod
    def create_run(self, run: MrpRun) -> MrpRun:
        """Store a new run, assigning its id."""

    @abstractmethod
    def update_run(self, run: MrpRun) -> None:
        """Store status, counters and timestamps of an existing run."""

    @abstractmethod
    def get_run(self, run_id: int, with_recommendations: bool = True) -> Optional[MrpRun]:
        pass

    @abstractmethod
    def list_runs(self, company_id: int) -> List[MrpRun]:
        pass

    @abstractmethod
    def add_recommendations(self, run_id: int, recommendations: List[MrpRecommendation]) -> List[MrpRecommendation]:
        """Store recommendations, assigning their ids."""

    @abstractmethod
    def list_recommendations(
        self,
        run_id: int,
        recommendation_type: Optional[RecommendationType] = None,
        priority: Optional[MrpPriority] = None,
        product_id: Optional[int] = None,
    ) -> List[MrpRecommendation]:
        pass

    def run_statistics(self, run_id: int) -> Dict[str, Any]:
        return recommendation_statistics(self.list_recommendations(run_id))


def run_number(company_id: int, sequence: int) -> str:
    return f"MRP-{company_id}-{sequence:05d}"


def sort_recommendations(recommendations: Iterable[MrpRecommendation]) -> List[MrpRecommendation]:
    """Critical first, then by required date."""
    return sorted(
        recommendations,
        key=lambda r: (priority_sort_order(r.priority), r.required_date, r.product_id, r.order_date),
    )


def filter_recommendations(
    recommendations: Iterable[MrpRecommendation],
    recommendation_type: Optional[RecommendationType] = None,
    priority: Optional[MrpPriority] = None,
    product_id: Optional[int] = None,
) -> List[MrpRecommendation]:
    result = []
    for rec in recommendations:
        if recommendation_type is not None and rec.recommendation_type != recommendation_type:
            continue
        if priority is not None and rec.priority != priority:
            continue
        if product_id is not None and rec.product_id != product_id:
            continue
        result.append(rec)
    return sort_recommendations(result)


def recommendation_statistics(recommendations: Iterable[MrpRecommendation]) -> Dict[str, Any]:
    by_type: Dict[str, int] = defaultdict(int)
    by_priority: Dict[str, int] = defaultdict(int)
    total = 0
    urgent = 0
    quantity = ZERO
    for rec in recommendations:
        total += 1
        by_type[rec.recommendation_type.value] += 1
        by_priority[rec.priority.value] += 1
        quantity += rec.quantity
        if rec.is_urgent:
            urgent += 1
    return {
        "total": total,
        "urgent": urgent,
        "total_quantity": str(quantity),
        "by_type": dict(by_type),
        "by_priority": dict(by_priority),
    }


# ═══════════════════════════════════════════════════════════════════════════════
# IN-MEMORY MASTER DATA
# ═══════════════════════════════════════════════════════════════════════════════

def _dec(value: Any, default: Decimal = ZERO) -> Decimal:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return default
    return Decimal(str(value))


def _opt_dec(value: Any) -> Optional[Decimal]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    return Decimal(str(value))


def _int(value: Any, default: int = 0) -> int:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return default
    return int(value)


def _flag(value: Any, default: bool) -> bool:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return default
    return bool(value)


def _text(value: Any, default: str) -> str:
    if value is None or (isinstance(value, float) and pd.isna(value)) or value == "":
        return default
    return str(value)


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.Timestamp(value).date()


class InMemoryMasterData(
    ProductRepository,
    BomRepository,
    StockRepository,
    SalesOrderRepository,
    ScheduledReceiptSource,
    WorkOrderDemandSource,
):
    """
    All read-side repositories over plain dicts.

    Usage:
        data = InMemoryMasterData()
        data.add_product(Product(id=1, company_id=1, sku="FG-1"))
        data.add_bom(BomHeader(id=1, company_id=1, product_id=1), [BomLine(...)])
    """

    def __init__(self):
        self._products: Dict[int, Dict[int, Product]] = defaultdict(dict)
        self._headers: Dict[int, Dict[int, BomHeader]] = defaultdict(dict)
        self._lines: Dict[int, List[BomLine]] = defaultdict(list)
        self._stock: Dict[int, Dict[int, List[StockRecord]]] = defaultdict(lambda: defaultdict(list))
        self._sales: Dict[int, List[IndependentDemandLine]] = defaultdict(list)
        self._receipts: Dict[int, Dict[int, List[ScheduledReceipt]]] = defaultdict(lambda: defaultdict(list))
        self._work_order_demand: Dict[int, List[IndependentDemandLine]] = defaultdict(list)
        self._lock = threading.Lock()

    # --- mutation -----------------------------------------------------------

    def add_product(self, product: Product) -> Product:
        with self._lock:
            self._products[product.company_id][product.id] = product
        return product

    def add_bom(self, header: BomHeader, lines: Iterable[BomLine] = ()) -> BomHeader:
        with self._lock:
            self._headers[header.company_id][header.id] = header
            for line in lines:
                self._lines[header.id].append(line)
        return header

    def add_bom_line(self, line: BomLine) -> None:
        with self._lock:
            self._lines[line.bom_id].append(line)

    def add_stock(self, company_id: int, record: StockRecord) -> None:
        with self._lock:
            self._stock[company_id][record.product_id].append(record)

    def add_sales_line(self, company_id: int, line: IndependentDemandLine) -> None:
        with self._lock:
            self._sales[company_id].append(line)

    def add_receipt(self, company_id: int, receipt: ScheduledReceipt) -> None:
        with self._lock:
            self._receipts[company_id][receipt.product_id].append(receipt)

    def add_work_order_demand(self, company_id: int, line: IndependentDemandLine) -> None:
        """`line.source_id` is the work order id."""
        with self._lock:
            self._work_order_demand[company_id].append(line)

    # --- repository interfaces ---------------------------------------------

    def get_product(self, company_id: int, product_id: int) -> Optional[Product]:
        return self._products[company_id].get(product_id)

    def list_products(self, company_id: int) -> List[Product]:
        with self._lock:
            products = list(self._products[company_id].values())
        return sorted((p for p in products if p.is_active), key=lambda p: p.id)

    def update_low_level_codes(self, company_id: int, codes: Dict[int, int]) -> None:
        with self._lock:
            for product_id, code in codes.items():
                product = self._products[company_id].get(product_id)
                if product is not None:
                    product.low_level_code = code

    def list_headers(self, company_id: int) -> List[BomHeader]:
        with self._lock:
            return sorted(self._headers[company_id].values(), key=lambda h: h.id)

    def lines_for(self, company_id: int, bom_id: int) -> List[BomLine]:
        with self._lock:
            if bom_id not in self._headers[company_id]:
                return []
            return sorted(self._lines.get(bom_id, ()), key=lambda l: (l.line_number, l.id))

    def stock_for(self, company_id: int, product_id: int) -> List[StockRecord]:
        with self._lock:
            return list(self._stock[company_id].get(product_id, ()))

    def confirmed_lines(self, company_id: int, start: date, end: date) -> List[IndependentDemandLine]:
        with self._lock:
            lines = list(self._sales[company_id])
        return [l for l in lines if start <= l.required_date <= end]

    def open_receipts(self, company_id: int, product_id: int) -> List[ScheduledReceipt]:
        with self._lock:
            return list(self._receipts[company_id].get(product_id, ()))

    def open_material_demand(self, company_id: int, start: date, end: date) -> List[IndependentDemandLine]:
        with self._lock:
            lines = list(self._work_order_demand[company_id])
        return [l for l in lines if start <= l.required_date <= end]

    # --- pandas loaders ----------------------------------------------------

    def load_products_frame(self, company_id: int, df: pd.DataFrame) -> int:
        """
        Columns: id, sku, and optionally name, make_or_buy, lead_time_days,
        safety_stock, reorder_point, minimum_order_qty, order_multiple,
        negative_stock_policy, negative_stock_limit, is_active.
        """
        count = 0
        for _, row in df.iterrows():
            self.add_product(Product(
                id=int(row["id"]),
                company_id=company_id,
                sku=str(row["sku"]),
                name=str(row.get("name", "") or ""),
                make_or_buy=MakeOrBuy(_text(row.get("make_or_buy"), "buy")),
                lead_time_days=_int(row.get("lead_time_days")),
                safety_stock=_dec(row.get("safety_stock")),
                reorder_point=_dec(row.get("reorder_point")),
                minimum_order_qty=_dec(row.get("minimum_order_qty")),
                order_multiple=_opt_dec(row.get("order_multiple")),
                negative_stock_policy=NegativeStockPolicy(_text(row.get("negative_stock_policy"), "never")),
                negative_stock_limit=_dec(row.get("negative_stock_limit")),
                is_active=_flag(row.get("is_active"), True),
            ))
            count += 1
        logger.info(f"Loaded {count} products for company {company_id}")
        return count

    def load_bom_frame(self, company_id: int, df: pd.DataFrame) -> int:
        """
        One row per BOM line. Columns: bom_id, product_id, component_id,
        quantity_per, and optionally line_id, line_number, scrap_percentage,
        status, bom_type, bom_quantity, is_default.
        """
        count = 0
        for i, (_, row) in enumerate(df.iterrows(), start=1):
            bom_id = int(row["bom_id"])
            with self._lock:
                known = bom_id in self._headers[company_id]
            if not known:
                self.add_bom(BomHeader(
                    id=bom_id,
                    company_id=company_id,
                    product_id=int(row["product_id"]),
                    status=BomStatus(_text(row.get("status"), "active")),
                    bom_type=BomType(_text(row.get("bom_type"), "manufacturing")),
                    quantity=_dec(row.get("bom_quantity"), Decimal(1)),
                    is_default=_flag(row.get("is_default"), False),
                ))
            self.add_bom_line(BomLine(
                id=_int(row.get("line_id"), i),
                bom_id=bom_id,
                component_id=int(row["component_id"]),
                quantity_per=_dec(row["quantity_per"]),
                line_number=_int(row.get("line_number"), i),
                scrap_percentage=_dec(row.get("scrap_percentage")),
            ))
            count += 1
        logger.info(f"Loaded {count} BOM lines for company {company_id}")
        return count

    def load_stock_frame(self, company_id: int, df: pd.DataFrame) -> int:
        """Columns: product_id, warehouse_id, quantity_on_hand, quantity_reserved."""
        for _, row in df.iterrows():
            self.add_stock(company_id, StockRecord(
                product_id=int(row["product_id"]),
                warehouse_id=int(row["warehouse_id"]),
                quantity_on_hand=_dec(row.get("quantity_on_hand")),
                quantity_reserved=_dec(row.get("quantity_reserved")),
            ))
        return len(df)

    def load_sales_frame(self, company_id: int, df: pd.DataFrame) -> int:
        """Columns: product_id, quantity, required_date, and optionally source_id."""
        for _, row in df.iterrows():
            source_id = row.get("source_id")
            self.add_sales_line(company_id, IndependentDemandLine(
                product_id=int(row["product_id"]),
                quantity=_dec(row["quantity"]),
                required_date=_to_date(row["required_date"]),
                source_id=int(source_id) if source_id is not None and not pd.isna(source_id) else None,
            ))
        return len(df)

    def load_receipts_frame(self, company_id: int, df: pd.DataFrame) -> int:
        """Columns: product_id, quantity, expected_date, and optionally source, source_id."""
        for _, row in df.iterrows():
            source_id = row.get("source_id")
            self.add_receipt(company_id, ScheduledReceipt(
                product_id=int(row["product_id"]),
                quantity=_dec(row["quantity"]),
                expected_date=_to_date(row["expected_date"]),
                source=ReceiptSource(_text(row.get("source"), "purchase_order")),
                source_id=int(source_id) if source_id is not None and not pd.isna(source_id) else None,
            ))
        return len(df)


# ═══════════════════════════════════════════════════════════════════════════════
# IN-MEMORY RUN STORE
# ═══════════════════════════════════════════════════════════════════════════════

class InMemoryRunStore(RunStore):
    """
    RunStore over dicts. Records are copied in and out, so callers never
    share state with the store.
    """

    def __init__(self):
        self._runs: Dict[int, MrpRun] = {}
        self._recommendations: Dict[int, List[MrpRecommendation]] = defaultdict(list)
        self._sequences: Dict[int, int] = defaultdict(int)
        self._next_run_id = 1
        self._next_rec_id = 1
        self._lock = threading.Lock()

    def next_run_number(self, company_id: int) -> str:
        with self._lock:
            self._sequences[company_id] += 1
            return run_number(company_id, self._sequences[company_id])

    def create_run(self, run: MrpRun) -> MrpRun:
        with self._lock:
            run.id = self._next_run_id
            self._next_run_id += 1
            if run.created_at is None:
                run.created_at = datetime.now(timezone.utc)
            stored = copy.deepcopy(run)
            stored.recommendations = []
            self._runs[run.id] = stored
        return run

    def update_run(self, run: MrpRun) -> None:
        with self._lock:
            if run.id not in self._runs:
                raise KeyError(run.id)
            stored = copy.deepcopy(run)
            stored.recommendations = []
            self._runs[run.id] = stored

    def get_run(self, run_id: int, with_recommendations: bool = True) -> Optional[MrpRun]:
        with self._lock:
            stored = self._runs.get(run_id)
            if stored is None:
                return None
            run = copy.deepcopy(stored)
        if with_recommendations:
            run.recommendations = self.list_recommendations(run_id)
        return run

    def list_runs(self, company_id: int) -> List[MrpRun]:
        with self._lock:
            runs = [copy.deepcopy(r) for r in self._runs.values() if r.company_id == company_id]
        return sorted(runs, key=lambda r: r.id)

    def add_recommendations(self, run_id: int, recommendations: List[MrpRecommendation]) -> List[MrpRecommendation]:
        with self._lock:
            for rec in recommendations:
                rec.id = self._next_rec_id
                self._next_rec_id += 1
                self._recommendations[run_id].append(copy.deepcopy(rec))
        return recommendations

    def list_recommendations(
        self,
        run_id: int,
        recommendation_type: Optional[RecommendationType] = None,
        priority: Optional[MrpPriority] = None,
        product_id: Optional[int] = None,
    ) -> List[MrpRecommendation]:
        with self._lock:
            recs = [copy.deepcopy(r) for r in self._recommendations.get(run_id, ())]
        return filter_recommendations(recs, recommendation_type, priority, product_id)
