"""
Tests for run stores (in-memory and SQLAlchemy) and pandas loaders.
"""
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pandas as pd
import pytest

from mrp.db import SqlRunStore
from mrp.models import (
    BomStatus,
    MakeOrBuy,
    MrpPriority,
    MrpRecommendation,
    MrpRun,
    MrpRunStatus,
    RecommendationType,
)
from mrp.repositories import InMemoryMasterData, InMemoryRunStore

D = Decimal
COMPANY = 1
TODAY = date(2025, 6, 2)


def recommendation(run_id, product_id, priority, days, rtype=RecommendationType.PURCHASE_ORDER):
    return MrpRecommendation(
        run_id=run_id,
        company_id=COMPANY,
        product_id=product_id,
        recommendation_type=rtype,
        quantity=D("12.5"),
        order_date=TODAY,
        required_date=TODAY + timedelta(days=days),
        priority=priority,
        calculation_details={"lead_time_days": 3},
    )


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return InMemoryRunStore()
    return SqlRunStore.from_url("sqlite://")


class TestRunStore:
    """Both stores behave the same."""

    def test_run_round_trip(self, store):
        run = MrpRun(COMPANY, TODAY, TODAY + timedelta(days=30), run_number=store.next_run_number(COMPANY),
                     warehouse_filters={"include": [1]})
        store.create_run(run)
        assert run.id is not None

        run.status = MrpRunStatus.RUNNING
        run.products_total = 4
        run.warnings_summary = {"make_without_bom": {"count": 1, "examples": ["x"]}}
        store.update_run(run)

        loaded = store.get_run(run.id)
        assert loaded.status == MrpRunStatus.RUNNING
        assert loaded.products_total == 4
        assert loaded.run_number == "MRP-1-00001"
        assert loaded.warehouse_filters == {"include": [1]}
        assert loaded.warnings_summary["make_without_bom"]["count"] == 1

    def test_run_numbers_per_company(self, store):
        assert store.next_run_number(1) == "MRP-1-00001"
        assert store.next_run_number(1) == "MRP-1-00002"
        assert store.next_run_number(2) == "MRP-2-00001"

    def test_missing_run(self, store):
        assert store.get_run(404) is None

    def test_timestamps_are_utc_aware(self, store):
        run = store.create_run(MrpRun(COMPANY, TODAY, TODAY + timedelta(days=30), run_number="MRP-1-00005"))
        run.started_at = datetime(2025, 6, 2, 10, 0, tzinfo=timezone(timedelta(hours=2)))
        store.update_run(run)

        loaded = store.get_run(run.id)

        assert loaded.created_at.utcoffset() == timedelta(0)
        assert loaded.started_at == datetime(2025, 6, 2, 8, 0, tzinfo=timezone.utc)

    def test_net_change_flag_round_trip(self, store):
        run = store.create_run(MrpRun(COMPANY, TODAY, TODAY + timedelta(days=30), run_number="MRP-1-00003",
                                      net_change=True))
        assert store.get_run(run.id).net_change is True

    def test_quantities_stored_exactly(self, store):
        """A third of 10 keeps every digit of its Decimal context."""
        third = D(10) / D(3)
        run = store.create_run(MrpRun(COMPANY, TODAY, TODAY + timedelta(days=30), run_number="MRP-1-00004"))
        rec = recommendation(run.id, 1, MrpPriority.LOW, 5)
        rec.quantity = third
        rec.net_requirement = third
        rec.gross_requirement = third * 2
        store.add_recommendations(run.id, [rec])

        loaded = store.get_run(run.id).recommendations[0]

        assert loaded.quantity == third
        assert loaded.net_requirement == third
        assert loaded.gross_requirement == third * 2
        assert loaded.quantity * 3 != D(10)

    def test_recommendation_queries(self, store):
        run = store.create_run(MrpRun(COMPANY, TODAY, TODAY + timedelta(days=30), run_number="MRP-1-00009"))
        store.add_recommendations(run.id, [
            recommendation(run.id, 1, MrpPriority.LOW, 20),
            recommendation(run.id, 2, MrpPriority.CRITICAL, 9),
            recommendation(run.id, 3, MrpPriority.CRITICAL, 2, RecommendationType.WORK_ORDER),
        ])

        recs = store.list_recommendations(run.id)
        assert [r.product_id for r in recs] == [3, 2, 1]
        assert all(r.id is not None for r in recs)
        assert recs[0].quantity == D("12.5")
        assert recs[0].calculation_details == {"lead_time_days": 3}

        work = store.list_recommendations(run.id, recommendation_type=RecommendationType.WORK_ORDER)
        assert [r.product_id for r in work] == [3]
        assert [r.product_id for r in store.list_recommendations(run.id, product_id=1)] == [1]

        stats = store.run_statistics(run.id)
        assert stats["total"] == 3
        assert stats["by_priority"] == {"low": 1, "critical": 2}
        assert stats["by_type"]["purchase_order"] == 2

    def test_stored_run_is_a_copy(self):
        """Mutating a returned run does not change the in-memory store."""
        store = InMemoryRunStore()
        run = store.create_run(MrpRun(COMPANY, TODAY, TODAY + timedelta(days=3), run_number="R"))
        loaded = store.get_run(run.id)
        loaded.status = MrpRunStatus.FAILED
        assert store.get_run(run.id).status == MrpRunStatus.PENDING


class TestDataFrameLoaders:
    """Bulk loading master data with pandas."""

    def test_products_and_boms(self):
        data = InMemoryMasterData()
        data.load_products_frame(COMPANY, pd.DataFrame([
            {"id": 1, "sku": "FG", "make_or_buy": "make", "lead_time_days": 2, "safety_stock": 5.0},
            {"id": 2, "sku": "RM", "make_or_buy": "buy", "minimum_order_qty": 100, "order_multiple": None},
        ]))
        data.load_bom_frame(COMPANY, pd.DataFrame([
            {"bom_id": 10, "product_id": 1, "component_id": 2, "quantity_per": 2.5, "status": "draft"},
        ]))

        products = data.list_products(COMPANY)
        assert [p.make_or_buy for p in products] == [MakeOrBuy.MAKE, MakeOrBuy.BUY]
        assert products[0].safety_stock == D("5.0")
        assert products[1].order_multiple is None
        header = data.list_headers(COMPANY)[0]
        assert header.status == BomStatus.DRAFT
        assert data.lines_for(COMPANY, 10)[0].quantity_per == D("2.5")

    def test_stock_sales_receipts(self):
        data = InMemoryMasterData()
        data.load_stock_frame(COMPANY, pd.DataFrame([
            {"product_id": 1, "warehouse_id": 1, "quantity_on_hand": 10, "quantity_reserved": 2},
        ]))
        data.load_sales_frame(COMPANY, pd.DataFrame([
            {"product_id": 1, "quantity": 5, "required_date": "2025-06-10", "source_id": 7},
        ]))
        data.load_receipts_frame(COMPANY, pd.DataFrame([
            {"product_id": 1, "quantity": 3, "expected_date": pd.Timestamp("2025-06-05"), "source": "work_order"},
        ]))

        assert data.stock_for(COMPANY, 1)[0].available == D(8)
        lines = data.confirmed_lines(COMPANY, date(2025, 6, 1), date(2025, 6, 30))
        assert lines[0].required_date == date(2025, 6, 10)
        assert lines[0].source_id == 7
        assert data.open_receipts(COMPANY, 1)[0].expected_date == date(2025, 6, 5)
