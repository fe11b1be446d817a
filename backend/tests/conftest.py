"""
Shared fixtures for the MRP engine tests.
"""
import os
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from mrp.calendar import CompanyCalendar
from mrp.config import MRPConfig, reset_config
from mrp.models import (
    BomHeader,
    BomLine,
    IndependentDemandLine,
    MakeOrBuy,
    Product,
    StockRecord,
)
from mrp.orchestrator import MRPService
from mrp.repositories import InMemoryMasterData, InMemoryRunStore

COMPANY = 1
TODAY = date(2025, 6, 2)  # Monday


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """Keep MRP_* variables from the host out of the tests."""
    for key in list(os.environ):
        if key.startswith("MRP_"):
            monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def clock():
    """Fixed clock at 08:00 UTC on TODAY."""
    now = datetime(TODAY.year, TODAY.month, TODAY.day, 8, 0, tzinfo=timezone.utc)
    return lambda: now


@pytest.fixture
def config():
    return MRPConfig()


@pytest.fixture
def calendar():
    """Monday-Friday calendar."""
    return CompanyCalendar()


@pytest.fixture
def every_day_calendar():
    """Calendar where every weekday is a working day."""
    return CompanyCalendar(working_weekdays=range(7))


@pytest.fixture
def master_data():
    return InMemoryMasterData()


@pytest.fixture
def make_service(clock, config, calendar):
    """Factory: MRPService over master data with a fixed clock."""
    def _make(data, **kwargs):
        kwargs.setdefault("calendar", calendar)
        kwargs.setdefault("config", config)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("run_store", InMemoryRunStore())
        return MRPService.from_master_data(data, **kwargs)
    return _make


@pytest.fixture
def e2e_data(master_data):
    """
    Single bought product:
    reorder point 20, safety stock 10, on hand 15, MOQ 50, lead time 5,
    one sales line of 50 due in 10 days.
    """
    master_data.add_product(Product(
        id=1,
        company_id=COMPANY,
        sku="BUY-1",
        make_or_buy=MakeOrBuy.BUY,
        lead_time_days=5,
        safety_stock=Decimal("10"),
        reorder_point=Decimal("20"),
        minimum_order_qty=Decimal("50"),
    ))
    master_data.add_stock(COMPANY, StockRecord(1, warehouse_id=1, quantity_on_hand=Decimal("15")))
    master_data.add_sales_line(COMPANY, IndependentDemandLine(
        product_id=1,
        quantity=Decimal("50"),
        required_date=TODAY + timedelta(days=10),
        source_id=501,
    ))
    return master_data


@pytest.fixture
def three_level_data(master_data):
    """
    FG (10) -> SA (20) x1 -> RM (30) x2, nothing in stock, no lead times,
    10 FG demanded in two weeks.
    """
    master_data.add_product(Product(id=10, company_id=COMPANY, sku="FG", make_or_buy=MakeOrBuy.MAKE))
    master_data.add_product(Product(id=20, company_id=COMPANY, sku="SA", make_or_buy=MakeOrBuy.MAKE))
    master_data.add_product(Product(id=30, company_id=COMPANY, sku="RM", make_or_buy=MakeOrBuy.BUY))
    master_data.add_bom(
        BomHeader(id=100, company_id=COMPANY, product_id=10, is_default=True),
        [BomLine(id=1001, bom_id=100, component_id=20, quantity_per=Decimal("1"), line_number=10)],
    )
    master_data.add_bom(
        BomHeader(id=200, company_id=COMPANY, product_id=20, is_default=True),
        [BomLine(id=2001, bom_id=200, component_id=30, quantity_per=Decimal("2"), line_number=10)],
    )
    master_data.add_sales_line(COMPANY, IndependentDemandLine(
        product_id=10,
        quantity=Decimal("10"),
        required_date=TODAY + timedelta(days=14),
        source_id=900,
    ))
    return master_data


@pytest.fixture
def horizon():
    return TODAY, TODAY + timedelta(days=90)
