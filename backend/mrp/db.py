"""SQLAlchemy persistence for MRP runs and recommendations."""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import (
    MrpPriority,
    MrpRecommendation,
    MrpRun,
    MrpRunStatus,
    RecommendationStatus,
    RecommendationType,
)
from .repositories import RunStore, filter_recommendations, run_number

logger = logging.getLogger(__name__)

Base = declarative_base()


class DecimalText(TypeDecorator):
    """Exact Decimal stored as its string form; NUMERIC columns would round."""

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


QTY = DecimalText()


class MrpRunSequenceRecord(Base):
    __tablename__ = "mrp_run_sequences"

    company_id = Column(Integer, primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


class MrpRunRecord(Base):
    __tablename__ = "mrp_runs"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, nullable=False, index=True)
    run_number = Column(String(32), nullable=False, unique=True)
    name = Column(String(255), nullable=True)
    status = Column(String(16), nullable=False, default=MrpRunStatus.PENDING.value, index=True)
    horizon_start = Column(Date, nullable=False)
    horizon_end = Column(Date, nullable=False)
    respect_lead_times = Column(Boolean, default=True)
    include_safety_stock = Column(Boolean, default=True)
    consider_wip = Column(Boolean, default=True)
    net_change = Column(Boolean, default=False)
    product_filters = Column(JSON, nullable=True)
    warehouse_filters = Column(JSON, nullable=True)
    products_total = Column(Integer, default=0)
    products_processed = Column(Integer, default=0)
    recommendations_count = Column(Integer, default=0)
    warnings_count = Column(Integer, default=0)
    warnings_summary = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=lambda: _naive_utc(datetime.now(timezone.utc)))
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)


class MrpRecommendationRecord(Base):
    __tablename__ = "mrp_recommendations"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("mrp_runs.id"), nullable=False, index=True)
    company_id = Column(Integer, nullable=False, index=True)
    product_id = Column(Integer, nullable=False, index=True)
    recommendation_type = Column(String(32), nullable=False)
    quantity = Column(QTY, nullable=False)
    order_date = Column(Date, nullable=False)
    required_date = Column(Date, nullable=False)
    priority = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=RecommendationStatus.PENDING.value)
    gross_requirement = Column(QTY, default=Decimal(0))
    net_requirement = Column(QTY, default=Decimal(0))
    is_urgent = Column(Boolean, default=False)
    expedite_eligible = Column(Boolean, default=False)
    urgency_reason = Column(Text, nullable=True)
    demand_source_type = Column(String(32), nullable=True)
    demand_source_id = Column(Integer, nullable=True)
    calculation_details = Column(JSON, nullable=True)


def make_engine(database_url: str) -> Engine:
    """Engine for a database URL; in-memory SQLite shares one connection."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _aware_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Columns hold naive UTC; runs carry aware datetimes."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _run_from_record(record: MrpRunRecord) -> MrpRun:
    return MrpRun(
        id=record.id,
        company_id=record.company_id,
        run_number=record.run_number,
        name=record.name,
        status=MrpRunStatus(record.status),
        horizon_start=record.horizon_start,
        horizon_end=record.horizon_end,
        respect_lead_times=record.respect_lead_times,
        include_safety_stock=record.include_safety_stock,
        consider_wip=record.consider_wip,
        net_change=bool(record.net_change),
        product_filters=record.product_filters or {},
        warehouse_filters=record.warehouse_filters or {},
        products_total=record.products_total or 0,
        products_processed=record.products_processed or 0,
        recommendations_count=record.recommendations_count or 0,
        warnings_count=record.warnings_count or 0,
        warnings_summary=record.warnings_summary or {},
        failure_reason=record.failure_reason,
        created_at=_aware_utc(record.created_at),
        started_at=_aware_utc(record.started_at),
        completed_at=_aware_utc(record.completed_at),
    )


def _apply_run(record: MrpRunRecord, run: MrpRun) -> None:
    record.company_id = run.company_id
    record.run_number = run.run_number
    record.name = run.name
    record.status = run.status.value
    record.horizon_start = run.horizon_start
    record.horizon_end = run.horizon_end
    record.respect_lead_times = run.respect_lead_times
    record.include_safety_stock = run.include_safety_stock
    record.consider_wip = run.consider_wip
    record.net_change = run.net_change
    record.product_filters = run.product_filters
    record.warehouse_filters = run.warehouse_filters
    record.products_total = run.products_total
    record.products_processed = run.products_processed
    record.recommendations_count = run.recommendations_count
    record.warnings_count = run.warnings_count
    record.warnings_summary = run.warnings_summary
    record.failure_reason = run.failure_reason
    record.created_at = _naive_utc(run.created_at)
    record.started_at = _naive_utc(run.started_at)
    record.completed_at = _naive_utc(run.completed_at)


def _recommendation_from_record(record: MrpRecommendationRecord) -> MrpRecommendation:
    return MrpRecommendation(
        id=record.id,
        run_id=record.run_id,
        company_id=record.company_id,
        product_id=record.product_id,
        recommendation_type=RecommendationType(record.recommendation_type),
        quantity=Decimal(record.quantity),
        order_date=record.order_date,
        required_date=record.required_date,
        priority=MrpPriority(record.priority),
        status=RecommendationStatus(record.status),
        gross_requirement=Decimal(record.gross_requirement or 0),
        net_requirement=Decimal(record.net_requirement or 0),
        is_urgent=bool(record.is_urgent),
        expedite_eligible=bool(record.expedite_eligible),
        urgency_reason=record.urgency_reason,
        demand_source_type=record.demand_source_type,
        demand_source_id=record.demand_source_id,
        calculation_details=record.calculation_details or {},
    )


class SqlRunStore(RunStore):
    """
    RunStore backed by SQLAlchemy.

    Usage:
        store = SqlRunStore.from_url("sqlite:///mrp.db")
        run = store.get_run(run_id)
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        self._sequence_lock = threading.Lock()
        init_db(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlRunStore":
        return cls(make_engine(database_url))

    def _session(self) -> Session:
        return self.SessionLocal()

    def next_run_number(self, company_id: int) -> str:
        with self._sequence_lock, self._session() as session:
            seq = session.get(MrpRunSequenceRecord, company_id)
            if seq is None:
                seq = MrpRunSequenceRecord(company_id=company_id, last_value=0)
                session.add(seq)
            seq.last_value += 1
            value = seq.last_value
            session.commit()
        return run_number(company_id, value)

    def create_run(self, run: MrpRun) -> MrpRun:
        if run.created_at is None:
            run.created_at = datetime.now(timezone.utc)
        with self._session() as session:
            record = MrpRunRecord()
            _apply_run(record, run)
            session.add(record)
            session.commit()
            run.id = record.id
        logger.debug(f"Stored MRP run {run.id} ({run.run_number})")
        return run

    def update_run(self, run: MrpRun) -> None:
        with self._session() as session:
            record = session.get(MrpRunRecord, run.id)
            if record is None:
                raise KeyError(run.id)
            _apply_run(record, run)
            session.commit()

    def get_run(self, run_id: int, with_recommendations: bool = True) -> Optional[MrpRun]:
        with self._session() as session:
            record = session.get(MrpRunRecord, run_id)
            if record is None:
                return None
            run = _run_from_record(record)
        if with_recommendations:
            run.recommendations = self.list_recommendations(run_id)
        return run

    def list_runs(self, company_id: int) -> List[MrpRun]:
        with self._session() as session:
            records = (
                session.query(MrpRunRecord)
                .filter(MrpRunRecord.company_id == company_id)
                .order_by(MrpRunRecord.id)
                .all()
            )
            return [_run_from_record(r) for r in records]

    def add_recommendations(self, run_id: int, recommendations: List[MrpRecommendation]) -> List[MrpRecommendation]:
        if not recommendations:
            return recommendations
        with self._session() as session:
            records = []
            for rec in recommendations:
                record = MrpRecommendationRecord(
                    run_id=run_id,
                    company_id=rec.company_id,
                    product_id=rec.product_id,
                    recommendation_type=rec.recommendation_type.value,
                    quantity=rec.quantity,
                    order_date=rec.order_date,
                    required_date=rec.required_date,
                    priority=rec.priority.value,
                    status=rec.status.value,
                    gross_requirement=rec.gross_requirement,
                    net_requirement=rec.net_requirement,
                    is_urgent=rec.is_urgent,
                    expedite_eligible=rec.expedite_eligible,
                    urgency_reason=rec.urgency_reason,
                    demand_source_type=rec.demand_source_type,
                    demand_source_id=rec.demand_source_id,
                    calculation_details=rec.calculation_details,
                )
                session.add(record)
                records.append(record)
            session.commit()
            for rec, record in zip(recommendations, records):
                rec.id = record.id
        return recommendations

    def list_recommendations(
        self,
        run_id: int,
        recommendation_type: Optional[RecommendationType] = None,
        priority: Optional[MrpPriority] = None,
        product_id: Optional[int] = None,
    ) -> List[MrpRecommendation]:
        with self._session() as session:
            query = session.query(MrpRecommendationRecord).filter(MrpRecommendationRecord.run_id == run_id)
            if recommendation_type is not None:
                query = query.filter(MrpRecommendationRecord.recommendation_type == recommendation_type.value)
            if priority is not None:
                query = query.filter(MrpRecommendationRecord.priority == priority.value)
            if product_id is not None:
                query = query.filter(MrpRecommendationRecord.product_id == product_id)
            recs = [_recommendation_from_record(r) for r in query.all()]
        return filter_recommendations(recs)
