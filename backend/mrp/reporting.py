"""
MRP Engine - Reporting
======================

Tabular views of run output with pandas.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

import pandas as pd

from .models import MrpRecommendation, MrpRun, priority_sort_order

RECOMMENDATION_COLUMNS = [
    "id",
    "run_id",
    "product_id",
    "recommendation_type",
    "quantity",
    "order_date",
    "required_date",
    "priority",
    "status",
    "gross_requirement",
    "net_requirement",
    "is_urgent",
    "expedite_eligible",
    "urgency_reason",
    "demand_source_type",
    "demand_source_id",
]


def recommendations_to_dataframe(recommendations: Iterable[MrpRecommendation]) -> pd.DataFrame:
    """One row per recommendation; quantities as floats, dates as datetimes."""
    rows = []
    for rec in recommendations:
        rows.append({
            "id": rec.id,
            "run_id": rec.run_id,
            "product_id": rec.product_id,
            "recommendation_type": rec.recommendation_type.value,
            "quantity": float(rec.quantity),
            "order_date": rec.order_date,
            "required_date": rec.required_date,
            "priority": rec.priority.value,
            "status": rec.status.value,
            "gross_requirement": float(rec.gross_requirement),
            "net_requirement": float(rec.net_requirement),
            "is_urgent": rec.is_urgent,
            "expedite_eligible": rec.expedite_eligible,
            "urgency_reason": rec.urgency_reason,
            "demand_source_type": rec.demand_source_type,
            "demand_source_id": rec.demand_source_id,
            "_priority_order": priority_sort_order(rec.priority),
        })

    if not rows:
        return pd.DataFrame(columns=RECOMMENDATION_COLUMNS)

    df = pd.DataFrame(rows)
    df["order_date"] = pd.to_datetime(df["order_date"])
    df["required_date"] = pd.to_datetime(df["required_date"])
    df = df.sort_values(["_priority_order", "required_date", "product_id"]).drop(columns=["_priority_order"])
    return df.reset_index(drop=True)[RECOMMENDATION_COLUMNS]


def run_summary(run: MrpRun, df: Optional[pd.DataFrame] = None) -> Dict[str, Any]:
    """Totals by type and priority, plus run counters."""
    if df is None:
        df = recommendations_to_dataframe(run.recommendations)

    summary: Dict[str, Any] = {
        "run_id": run.id,
        "run_number": run.run_number,
        "status": run.status.value,
        "horizon_start": run.horizon_start.isoformat(),
        "horizon_end": run.horizon_end.isoformat(),
        "products_total": run.products_total,
        "products_processed": run.products_processed,
        "recommendations_count": len(df),
        "warnings_count": run.warnings_count,
        "failure_reason": run.failure_reason,
        "by_type": {},
        "by_priority": {},
        "urgent_count": 0,
    }
    if df.empty:
        return summary

    by_type = df.groupby("recommendation_type").agg(count=("product_id", "size"), quantity=("quantity", "sum"))
    summary["by_type"] = {
        t: {"count": int(row["count"]), "quantity": float(row["quantity"])}
        for t, row in by_type.iterrows()
    }
    summary["by_priority"] = {p: int(n) for p, n in df["priority"].value_counts().items()}
    summary["urgent_count"] = int(df["is_urgent"].sum())
    return summary
