"""MRP engine exceptions."""

from __future__ import annotations

from datetime import date
from typing import List, Optional, Tuple


class MRPError(Exception):
    """Base class for MRP engine errors."""


class MRPValidationError(MRPError):
    """Invocation inputs rejected before any run record exists."""
    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class ConcurrentRunError(MRPError):
    """Another run already holds the company lock."""
    def __init__(self, company_id: int, active_run_id: Optional[int] = None):
        super().__init__(
            f"Another MRP run is already in progress for company {company_id}"
            + (f" (run {active_run_id})" if active_run_id is not None else "")
        )
        self.company_id = company_id
        self.active_run_id = active_run_id


class LockTimeoutError(MRPError):
    def __init__(self, company_id: int, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for MRP lock of company {company_id}")
        self.company_id = company_id
        self.timeout = timeout


class CyclicBomError(MRPError):
    """The active BOM graph contains a cycle."""
    def __init__(self, cycle_edges: List[Tuple[int, int]]):
        path = " -> ".join(str(parent) for parent, _ in cycle_edges)
        if cycle_edges:
            path += f" -> {cycle_edges[-1][1]}"
        super().__init__(f"Circular BOM reference detected: {path}")
        self.cycle_edges = cycle_edges


class MissingCalendarDataError(MRPError):
    def __init__(self, company_id: int, day: Optional[date] = None, message: Optional[str] = None):
        super().__init__(
            message or f"No calendar data for company {company_id} on {day.isoformat() if day else '?'}"
        )
        self.company_id = company_id
        self.day = day


class ProductComputationError(MRPError):
    """Per-product failure; fatal to the whole run."""
    def __init__(self, product_id: int, message: str):
        super().__init__(f"Product {product_id}: {message}")
        self.product_id = product_id


class InvalidTransitionError(MRPError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move MRP run from '{current}' to '{target}'")
        self.current = current
        self.target = target


class RunNotFoundError(MRPError):
    def __init__(self, run_id: int):
        super().__init__(f"MRP run {run_id} not found")
        self.run_id = run_id
