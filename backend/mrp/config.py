"""
MRP Engine - Configuration
==========================

Engine defaults, overridable through environment variables (or a local .env).

Usage:
    from mrp.config import get_config

    config = get_config()
    if config.respect_lead_times:
        ...

Environment:
    MRP_RESPECT_LEAD_TIMES=false
    MRP_INCLUDE_SAFETY_STOCK=true
    MRP_LOCK_TIMEOUT_SECONDS=30
    MRP_MAX_WORKERS=4
    MRP_WORKING_WEEKDAYS=0,1,2,3,4
    MRP_DATABASE_URL=sqlite:///mrp.db
    MRP_LOG_LEVEL=INFO
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass
class MRPConfig:
    """Configuration for the MRP engine."""

    # Run defaults
    respect_lead_times: bool = True
    include_safety_stock: bool = True
    consider_wip: bool = True

    # Concurrency
    lock_timeout_seconds: float = 0.0
    max_workers: int = 1  # >1 processes same-LLC products concurrently

    # Calendar
    working_weekdays: Tuple[int, ...] = (0, 1, 2, 3, 4)  # Monday=0
    max_calendar_lookback_days: int = 3660

    # Caching / progress
    llc_cache_enabled: bool = True
    progress_every: int = 10
    incremental_max_dirty_ratio: float = 0.2  # net-change runs fall back to full above this

    # Persistence
    database_url: str = "sqlite:///mrp.db"

    @classmethod
    def from_env(cls) -> "MRPConfig":
        """Build a config from MRP_* environment variables."""
        load_dotenv()
        config = cls()

        bool_mapping = {
            "MRP_RESPECT_LEAD_TIMES": "respect_lead_times",
            "MRP_INCLUDE_SAFETY_STOCK": "include_safety_stock",
            "MRP_CONSIDER_WIP": "consider_wip",
            "MRP_LLC_CACHE_ENABLED": "llc_cache_enabled",
        }
        for env_var, attr_name in bool_mapping.items():
            value = os.environ.get(env_var)
            if value:
                setattr(config, attr_name, value.lower() in ("true", "1", "yes"))

        number_mapping = {
            "MRP_LOCK_TIMEOUT_SECONDS": ("lock_timeout_seconds", float),
            "MRP_MAX_WORKERS": ("max_workers", int),
            "MRP_MAX_CALENDAR_LOOKBACK_DAYS": ("max_calendar_lookback_days", int),
            "MRP_PROGRESS_EVERY": ("progress_every", int),
            "MRP_INCREMENTAL_MAX_DIRTY_RATIO": ("incremental_max_dirty_ratio", float),
        }
        for env_var, (attr_name, cast) in number_mapping.items():
            value = os.environ.get(env_var)
            if value:
                try:
                    setattr(config, attr_name, cast(value))
                except ValueError:
                    logger.warning(f"Invalid value for {env_var}: {value}")

        weekdays = os.environ.get("MRP_WORKING_WEEKDAYS")
        if weekdays:
            try:
                parsed = tuple(sorted({int(d) for d in weekdays.split(",") if d.strip()}))
                if not parsed or any(d < 0 or d > 6 for d in parsed):
                    raise ValueError(weekdays)
                config.working_weekdays = parsed
            except ValueError:
                logger.warning(f"Invalid value for MRP_WORKING_WEEKDAYS: {weekdays}")

        database_url = os.environ.get("MRP_DATABASE_URL")
        if database_url:
            config.database_url = database_url

        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            "respect_lead_times": self.respect_lead_times,
            "include_safety_stock": self.include_safety_stock,
            "consider_wip": self.consider_wip,
            "lock_timeout_seconds": self.lock_timeout_seconds,
            "max_workers": self.max_workers,
            "working_weekdays": list(self.working_weekdays),
            "max_calendar_lookback_days": self.max_calendar_lookback_days,
            "llc_cache_enabled": self.llc_cache_enabled,
            "progress_every": self.progress_every,
            "incremental_max_dirty_ratio": self.incremental_max_dirty_ratio,
            "database_url": self.database_url,
        }


_config_instance: Optional[MRPConfig] = None


def get_config() -> MRPConfig:
    """Get singleton config, loaded from the environment on first use."""
    global _config_instance
    if _config_instance is None:
        _config_instance = MRPConfig.from_env()
    return _config_instance


def reset_config() -> None:
    """Reset singleton so the next get_config() reloads the environment."""
    global _config_instance
    _config_instance = None


def configure_logging(level: Optional[str] = None) -> None:
    """Basic logging setup for scripts; the engine itself never adds handlers."""
    level_name = (level or os.environ.get("MRP_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
