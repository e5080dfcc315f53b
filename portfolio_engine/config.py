"""
════════════════════════════════════════════════════════════════════════════════════════════════════
ENGINE SETTINGS - Configuration via environment variables
════════════════════════════════════════════════════════════════════════════════════════════════════

Runtime knobs for the graph engine and the recompute jobs.

Environment variables:
    PORTFOLIO_ENGINE_MAX_TRAVERSAL_DEPTH       = 20
    PORTFOLIO_ENGINE_CRITICAL_SLACK_TOLERANCE  = 0.01
    PORTFOLIO_ENGINE_MAX_LAG_DAYS              = 365
    PORTFOLIO_ENGINE_MASTER_AGGREGATION_MINUTES = 30
    PORTFOLIO_ENGINE_PROGRAM_METRICS_MINUTES   = 20
    PORTFOLIO_ENGINE_VIOLATION_SCAN_MINUTES    = 60
    PORTFOLIO_ENGINE_PORTFOLIO_CACHE_MINUTES   = 15
    PORTFOLIO_ENGINE_CACHE_TTL_MINUTES         = 15
    PORTFOLIO_ENGINE_JOB_WORKERS               = 4
    PORTFOLIO_ENGINE_REFRESH_CRITICAL_FLAGS    = true
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class EngineSettings:
    """
    Engine configuration.

    The traversal bound is a safety valve for malformed data, not a limit
    on supported hierarchy depth; raise it for deep portfolios.
    """
    max_traversal_depth: int = 20
    critical_slack_tolerance: float = 0.01
    max_lag_days: int = 365

    # Job cadences (minutes)
    master_aggregation_minutes: float = 30
    program_metrics_minutes: float = 20
    violation_scan_minutes: float = 60
    portfolio_cache_minutes: float = 15

    cache_ttl_minutes: float = 15
    job_workers: int = 4
    refresh_critical_flags: bool = True

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(minutes=self.cache_ttl_minutes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_INT_SETTINGS = {
    "PORTFOLIO_ENGINE_MAX_TRAVERSAL_DEPTH": "max_traversal_depth",
    "PORTFOLIO_ENGINE_MAX_LAG_DAYS": "max_lag_days",
    "PORTFOLIO_ENGINE_JOB_WORKERS": "job_workers",
}

_FLOAT_SETTINGS = {
    "PORTFOLIO_ENGINE_CRITICAL_SLACK_TOLERANCE": "critical_slack_tolerance",
    "PORTFOLIO_ENGINE_MASTER_AGGREGATION_MINUTES": "master_aggregation_minutes",
    "PORTFOLIO_ENGINE_PROGRAM_METRICS_MINUTES": "program_metrics_minutes",
    "PORTFOLIO_ENGINE_VIOLATION_SCAN_MINUTES": "violation_scan_minutes",
    "PORTFOLIO_ENGINE_PORTFOLIO_CACHE_MINUTES": "portfolio_cache_minutes",
    "PORTFOLIO_ENGINE_CACHE_TTL_MINUTES": "cache_ttl_minutes",
}

_BOOL_SETTINGS = {
    "PORTFOLIO_ENGINE_REFRESH_CRITICAL_FLAGS": "refresh_critical_flags",
}


def load_settings_from_env() -> EngineSettings:
    """Build settings from environment variables, ignoring invalid values."""
    settings = EngineSettings()

    for env_var, (attr_name, cast) in {
        **{k: (v, int) for k, v in _INT_SETTINGS.items()},
        **{k: (v, float) for k, v in _FLOAT_SETTINGS.items()},
    }.items():
        value = os.environ.get(env_var)
        if not value:
            continue
        try:
            parsed = cast(value)
        except ValueError:
            logger.warning(f"Invalid value for {env_var}: {value}")
            continue
        if parsed <= 0:
            logger.warning(f"Ignoring non-positive {env_var}: {value}")
            continue
        setattr(settings, attr_name, parsed)
        logger.info(f"Setting {attr_name} = {parsed}")

    for env_var, attr_name in _BOOL_SETTINGS.items():
        value = os.environ.get(env_var)
        if value:
            setattr(settings, attr_name, value.lower() in ("true", "1", "yes"))

    return settings


class Settings:
    """
    Process-wide settings holder.

    Usage:
        depth = Settings.get().max_traversal_depth
        Settings.reset()  # reload from env (tests)
    """

    _instance: Optional[EngineSettings] = None

    @classmethod
    def get(cls) -> EngineSettings:
        if cls._instance is None:
            cls._instance = load_settings_from_env()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None
