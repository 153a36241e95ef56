"""Logging and metrics for the sniper process."""

from __future__ import annotations

from typing import Optional

from ..config.settings import AppConfig, get_app_config
from .logger import configure_logging, correlation_scope, get_logger
from .metrics import METRICS, MetricsRegistry


def bootstrap_observability(config: Optional[AppConfig] = None, *, force: bool = False) -> MetricsRegistry:
    """Route logs to stderr as JSON and record the active mode as a gauge."""

    app_config = config or get_app_config()
    configure_logging(app_config.monitoring, force=force)
    METRICS.gauge("dry_run", 1.0 if app_config.dry_run else 0.0)
    get_logger(__name__).debug(
        "Logging configured",
        extra={"mode": app_config.mode.active.value, "config_file": app_config.mode.config_file},
    )
    return METRICS


__all__ = ["METRICS", "bootstrap_observability", "correlation_scope", "get_logger"]
