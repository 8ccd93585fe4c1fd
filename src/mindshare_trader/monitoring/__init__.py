"""Monitoring package exports and helpers."""

from __future__ import annotations

from typing import Optional

from ..config.settings import AppConfig, get_app_config
from .alerts import AlertManager, AlertSeverity
from .logger import configure_logging
from .metrics import METRICS


def bootstrap_observability(config: Optional[AppConfig] = None) -> AlertManager:
    """Configure logging and return the alert router for the process."""

    app_config = config or get_app_config()
    configure_logging(app_config.monitoring)
    METRICS.gauge("dry_run", 1.0 if app_config.trading.dry_run else 0.0)
    return AlertManager(app_config.monitoring)


__all__ = ["AlertManager", "AlertSeverity", "METRICS", "bootstrap_observability"]
