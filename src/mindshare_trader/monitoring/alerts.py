"""Webhook alerting for failed cycles and unreconciled trades."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, Optional

import requests

from ..config.settings import MonitoringConfig, get_app_config
from .logger import current_correlation_id, get_logger
from .metrics import METRICS


class AlertSeverity(str, Enum):
    """Common severity levels recognised by the alert manager."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertManager:
    """Dispatch alerts to configured webhooks with per-key throttling."""

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config or get_app_config().monitoring
        self._session = session or requests.Session()
        self._logger = get_logger(__name__)
        self._last_sent: Dict[str, float] = {}

    def send(
        self,
        message: str,
        *,
        severity: AlertSeverity = AlertSeverity.INFO,
        key: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Post ``message`` to every webhook; returns ``False`` when throttled."""

        key = key or message
        now = time.monotonic()
        throttle = max(self._config.alert_throttle_seconds, 0)
        last = self._last_sent.get(key)
        if last is not None and now - last < throttle:
            METRICS.increment("alerts_throttled")
            return False
        self._last_sent[key] = now
        log_method = self._logger.critical if severity == AlertSeverity.CRITICAL else self._logger.warning
        log_method("Alert: %s", message, extra={"severity": severity.value, **(extra or {})})
        payload = {
            "message": message,
            "severity": severity.value,
            "correlation_id": current_correlation_id(),
            "extra": extra or {},
        }
        for url in self._config.webhook_urls:
            self._post(str(url), payload)
        METRICS.increment(f"alerts_sent_{severity.value}")
        return True

    def _post(self, url: str, payload: Dict[str, Any]) -> None:
        try:
            response = self._session.post(url, json=payload, timeout=5)
            response.raise_for_status()
        except requests.RequestException as exc:  # pragma: no cover - network failures
            self._logger.warning("Failed to send alert to %s: %s", url, exc)


__all__ = ["AlertManager", "AlertSeverity"]
