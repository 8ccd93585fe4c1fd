"""Cookie API client for agent mindshare, holder counts, and trending listings."""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

import requests
from cachetools import TTLCache
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config.settings import DataSourceConfig, get_app_config
from ..datalake.schemas import SocialMetrics
from ..execution.errors import ExternalDataError
from ..monitoring.logger import get_logger, register_secret
from ..monitoring.metrics import METRICS

PROVIDER = "cookie"


class _TransientHTTPError(Exception):
    pass


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_agent(item: Dict[str, Any]) -> SocialMetrics:
    """Convert one ``ok.data[]`` agent entry into :class:`SocialMetrics`."""

    contracts: List[Tuple[int, str]] = []
    for contract in item.get("contracts") or []:
        if not isinstance(contract, dict):
            continue
        address = contract.get("contractAddress")
        try:
            chain = int(contract.get("chain"))
        except (TypeError, ValueError):
            continue
        if address:
            contracts.append((chain, str(address)))
    return SocialMetrics(
        agent_name=str(item.get("agentName") or ""),
        mindshare=_as_float(item.get("mindshare")),
        mindshare_delta_pct=_as_float(item.get("mindshareDeltaPercent")),
        holders_count=int(_as_float(item.get("holdersCount"))),
        price=_optional_float(item.get("price")),
        price_delta_pct=_optional_float(item.get("priceDeltaPercent")),
        liquidity=_optional_float(item.get("liquidity")),
        volume_24h=_optional_float(item.get("volume24Hours")),
        contracts=contracts,
    )


class CookieClient:
    """Thin wrapper around the Cookie v2 agents API with caching and retries."""

    def __init__(
        self,
        config: Optional[DataSourceConfig] = None,
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config or get_app_config().data_sources
        register_secret(self._config.cookie_api_key)
        self._base_url = str(self._config.cookie_base_url).rstrip("/")
        self._cache: TTLCache[str, Any] = TTLCache(maxsize=256, ttl=max(self._config.cache_ttl_seconds, 1))
        self._cache_lock = Lock()
        self._session = session or requests.Session()
        self._logger = get_logger(__name__)
        self._get = retry(
            reraise=True,
            retry=retry_if_exception_type(_TransientHTTPError),
            stop=stop_after_attempt(self._config.max_retry_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            before_sleep=before_sleep_log(self._logger, logging.WARNING),
        )(self._get_once)

    @property
    def enabled(self) -> bool:
        return bool(self._config.cookie_api_key)

    def list_trending(self) -> List[SocialMetrics]:
        """Return the configured page of agents ordered by mindshare."""

        if not self.enabled:
            self._logger.info("Cookie API key not configured; trending listing skipped")
            return []
        params = {
            "interval": self._config.cookie_interval,
            "page": self._config.cookie_page,
            "pageSize": self._config.cookie_page_size,
        }
        payload = self._cached("trending", "/v2/agents/agentsPaged", params)
        data = (payload.get("ok") or {}).get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise ExternalDataError(PROVIDER, "trending payload missing ok.data")
        return [parse_agent(item) for item in data if isinstance(item, dict)]

    def fetch_by_contract(self, token_address: str) -> Optional[SocialMetrics]:
        """Look up the agent owning ``token_address``; ``None`` when the provider has no record."""

        if not self.enabled:
            return None
        try:
            payload = self._cached(
                f"contract:{token_address.lower()}",
                f"/v2/agents/contractAddress/{token_address}",
                {"interval": self._config.cookie_interval},
            )
        except ExternalDataError as exc:
            if "HTTP 404" in str(exc):
                return None
            raise
        item = (payload.get("ok") or {}) if isinstance(payload, dict) else {}
        if not isinstance(item, dict) or not item:
            return None
        return parse_agent(item)

    def _cached(self, key: str, path: str, params: Dict[str, Any]) -> Any:
        with self._cache_lock:
            if key in self._cache:
                return self._cache[key]
        try:
            payload = self._get(path, params)
        except (_TransientHTTPError, requests.RequestException, ValueError) as exc:
            METRICS.increment("cookie_api_errors")
            raise ExternalDataError(PROVIDER, f"{path} failed: {exc}") from exc
        with self._cache_lock:
            self._cache[key] = payload
        return payload

    def _get_once(self, path: str, params: Dict[str, Any]) -> Any:
        headers = {"Accept": "application/json", "x-api-key": self._config.cookie_api_key or ""}
        try:
            response = self._session.get(
                f"{self._base_url}{path}",
                params=params,
                headers=headers,
                timeout=self._config.http_timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise _TransientHTTPError(str(exc)) from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientHTTPError(f"HTTP {response.status_code}")
        if response.status_code == 404:
            raise requests.HTTPError("HTTP 404", response=response)
        response.raise_for_status()
        return response.json()


__all__ = ["CookieClient", "parse_agent"]
