"""DexScreener client returning best-pair market metrics for a token."""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Dict, Optional

import requests
from cachetools import TTLCache
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config.settings import AppConfig, DataSourceConfig, get_app_config
from ..datalake.schemas import MarketMetrics
from ..execution.errors import ExternalDataError
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS

DEFAULT_HEADERS = {"User-Agent": "mindshare-trader/1.0", "Accept": "application/json"}
PROVIDER = "dexscreener"


class _TransientHTTPError(Exception):
    """Retryable failure: connection problems, 429 and 5xx responses."""


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class DexScreenerClient:
    """Looks up token pairs and reduces them to the deepest pair on the requested chain."""

    def __init__(
        self,
        config: Optional[DataSourceConfig] = None,
        *,
        app_config: Optional[AppConfig] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        app_config = app_config or get_app_config()
        self._config = config or app_config.data_sources
        self._chains = {chain.chain_id: chain for chain in app_config.chains.values()}
        self._base_url = str(self._config.dexscreener_base_url).rstrip("/")
        self._timeout = self._config.http_timeout
        self._cache: TTLCache[str, Dict[str, Any]] = TTLCache(
            maxsize=512, ttl=max(self._config.cache_ttl_seconds, 1)
        )
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

    def fetch_market_metrics(self, token_address: str, chain_id: int) -> Optional[MarketMetrics]:
        """Return metrics for the highest-liquidity pair, or ``None`` when no pair exists.

        Raises :class:`ExternalDataError` when the provider itself fails.
        """

        payload = self._fetch_token_pairs(token_address)
        pairs = payload.get("pairs") or []
        if not isinstance(pairs, list):
            raise ExternalDataError(PROVIDER, f"unexpected pairs payload for {token_address}")
        chain = self._chains.get(chain_id)
        dex_chain = (chain.dexscreener_chain if chain else None) or ""
        candidates = [
            pair
            for pair in pairs
            if isinstance(pair, dict)
            and (not dex_chain or str(pair.get("chainId", "")).lower() == dex_chain.lower())
            and str((pair.get("baseToken") or {}).get("address", "")).lower() == token_address.lower()
        ]
        if not candidates:
            METRICS.increment("dexscreener_no_pairs")
            return None
        best = max(candidates, key=lambda pair: _to_float((pair.get("liquidity") or {}).get("usd")) or 0.0)
        price_usd = _to_float(best.get("priceUsd"))
        if price_usd is None or price_usd <= 0:
            return None

        quote_address = str((best.get("quoteToken") or {}).get("address", "")).lower()
        price_native: Optional[float] = None
        if chain and chain.base_asset_address and quote_address == chain.base_asset_address.lower():
            price_native = _to_float(best.get("priceNative"))

        return MarketMetrics(
            token_address=token_address,
            chain_id=chain_id,
            price_usd=price_usd,
            price_native=price_native,
            liquidity_usd=_to_float((best.get("liquidity") or {}).get("usd")) or 0.0,
            volume_24h=_to_float((best.get("volume") or {}).get("h24")) or 0.0,
            pair_address=best.get("pairAddress"),
            dex_id=best.get("dexId"),
            quote_token_address=quote_address or None,
            symbol=(best.get("baseToken") or {}).get("symbol"),
        )

    def _fetch_token_pairs(self, token_address: str) -> Dict[str, Any]:
        key = token_address.lower()
        with self._cache_lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached
        try:
            payload = self._get(f"/latest/dex/tokens/{token_address}")
        except (_TransientHTTPError, requests.RequestException, ValueError) as exc:
            METRICS.increment("dexscreener_errors")
            raise ExternalDataError(PROVIDER, f"lookup of {token_address} failed: {exc}") from exc
        if not isinstance(payload, dict):
            raise ExternalDataError(PROVIDER, f"non-object payload for {token_address}")
        with self._cache_lock:
            self._cache[key] = payload
        return payload

    def _get_once(self, path: str) -> Any:
        try:
            response = self._session.get(
                f"{self._base_url}{path}",
                headers=DEFAULT_HEADERS,
                timeout=self._timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise _TransientHTTPError(str(exc)) from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientHTTPError(f"HTTP {response.status_code}")
        response.raise_for_status()
        return response.json()


__all__ = ["DexScreenerClient"]
