"""Market data aggregation: candidate discovery, provider fan-out, scoring, history."""

from __future__ import annotations

import contextvars
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Sequence, Tuple

from ..config.settings import AppConfig, get_app_config
from ..datalake.schemas import CandidateToken, MarketMetrics, SocialMetrics, TokenSnapshot, utcnow
from ..datalake.storage import SQLiteStorage
from ..execution.errors import ExternalDataError
from ..ingestion.cookie_api import CookieClient
from ..ingestion.dexscreener_api import DexScreenerClient
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .scoring import ScoreEngine


def parse_forced_token(entry: str, default_chain_id: Optional[int]) -> Optional[Tuple[int, str]]:
    """Parse ``"<chain_id>:<address>"`` or a bare address bound to ``default_chain_id``."""

    entry = entry.strip()
    if not entry:
        return None
    if ":" in entry:
        chain_part, address = entry.split(":", 1)
        try:
            return int(chain_part), address.strip()
        except ValueError:
            return None
    if default_chain_id is None:
        return None
    return default_chain_id, entry


class MarketDataAggregator:
    """Builds one scored :class:`TokenSnapshot` per candidate and appends it to history."""

    def __init__(
        self,
        storage: SQLiteStorage,
        *,
        config: Optional[AppConfig] = None,
        market_client: Optional[DexScreenerClient] = None,
        social_client: Optional[CookieClient] = None,
        score_engine: Optional[ScoreEngine] = None,
    ) -> None:
        self._config = config or get_app_config()
        self._storage = storage
        self._market = market_client or DexScreenerClient(app_config=self._config)
        self._social = social_client or CookieClient(self._config.data_sources)
        self._scores = score_engine or ScoreEngine(self._config.scoring)
        self._logger = get_logger(__name__)

    def build_candidates(self) -> List[CandidateToken]:
        """Trending agents, every non-finalized row, and forced tokens, de-duplicated."""

        allowed = set(self._config.trading.allowed_chain_ids)
        chains = {chain.chain_id: chain for chain in self._config.chains.values()}
        candidates: Dict[Tuple[str, int], CandidateToken] = {}

        try:
            trending = self._social.list_trending()
        except ExternalDataError as exc:
            self._logger.warning("Trending listing unavailable: %s", exc)
            METRICS.increment("aggregator_trending_failures")
            trending = []

        for agent in trending:
            contract = next(
                ((chain_id, address) for chain_id, address in agent.contracts if chain_id in chains and chain_id in allowed),
                None,
            )
            if contract is None:
                self._logger.debug("No tradeable contract for agent %s", agent.agent_name)
                continue
            chain_id, address = contract
            candidate = CandidateToken(
                token_address=address,
                chain_id=chain_id,
                chain_name=chains[chain_id].name,
                symbol=agent.agent_name,
                social=agent,
                source="trending",
            )
            candidates.setdefault(candidate.key, candidate)

        for row in self._storage.list_active_rows():
            key = (row.token_address.lower(), row.chain_id)
            if key in candidates:
                continue
            candidates[key] = CandidateToken(
                token_address=row.token_address,
                chain_id=row.chain_id,
                chain_name=row.chain_name,
                symbol=row.symbol,
                source="position",
            )

        default_chain = self._config.trading.allowed_chain_ids[0] if self._config.trading.allowed_chain_ids else None
        for entry in self._config.trading.force_buy_tokens:
            parsed = parse_forced_token(entry, default_chain)
            if parsed is None or parsed[0] not in chains:
                self._logger.warning("Ignoring malformed forced token entry %r", entry)
                continue
            chain_id, address = parsed
            key = (address.lower(), chain_id)
            existing = candidates.get(key)
            if existing is not None:
                existing.forced = True
                continue
            candidates[key] = CandidateToken(
                token_address=address,
                chain_id=chain_id,
                chain_name=chains[chain_id].name,
                source="forced",
                forced=True,
            )

        METRICS.gauge("aggregator_candidates", len(candidates))
        return list(candidates.values())

    def run_cycle(self, candidates: Sequence[CandidateToken]) -> List[TokenSnapshot]:
        """Fetch, score, and record a snapshot for every candidate that yields data.

        Provider fetches run concurrently; a failing token is logged and skipped.
        """

        if not candidates:
            return []
        fetched: Dict[Tuple[str, int], Tuple[CandidateToken, MarketMetrics, Optional[SocialMetrics]]] = {}
        max_workers = min(self._config.data_sources.max_workers, len(candidates))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="aggregator") as executor:
            # Workers inherit the cycle's correlation id.
            future_map = {
                executor.submit(contextvars.copy_context().run, self._fetch, candidate): candidate
                for candidate in candidates
            }
            for future in as_completed(future_map):
                candidate = future_map[future]
                try:
                    result = future.result()
                except ExternalDataError as exc:
                    METRICS.increment("aggregator_token_failures")
                    self._logger.warning(
                        "Skipping %s on chain %s: %s", candidate.token_address, candidate.chain_id, exc
                    )
                    continue
                except Exception:  # noqa: BLE001
                    METRICS.increment("aggregator_token_failures")
                    self._logger.exception("Unexpected failure fetching %s", candidate.token_address)
                    continue
                if result is None:
                    self._logger.info("No market data for %s on chain %s", candidate.token_address, candidate.chain_id)
                    continue
                fetched[candidate.key] = (candidate, *result)

        snapshots: List[TokenSnapshot] = []
        # Keep input order so history writes are deterministic.
        for candidate in candidates:
            entry = fetched.get(candidate.key)
            if entry is None:
                continue
            snapshot = self._score_and_record(*entry)
            snapshots.append(snapshot)
        METRICS.increment("aggregator_snapshots", len(snapshots))
        return snapshots

    def _fetch(self, candidate: CandidateToken) -> Optional[Tuple[MarketMetrics, Optional[SocialMetrics]]]:
        market = self._market.fetch_market_metrics(candidate.token_address, candidate.chain_id)
        if market is None:
            return None
        social = candidate.social
        if social is None:
            social = self._social.fetch_by_contract(candidate.token_address)
        return market, social

    def _score_and_record(
        self,
        candidate: CandidateToken,
        market: MarketMetrics,
        social: Optional[SocialMetrics],
    ) -> TokenSnapshot:
        history = self._storage.get_recent_snapshots(
            self._scores.lookback,
            token_address=candidate.token_address,
            chain_id=candidate.chain_id,
        )
        previous = history[0] if history else None
        if social is not None:
            mindshare = social.mindshare
            holders = social.holders_count
            social_momentum = social.mindshare_delta_pct / 100.0
        else:
            # No social record: carry the last known values forward.
            mindshare = previous.mindshare if previous else 0.0
            holders = previous.holders_count if previous else 0
            social_momentum = 0.0

        snapshot = TokenSnapshot(
            token_address=candidate.token_address.lower(),
            chain_id=candidate.chain_id,
            chain_name=candidate.chain_name,
            symbol=candidate.symbol or market.symbol or (social.agent_name if social else ""),
            mindshare=mindshare,
            liquidity=market.liquidity_usd,
            volume_24h=market.volume_24h,
            holders_count=holders,
            price=market.price_usd,
            price_native=market.price_native,
            social_momentum=social_momentum,
            timestamp=utcnow(),
        )
        self._scores.apply(snapshot, history)
        self._storage.record_snapshot(snapshot)
        self._logger.debug(
            "Scored %s on %s: composite %.3f",
            snapshot.symbol,
            snapshot.chain_name,
            snapshot.total_score,
            extra={"token_address": snapshot.token_address, "chain_id": snapshot.chain_id},
        )
        return snapshot


__all__ = ["MarketDataAggregator", "parse_forced_token"]
