"""Chain lookup and lazily constructed per-chain clients and router venues."""

from __future__ import annotations

import threading
from typing import Callable, Dict, Optional

from ..config.settings import AppConfig, ChainConfig, get_app_config
from .client import ChainClient
from .errors import ChainConfigurationError
from .venues import RouterVenue, venue_for_client

ClientFactory = Callable[[ChainConfig], ChainClient]
VenueFactory = Callable[[ChainClient], RouterVenue]


class ChainRegistry:
    """Resolves chain ids to configuration and caches one client/venue pair per chain."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        client_factory: Optional[ClientFactory] = None,
        venue_factory: Optional[VenueFactory] = None,
    ) -> None:
        self._config = config or get_app_config()
        self._client_factory = client_factory or ChainClient
        self._venue_factory = venue_factory or venue_for_client
        self._clients: Dict[int, ChainClient] = {}
        self._venues: Dict[int, RouterVenue] = {}
        self._lock = threading.Lock()

    def resolve(self, chain_id: int) -> Optional[ChainConfig]:
        return self._config.chain_by_id(chain_id)

    def require(self, chain_id: int, *, signing: bool = True) -> ChainConfig:
        """Return the chain config or raise when it cannot quote (or sign, if ``signing``)."""

        chain = self.resolve(chain_id)
        if chain is None:
            raise ChainConfigurationError(f"Unknown chain id {chain_id}")
        if chain_id not in self._config.trading.allowed_chain_ids:
            raise ChainConfigurationError(f"Chain {chain.name} is not in the allowed chain list")
        if not chain.is_quotable:
            raise ChainConfigurationError(f"Chain {chain.name} is missing RPC, router or base asset settings")
        if signing and not chain.is_tradeable:
            raise ChainConfigurationError(f"Chain {chain.name} has no wallet key configured")
        return chain

    def client(self, chain_id: int) -> ChainClient:
        with self._lock:
            client = self._clients.get(chain_id)
            if client is None:
                chain = self.resolve(chain_id)
                if chain is None:
                    raise ChainConfigurationError(f"Unknown chain id {chain_id}")
                client = self._client_factory(chain)
                self._clients[chain_id] = client
            return client

    def venue(self, chain_id: int) -> RouterVenue:
        client = self.client(chain_id)
        with self._lock:
            venue = self._venues.get(chain_id)
            if venue is None:
                venue = self._venue_factory(client)
                self._venues[chain_id] = venue
            return venue


__all__ = ["ChainRegistry"]
