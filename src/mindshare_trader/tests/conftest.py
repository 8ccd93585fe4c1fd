from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict

import pytest

from mindshare_trader.config.settings import AppConfig, get_app_config
from mindshare_trader.datalake.schemas import TokenSnapshot
from mindshare_trader.datalake.storage import SQLiteStorage

TOKEN = "0x1111111111111111111111111111111111111111"
WETH = "0x4200000000000000000000000000000000000006"
WALLET_KEY = "0x" + "11" * 32
ARBITRUM = 42161


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("APP_CONFIG_FILE", str(tmp_path / "missing.toml"))
    monkeypatch.delenv("BOT_MODE", raising=False)
    for name in ("ARBITRUM", "BASE", "MODE", "AVALANCHE"):
        for suffix in ("_RPC_URL", "_WALLET_PRIVATE_KEY", "_UNISWAP_ROUTER", "_ROUTER", "_UNISWAP_QUOTER", "_WETH"):
            monkeypatch.delenv(f"{name}{suffix}", raising=False)
    monkeypatch.chdir(tmp_path)
    get_app_config.cache_clear()


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AppConfig]:
    def factory(**overrides: Any) -> AppConfig:
        sections: Dict[str, Any] = {
            "chains": {
                "arbitrum": {
                    "rpc_url": "http://127.0.0.1:8545",
                    "private_key": WALLET_KEY,
                    "base_asset_address": WETH,
                }
            },
            "trading": {"dry_run": False, "allowed_chain_ids": [ARBITRUM]},
            "execution": {"balance_read_backoff_seconds": 0, "writeback_backoff_seconds": 0},
            "storage": {"database_path": tmp_path / "state.sqlite3"},
            "monitoring": {"alert_throttle_seconds": 0},
        }
        return AppConfig(**_merge(sections, overrides))

    return factory


@pytest.fixture
def storage(tmp_path: Path) -> SQLiteStorage:
    return SQLiteStorage(tmp_path / "state.sqlite3")


@pytest.fixture
def make_snapshot() -> Callable[..., TokenSnapshot]:
    def factory(**overrides: Any) -> TokenSnapshot:
        values: Dict[str, Any] = {
            "token_address": TOKEN,
            "chain_id": ARBITRUM,
            "chain_name": "arbitrum",
            "symbol": "AGENT",
            "mindshare": 1.0,
            "liquidity": 100_000.0,
            "volume_24h": 50_000.0,
            "holders_count": 1_000,
            "price": 1.0,
            "price_native": 1.0,
            "timestamp": datetime.now(timezone.utc),
        }
        values.update(overrides)
        return TokenSnapshot(**values)

    return factory
