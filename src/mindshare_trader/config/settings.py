"""Comprehensive configuration management for the trading engine."""

from __future__ import annotations

import os
import tomllib
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, cast

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
MODE_ENV_VAR = "BOT_MODE"
DEFAULT_FEE_TIERS = (100, 500, 3000, 10000)


class AppMode(str, Enum):
    """Supported runtime modes."""

    DRY_RUN = "dry_run"
    LIVE = "live"
    TESTNET = "testnet"


class RouterKind(str, Enum):
    """Router families understood by the execution venues."""

    UNISWAP_V3 = "uniswap_v3"
    UNISWAP_V2 = "uniswap_v2"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _select_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    if not data:
        return {}
    base_section = cast(Dict[str, Any], data.get("default", {}))
    requested_mode = os.getenv(MODE_ENV_VAR)
    if not requested_mode:
        mode_section = base_section.get("mode")
        if isinstance(mode_section, dict):
            requested_mode = cast(str, mode_section.get("active", AppMode.DRY_RUN.value))
        elif isinstance(mode_section, str):
            requested_mode = mode_section
    requested_mode = (requested_mode or AppMode.DRY_RUN.value).lower()

    if requested_mode in data and requested_mode != "default":
        return _deep_merge(base_section, cast(Dict[str, Any], data[requested_mode]))
    if base_section:
        return base_section
    return data


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    if not isinstance(payload, dict):
        return {}, path
    merged = dict(_select_profile(payload))
    mode_section = merged.get("mode")
    if isinstance(mode_section, dict):
        mode_section = dict(mode_section)
        mode_section.setdefault("config_file", str(path))
        merged["mode"] = mode_section
    else:
        merged["mode"] = {"config_file": str(path)}
    return merged, path


class ChainConfig(BaseModel):
    """Static description of one EVM network the engine can trade on."""

    chain_id: int = Field(ge=1)
    name: str
    display_name: str = ""
    rpc_url: Optional[str] = None
    private_key: Optional[str] = Field(default=None, repr=False)
    router_address: Optional[str] = None
    quoter_address: Optional[str] = None
    base_asset_address: Optional[str] = None
    base_asset_symbol: str = "ETH"
    base_asset_decimals: int = Field(default=18, ge=0, le=36)
    explorer_url: Optional[str] = None
    router_kind: RouterKind = Field(default=RouterKind.UNISWAP_V3)
    fee_tiers: List[int] = Field(default_factory=lambda: list(DEFAULT_FEE_TIERS))
    dexscreener_chain: Optional[str] = None
    request_timeout: float = Field(default=15.0, ge=1.0, le=120.0)
    confirmation_timeout_seconds: int = Field(default=180, ge=5)
    deadline_seconds: int = Field(default=300, ge=30)
    gas_limit: Optional[int] = Field(default=None, ge=21_000)

    @field_validator("fee_tiers")
    @classmethod
    def _validate_fee_tiers(cls, value: List[int]) -> List[int]:
        if any(tier <= 0 for tier in value):
            raise ValueError("fee tiers must be positive")
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def _apply_environment_fallbacks(self) -> "ChainConfig":
        prefix = self.name.upper()
        if not self.rpc_url:
            self.rpc_url = os.getenv(f"{prefix}_RPC_URL") or None
        if not self.private_key:
            self.private_key = os.getenv(f"{prefix}_WALLET_PRIVATE_KEY") or None
        if not self.router_address:
            self.router_address = os.getenv(f"{prefix}_UNISWAP_ROUTER") or os.getenv(f"{prefix}_ROUTER") or None
        if not self.quoter_address:
            self.quoter_address = os.getenv(f"{prefix}_UNISWAP_QUOTER") or None
        if not self.base_asset_address:
            self.base_asset_address = os.getenv(f"{prefix}_WETH") or None
        if not self.display_name:
            self.display_name = self.name.title()
        if not self.dexscreener_chain:
            self.dexscreener_chain = self.name
        return self

    @property
    def is_quotable(self) -> bool:
        required = [self.rpc_url, self.router_address, self.base_asset_address]
        if self.router_kind == RouterKind.UNISWAP_V3:
            required.append(self.quoter_address)
        return all(required)

    @property
    def is_tradeable(self) -> bool:
        return self.is_quotable and bool(self.private_key)

    def explorer_link(self, tx_hash: str) -> Optional[str]:
        if not self.explorer_url:
            return None
        return f"{self.explorer_url.rstrip('/')}/{tx_hash}"


DEFAULT_CHAINS: Dict[str, Dict[str, Any]] = {
    "arbitrum": {
        "chain_id": 42161,
        "display_name": "Arbitrum",
        "explorer_url": "https://arbiscan.io/tx",
        "quoter_address": "0x61fFE014bA17989E743c5F6cB21bF9697530B21e",
        "router_address": "0x68b3465833fb72A70ecDF485E0e4C7bD8665Fc45",
        "base_asset_address": "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
    },
    "base": {
        "chain_id": 8453,
        "display_name": "Base",
        "explorer_url": "https://basescan.org/tx",
        "quoter_address": "0x3d4e44Eb1374240CE5F1B871ab261CD16335B76a",
        "router_address": "0x2626664c2603336E57B271c5C0b26F421741e481",
        "base_asset_address": "0x4200000000000000000000000000000000000006",
    },
    "mode": {
        "chain_id": 34443,
        "display_name": "Mode",
        "explorer_url": "https://explorer.mode.network/tx",
    },
    "avalanche": {
        "chain_id": 43114,
        "display_name": "Avalanche",
        "explorer_url": "https://snowtrace.io/tx",
        "base_asset_symbol": "AVAX",
        "router_kind": RouterKind.UNISWAP_V2.value,
    },
}


def _default_chains() -> Dict[str, ChainConfig]:
    return {name: ChainConfig(name=name, **defaults) for name, defaults in DEFAULT_CHAINS.items()}


class DataSourceConfig(BaseModel):
    """Configuration for the market and social telemetry providers."""

    dexscreener_base_url: AnyHttpUrl = Field(default="https://api.dexscreener.com")
    cookie_base_url: AnyHttpUrl = Field(default="https://api.cookie.fun")
    cookie_api_key: Optional[str] = Field(default=None, repr=False)
    cookie_interval: str = Field(default="_7Days")
    cookie_page: int = Field(default=1, ge=1)
    cookie_page_size: int = Field(default=10, ge=1, le=25)
    http_timeout: float = Field(default=10.0, ge=1.0, le=45.0)
    cache_ttl_seconds: int = Field(default=60, ge=0)
    max_workers: int = Field(default=6, ge=1, le=32)
    max_retry_attempts: int = Field(default=3, ge=1, le=10)


class ModeConfig(BaseModel):
    """Runtime mode and operational toggles."""

    active: AppMode = Field(default=AppMode.DRY_RUN)
    config_file: Optional[Path] = None


class ScoringConfig(BaseModel):
    """Factor weights and history window for the composite score."""

    price_weight: float = Field(default=0.40, ge=0.0, le=1.0)
    volume_weight: float = Field(default=0.25, ge=0.0, le=1.0)
    mindshare_weight: float = Field(default=0.15, ge=0.0, le=1.0)
    liquidity_weight: float = Field(default=0.10, ge=0.0, le=1.0)
    holders_weight: float = Field(default=0.10, ge=0.0, le=1.0)
    lookback: int = Field(default=12, ge=3, le=500)
    min_history: int = Field(default=3, ge=3)

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "ScoringConfig":
        total = (
            self.price_weight
            + self.volume_weight
            + self.mindshare_weight
            + self.liquidity_weight
            + self.holders_weight
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"scoring weights must sum to 1.0 (got {total:.4f})")
        if self.min_history > self.lookback:
            raise ValueError("min_history cannot exceed lookback")
        return self

    def weights(self) -> Dict[str, float]:
        return {
            "price": self.price_weight,
            "volume": self.volume_weight,
            "mindshare": self.mindshare_weight,
            "liquidity": self.liquidity_weight,
            "holders": self.holders_weight,
        }


class SignalConfig(BaseModel):
    """Entry and exit thresholds evaluated each cycle."""

    buy_threshold: float = Field(default=0.5)
    profit_target_pct: float = Field(default=30.0, gt=0.0)
    stop_loss_pct: float = Field(default=-20.0, lt=0.0)
    trailing_activation_pct: float = Field(default=20.0, gt=0.0)
    trailing_stop_pct: float = Field(default=-10.0)
    volume_collapse_pct: float = Field(default=50.0, gt=0.0, le=100.0)
    momentum_reversal_z: float = Field(default=-2.0, lt=0.0)
    force_sell: bool = Field(default=False)

    @model_validator(mode="after")
    def _validate_trailing(self) -> "SignalConfig":
        if self.trailing_stop_pct <= self.stop_loss_pct:
            raise ValueError("trailing_stop_pct must be tighter than stop_loss_pct")
        if self.trailing_stop_pct >= self.trailing_activation_pct:
            raise ValueError("trailing_stop_pct must sit below trailing_activation_pct")
        return self


class TradingConfig(BaseModel):
    """Trading system controls and toggles."""

    dry_run: bool = Field(default=True)
    trade_amount: str = Field(default="0.0001")
    slippage_bps: int = Field(default=50, ge=1, le=5_000)
    allowed_chain_ids: List[int] = Field(default_factory=lambda: [42161, 8453])
    force_buy_tokens: List[str] = Field(default_factory=list)
    candidate_ttl_minutes: int = Field(default=360, ge=1)

    @field_validator("trade_amount")
    @classmethod
    def _positive_amount(cls, value: str) -> str:
        try:
            amount = float(value)
        except ValueError as exc:
            raise ValueError(f"trade_amount is not numeric: {value!r}") from exc
        if amount <= 0:
            raise ValueError("trade_amount must be positive")
        return value

    @field_validator("force_buy_tokens", mode="before")
    @classmethod
    def _split_tokens(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


class ExecutionConfig(BaseModel):
    """Retry behaviour around chain reads and position write-back."""

    balance_read_attempts: int = Field(default=3, ge=1, le=10)
    balance_read_backoff_seconds: float = Field(default=1.0, ge=0.0)
    writeback_attempts: int = Field(default=3, ge=1, le=10)
    writeback_backoff_seconds: float = Field(default=0.5, ge=0.0)
    max_trades_per_cycle: int = Field(default=5, ge=1)


class SchedulerConfig(BaseModel):
    """Housekeeping cadence."""

    interval_seconds: float = Field(default=300.0, ge=1.0)
    run_on_start: bool = True


class StorageConfig(BaseModel):
    """State persistence configuration."""

    database_path: Path = Field(default=Path("./state.sqlite3"))
    snapshot_retention_days: int = Field(default=30, ge=1)


class MonitoringConfig(BaseModel):
    """Logging and alerting configuration."""

    log_level: str = Field(default="INFO")
    webhook_urls: List[AnyHttpUrl] = Field(default_factory=list)
    alert_throttle_seconds: int = Field(default=60, ge=0)
    risk_disclaimer: str = Field(
        default=(
            "Trading digital assets involves significant risk. Historical performance "
            "is not indicative of future results and no profits are guaranteed."
        )
    )


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    mode: ModeConfig = Field(default_factory=ModeConfig)
    chains: Dict[str, ChainConfig] = Field(default_factory=_default_chains)
    data_sources: DataSourceConfig = Field(default_factory=DataSourceConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    signals: SignalConfig = Field(default_factory=SignalConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def file_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            payload, _ = _load_toml_config()
            return payload

        # Environment variables win over the static config file.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )

    @field_validator("chains", mode="before")
    @classmethod
    def _merge_chain_defaults(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        merged: Dict[str, Any] = {name: {"name": name, **defaults} for name, defaults in DEFAULT_CHAINS.items()}
        for key, entry in value.items():
            key = key.lower()
            if isinstance(entry, ChainConfig):
                merged[key] = entry
            elif isinstance(entry, dict):
                base = merged.get(key)
                base = base if isinstance(base, dict) else {}
                merged[key] = _deep_merge(base, {"name": key, **entry})
        return merged

    @model_validator(mode="after")
    def _sync_mode_defaults(self) -> "AppConfig":
        if self.mode.active == AppMode.LIVE and "dry_run" not in self.trading.model_fields_set:
            self.trading.dry_run = False
        return self

    def chain_by_id(self, chain_id: int) -> Optional[ChainConfig]:
        for chain in self.chains.values():
            if chain.chain_id == chain_id:
                return chain
        return None

    def tradeable_chain_ids(self) -> List[int]:
        """Chain ids that are both allow-listed and fully configured."""

        allowed = set(self.trading.allowed_chain_ids)
        return sorted(
            chain.chain_id
            for chain in self.chains.values()
            if chain.chain_id in allowed
            and (chain.is_tradeable or (self.trading.dry_run and chain.is_quotable))
        )


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "AppMode",
    "ChainConfig",
    "DataSourceConfig",
    "ExecutionConfig",
    "ModeConfig",
    "MonitoringConfig",
    "RouterKind",
    "SchedulerConfig",
    "ScoringConfig",
    "SignalConfig",
    "StorageConfig",
    "TradingConfig",
    "get_app_config",
]
