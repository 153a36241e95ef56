"""Configuration management for the launch sniper."""

from __future__ import annotations

import os
import tomllib
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, cast

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..utils.constants import (
    LAUNCHPAD_PLATFORM_ADMIN,
    LAUNCHPAD_PROGRAM_ID,
    SOL_MINT,
    TOKEN_PROGRAM_ID,
)

DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
MODE_ENV_VAR = "BOT_MODE"


class AppMode(str, Enum):
    """Supported runtime modes."""

    DRY_RUN = "dry_run"
    LIVE = "live"


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
    merged = dict(_select_profile(payload))
    mode_section = merged.get("mode")
    if isinstance(mode_section, dict):
        mode_section = dict(mode_section)
        mode_section.setdefault("config_file", str(path))
        merged["mode"] = mode_section
    else:
        merged["mode"] = {"config_file": str(path)}
    return merged, path


class ModeConfig(BaseModel):
    """Runtime mode and operational toggles."""

    active: AppMode = Field(default=AppMode.DRY_RUN)
    cluster: str = Field(default="mainnet-beta")
    config_file: Optional[Path] = None
    config_poll_seconds: float = Field(default=5.0, gt=0.0)


class RPCConfig(BaseModel):
    """RPC configuration for Solana endpoints."""

    primary_url: AnyHttpUrl = Field(default="https://api.mainnet-beta.solana.com")
    request_timeout: float = Field(default=12.0, ge=1.0, le=60.0)
    commitment: str = Field(default="confirmed")

    @field_validator("request_timeout", mode="before")
    @classmethod
    def _parse_request_timeout(cls, value) -> float:
        if isinstance(value, str):
            return float(value)
        return value


class WalletConfig(BaseModel):
    """Wallet and signer configuration."""

    private_key: Optional[str] = None
    keypair_path: Optional[Path] = None


class StorageConfig(BaseModel):
    """State persistence configuration."""

    database_path: Path = Field(default=Path("./sniper_state.sqlite3"))


class MonitoringConfig(BaseModel):
    """Logging configuration."""

    log_level: str = Field(default="INFO")


class LaunchpadConfig(BaseModel):
    """Constant-product launchpad program (LetsBonk) parameters."""

    program_id: str = Field(default=LAUNCHPAD_PROGRAM_ID)
    platform_admin: str = Field(default=LAUNCHPAD_PLATFORM_ADMIN)
    quote_mint: str = Field(default=SOL_MINT)
    token_program: str = Field(default=TOKEN_PROGRAM_ID)
    curve_type: int = Field(default=0, ge=0, le=255)
    config_index: int = Field(default=0, ge=0, le=65_535)
    platform_fee_bps: int = Field(default=100, ge=0, le=10_000)
    protocol_fee_bps: int = Field(default=25, ge=0, le=10_000)
    share_fee_rate: int = Field(default=0, ge=0)
    base_reserve_offset: int = Field(default=64, ge=0)
    quote_reserve_offset: int = Field(default=72, ge=0)
    base_decimals: int = Field(default=6, ge=0)
    quote_decimals: int = Field(default=9, ge=0)
    platforms: List[str] = Field(default_factory=lambda: ["letsbonk", "bonk", "raydium"])


class AggregatorConfig(BaseModel):
    """Jupiter swap aggregator endpoints."""

    base_url: AnyHttpUrl = Field(default="https://lite-api.jup.ag/")
    quote_path: str = Field(default="swap/v1/quote")
    swap_path: str = Field(default="swap/v1/swap")
    http_timeout: float = Field(default=10.0, ge=1.0, le=60.0)
    price_probe_amount: int = Field(default=1_000_000, ge=1)
    price_cache_ttl_seconds: float = Field(default=2.0, ge=0.0)


class BondingCurveConfig(BaseModel):
    """PumpPortal local-transaction endpoint for bonding-curve trades."""

    trade_url: AnyHttpUrl = Field(default="https://pumpportal.fun/api/trade-local")
    pool: str = Field(default="pump")
    priority_fee_sol: float = Field(default=0.0001, ge=0.0)
    token_decimals: int = Field(default=6, ge=0)
    http_timeout: float = Field(default=10.0, ge=1.0, le=60.0)


class ExecutionConfig(BaseModel):
    """Execution tuning shared by all venues."""

    default_slippage_bps: int = Field(default=500, ge=0, le=10_000)
    compute_unit_limit: int = Field(default=200_000, ge=0)
    compute_unit_price_micro_lamports: int = Field(default=100_000, ge=0)
    simulate_before_send: bool = Field(default=True)
    confirm_timeout_seconds: float = Field(default=45.0, gt=0.0)
    confirm_poll_seconds: float = Field(default=0.5, gt=0.0)
    bonding_curve_platforms: List[str] = Field(default_factory=lambda: ["pumpfun", "pumpportal"])
    default_buy_sol: float = Field(default=0.1, gt=0.0)
    attempt_timeout_seconds: float = Field(default=90.0, gt=0.0)


class RetryPolicy(BaseModel):
    """Backoff parameters for one logical API."""

    max_retries: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=1.0, ge=0.0)
    timeout: float = Field(default=30.0, gt=0.0)


class RetryConfig(BaseModel):
    """Default retry policy plus per-API overrides."""

    default: RetryPolicy = Field(default_factory=RetryPolicy)
    apis: Dict[str, Dict[str, Any]] = Field(
        default_factory=lambda: {
            "solana": {"max_retries": 5, "base_delay": 0.5},
            "jupiter": {"max_retries": 3, "base_delay": 1.0},
            "pumpportal": {"max_retries": 3, "base_delay": 2.0},
            "launchpad": {"max_retries": 2, "base_delay": 1.5},
        }
    )

    def policy_for(self, api: str, **overrides: Any) -> RetryPolicy:
        payload = self.default.model_dump()
        payload.update(self.apis.get(api, {}))
        payload.update({key: value for key, value in overrides.items() if value is not None})
        return RetryPolicy(**payload)


class RateLimitConfig(BaseModel):
    """Sliding-window admission control."""

    window_seconds: float = Field(default=10.0, gt=0.0)
    max_per_method: int = Field(default=40, ge=1)
    max_global: int = Field(default=100, ge=1)
    buffer_seconds: float = Field(default=0.1, ge=0.0)
    max_concurrent: int = Field(default=40, ge=1)


class ScreeningConfig(BaseModel):
    """Checks a launched token must pass before a buy is considered."""

    enabled: bool = Field(default=True)
    require_mint_authority_revoked: bool = Field(default=True)
    require_freeze_authority_revoked: bool = Field(default=True)
    trusted_authorities: List[str] = Field(default_factory=list)
    min_pool_liquidity_sol: float = Field(default=0.0, ge=0.0)
    min_holders: int = Field(default=0, ge=0, le=20)
    blocked_developers: List[str] = Field(default_factory=list)


class RiskConfig(BaseModel):
    """Per-trade admission limits."""

    max_daily_loss_sol: float = Field(default=1.0, ge=0.0)
    max_single_trade_sol: float = Field(default=0.5, gt=0.0)
    max_positions: int = Field(default=5, ge=1)
    cooldown_seconds: float = Field(default=5.0, ge=0.0)


class CircuitBreakerConfig(BaseModel):
    """Global kill-switch thresholds."""

    daily_loss_threshold_sol: float = Field(default=2.0, gt=0.0)
    single_loss_threshold_sol: float = Field(default=0.5, gt=0.0)
    error_threshold: int = Field(default=5, ge=1)
    recovery_window_seconds: float = Field(default=300.0, ge=0.0)
    day_length_seconds: float = Field(default=86_400.0, gt=0.0)


class ProfitTakingConfig(BaseModel):
    """Tiered exit policy for open positions."""

    tier1_multiplier: float = Field(default=10.0, gt=1.0)
    tier1_fraction: float = Field(default=0.3, gt=0.0, le=1.0)
    tier2_multiplier: float = Field(default=100.0, gt=1.0)
    tier2_fraction: float = Field(default=0.5, gt=0.0, le=1.0)
    poll_interval_seconds: float = Field(default=10.0, gt=0.0)
    staleness_seconds: float = Field(default=600.0, gt=0.0)

    @model_validator(mode="after")
    def _ordered_tiers(self) -> "ProfitTakingConfig":
        if self.tier2_multiplier <= self.tier1_multiplier:
            raise ValueError("tier2_multiplier must be greater than tier1_multiplier")
        return self


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    mode: ModeConfig = Field(default_factory=ModeConfig)
    rpc: RPCConfig = Field(default_factory=RPCConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    launchpad: LaunchpadConfig = Field(default_factory=LaunchpadConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    bonding_curve: BondingCurveConfig = Field(default_factory=BondingCurveConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    screening: ScreeningConfig = Field(default_factory=ScreeningConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    profit_taking: ProfitTakingConfig = Field(default_factory=ProfitTakingConfig)

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

        # Runtime environment variables win over static config file defaults.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )

    @property
    def dry_run(self) -> bool:
        return self.mode.active == AppMode.DRY_RUN


def env_path() -> Path:
    """Return the default path for the `.env` file."""

    return Path.cwd() / ".env"


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


def reload_app_config() -> AppConfig:
    """Drop the cached configuration and read every source again."""

    get_app_config.cache_clear()
    return get_app_config()


__all__ = [
    "AggregatorConfig",
    "AppConfig",
    "AppMode",
    "BondingCurveConfig",
    "CircuitBreakerConfig",
    "ExecutionConfig",
    "LaunchpadConfig",
    "ModeConfig",
    "MonitoringConfig",
    "ProfitTakingConfig",
    "RPCConfig",
    "RateLimitConfig",
    "RetryConfig",
    "RetryPolicy",
    "RiskConfig",
    "ScreeningConfig",
    "StorageConfig",
    "WalletConfig",
    "env_path",
    "get_app_config",
    "reload_app_config",
]
