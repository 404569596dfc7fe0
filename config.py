"""
Configuration loaded from environment variables. Fail-fast on invalid values.
"""

from __future__ import annotations

import json
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode


class Config(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True, "extra": "ignore"}

    # Credentials (required for live trading only)
    private_key: str = Field(default="", description="Polygon wallet private key (hex)")
    polymarket_profile_address: str = Field(default="", description="Polymarket proxy address")
    signature_type: int = Field(default=1, ge=0, le=2)

    # API endpoints
    clob_host: str = "https://clob.polymarket.com"
    gamma_host: str = "https://gamma-api.polymarket.com"
    ws_market_url: str = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
    binance_host: str = "https://api.binance.com"
    coinbase_host: str = "https://api.exchange.coinbase.com"
    chain_id: int = 137  # Polygon mainnet

    # Instruments. Comma-separated or JSON list in the environment.
    watch_markets: Annotated[list[str], NoDecode] = Field(default_factory=list)
    spot_symbols: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["BTC", "ETH", "SOL"])
    binance_enabled: bool = True
    coinbase_enabled: bool = True

    # Capital
    initial_capital: float = Field(default=10_000.0, gt=0)

    # Detection thresholds (edge as a fraction of one unit of payout / notional)
    min_edge: float = Field(default=0.005, gt=0, le=1.0)
    cross_venue_min_edge: float = Field(default=0.001, gt=0, le=1.0)
    spread_capture_min_edge: float = Field(default=0.003, gt=0, le=1.0)
    spread_capture_enabled: bool = True
    spread_capture_min_history: int = Field(default=10, ge=2)
    spread_capture_ema_period: int = Field(default=10, ge=2)
    spread_capture_max_bandwidth: float = Field(default=0.05, gt=0)
    binary_tick_size: float = Field(default=0.01, gt=0, le=0.1)
    spot_tick_size: float = Field(default=0.01, gt=0)
    tick_history_len: int = Field(default=200, ge=10)

    # Opportunity time budgets (seconds)
    structural_ttl_sec: float = Field(default=2.0, gt=0)
    cross_venue_ttl_sec: float = Field(default=1.0, gt=0)
    spread_capture_ttl_sec: float = Field(default=5.0, gt=0)

    # Fees
    polymarket_taker_fee: float = Field(default=0.002, ge=0, le=0.1)
    polymarket_maker_fee: float = Field(default=0.0, ge=0, le=0.1)
    polymarket_settlement_fee: float = Field(default=0.0, ge=0, le=0.1)
    binance_taker_fee: float = Field(default=0.001, ge=0, le=0.1)
    binance_maker_fee: float = Field(default=0.001, ge=0, le=0.1)
    coinbase_taker_fee: float = Field(default=0.006, ge=0, le=0.1)
    coinbase_maker_fee: float = Field(default=0.004, ge=0, le=0.1)

    # Kelly sizing. Fill probability per strategy; failure_loss is the fraction
    # of notional expected to be lost when a trade has to be unwound.
    kelly_fraction_cap: float = Field(default=0.25, gt=0, le=1.0)
    kelly_multiplier: float = Field(default=0.5, gt=0, le=1.0)
    kelly_failure_loss: float = Field(default=0.05, gt=0, le=1.0)
    kelly_p_structural: float = Field(default=0.95, gt=0, lt=1.0)
    kelly_p_cross_venue: float = Field(default=0.80, gt=0, lt=1.0)
    kelly_p_spread_capture: float = Field(default=0.60, gt=0, lt=1.0)

    # Risk limits
    max_position_notional: float = Field(default=1_000.0, gt=0)
    max_open_notional: float = Field(default=5_000.0, gt=0)
    max_concurrent_positions: int = Field(default=20, ge=1)
    min_trade_notional: float = Field(default=50.0, ge=0)
    daily_loss_limit: float = Field(default=500.0, gt=0)
    daily_reset_hour_utc: int = Field(default=0, ge=0, le=23)
    max_consecutive_failures: int = Field(default=5, ge=1)

    # Execution
    leg_fill_timeout_sec: float = Field(default=5.0, gt=0)
    leg_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_backoff_base_sec: float = Field(default=0.25, gt=0)
    retry_backoff_max_sec: float = Field(default=2.0, gt=0)
    fill_poll_interval_sec: float = Field(default=0.1, gt=0)
    unwind_max_slippage: float = Field(default=0.05, ge=0, le=0.5)

    # Exit monitoring
    exit_check_interval_sec: float = Field(default=10.0, gt=0)
    take_profit_pct: float = Field(default=0.05, ge=0)
    stop_loss_pct: float = Field(default=0.0, ge=0)  # 0 disables
    max_hold_sec: float = Field(default=0.0, ge=0)  # 0 disables

    # Feeds
    feed_stale_after_sec: float = Field(default=15.0, gt=0)
    feed_backoff_base_sec: float = Field(default=1.0, gt=0)
    feed_backoff_max_sec: float = Field(default=30.0, gt=0)
    feed_failures_before_degraded: int = Field(default=3, ge=1)
    spot_poll_interval_sec: float = Field(default=1.0, gt=0)
    channel_maxsize: int = Field(default=10_000, ge=10)

    # Modes
    paper_trading: bool = True
    log_level: str = "INFO"

    # Persistence
    state_db: str = "plutus_state.db"
    status_file: str = "status.md"
    status_interval_sec: float = Field(default=30.0, gt=0)

    @field_validator("watch_markets", "spot_symbols", mode="before")
    @classmethod
    def _split_list(cls, value):
        if isinstance(value, str):
            text = value.strip()
            if text.startswith("["):
                return json.loads(text)
            return [item.strip() for item in text.split(",") if item.strip()]
        return value


def venue_fees(cfg: Config) -> dict[str, tuple[float, float]]:
    """Return {venue: (taker_fee, maker_fee)} for every supported venue."""
    return {
        "polymarket": (cfg.polymarket_taker_fee, cfg.polymarket_maker_fee),
        "binance": (cfg.binance_taker_fee, cfg.binance_maker_fee),
        "coinbase": (cfg.coinbase_taker_fee, cfg.coinbase_maker_fee),
    }


def load_config() -> Config:
    """Load and validate config from environment. Raises on invalid fields."""
    return Config()
