from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration driven by environment variables."""

    app_name: str = "Nifty Paper Trading Desk"
    api_prefix: str = "/api"
    allowed_origins: List[str] = ["http://localhost:3000", "http://localhost:5173", "http://localhost:8080"]
    debug_http_logging: bool = False
    log_level: str = "INFO"
    log_path: str | None = None
    reprice_log_sample_rate: int = 20

    # Instrument and ledger defaults
    index_symbol: str = "NIFTY"
    lot_size: int = 50
    strike_step: int = 50
    initial_balance: float = 1_000_000.0
    max_order_lots: int = 100
    max_session_id_length: int = 50

    # Exchange calendar
    exchange_utc_offset_minutes: int = 330
    exchange_timezone_name: str = "Asia/Kolkata"
    weekly_expiry_weekday: int = 1  # Monday == 0

    # Quote cache TTLs (seconds)
    live_quote_ttl_seconds: float = 30.0
    option_chain_ttl_seconds: float = 60.0
    historical_ttl_seconds: float = 3600.0
    quote_fetch_timeout_seconds: float = 10.0
    option_chain_timeout_seconds: float = 15.0

    # Upstream market data
    nse_api_base_url: str = "http://nse-api-khaki.vercel.app:5000"
    yahoo_finance_base_url: str = "https://query1.finance.yahoo.com"
    yahoo_index_symbol: str = "^NSEI"
    market_data_debug_verbose: bool = False
    market_data_max_body_bytes: int = 2048

    # Greeks
    greeks_volatility: float = 0.20
    greeks_risk_free_rate: float = 0.06

    # Poller
    poller_enabled: bool = True
    poller_tick_seconds: float = 5.0
    reprice_interval_seconds: float = 30.0
    index_poll_interval_seconds: float = 60.0
    option_chain_poll_interval_seconds: float = 120.0
    snapshot_batch_size: int = 50

    # Database connection string (SQLAlchemy format)
    database_url: str = "sqlite+aiosqlite:///./paper_trading.db"
    db_slow_query_ms: float = 200.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
