"""Configuration system using pydantic-settings with environment variable loading."""

from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class MarketDataSettings(BaseSettings):
    """Price-feed connection and retry settings."""

    model_config = SettingsConfigDict(env_prefix="MARKET_")

    exchange_id: str = "binance"
    symbol: str = "BTC/USDT"
    interval: str = "1d"
    history_count: int = 1000  # daily candles sent to the forecast step
    max_attempts: int = 3
    retry_delay_seconds: float = 2.0  # fixed, no backoff growth
    page_limit: int = 1000  # max klines per request
    page_delay_seconds: float = 0.2  # pause between paginated requests
    proxy_url: str = ""  # outbound HTTP proxy for IP-restricted runners


class AISettings(BaseSettings):
    """Generative model settings."""

    model_config = SettingsConfigDict(env_prefix="GEMINI_")

    api_key: SecretStr = SecretStr("")
    model: str = "gemini-2.5-flash"
    prompt_window: int = 100  # most recent candles embedded in the prompt
    prediction_count: int = 1  # next-day close only


class ThrottleSettings(BaseSettings):
    """Memoization and rate limiting in front of the model call."""

    model_config = SettingsConfigDict(env_prefix="THROTTLE_")

    cache_ttl_seconds: float = 300.0
    min_interval_seconds: float = 15.0


class LedgerSettings(BaseSettings):
    """Prediction ledger storage."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_")

    db_path: str = "data/predictions.db"
    system_actor: str = "system"  # owner of records created by scheduled runs


class JobSettings(BaseSettings):
    """Batch forecast job behaviour."""

    model_config = SettingsConfigDict(env_prefix="JOB_")

    run_timeout_seconds: float = 900.0  # the model call alone can take minutes
    use_throttle: bool = False


class ApiSettings(BaseSettings):
    """HTTP service settings.

    An empty key disables the endpoints it guards: every request is rejected.
    """

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "0.0.0.0"
    port: int = 8080
    proxy_key: SecretStr = SecretStr("")
    admin_key: SecretStr = SecretStr("")


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    market: MarketDataSettings = MarketDataSettings()
    ai: AISettings = AISettings()
    throttle: ThrottleSettings = ThrottleSettings()
    ledger: LedgerSettings = LedgerSettings()
    job: JobSettings = JobSettings()
    api: ApiSettings = ApiSettings()
