"""
Core Configuration Management
TradePilot Strategy Execution Engine

Environment-based settings for the engine, brokerage venues, the decision
oracle, logging and the audit trail.
"""

from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_WATCHLIST = ["AAPL", "GOOGL", "MSFT", "TSLA", "NVDA"]
DEFAULT_PROFIT_TAKING_WATCHLIST = ["AAPL", "GOOGL", "MSFT", "TSLA", "NVDA", "SPY", "QQQ"]


class EngineSettings(BaseSettings):
    """Strategy execution engine settings."""

    model_config = SettingsConfigDict(env_prefix="ENGINE_")

    # Scheduling
    tick_interval_seconds: float = Field(default=30.0, description="Per-strategy tick interval")
    sync_interval_seconds: float = Field(default=60.0, description="Account sync interval")
    io_timeout_seconds: float = Field(default=10.0, description="Timeout for gateway/oracle calls")

    # Capital safety
    max_equity_usage: float = Field(default=0.45, description="Recommended locked capital ceiling")
    auto_lock_buying_power_factor: float = Field(default=0.5, description="Buying power weight for auto-lock")

    # Circuit breaker
    max_auth_failures: int = Field(default=3, description="Auth failures before an account is suppressed")

    # Decisions
    decision_history_size: int = Field(default=100, description="Rolling decision window")
    resume_confidence_threshold: float = Field(default=60.0, description="Min confidence to resume a saved position")
    profit_taking_entry_confidence: float = Field(default=70.0, description="Min confidence for profit-taking entries")
    default_min_profit: float = Field(default=5.0, description="Default profit-taking target in dollars")

    # Universe
    watchlist: List[str] = Field(default_factory=lambda: list(DEFAULT_WATCHLIST))
    profit_taking_watchlist: List[str] = Field(
        default_factory=lambda: list(DEFAULT_PROFIT_TAKING_WATCHLIST)
    )

    # Persistence
    saved_state_path: str = Field(default="data/saved_state.json", description="Resume snapshot file")

    # Credentials treated as "not configured"
    placeholder_credentials: List[str] = Field(
        default_factory=lambda: ["your-api-key", "your-api-secret"]
    )


class AlpacaSettings(BaseSettings):
    """Alpaca brokerage settings."""

    model_config = SettingsConfigDict(env_prefix="ALPACA_")

    api_key: str = Field(default="", description="Alpaca API key id")
    api_secret: str = Field(default="", description="Alpaca API secret key")
    mode: Literal["paper", "live"] = Field(default="paper", description="Trading mode")

    live_url: str = Field(default="https://api.alpaca.markets", description="Live trading API")
    paper_url: str = Field(default="https://paper-api.alpaca.markets", description="Paper trading API")
    data_url: str = Field(default="https://data.alpaca.markets", description="Market data API")
    data_feed: str = Field(default="iex", description="Quote feed")

    request_timeout: float = Field(default=10.0, description="HTTP timeout in seconds")

    @property
    def is_configured(self) -> bool:
        """Check if Alpaca is properly configured."""
        return bool(self.api_key and self.api_secret)


class OracleSettings(BaseSettings):
    """Decision oracle (LLM) settings."""

    model_config = SettingsConfigDict(env_prefix="ORACLE_")

    api_key: Optional[str] = Field(default=None, description="Anthropic API key")
    model: str = Field(default="claude-3-5-sonnet-20241022", description="Model name")
    max_tokens: int = Field(default=1024, description="Max tokens per decision")
    system_prompt: Optional[str] = Field(default=None, description="Override system prompt")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        description="Log format"
    )

    # File logging
    file_enabled: bool = Field(default=True, description="Enable file logging")
    json_path: str = Field(default="logs/tradepilot.json", description="Structured log file")
    error_path: str = Field(default="logs/error.log", description="Error log file")
    file_rotation: str = Field(default="100 MB", description="Log rotation size")
    file_retention: str = Field(default="30 days", description="Log retention period")


class AuditSettings(BaseSettings):
    """Audit trail settings."""

    model_config = SettingsConfigDict(env_prefix="AUDIT_")

    file_enabled: bool = Field(default=False, description="Persist audit events to disk")
    base_dir: str = Field(default="logs/audit", description="Audit file directory")
    max_recent: int = Field(default=500, description="In-memory recent events")


class Settings(BaseSettings):
    """
    Main application settings.

    Aggregates all sub-settings and provides environment-based configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    PROJECT_NAME: str = Field(default="TradePilot", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Environment"
    )

    @property
    def engine(self) -> EngineSettings:
        """Get engine settings."""
        return EngineSettings()

    @property
    def alpaca(self) -> AlpacaSettings:
        """Get Alpaca settings."""
        return AlpacaSettings()

    @property
    def oracle(self) -> OracleSettings:
        """Get oracle settings."""
        return OracleSettings()

    @property
    def logging(self) -> LoggingSettings:
        """Get logging settings."""
        return LoggingSettings()

    @property
    def audit(self) -> AuditSettings:
        """Get audit settings."""
        return AuditSettings()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.ENVIRONMENT == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Call get_settings.cache_clear() or reload_settings() to pick up
    environment changes.
    """
    return Settings()


def reload_settings() -> Settings:
    """Reload settings from environment."""
    get_settings.cache_clear()
    return get_settings()


def get_base_path() -> Path:
    """Get the base path of the application."""
    return Path(__file__).parent.parent.parent
