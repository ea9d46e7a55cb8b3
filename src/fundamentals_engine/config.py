"""
Configuration module using Pydantic Settings.

Provides validated, type-safe configuration from environment variables and an
optional .env file. The commercial provider token is held as a SecretStr so it
never ends up in logs or exception messages; use get_commercial_api_token()
to read the actual value.

Logging is configured here (before Settings is instantiated) so that
validation errors are rendered through the same structlog pipeline as the
rest of the engine.
"""

import logging
import sys

import structlog
from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Logging Setup (must happen before Settings to capture validation errors) ---
logging.basicConfig(
    format="%(asctime)s [%(levelname)-8s] %(message)s",
    stream=sys.stderr,
    level=logging.INFO,
    force=True,
)

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.KeyValueRenderer(
            key_order=["timestamp", "level", "event"]
        ),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class Settings(BaseSettings):
    """
    Configuration for the fundamentals engine.

    Endpoints default to the public hosts of the two upstream providers and
    can be pointed elsewhere (e.g. a recording proxy) through the environment.
    """

    # --- Commercial provider ---
    commercial_base_url: str = Field(
        default="https://api.tiingo.com",
        validation_alias="COMMERCIAL_BASE_URL",
        description="Base URL of the token-authenticated commercial API",
    )
    commercial_api_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="COMMERCIAL_API_TOKEN",
        description="Access token for the commercial API (required for that provider)",
    )

    # --- Scraped provider ---
    scraped_bootstrap_url: str = Field(
        default="https://fc.yahoo.com",
        validation_alias="SCRAPED_BOOTSTRAP_URL",
        description="Page that hands out the session cookies",
    )
    scraped_token_url: str = Field(
        default="https://query1.finance.yahoo.com/v1/test/getcrumb",
        validation_alias="SCRAPED_TOKEN_URL",
        description="Endpoint returning the anti-forgery token (crumb)",
    )
    scraped_fundamentals_url: str = Field(
        default="https://query2.finance.yahoo.com/v10/finance/quoteSummary/",
        validation_alias="SCRAPED_FUNDAMENTALS_URL",
        description="Fundamentals endpoint; the ticker is appended to this path",
    )
    scraped_chart_url: str = Field(
        default="https://query1.finance.yahoo.com/v8/finance/chart/",
        validation_alias="SCRAPED_CHART_URL",
        description="Chart endpoint used for dividend and price history",
    )
    scraped_referer: str = Field(
        default="https://finance.yahoo.com/",
        validation_alias="SCRAPED_REFERER",
    )
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
        ),
        validation_alias="USER_AGENT",
        description="Browser user agent sent to the scraped provider",
    )

    # --- TTLs (seconds) ---
    session_ttl_seconds: int = Field(
        default=15 * 60,
        ge=1,
        validation_alias="SESSION_TTL_SECONDS",
    )
    scraped_cache_ttl_seconds: int = Field(
        default=12 * 60 * 60,
        ge=1,
        validation_alias="SCRAPED_CACHE_TTL_SECONDS",
    )
    result_cache_ttl_seconds: int = Field(
        default=30 * 60,
        ge=1,
        validation_alias="RESULT_CACHE_TTL_SECONDS",
        description="TTL for merged results cached by the orchestrator",
    )

    # --- Timeouts (seconds) ---
    default_timeout: float = Field(
        default=10.0,
        gt=0,
        validation_alias="HTTP_TIMEOUT",
        description="Metadata, price, dividend and session calls",
    )
    fundamentals_timeout: float = Field(
        default=15.0,
        gt=0,
        validation_alias="FUNDAMENTALS_TIMEOUT",
        description="Heavier scraped fundamentals call",
    )

    # --- Caching & fan-out ---
    redis_url: str | None = Field(
        default=None,
        validation_alias="REDIS_URL",
        description="Shared Redis cache (e.g. redis://localhost:6379/0); unset keeps caching in-process",
    )
    local_cache_size: int = Field(
        default=1024,
        ge=1,
        validation_alias="LOCAL_CACHE_SIZE",
        description="Maximum entries held by the in-process cache layer",
    )
    batch_concurrency: int = Field(
        default=8,
        ge=1,
        validation_alias="BATCH_CONCURRENCY",
        description="Concurrent symbol fetches in fetch_many",
    )

    # --- Logging ---
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=False,
        populate_by_name=True,
    )

    @model_validator(mode="after")
    def apply_log_level(self) -> "Settings":
        """Propagate LOG_LEVEL to the root logger and every existing logger."""
        log_level_value = getattr(logging, self.log_level.upper(), logging.INFO)
        logging.getLogger().setLevel(log_level_value)
        for name in logging.root.manager.loggerDict:
            logging.getLogger(name).setLevel(log_level_value)
        return self

    def get_commercial_api_token(self) -> str:
        """Get the commercial API token from its SecretStr field ('' if unset)."""
        return self.commercial_api_token.get_secret_value()


# --- Module-level Singleton Instance ---
config = Settings()
