"""
Centralized configuration management using pydantic-settings.
All services should import Settings from this module.
"""

from typing import List, Optional
from enum import Enum
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Environment types."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTNET = "testnet"


class PriceSource(str, Enum):
    """Where collateral unit prices come from."""
    STATIC = "static"
    COINGECKO = "coingecko"


class DatabaseSettings(BaseSettings):
    """Relational storage settings."""
    url: str = Field(default="sqlite:///./cryptolend.db", description="SQLAlchemy database URL")
    echo: bool = Field(default=False, description="Echo SQL statements")

    model_config = SettingsConfigDict(env_prefix="DATABASE_")


class LendingSettings(BaseSettings):
    """Loan origination and repayment rules."""
    default_currency: str = Field(default="USDT", description="Currency loans are disbursed in")
    default_interest_rate: float = Field(default=8.5, description="Nominal annual rate in percent")
    max_ltv: float = Field(default=0.75, description="Highest loan-to-value ratio accepted at origination")
    max_payment_amount: float = Field(default=100000.0, description="Absolute ceiling for a single payment")
    require_manual_approval: bool = Field(default=False, description="Create loans as pending instead of active")
    first_payment_days: int = Field(default=30, description="Days from origination to the first payment")
    admin_user_ids: List[str] = Field(default_factory=list, description="User ids granted the admin role")

    # Overdue sweep
    overdue_sweep_enabled: bool = Field(default=True, description="Default loans past their due date")
    overdue_check_interval: int = Field(default=3600, description="Seconds between overdue sweeps")

    model_config = SettingsConfigDict(env_prefix="LENDING_")


class PriceFeedSettings(BaseSettings):
    """Collateral price feed settings."""
    source: PriceSource = Field(default=PriceSource.STATIC, description="Price source")
    url: str = Field(default="https://api.coingecko.com/api/v3", description="CoinGecko API base URL")
    vs_currency: str = Field(default="usd", description="Quote currency for prices")
    refresh_interval: int = Field(default=60, description="Seconds between price refreshes")
    timeout: float = Field(default=10.0, description="HTTP timeout in seconds")

    model_config = SettingsConfigDict(env_prefix="PRICE_FEED_")


class KafkaSettings(BaseSettings):
    """Kafka-specific settings."""
    enabled: bool = Field(default=False, description="Publish loan events to Kafka")
    bootstrap_servers: str = Field(default="localhost:9092", description="Kafka bootstrap servers")
    producer_timeout_ms: int = Field(default=10000, description="Producer timeout in milliseconds")

    # Topic names
    topic_loan_events: str = Field(default="loan_events", description="Loan lifecycle events topic")

    model_config = SettingsConfigDict(env_prefix="KAFKA_")


class MonitoringSettings(BaseSettings):
    """Monitoring and observability settings."""
    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format (json or text)")
    log_file: Optional[str] = Field(default=None, description="Log file path")

    # Health checks
    readiness_timeout: int = Field(default=5, description="Readiness check timeout in seconds")

    model_config = SettingsConfigDict(env_prefix="MONITORING_")


class Settings(BaseSettings):
    """Main settings class combining all service settings."""
    # Environment
    environment: Environment = Field(default=Environment.DEVELOPMENT, description="Environment")
    service_name: str = Field(default="cryptolend", description="Service name")
    api_port: int = Field(default=8010, description="HTTP port for the lending API")

    # Sub-settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    lending: LendingSettings = Field(default_factory=LendingSettings)
    price_feed: PriceFeedSettings = Field(default_factory=PriceFeedSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False
    )


# Global settings instance
settings = Settings()
