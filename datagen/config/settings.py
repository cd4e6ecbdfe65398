"""
Synthetic Store Generator
Centralized Configuration Management

Pydantic settings with environment variable support, validation, and type
safety. Each subsystem reads its own prefix; ``Settings`` aggregates them.
"""

from functools import lru_cache
from typing import Optional
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational Store Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_", populate_by_name=True)

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="ecommerce", alias="database", description="Database name")
    user: str = Field(default="ecommerce", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="SQLAlchemy URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL - uses DATABASE_URL if set, otherwise asyncpg from host/port"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class GeneratorSettings(BaseSettings):
    """Dataset Generator Configuration"""

    model_config = SettingsConfigDict(env_prefix="GENERATOR_")

    batch_size: int = Field(default=5000, ge=1, description="Rows per transactional batch")
    retry_divisor: int = Field(default=4, ge=2, description="Batch size divisor for the single retry")
    seed: int = Field(default=42, description="Seed for the order-detail unit price draw")
    concurrent: bool = Field(default=True, description="Run independent entities concurrently")

    # Default entity counts
    categories: int = Field(default=100, ge=1, description="Categories to generate")
    products_per_category: int = Field(default=1000, ge=1, description="Product slots per category")
    customers: int = Field(default=1_000_000, ge=1, description="Customers to generate")
    orders_per_customer: int = Field(default=5, ge=1, description="Orders per customer")
    detail_multiplier: int = Field(default=100, ge=1, description="Outer index M of the order-detail scheme")
    detail_products: int = Field(default=50_000, ge=1, description="Product span N of the order-detail scheme")
    details_per_pair: int = Field(default=1, ge=1, description="Repetitions K of the order-detail scheme")


class CacheSettings(BaseSettings):
    """Derived Aggregate Cache Configuration"""

    model_config = SettingsConfigDict(env_prefix="CACHE_")

    backend: str = Field(default="table", description="Snapshot backend: table or materialized_view")
    top_spenders_limit: int = Field(default=10, ge=1, description="Rows kept by the top spenders aggregate")
    staleness_seconds: int = Field(default=3600, ge=0, description="Default acceptable snapshot age")
    refresh_interval_seconds: int = Field(default=900, ge=1, description="Scheduled refresh interval")
    refresh_timeout_seconds: Optional[float] = Field(default=600, description="Timeout for a single refresh")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate snapshot backend"""
        allowed = ["table", "materialized_view"]
        if v.lower() not in allowed:
            raise ValueError(f"Cache backend must be one of: {allowed}")
        return v.lower()


class MonitoringSettings(BaseSettings):
    """Logging Configuration"""

    model_config = SettingsConfigDict(env_prefix="", populate_by_name=True)

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="ecommerce-datagen", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    generator: GeneratorSettings = Field(default_factory=GeneratorSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
