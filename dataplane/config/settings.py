"""
Dataplane Configuration Settings
"""
import os
from typing import Optional
from dataclasses import dataclass, field

from dotenv import load_dotenv


def get_env(key: str, default: str = "") -> str:
    """Get environment variable with default value"""
    return os.getenv(key, default)


def get_env_int(key: str, default: int = 0) -> int:
    """Get environment variable as integer"""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def get_env_float(key: str, default: float = 0.0) -> float:
    """Get environment variable as float"""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get environment variable as boolean"""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on')


@dataclass
class ConnectorSettings:
    """Connector configuration settings"""

    connection_timeout: int = field(default_factory=lambda: get_env_int("CONNECTOR_CONNECTION_TIMEOUT", 30))
    query_timeout: float = field(default_factory=lambda: get_env_float("CONNECTOR_QUERY_TIMEOUT", 300.0))
    pool_size: int = field(default_factory=lambda: get_env_int("CONNECTOR_POOL_SIZE", 5))
    max_overflow: int = field(default_factory=lambda: get_env_int("CONNECTOR_MAX_OVERFLOW", 10))
    streaming_chunk_size: int = field(default_factory=lambda: get_env_int("CONNECTOR_STREAMING_CHUNK_SIZE", 1000))

    # Salesforce REST API
    salesforce_api_version: str = field(default_factory=lambda: get_env("SALESFORCE_API_VERSION", "v59.0"))
    salesforce_login_url: str = field(default_factory=lambda: get_env("SALESFORCE_LOGIN_URL", "https://login.salesforce.com"))

    # Xero accounting API and OAuth2 identity service
    xero_api_url: str = field(default_factory=lambda: get_env("XERO_API_URL", "https://api.xero.com/api.xro/2.0"))
    xero_identity_url: str = field(default_factory=lambda: get_env("XERO_IDENTITY_URL", "https://identity.xero.com"))

    # Spendesk public API
    spendesk_api_url: str = field(default_factory=lambda: get_env("SPENDESK_API_URL", "https://api.spendesk.com/v1"))


@dataclass
class SyncSettings:
    """Incremental sync configuration settings"""

    batch_size: int = field(default_factory=lambda: get_env_int("SYNC_BATCH_SIZE", 1000))
    max_batches_per_run: int = field(default_factory=lambda: get_env_int("SYNC_MAX_BATCHES_PER_RUN", 100))
    max_concurrency: int = field(default_factory=lambda: get_env_int("SYNC_MAX_CONCURRENCY", 4))
    max_batch_attempts: int = field(default_factory=lambda: get_env_int("SYNC_MAX_BATCH_ATTEMPTS", 3))
    retry_base_delay: float = field(default_factory=lambda: get_env_float("SYNC_RETRY_BASE_DELAY", 1.0))
    batch_timeout: float = field(default_factory=lambda: get_env_float("SYNC_BATCH_TIMEOUT", 600.0))
    retention_days: int = field(default_factory=lambda: get_env_int("SYNC_RETENTION_DAYS", 30))


@dataclass
class QualitySettings:
    """Data quality configuration settings"""

    completeness_threshold: float = field(default_factory=lambda: get_env_float("QUALITY_COMPLETENESS_THRESHOLD", 0.95))
    uniqueness_threshold: float = field(default_factory=lambda: get_env_float("QUALITY_UNIQUENESS_THRESHOLD", 1.0))
    validity_threshold: float = field(default_factory=lambda: get_env_float("QUALITY_VALIDITY_THRESHOLD", 0.95))
    freshness_hours: int = field(default_factory=lambda: get_env_int("QUALITY_FRESHNESS_HOURS", 24))
    sample_size: int = field(default_factory=lambda: get_env_int("QUALITY_SAMPLE_SIZE", 10000))


@dataclass
class PipelineSettings:
    """Transformation pipeline configuration settings"""

    max_step_retries: int = field(default_factory=lambda: get_env_int("PIPELINE_MAX_STEP_RETRIES", 2))
    step_timeout: float = field(default_factory=lambda: get_env_float("PIPELINE_STEP_TIMEOUT", 1800.0))
    retry_base_delay: float = field(default_factory=lambda: get_env_float("PIPELINE_RETRY_BASE_DELAY", 1.0))


@dataclass
class AppSettings:
    """Application configuration settings"""

    app_name: str = field(default_factory=lambda: get_env("APP_NAME", "Dataplane"))
    app_version: str = field(default_factory=lambda: get_env("APP_VERSION", "1.0.0"))
    debug: bool = field(default_factory=lambda: get_env_bool("DEBUG", False))
    log_level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    log_format: str = field(default_factory=lambda: get_env(
        "LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))

    # State database for checkpoints and pipeline executions
    state_database_url: str = field(default_factory=lambda: get_env("STATE_DATABASE_URL", "sqlite:///./dataplane_state.db"))
    state_database_echo: bool = field(default_factory=lambda: get_env_bool("STATE_DATABASE_ECHO", False))
    notification_webhook_url: Optional[str] = field(default_factory=lambda: get_env("NOTIFICATION_WEBHOOK_URL") or None)


@dataclass
class Settings:
    """Main settings class that combines all configuration sections"""

    connectors: ConnectorSettings = field(default_factory=ConnectorSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    quality: QualitySettings = field(default_factory=QualitySettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    app: AppSettings = field(default_factory=AppSettings)


# Load .env file if it exists
load_dotenv()

# Global settings instance
settings = Settings()
