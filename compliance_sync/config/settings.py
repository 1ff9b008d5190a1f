"""
Compliance Sync Configuration Settings
"""
import os
from dataclasses import dataclass, field


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
class DatabaseSettings:
    """Database configuration settings"""

    database_url: str = field(default_factory=lambda: get_env("DATABASE_URL", "sqlite:///./compliance_sync.db"))

    # Connection pool settings (ignored for SQLite)
    database_pool_size: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_SIZE", 10))
    database_max_overflow: int = field(default_factory=lambda: get_env_int("DATABASE_MAX_OVERFLOW", 20))
    database_pool_timeout: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_TIMEOUT", 30))


@dataclass
class SyncSettings:
    """Regulator synchronization settings"""

    # Retry policy
    max_retries: int = field(default_factory=lambda: get_env_int("SYNC_MAX_RETRIES", 3))
    backoff_strategy: str = field(default_factory=lambda: get_env("SYNC_BACKOFF_STRATEGY", "exponential"))
    backoff_base_seconds: float = field(default_factory=lambda: get_env_float("SYNC_BACKOFF_BASE_SECONDS", 60.0))
    backoff_max_seconds: float = field(default_factory=lambda: get_env_float("SYNC_BACKOFF_MAX_SECONDS", 3600.0))
    retry_permanent_errors: bool = field(default_factory=lambda: get_env_bool("SYNC_RETRY_PERMANENT_ERRORS", True))

    # Queue processing
    batch_size: int = field(default_factory=lambda: get_env_int("SYNC_BATCH_SIZE", 50))
    worker_count: int = field(default_factory=lambda: get_env_int("SYNC_WORKER_COUNT", 2))
    processing_interval_seconds: int = field(default_factory=lambda: get_env_int("SYNC_PROCESSING_INTERVAL_SECONDS", 30))
    default_priority: int = field(default_factory=lambda: get_env_int("SYNC_DEFAULT_PRIORITY", 100))
    claim_timeout_seconds: int = field(default_factory=lambda: get_env_int("SYNC_CLAIM_TIMEOUT_SECONDS", 900))
    api_rate_limit_per_minute: int = field(default_factory=lambda: get_env_int("SYNC_API_RATE_LIMIT_PER_MINUTE", 60))

    # Listing limits
    job_list_limit: int = field(default_factory=lambda: get_env_int("SYNC_JOB_LIST_LIMIT", 20))
    queue_item_list_limit: int = field(default_factory=lambda: get_env_int("SYNC_QUEUE_ITEM_LIST_LIMIT", 100))


@dataclass
class AppSettings:
    """Application configuration settings"""

    app_name: str = field(default_factory=lambda: get_env("APP_NAME", "Compliance Sync"))
    app_version: str = field(default_factory=lambda: get_env("APP_VERSION", "1.0.0"))
    debug: bool = field(default_factory=lambda: get_env_bool("DEBUG", False))
    log_level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    log_dir: str = field(default_factory=lambda: get_env("LOG_DIR", "logs"))


@dataclass
class Settings:
    """Main settings class that combines all configuration sections"""

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    app: AppSettings = field(default_factory=AppSettings)


# Load .env file if it exists
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

# Global settings instance
settings = Settings()
