import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _int_env(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _float_env(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


def _bool_env(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration class with common settings."""
    # Queue processing
    SYNC_BATCH_SIZE = _int_env("SYNC_BATCH_SIZE", 50)
    SYNC_MAX_ATTEMPTS = _int_env("SYNC_MAX_ATTEMPTS", 3)
    SYNC_BASE_DELAY_SECONDS = _int_env("SYNC_BASE_DELAY_SECONDS", 60)
    SYNC_MAX_JITTER_SECONDS = _int_env("SYNC_MAX_JITTER_SECONDS", 60)
    SYNC_STALE_TIMEOUT_SECONDS = _int_env("SYNC_STALE_TIMEOUT_SECONDS", 600)
    SYNC_TIME_LIMIT_SECONDS = _int_env("SYNC_TIME_LIMIT_SECONDS", 55)
    SYNC_MAX_ITERATIONS = _int_env("SYNC_MAX_ITERATIONS", 20)
    SYNC_DEBOUNCE_SECONDS = _int_env("SYNC_DEBOUNCE_SECONDS", 5)
    SYNC_MAX_PAYLOAD_BYTES = _int_env("SYNC_MAX_PAYLOAD_BYTES", 65536)
    SYNC_MEMORY_LIMIT_MB = _int_env("SYNC_MEMORY_LIMIT_MB", None)  # None = unbounded
    SYNC_MEMORY_THRESHOLD = _float_env("SYNC_MEMORY_THRESHOLD", 0.8)
    SYNC_FAILED_CEILING = _int_env("SYNC_FAILED_CEILING", 100)

    # Scheduler
    SYNC_SCHEDULER_ENABLED = _bool_env("SYNC_SCHEDULER_ENABLED", False)
    SYNC_INTERVAL_SECONDS = _int_env("SYNC_INTERVAL_SECONDS", 60)
    SYNC_MODULE_SHARDING = _bool_env("SYNC_MODULE_SHARDING", False)
    SYNC_CLEANUP_DAYS = _int_env("SYNC_CLEANUP_DAYS", 7)

    # Alerts
    ALERT_WEBHOOK_URL = os.environ.get("ALERT_WEBHOOK_URL")
    ALERT_FAILURE_THRESHOLD = _int_env("ALERT_FAILURE_THRESHOLD", 5)
    ALERT_COOLDOWN_SECONDS = _int_env("ALERT_COOLDOWN_SECONDS", 3600)

    # Remote business system
    REMOTE_BASE_URL = os.environ.get("REMOTE_BASE_URL")
    REMOTE_API_TOKEN = os.environ.get("REMOTE_API_TOKEN")
    REMOTE_TIMEOUT_SECONDS = _int_env("REMOTE_TIMEOUT_SECONDS", 30)
    # Comma-separated module names served by the generic REST adapter
    REMOTE_MODULES = os.environ.get("REMOTE_MODULES", "")
    REMOTE_BATCH_ENTITY_TYPES = os.environ.get("REMOTE_BATCH_ENTITY_TYPES", "")

    # CORS configuration
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")


class LocalConfig(Config):
    """Configuration for local development."""
    ENV = "local"
    DEBUG = True


class SandboxConfig(Config):
    """Configuration for sandbox/staging environment."""
    ENV = "sandbox"
    DEBUG = False


class ProductionConfig(Config):
    """Configuration for production environment."""
    ENV = "production"
    DEBUG = False


class TestingConfig(Config):
    """Configuration for the test suite (in-memory database, no scheduler)."""
    ENV = "testing"
    DEBUG = False
    TESTING = True
    SYNC_SCHEDULER_ENABLED = False
    ALERT_WEBHOOK_URL = None


def get_config():
    """Get the appropriate configuration class based on environment variable.

    Environment is determined by FLASK_ENV or ENVIRONMENT variable:
    - 'local' or 'development' -> LocalConfig
    - 'sandbox' or 'staging' -> SandboxConfig
    - 'production' or 'prod' -> ProductionConfig
    - 'testing' or 'test' -> TestingConfig

    Defaults to LocalConfig if not set.
    """
    env = (os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")).lower()

    if env in ["local", "development", "dev"]:
        return LocalConfig
    elif env in ["sandbox", "staging", "stage"]:
        return SandboxConfig
    elif env in ["production", "prod"]:
        return ProductionConfig
    elif env in ["testing", "test"]:
        return TestingConfig
    else:
        # Default to local for safety
        return LocalConfig


@dataclass
class SyncSettings:
    """Typed queue-processing settings handed to the engine and repositories."""

    batch_size: int = 50
    max_attempts: int = 3
    base_delay_seconds: int = 60
    max_jitter_seconds: int = 60
    stale_timeout_seconds: int = 600
    time_limit_seconds: float = 55
    max_iterations: int = 20
    debounce_seconds: int = 5
    max_payload_bytes: int = 65536
    memory_limit_mb: Optional[int] = None
    memory_threshold: float = 0.8
    failed_ceiling: int = 100

    @classmethod
    def from_config(cls, config) -> "SyncSettings":
        """Build settings from a Flask config mapping (or any dict-like object)."""
        def get(key, default):
            value = config.get(key, default) if hasattr(config, "get") else getattr(config, key, default)
            return default if value is None else value

        return cls(
            batch_size=int(get("SYNC_BATCH_SIZE", cls.batch_size)),
            max_attempts=int(get("SYNC_MAX_ATTEMPTS", cls.max_attempts)),
            base_delay_seconds=int(get("SYNC_BASE_DELAY_SECONDS", cls.base_delay_seconds)),
            max_jitter_seconds=int(get("SYNC_MAX_JITTER_SECONDS", cls.max_jitter_seconds)),
            stale_timeout_seconds=int(get("SYNC_STALE_TIMEOUT_SECONDS", cls.stale_timeout_seconds)),
            time_limit_seconds=float(get("SYNC_TIME_LIMIT_SECONDS", cls.time_limit_seconds)),
            max_iterations=int(get("SYNC_MAX_ITERATIONS", cls.max_iterations)),
            debounce_seconds=int(get("SYNC_DEBOUNCE_SECONDS", cls.debounce_seconds)),
            max_payload_bytes=int(get("SYNC_MAX_PAYLOAD_BYTES", cls.max_payload_bytes)),
            memory_limit_mb=(config.get("SYNC_MEMORY_LIMIT_MB") if hasattr(config, "get")
                             else getattr(config, "SYNC_MEMORY_LIMIT_MB", None)),
            memory_threshold=float(get("SYNC_MEMORY_THRESHOLD", cls.memory_threshold)),
            failed_ceiling=int(get("SYNC_FAILED_CEILING", cls.failed_ceiling)),
        )
