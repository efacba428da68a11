"""Configuration for the sync engine."""
import os
from dataclasses import dataclass, fields
from enum import Enum
from dotenv import load_dotenv

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Local store (PostgreSQL)
DATABASE_URL = os.getenv("DATABASE_URL")

# Remote API
API_BASE_URL = os.getenv("API_BASE_URL")
API_TOKEN = os.getenv("API_TOKEN")
API_TIMEOUT = float(os.getenv("API_TIMEOUT", "20"))

# Request queues
FOREGROUND_QUEUE_CONCURRENCY = int(os.getenv("SYNC_FOREGROUND_QUEUE_CONCURRENCY", "1"))
LOAD_QUEUE_CONCURRENCY = int(os.getenv("SYNC_LOAD_QUEUE_CONCURRENCY", "2"))
BACKGROUND_QUEUE_CONCURRENCY = int(os.getenv("SYNC_BACKGROUND_QUEUE_CONCURRENCY", "2"))
MAX_FOREGROUND_QUEUE_CAPACITY = int(os.getenv("SYNC_MAX_FOREGROUND_QUEUE_CAPACITY", "50"))
MAX_LOAD_QUEUE_CAPACITY = int(os.getenv("SYNC_MAX_LOAD_QUEUE_CAPACITY", "50"))
MAX_BACKGROUND_QUEUE_CAPACITY = int(os.getenv("SYNC_MAX_BACKGROUND_QUEUE_CAPACITY", "50"))
FOREGROUND_QUEUE_CAPACITY_TIMEOUT = float(os.getenv("SYNC_FOREGROUND_QUEUE_CAPACITY_TIMEOUT", "10"))
LOAD_QUEUE_CAPACITY_TIMEOUT = float(os.getenv("SYNC_LOAD_QUEUE_CAPACITY_TIMEOUT", "5"))
BACKGROUND_QUEUE_CAPACITY_TIMEOUT = float(os.getenv("SYNC_BACKGROUND_QUEUE_CAPACITY_TIMEOUT", "2"))
QUEUE_CAPACITY_CHECK_INTERVAL = float(os.getenv("SYNC_QUEUE_CAPACITY_CHECK_INTERVAL", "0.1"))

# Policies
DEFAULT_SAVE_POLICY = os.getenv("SYNC_DEFAULT_SAVE_POLICY", "local_first")
DEFAULT_LOAD_POLICY = os.getenv("SYNC_DEFAULT_LOAD_POLICY", "local_then_remote")
REMOTE_FIRST_LOAD_FALLBACK = os.getenv("SYNC_REMOTE_FIRST_LOAD_FALLBACK", "false").lower() == "true"

# Retry executor (seconds)
INITIAL_RETRY_DELAY = float(os.getenv("SYNC_INITIAL_RETRY_DELAY", "2"))
MAX_RETRY_DELAY = float(os.getenv("SYNC_MAX_RETRY_DELAY", "300"))
MIN_RETRY_DELAY = float(os.getenv("SYNC_MIN_RETRY_DELAY", "1"))
BACKOFF_MULTIPLIER = float(os.getenv("SYNC_BACKOFF_MULTIPLIER", "2.0"))
JITTER_PERCENT = float(os.getenv("SYNC_JITTER_PERCENT", "0.2"))
MAX_RETRY_ATTEMPTS = int(os.getenv("SYNC_MAX_RETRY_ATTEMPTS", "50"))
FOREGROUND_POLL_INTERVAL = float(os.getenv("SYNC_FOREGROUND_POLL_INTERVAL", "5"))
BACKGROUND_POLL_INTERVAL = float(os.getenv("SYNC_BACKGROUND_POLL_INTERVAL", "300"))
BACKGROUND_SYNC_TIMEOUT = float(os.getenv("SYNC_BACKGROUND_SYNC_TIMEOUT", "20"))
RETAIN_SYNCED_ITEMS = os.getenv("SYNC_RETAIN_SYNCED_ITEMS", "true").lower() == "true"
DISPATCHER_WORKERS = int(os.getenv("SYNC_DISPATCHER_WORKERS", "4"))


class SavePolicy(str, Enum):
    """Where a write lands first."""
    LOCAL_FIRST = "local_first"
    REMOTE_FIRST = "remote_first"


class LoadPolicy(str, Enum):
    """Where a read is served from."""
    LOCAL_ONLY = "local_only"
    LOCAL_THEN_REMOTE = "local_then_remote"
    REMOTE_FIRST = "remote_first"


@dataclass
class SyncConfig:
    """Tunables for queues, policies and retry scheduling.

    Durations are seconds. Defaults come from the environment.
    """
    foreground_queue_concurrency: int = FOREGROUND_QUEUE_CONCURRENCY
    load_queue_concurrency: int = LOAD_QUEUE_CONCURRENCY
    background_queue_concurrency: int = BACKGROUND_QUEUE_CONCURRENCY
    max_foreground_queue_capacity: int = MAX_FOREGROUND_QUEUE_CAPACITY
    max_load_queue_capacity: int = MAX_LOAD_QUEUE_CAPACITY
    max_background_queue_capacity: int = MAX_BACKGROUND_QUEUE_CAPACITY
    foreground_queue_capacity_timeout: float = FOREGROUND_QUEUE_CAPACITY_TIMEOUT
    load_queue_capacity_timeout: float = LOAD_QUEUE_CAPACITY_TIMEOUT
    background_queue_capacity_timeout: float = BACKGROUND_QUEUE_CAPACITY_TIMEOUT
    queue_capacity_check_interval: float = QUEUE_CAPACITY_CHECK_INTERVAL
    default_save_policy: SavePolicy = SavePolicy(DEFAULT_SAVE_POLICY)
    default_load_policy: LoadPolicy = LoadPolicy(DEFAULT_LOAD_POLICY)
    remote_first_load_fallback: bool = REMOTE_FIRST_LOAD_FALLBACK
    initial_retry_delay: float = INITIAL_RETRY_DELAY
    max_retry_delay: float = MAX_RETRY_DELAY
    min_retry_delay: float = MIN_RETRY_DELAY
    backoff_multiplier: float = BACKOFF_MULTIPLIER
    jitter_percent: float = JITTER_PERCENT
    max_retry_attempts: int = MAX_RETRY_ATTEMPTS
    foreground_poll_interval: float = FOREGROUND_POLL_INTERVAL
    background_poll_interval: float = BACKGROUND_POLL_INTERVAL
    background_sync_timeout: float = BACKGROUND_SYNC_TIMEOUT
    retain_synced_items: bool = RETAIN_SYNCED_ITEMS
    dispatcher_workers: int = DISPATCHER_WORKERS

    def __post_init__(self):
        """Accept plain strings for the policy fields."""
        if isinstance(self.default_save_policy, str):
            self.default_save_policy = SavePolicy(self.default_save_policy)
        if isinstance(self.default_load_policy, str):
            self.default_load_policy = LoadPolicy(self.default_load_policy)

    def validate(self) -> "SyncConfig":
        """Validate ranges; raises ValueError listing every problem."""
        errors = []

        for f in fields(self):
            value = getattr(self, f.name)
            if f.name.endswith("_concurrency") or f.name.endswith("_capacity") or f.name == "dispatcher_workers":
                if value < 1:
                    errors.append(f"{f.name} must be >= 1 (got {value})")
            elif f.name.endswith("_timeout") or f.name.endswith("_interval") or f.name.endswith("_delay"):
                if value < 0:
                    errors.append(f"{f.name} must be >= 0 (got {value})")

        if self.queue_capacity_check_interval <= 0:
            errors.append("queue_capacity_check_interval must be > 0")
        if self.backoff_multiplier < 1:
            errors.append(f"backoff_multiplier must be >= 1 (got {self.backoff_multiplier})")
        if not 0 <= self.jitter_percent < 1:
            errors.append(f"jitter_percent must be in [0, 1) (got {self.jitter_percent})")
        if self.max_retry_attempts < 1:
            errors.append(f"max_retry_attempts must be >= 1 (got {self.max_retry_attempts})")
        if self.min_retry_delay > self.max_retry_delay:
            errors.append("min_retry_delay must not exceed max_retry_delay")
        if self.foreground_poll_interval <= 0 or self.background_poll_interval <= 0:
            errors.append("poll intervals must be > 0")

        if errors:
            raise ValueError("Config errors:\n  " + "\n  ".join(errors))
        return self


def validate_config():
    """Validate the process-level settings needed by the bundled adapters."""
    errors = []

    if not DATABASE_URL:
        errors.append("DATABASE_URL is required")

    if not API_BASE_URL:
        errors.append("API_BASE_URL is required")
    elif not API_BASE_URL.startswith(("http://", "https://")):
        errors.append(f"API_BASE_URL must be an http(s) URL: {API_BASE_URL}")

    if API_TIMEOUT <= 0:
        errors.append(f"API_TIMEOUT must be positive: {API_TIMEOUT}")

    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))
