import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        isolation_level: str,
        timezone: str,
        cache_backend: str,
        cache_ttl_secs: int,
        cache_max_entries: int,
        retry_attempts: int,
        retry_backoff_secs: float,
        bulk_max_items: int,
        bulk_timeout_secs: float,
        repair_hour: int,
        repair_minute: int,
    ) -> None:
        self.database_url = database_url
        self.isolation_level = isolation_level
        self.timezone = timezone
        self.cache_backend = cache_backend
        self.cache_ttl_secs = cache_ttl_secs
        self.cache_max_entries = cache_max_entries
        self.retry_attempts = retry_attempts
        self.retry_backoff_secs = retry_backoff_secs
        self.bulk_max_items = bulk_max_items
        self.bulk_timeout_secs = bulk_timeout_secs
        self.repair_hour = repair_hour
        self.repair_minute = repair_minute


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    isolation_level = os.getenv("LEDGER_ISOLATION_LEVEL", "SERIALIZABLE").upper()
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    cache_backend = os.getenv("LEDGER_CACHE_BACKEND", "memory").lower()
    cache_ttl_secs = int(os.getenv("LEDGER_CACHE_TTL_SECS", "300"))
    cache_max_entries = int(os.getenv("LEDGER_CACHE_MAX_ENTRIES", "2048"))
    retry_attempts = int(os.getenv("LEDGER_RETRY_ATTEMPTS", "3"))
    retry_backoff_secs = float(os.getenv("LEDGER_RETRY_BACKOFF_SECS", "0.05"))
    bulk_max_items = int(os.getenv("LEDGER_BULK_MAX_ITEMS", "100"))
    bulk_timeout_secs = float(os.getenv("LEDGER_BULK_TIMEOUT_SECS", "30"))
    repair_hour = int(os.getenv("LEDGER_REPAIR_HOUR", "3"))
    repair_minute = int(os.getenv("LEDGER_REPAIR_MINUTE", "30"))
    return Settings(
        database_url=database_url,
        isolation_level=isolation_level,
        timezone=timezone,
        cache_backend=cache_backend,
        cache_ttl_secs=cache_ttl_secs,
        cache_max_entries=cache_max_entries,
        retry_attempts=max(1, retry_attempts),
        retry_backoff_secs=retry_backoff_secs,
        bulk_max_items=bulk_max_items,
        bulk_timeout_secs=bulk_timeout_secs,
        repair_hour=repair_hour,
        repair_minute=repair_minute,
    )
