import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        scheduler_enabled: bool,
        scheduler_interval_minutes: int,
        promotion_days_before: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.scheduler_enabled = scheduler_enabled
        self.scheduler_interval_minutes = scheduler_interval_minutes
        self.promotion_days_before = promotion_days_before


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BILLS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("BILLS_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "bills.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("BILLS_TIMEZONE", "Europe/Berlin")
    scheduler_enabled = _env_flag("BILLS_SCHEDULER_ENABLED")
    scheduler_interval_minutes = int(
        os.getenv("BILLS_SCHEDULER_INTERVAL_MINUTES", "60")
    )
    promotion_days_before = int(os.getenv("BILLS_PROMOTION_DAYS_BEFORE", "7"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        scheduler_enabled=scheduler_enabled,
        scheduler_interval_minutes=scheduler_interval_minutes,
        promotion_days_before=promotion_days_before,
    )
