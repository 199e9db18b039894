import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        default_preset: str,
        scheduler_enabled: bool,
        report_hour: int,
        recent_transactions: int,
    ) -> None:
        self.database_url = database_url
        self.default_preset = default_preset
        self.scheduler_enabled = scheduler_enabled
        self.report_hour = report_hour
        self.recent_transactions = recent_transactions


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("CLINIC_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "clinic.db"
    database_url = os.getenv("CLINIC_DATABASE_URL", f"sqlite:///{default_db}")
    default_preset = os.getenv("CLINIC_DEFAULT_PRESET", "last-month")
    scheduler_enabled = _env_flag("CLINIC_SCHEDULER_ENABLED", "1")
    report_hour = int(os.getenv("CLINIC_REPORT_HOUR", "2"))
    recent_transactions = int(os.getenv("CLINIC_RECENT_TRANSACTIONS", "10"))
    return Settings(
        database_url=database_url,
        default_preset=default_preset,
        scheduler_enabled=scheduler_enabled,
        report_hour=report_hour,
        recent_transactions=recent_transactions,
    )
