import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_hours: int,
        alert_queue_size: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.alert_queue_size = alert_queue_size
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SPENDGUARD_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "spendguard.db"
    database_url = os.getenv("SPENDGUARD_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("SPENDGUARD_TIMEZONE", "Europe/Berlin")
    session_secret = os.getenv(
        "SPENDGUARD_SESSION_SECRET",
        "5f0c8d3e2b7a41c69e1d7f4b0a8c2e9d6b3f1a7c4e8d2b6f0a9c3e7d1b5f8a2c",
    )
    session_max_age_hours = int(os.getenv("SPENDGUARD_SESSION_MAX_AGE_HOURS", "24"))
    alert_queue_size = int(os.getenv("SPENDGUARD_ALERT_QUEUE_SIZE", "100"))
    scheduler_enabled = _env_flag("SPENDGUARD_SCHEDULER_ENABLED", "true")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        alert_queue_size=alert_queue_size,
        scheduler_enabled=scheduler_enabled,
    )
