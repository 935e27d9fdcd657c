import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_currency: str,
        default_user_id: int,
        log_level: str,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_currency = default_currency
        self.default_user_id = default_user_id
        self.log_level = log_level
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Moscow")
    default_currency = os.getenv("LEDGER_DEFAULT_CURRENCY", "RUB").upper()
    default_user_id = int(os.getenv("LEDGER_DEFAULT_USER_ID", "1"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    scheduler_enabled = _env_flag("LEDGER_SCHEDULER_ENABLED", "true")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_currency=default_currency,
        default_user_id=default_user_id,
        log_level=log_level,
        scheduler_enabled=scheduler_enabled,
    )
