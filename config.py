"""Environment-driven settings and logging setup."""
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    # Empty strings count as "unset".
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return value


def _env_int(key: str, default: int) -> int:
    value = _env(key)
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    database_url: str
    secret_key: str
    access_token_expire_minutes: int
    log_level: str
    budget_check_interval_seconds: int
    budget_alert_cooldown_seconds: int
    db_startup_retries: int
    db_startup_delay_seconds: int


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Read settings from the environment once per process."""
    return Settings(
        database_url=_env("DATABASE_URL", "sqlite:///./smart_ledger.db"),
        secret_key=_env("SECRET_KEY", "CHANGE_ME_TO_SOMETHING_RANDOM_AND_SECRET"),
        access_token_expire_minutes=_env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 60),
        log_level=(_env("LOG_LEVEL", "INFO") or "INFO").upper(),
        budget_check_interval_seconds=max(1, _env_int("BUDGET_CHECK_INTERVAL_SECONDS", 300)),
        budget_alert_cooldown_seconds=max(0, _env_int("BUDGET_ALERT_COOLDOWN_SECONDS", 3600)),
        db_startup_retries=max(1, _env_int("DB_STARTUP_RETRIES", 10)),
        db_startup_delay_seconds=max(0, _env_int("DB_STARTUP_DELAY_SECONDS", 2)),
    )


LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Attach a stream handler to the root logger (idempotent)."""
    config = settings or get_settings()
    root = logging.getLogger()
    root.setLevel(config.log_level)
    if any(getattr(h, "_smart_ledger", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._smart_ledger = True
    root.addHandler(handler)
