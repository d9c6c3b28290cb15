import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        auth_secret: str,
        auth_max_age_secs: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.auth_secret = auth_secret
        self.auth_max_age_secs = auth_max_age_secs
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINANCE_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'finance.db'}"
    timezone = os.getenv("FINANCE_TIMEZONE", "Europe/Berlin")
    auth_secret = os.getenv(
        "FINANCE_AUTH_SECRET",
        "3f9c1d52a7e84b06c2d9e1f0a4b7c8d5e6f7a8b9c0d1e2f3a4b5c6d7e8f9a0b1",
    )
    auth_max_age_secs = int(os.getenv("FINANCE_AUTH_MAX_AGE_SECS", "86400"))
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        auth_secret=auth_secret,
        auth_max_age_secs=auth_max_age_secs,
        log_level=log_level,
    )
