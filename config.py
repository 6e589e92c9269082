import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        secret_key: str,
        token_max_age_hours: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.secret_key = secret_key
        self.token_max_age_hours = token_max_age_hours
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SAVINGS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("SAVINGS_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "savings.db"
        database_url = f"sqlite:///{default_db}"
    secret_key = os.getenv(
        "SAVINGS_SECRET_KEY",
        "3f9c1d2b7a5e48c0b6d41e8f0a7c92d5e13b6f4a8c0d2e7f91b5a3c6d8e0f247",
    )
    token_max_age_hours = int(os.getenv("SAVINGS_TOKEN_MAX_AGE_HOURS", "720"))
    log_level = os.getenv("SAVINGS_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        secret_key=secret_key,
        token_max_age_hours=token_max_age_hours,
        log_level=log_level,
    )
