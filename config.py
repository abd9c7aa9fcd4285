import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        token_secret: str,
        token_max_age_hours: int,
        log_level: str,
        seed_categories: bool,
    ) -> None:
        self.database_url = database_url
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.log_level = log_level
        self.seed_categories = seed_categories


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
    token_secret = os.getenv(
        "LEDGER_TOKEN_SECRET",
        "3f9c2d7b8e41a05c6d1e9f27b4a8c3d0e5f61728394a5b6c7d8e9f0a1b2c3d4e",
    )
    token_max_age_hours = int(os.getenv("LEDGER_TOKEN_MAX_AGE_HOURS", "24"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    seed_categories = _env_flag("LEDGER_SEED_CATEGORIES", "1")
    return Settings(
        database_url=database_url,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
        log_level=log_level,
        seed_categories=seed_categories,
    )
