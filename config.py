import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        upload_dir: Path,
        upload_base_url: str,
        bcrypt_rounds: int,
        reset_token_ttl_minutes: int,
        password_history_limit: int,
        budget_warning_percent: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.upload_dir = upload_dir
        self.upload_base_url = upload_base_url
        self.bcrypt_rounds = bcrypt_rounds
        self.reset_token_ttl_minutes = reset_token_ttl_minutes
        self.password_history_limit = password_history_limit
        self.budget_warning_percent = budget_warning_percent


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINDASH_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINDASH_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINDASH_TIMEZONE", "UTC")
    secret_key = os.getenv(
        "FINDASH_SECRET_KEY",
        "5d0c1f0b8e3a4c7d9a2b6e1f4c8d3a7b0e9f2c5a8d1b4e7f0a3c6d9b2e5f8a1c",
    )
    upload_dir = Path(
        os.getenv("FINDASH_UPLOAD_DIR", str(data_dir / "uploads"))
    ).resolve()
    upload_base_url = os.getenv("FINDASH_UPLOAD_BASE_URL", "/uploads").rstrip("/")
    bcrypt_rounds = int(os.getenv("FINDASH_BCRYPT_ROUNDS", "12"))
    reset_token_ttl_minutes = int(os.getenv("FINDASH_RESET_TOKEN_TTL_MINUTES", "15"))
    password_history_limit = int(os.getenv("FINDASH_PASSWORD_HISTORY", "5"))
    budget_warning_percent = float(os.getenv("FINDASH_BUDGET_WARNING_PERCENT", "90"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        upload_dir=upload_dir,
        upload_base_url=upload_base_url,
        bcrypt_rounds=bcrypt_rounds,
        reset_token_ttl_minutes=reset_token_ttl_minutes,
        password_history_limit=password_history_limit,
        budget_warning_percent=budget_warning_percent,
    )
