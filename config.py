import os
from functools import lru_cache
from pathlib import Path
from typing import Mapping, Optional

from errors import StoreConnectionError


class Settings:
    def __init__(
        self,
        database_url: str,
        upload_dir: Path,
        max_file_size: int,
        statement_timeout_ms: int,
        pool_timeout_secs: float,
        token_secret: str,
        token_max_age_hours: int,
    ) -> None:
        self.database_url = database_url
        self.upload_dir = upload_dir
        self.max_file_size = max_file_size
        self.statement_timeout_ms = statement_timeout_ms
        self.pool_timeout_secs = pool_timeout_secs
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env
    database_url = env.get("LEDGER_DATABASE_URL") or env.get("DATABASE_URL")
    if not database_url:
        raise StoreConnectionError("database url is not configured")
    upload_dir = Path(env.get("LEDGER_UPLOAD_DIR", "./uploads")).resolve()
    max_file_size = int(env.get("LEDGER_MAX_FILE_SIZE", "10485760"))
    statement_timeout_ms = int(env.get("LEDGER_STATEMENT_TIMEOUT_MS", "15000"))
    pool_timeout_secs = float(env.get("LEDGER_POOL_TIMEOUT_SECS", "10"))
    token_secret = env.get(
        "LEDGER_TOKEN_SECRET",
        "5d0f3c7e1b6a42d9a8e4f2c1b7d6e3a0c9f8b2a1d4e7c6b5a3f2e1d0c9b8a7f6",
    )
    token_max_age_hours = int(env.get("LEDGER_TOKEN_MAX_AGE_HOURS", "168"))
    return Settings(
        database_url=database_url,
        upload_dir=upload_dir,
        max_file_size=max_file_size,
        statement_timeout_ms=statement_timeout_ms,
        pool_timeout_secs=pool_timeout_secs,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
