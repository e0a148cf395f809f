"""Runtime settings, read from ``CLAIMRECON_*`` environment variables or a ``.env`` file."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CLAIMRECON_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    data_dir: Path = BASE_DIR / "data"
    db_path: Path = BASE_DIR / "data/claimrecon.db"
    log_level: str = "INFO"
    log_json: bool = False

    batch_concurrency: int = Field(default=5, ge=1)
    auto_match_threshold: int = Field(default=80, ge=0, le=100)
    # Seconds; None leaves collaborator calls unbounded unless the caller passes a deadline.
    default_call_timeout: float | None = None

    cors_origins: list[str] = ["http://localhost:8001"]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
