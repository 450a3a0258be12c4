from functools import lru_cache
import json
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


BACKEND_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


class Settings(BaseSettings):
    # Resolve to backend/.env so workers started from any cwd see the same values.
    model_config = SettingsConfigDict(
        env_file=str(BACKEND_ENV_FILE),
        env_file_encoding="utf-8",
        env_prefix="ISLANDSCHED_",
    )

    project_name: str = "IslandSched API"
    api_prefix: str = "/api"
    log_level: str = "INFO"

    exchange_timeout_seconds: float = Field(default=30.0, gt=0)
    exchange_retry_attempts: int = Field(default=3, ge=1, le=20)
    exchange_retry_backoff_seconds: float = Field(default=0.5, ge=0)
    collector_rank: int = Field(default=0, ge=0)
    max_workers: int = Field(default=16, ge=1)
    process_start_method: Literal["spawn", "fork", "forkserver"] = "spawn"

    cors_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def split_cors_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                try:
                    parsed = json.loads(stripped)
                    if isinstance(parsed, list):
                        return [str(item).strip() for item in parsed if str(item).strip()]
                except json.JSONDecodeError:
                    pass
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
