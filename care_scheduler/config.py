from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Care Scheduler"
    log_level: str = "INFO"
    store_timeout_seconds: float = Field(default=5.0, gt=0)
    busy_shift_policy: Literal["reject", "wait"] = "reject"

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="CARE_SCHEDULER_", case_sensitive=False
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
