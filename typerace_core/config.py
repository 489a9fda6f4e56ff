"""Runtime settings for the round coordinator (env prefix ``TYPERACE_``)."""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoreSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TYPERACE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Ranking: two metric values closer than this are treated as tied.
    equality_epsilon: float = Field(0.01, ge=0.0, le=1.0)
    scoring_policy: Literal["character", "word"] = "character"
    ranking_policy: Literal["accuracy_first", "score_first"] = "accuracy_first"

    store_timeout_seconds: float = Field(5.0, gt=0)
    poll_interval_seconds: float = Field(2.0, gt=0)
    retry_attempts: int = Field(3, ge=1, le=10)
    retry_base_delay_seconds: float = Field(1.0, ge=0)

    # Presentation delays between result -> leaderboard -> next round.
    result_screen_seconds: int = Field(20, ge=0)
    leaderboard_screen_seconds: int = Field(15, ge=0)

    max_time_limit: int = Field(3600, ge=1)
    max_participants_per_room: int = Field(500, ge=1)

    @field_validator("scoring_policy", "ranking_policy", mode="before")
    @classmethod
    def normalize_policy(cls, value: str) -> str:
        if isinstance(value, str):
            return value.strip().lower()
        return value


@lru_cache
def get_settings() -> CoreSettings:
    return CoreSettings()
