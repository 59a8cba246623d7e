from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..services.types import PhaseThresholds, TierLimits


def _default_cache_dir() -> Path:
    return Path.home() / ".cache" / "league-funnel"


class Settings(BaseSettings):
    """Runtime configuration for the funnel client and the remote store."""

    model_config = SettingsConfigDict(
        env_prefix="LEAGUE_FUNNEL_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    cache_dir: Path = Field(default_factory=_default_cache_dir)
    api_base_url: str = Field(
        default="http://localhost:3001/api/ml",
        max_length=512,
        description="Base URL of the remote store API.",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        le=120.0,
        description="Timeout applied to every remote API request.",
    )
    sync_debounce_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Quiet period after the last local change before a push is issued.",
    )
    candidates_limit: int = Field(default=30, ge=1, le=500)
    semifinalists_limit: int = Field(default=8, ge=1, le=100)
    finalists_limit: int = Field(default=4, ge=1, le=50)
    refine_threshold: int = Field(
        default=8,
        ge=1,
        description="Candidate count at which a theme enters the refine phase.",
    )
    decide_threshold: int = Field(
        default=4,
        ge=1,
        description="Semifinalist count at which a theme enters the decide phase.",
    )
    state_key: str = Field(default="music-league-strategist", max_length=128)
    legacy_settings_key: str = Field(default="music-league-settings", max_length=128)
    snapshot_key: str = Field(default="music-league-sync-snapshot", max_length=128)

    @model_validator(mode="after")
    def _align_thresholds(self) -> "Settings":
        if self.semifinalists_limit > self.candidates_limit:
            self.semifinalists_limit = self.candidates_limit
        if self.finalists_limit > self.semifinalists_limit:
            self.finalists_limit = self.semifinalists_limit
        if self.refine_threshold > self.candidates_limit:
            self.refine_threshold = self.candidates_limit
        if self.decide_threshold > self.semifinalists_limit:
            self.decide_threshold = self.semifinalists_limit
        return self

    def tier_limits(self) -> TierLimits:
        return TierLimits(
            candidates=self.candidates_limit,
            semifinalists=self.semifinalists_limit,
            finalists=self.finalists_limit,
        )

    def phase_thresholds(self) -> PhaseThresholds:
        return PhaseThresholds(
            refine_candidates=self.refine_threshold,
            decide_semifinalists=self.decide_threshold,
        )

    def ensure_directories(self) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
