"""
Configuration settings for the practice-funnel scheduler.

Uses Pydantic Settings for environment variable management with .env file support.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Batch Size
    # ========================================
    batch_min_questions: int = Field(
        default=1,
        ge=1,
        description="Smallest batch a session may request",
    )
    batch_max_questions: int = Field(
        default=20,
        ge=1,
        description="Largest batch a session may request",
    )
    batch_default_questions: int = Field(
        default=10,
        ge=1,
        description="Batch size used when the caller does not ask for one",
    )

    # ========================================
    # Target Selection
    # ========================================
    explore_ratio: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Share of the batch reserved for exploration",
    )
    min_explore: int = Field(
        default=2,
        ge=0,
        description="Minimum explore slots per batch",
    )
    max_distinct_focus: int = Field(
        default=4,
        ge=0,
        description="Distinct weak concepts targeted per batch",
    )
    focus_repeat_pool: int = Field(
        default=10,
        ge=1,
        description="Top-N priority concepts cycled through for extra focus slots",
    )

    # ========================================
    # Mastery Model
    # ========================================
    mastery_prior_alpha: float = Field(
        default=1.0,
        gt=0.0,
        description="Pseudo-count of correct answers (Beta prior)",
    )
    mastery_prior_beta: float = Field(
        default=1.0,
        gt=0.0,
        description="Pseudo-count of wrong answers (Beta prior)",
    )
    priority_weight_weakness: float = Field(default=1.0, description="Weight of 1 - expected mastery")
    priority_weight_uncertainty: float = Field(default=0.4, description="Weight of Beta std deviation")
    priority_weight_time: float = Field(default=0.3, description="Weight of slow average answers")
    priority_weight_tutor: float = Field(default=0.2, description="Weight of tutor usage")

    # ========================================
    # Generation Service
    # ========================================
    generation_api_url: str | None = Field(
        default=None,
        description="Question generation service base URL (None disables generation)",
    )
    generation_timeout_seconds: float = Field(
        default=45.0,
        gt=0.0,
        description="Per-call timeout for the generation service",
    )
    generation_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Generation attempts per target before reporting a shortfall",
    )

    # ========================================
    # Remote Store (PostgREST-compatible)
    # ========================================
    remote_store_url: str | None = Field(
        default=None,
        description="Remote store REST base URL (None disables remote sync)",
    )
    remote_store_api_key: str = Field(
        default="",
        description="API key sent as apikey / bearer token",
    )
    remote_store_timeout_ms: int = Field(
        default=10000,
        description="Remote store request timeout in milliseconds",
    )
    remote_store_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per remote store request",
    )

    # ========================================
    # Local State
    # ========================================
    state_db_path: Path = Field(
        default=Path.home() / ".funnel" / "state.db",
        description="SQLite file holding mastery, seen fingerprints and overrides",
    )

    # ========================================
    # Variant Assignment
    # ========================================
    variant_buckets: str = Field(
        default="verified_first,bank_first",
        description="Comma-separated variants assigned by hash when no override exists",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging verbosity level",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (None for stderr only)",
    )

    @field_validator("batch_max_questions")
    @classmethod
    def _max_not_below_min(cls, value: int, info) -> int:
        minimum = info.data.get("batch_min_questions", 1)
        if value < minimum:
            raise ValueError("batch_max_questions must be >= batch_min_questions")
        return value

    def get_variant_buckets(self) -> list[str]:
        """Get the variant bucket names in configured order."""
        return [v.strip() for v in self.variant_buckets.split(",") if v.strip()]

    def get_priority_weights(self) -> dict[str, float]:
        """Get priority formula weights."""
        return {
            "weakness": self.priority_weight_weakness,
            "uncertainty": self.priority_weight_uncertainty,
            "time": self.priority_weight_time,
            "tutor": self.priority_weight_tutor,
        }

    def get_selection_config(self) -> dict[str, float | int]:
        """Get target selection parameters as a dictionary."""
        return {
            "min_total": self.batch_min_questions,
            "max_total": self.batch_max_questions,
            "explore_ratio": self.explore_ratio,
            "min_explore": self.min_explore,
            "max_distinct_focus": self.max_distinct_focus,
            "focus_repeat_pool": self.focus_repeat_pool,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
