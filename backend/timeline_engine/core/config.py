"""Runtime configuration helpers.

Classes:
    Settings: Pydantic settings model capturing environment-driven defaults.
    RetrievalConfig: Explicit tuning parameters handed to every retrieval operation.

Functions:
    get_settings(): Return a cached Settings instance for dependency injection.
    resolve_config(base, overrides): Apply overrides to a RetrievalConfig, raising the engine's ValidationError.
"""

from functools import lru_cache
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from timeline_engine.core.errors import ValidationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Timeline Retrieval Engine API"
    database_url: str = "sqlite+aiosqlite:///./data/timeline.db"
    log_level: str = "INFO"

    embedding_provider: str = "openai"
    embedding_model: Optional[str] = None
    embedding_timeout_seconds: float = 30.0
    embedding_batch_delay_seconds: float = 0.0
    embedding_max_chars: int = 32000
    openai_api_key: SecretStr | None = None
    openai_chat_model: str = "gpt-4.1-mini"
    cohere_api_key: SecretStr | None = None
    cohere_base_url: str = "https://api.cohere.ai/v1"
    voyage_api_key: SecretStr | None = None
    voyage_base_url: str = "https://api.voyageai.com/v1"
    local_embedding_dimension: int = 384
    enable_pattern_narration: bool = False

    similarity_threshold: float = 0.75
    similar_limit: int = 10
    thematic_threshold: float = 0.7
    causal_threshold: float = 0.6
    causal_window_days: int = 365
    temporal_window_days: int = 30
    temporal_decay_days: float = 15.0
    follow_up_threshold: float = 0.5
    follow_up_window_days: int = 90
    min_confidence: float = 0.1
    cluster_threshold: float = 0.8
    min_cluster_size: int = 2
    category_min_support: int = 3
    trend_subwindows: int = 3
    trend_noise_threshold: float = 0.5
    temporal_cluster_window_days: int = 30
    temporal_cluster_min_events: int = 3
    era_shift_threshold: float = 0.3
    tag_neighbor_k: int = 10
    tag_min_similarity: float = 0.7
    tag_limit: int = 5
    excluded_pattern_categories: list[str] = Field(default_factory=lambda: ["other"])


@lru_cache()
def get_settings() -> Settings:
    return Settings()


class RetrievalConfig(BaseModel):
    """Thresholds and windows for similarity, cross-referencing, patterns and tags.

    Every operation receives one of these explicitly; the defaults come from ``Settings``
    so deployments can tune them through the environment. The relationship cutoffs are
    heuristics and are meant to be tuned against real timelines.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    similarity_threshold: float = Field(default=0.75, ge=-1.0, le=1.0)
    similar_limit: int = Field(default=10, ge=0)

    thematic_threshold: float = Field(default=0.7, ge=-1.0, le=1.0)
    causal_threshold: float = Field(default=0.6, ge=-1.0, le=1.0)
    causal_window_days: int = Field(default=365, ge=1)
    temporal_window_days: int = Field(default=30, ge=0)
    temporal_decay_days: float = Field(default=15.0, gt=0.0)
    follow_up_threshold: float = Field(default=0.5, ge=-1.0, le=1.0)
    follow_up_window_days: int = Field(default=90, ge=1)
    min_confidence: float = Field(default=0.1, ge=0.0, le=1.0)

    cluster_threshold: float = Field(default=0.8, ge=-1.0, le=1.0)
    min_cluster_size: int = Field(default=2, ge=2)
    category_min_support: int = Field(default=3, ge=1)
    trend_subwindows: int = Field(default=3, ge=2)
    trend_noise_threshold: float = Field(default=0.5, gt=0.0)
    temporal_cluster_window_days: int = Field(default=30, ge=0)
    temporal_cluster_min_events: int = Field(default=3, ge=2)
    era_shift_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    excluded_pattern_categories: tuple[str, ...] = ("other",)

    tag_neighbor_k: int = Field(default=10, ge=1)
    tag_min_similarity: float = Field(default=0.7, ge=-1.0, le=1.0)
    tag_limit: int = Field(default=5, ge=0)

    @model_validator(mode="after")
    def check_windows(self) -> "RetrievalConfig":
        if self.follow_up_window_days > self.causal_window_days:
            raise ValueError("follow_up_window_days must not exceed causal_window_days")
        return self

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetrievalConfig":
        settings = settings or get_settings()
        values = {name: getattr(settings, name) for name in cls.model_fields if hasattr(settings, name)}
        values["excluded_pattern_categories"] = tuple(
            item.strip().lower() for item in settings.excluded_pattern_categories if item.strip()
        )
        return cls(**values)


def resolve_config(
    base: RetrievalConfig | None = None,
    overrides: dict[str, Any] | None = None,
) -> RetrievalConfig:
    config = base or RetrievalConfig.from_settings()
    if not overrides:
        return config
    merged = config.model_dump()
    merged.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return RetrievalConfig(**merged)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid retrieval configuration: {exc.errors()[0]['msg']}") from exc
