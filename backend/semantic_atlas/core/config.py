"""Runtime configuration helpers.

Classes:
    Settings: Pydantic settings model capturing environment-driven defaults.

Functions:
    get_settings(): Return a cached Settings instance for dependency injection.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Semantic Atlas API"
    database_url: str = "sqlite+aiosqlite:///./data/semantic_atlas.db"
    log_level: str = "INFO"

    embedding_provider: Literal["hashing", "openai"] = "hashing"
    embedding_dim: int = Field(default=512, ge=2)
    embedding_retry_attempts: int = Field(default=5, ge=1)
    openai_api_key: SecretStr | None = None
    openai_embedding_model: str = "text-embedding-3-small"
    openai_embedding_fallback_model: str = "text-embedding-3-large"

    distance_metric: str = "cosine"
    n_neighbors: int = Field(default=15, ge=1)
    layout_components: int = Field(default=2, ge=2, le=3)
    min_dist: float = Field(default=0.1, ge=0.0)
    spread: float = Field(default=1.0, gt=0.0)
    learning_rate: float = Field(default=1.0, gt=0.0)
    negative_sample_rate: int = Field(default=5, ge=0)
    repulsion_strength: float = Field(default=1.0, ge=0.0)
    max_step: float = Field(default=4.0, gt=0.0)
    max_coordinate: float = Field(default=1.0e4, gt=0.0)
    layout_radius: float = Field(default=10.0, gt=0.0)
    placement_jitter: float = Field(default=0.01, ge=0.0)
    random_seed: int = 42

    local_epochs: int = Field(default=30, ge=0)
    global_epochs: int = Field(default=200, ge=0)
    global_settle_every: int = Field(default=50, ge=0)
    local_move_bound: float = Field(default=0.5, ge=0.0)
    negative_pool_size: int = Field(default=64, ge=1)

    approximate_threshold: int = Field(default=2000, ge=1)
    lsh_tables: int = Field(default=6, ge=1)
    lsh_hyperplanes: int = Field(default=8, ge=1, le=62)
    graph_rebuild_ratio: float = Field(default=0.5, gt=0.0)

    chunk_strategy: Literal["tokens", "auto", "paragraphs", "sentences"] = "tokens"
    tokens_per_chunk: int = Field(default=1000, ge=1)
    chunk_overlap: int = Field(default=300, ge=0)
    preview_chars: int = Field(default=160, ge=8)
    search_default_k: int = Field(default=30, ge=1)

    worker_threads: int = Field(default=2, ge=1)

    @field_validator("distance_metric")
    @classmethod
    def check_metric(cls, value: str) -> str:
        metric = value.strip().lower()
        if metric not in {"cosine", "euclidean"}:
            raise ValueError("distance_metric must be 'cosine' or 'euclidean'")
        return metric


@lru_cache()
def get_settings() -> Settings:
    return Settings()
