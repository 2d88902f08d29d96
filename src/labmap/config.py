"""Configuration management for labmap.

Uses pydantic-settings to load process configuration from environment
variables. Resolver thresholds are carried by an immutable ResolverConfig
that is passed explicitly to the resolver.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_env_file() -> Path | None:
    """Search for .env file in the working directory and its parents."""
    check_dir = Path.cwd()
    for _ in range(5):
        if (check_dir / ".env").exists():
            return check_dir / ".env"
        parent = check_dir.parent
        if parent == check_dir:
            break
        check_dir = parent

    return None


_env_file = _find_env_file()


class ResolverConfig(BaseModel):
    """Thresholds and budgets of one resolver instance."""

    model_config = ConfigDict(frozen=True)

    accept_threshold: float = Field(default=0.80, ge=0.0, le=1.0)
    ambiguity_delta: float = Field(default=0.05, ge=0.0, le=1.0)
    queue_lower_threshold: float = Field(default=0.60, ge=0.0, le=1.0)
    learn_threshold: float = Field(default=0.85, ge=0.0, le=1.0)

    fuzzy_top_k: int = Field(default=2, ge=2)
    fuzzy_timeout: float = Field(default=0.05, gt=0)

    semantic_timeout: float = Field(default=12.0, gt=0)
    semantic_retry_backoff: float = Field(default=0.5, ge=0)
    max_batch_size: int = Field(default=50, ge=1)

    # Skip fuzzy candidates written in another script than the query
    same_script_only: bool = True

    @model_validator(mode="after")
    def _check_threshold_order(self) -> "ResolverConfig":
        if self.queue_lower_threshold > self.accept_threshold:
            raise ValueError("queue_lower_threshold must not exceed accept_threshold")
        return self


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LABMAP_",
        env_file=str(_env_file) if _env_file else ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================
    # Environment
    # =========================
    environment: Literal["development", "staging", "production"] = "development"

    # =========================
    # PostgreSQL
    # =========================
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "labmap"
    postgres_user: str = "labmap"
    postgres_password: str = Field(default="", repr=False)

    # Full SQLAlchemy URL; overrides the postgres_* parts when set
    database_dsn: str = Field(default="", repr=False)
    database_echo: bool = False

    @computed_field
    @property
    def database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_dsn:
            return self.database_dsn
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @computed_field
    @property
    def database_url_sync(self) -> str:
        """Synchronous database URL for Alembic."""
        url = self.database_url
        return url.replace("+asyncpg", "").replace("+aiosqlite", "")

    # =========================
    # LLM (Tier C)
    # =========================
    llm_provider: Literal["openai", "anthropic", "http"] = "openai"
    llm_model: str = ""
    llm_max_tokens: int = 2000
    openai_api_key: str = Field(default="", repr=False)
    anthropic_api_key: str = Field(default="", repr=False)

    # JSON endpoint used when llm_provider is "http"
    semantic_endpoint_url: str = ""
    semantic_endpoint_token: str = Field(default="", repr=False)

    # Similarity search for the fuzzy tier; "trigram" needs PostgreSQL with pg_trgm
    fuzzy_backend: Literal["rapidfuzz", "trigram"] = "rapidfuzz"

    # =========================
    # Resolver thresholds
    # =========================
    accept_threshold: float = 0.80
    ambiguity_delta: float = 0.05
    queue_lower_threshold: float = 0.60
    learn_threshold: float = 0.85
    fuzzy_timeout: float = 0.05
    semantic_timeout: float = 12.0
    semantic_retry_backoff: float = 0.5
    max_batch_size: int = 50

    # =========================
    # Logging
    # =========================
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"

    def resolver_config(self) -> ResolverConfig:
        """Build the immutable resolver configuration from settings."""
        return ResolverConfig(
            accept_threshold=self.accept_threshold,
            ambiguity_delta=self.ambiguity_delta,
            queue_lower_threshold=self.queue_lower_threshold,
            learn_threshold=self.learn_threshold,
            fuzzy_timeout=self.fuzzy_timeout,
            semantic_timeout=self.semantic_timeout,
            semantic_retry_backoff=self.semantic_retry_backoff,
            max_batch_size=self.max_batch_size,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
