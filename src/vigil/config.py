"""Central configuration for Vigil.

All settings are loaded from environment variables (with ``.env`` file support
via *python-dotenv*).  Validation and type coercion are handled by
``pydantic-settings``.

Usage::

    from vigil.config import get_settings

    settings = get_settings()
    print(settings.REASONING_MODEL)

The :func:`get_settings` helper creates the :class:`VigilSettings` instance
lazily so that importing this module never triggers validation before the
caller has had a chance to load a ``.env`` file or populate the environment.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, ClassVar

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Canonical .env locations (checked in order of priority).
ENV_PATHS: list[str] = ["config/.env", ".env"]

# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class VigilSettings(BaseSettings):
    """Validated configuration for the Vigil process.

    Required fields (no defaults):
        ``OPENROUTER_API_KEY``

    Every backend URL is optional.  An unset backend runs in memory.
    """

    model_config = SettingsConfigDict(
        # .env loading is handled by load_dotenv() in __main__.py.
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Required -- no defaults
    # ------------------------------------------------------------------
    OPENROUTER_API_KEY: str = Field(
        ...,
        description="API key for OpenRouter (https://openrouter.ai).",
    )

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------
    OPENROUTER_BASE_URL: str = Field(
        default="https://openrouter.ai/api/v1",
        description="OpenRouter API base URL.",
    )
    REASONING_MODEL: str = Field(
        default="openai/gpt-4o-mini",
        description="OpenRouter model id used for iteration and consolidation reasoning.",
    )
    EMBEDDING_MODEL: str = Field(
        default="openai/text-embedding-3-small",
        description=(
            "Model used for vector embeddings.  CANNOT be changed after "
            "the first run without invalidating all stored vectors."
        ),
    )
    EMBEDDING_DIMENSIONS: int = Field(
        default=1536,
        ge=1,
        description="Dimensionality of the embedding model output.",
    )
    EMBEDDING_BACKEND: str = Field(
        default="openrouter",
        description="'openrouter' for cloud embeddings or 'hash' for offline deterministic vectors.",
    )

    # ------------------------------------------------------------------
    # Infrastructure
    # ------------------------------------------------------------------
    REDIS_URL: str | None = Field(
        default=None,
        description="Redis URL for the recent tier.  Unset keeps it in memory.",
    )
    POSTGRES_URL: str | None = Field(
        default=None,
        description="PostgreSQL DSN for the durable tier.  Unset keeps it in memory.",
    )
    QDRANT_URL: str | None = Field(
        default=None,
        description="Qdrant HTTP endpoint for the semantic index.  Unset keeps it in memory.",
    )
    QDRANT_COLLECTION_PREFIX: str = Field(
        default="vigil",
        description="Prefix for the short-term and long-term Qdrant collection names.",
    )
    SEMANTIC_ENABLED: bool = Field(
        default=True,
        description="Disable to run without embeddings; relevant context then uses keyword search.",
    )

    # ------------------------------------------------------------------
    # Recent tier
    # ------------------------------------------------------------------
    RECENT_MAX_ENTRIES: int = Field(
        default=1000,
        ge=1,
        description="Maximum number of entries kept in the recent tier.",
    )
    RECENT_TTL_SECONDS: float = Field(
        default=8 * 3600,
        gt=0,
        description="Time-to-live of a recent-tier entry.",
    )

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------
    ITERATION_DELAY_SECONDS: float = Field(
        default=30.0,
        ge=0.0,
        description="Pause between loop iterations.",
    )
    PAUSE_POLL_SECONDS: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description="How often a paused loop re-checks its pause flag and the stop signal.",
    )
    SHUTDOWN_GRACE_SECONDS: float = Field(
        default=5.0,
        ge=0.0,
        description="How long stop() waits for the loop before cancelling it.",
    )
    DEFAULT_GOAL: str = Field(
        default="Monitor your environment, notice anything unusual and keep useful notes.",
        description="Directive used until a human submits one.",
    )

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------
    CONSOLIDATION_ENABLED: bool = Field(default=True, description="Run periodic consolidation.")
    CONSOLIDATION_EVERY_N_ITERATIONS: int = Field(
        default=100,
        ge=0,
        description="Consolidate every N iterations.  0 disables the iteration trigger.",
    )
    CONSOLIDATION_INTERVAL_SECONDS: float | None = Field(
        default=None,
        gt=0,
        description="Also consolidate when this much time has passed since the last run.",
    )
    CONSOLIDATION_WINDOW: int = Field(
        default=100,
        ge=1,
        description="Number of newest items reviewed per consolidation run.",
    )
    PROMOTION_THRESHOLD: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Minimum importance for promoting a recent item to the durable tier.",
    )
    MIN_AGE_BEFORE_PROMOTION_SECONDS: float = Field(
        default=0.0,
        ge=0.0,
        description="Minimum item age before it can be promoted.",
    )
    LONG_TERM_MIN_SCORE: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Similarity threshold for relevant past experience.",
    )
    SIMILAR_TASK_MIN_SCORE: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Similarity threshold for treating a task as already completed.",
    )

    # ------------------------------------------------------------------
    # Background writes
    # ------------------------------------------------------------------
    BACKGROUND_WORKERS: int = Field(default=2, ge=1, le=64, description="Semantic-write worker count.")
    BACKGROUND_QUEUE_SIZE: int = Field(
        default=256,
        ge=1,
        description="Queued semantic writes before new ones are dropped.",
    )

    LOG_LEVEL: str = Field(default="INFO", description="Root log level.")

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("EMBEDDING_BACKEND", mode="before")
    @classmethod
    def _check_backend(cls, value: Any) -> str:
        backend = str(value).strip().lower()
        if backend not in ("openrouter", "hash"):
            raise ValueError("EMBEDDING_BACKEND must be 'openrouter' or 'hash'.")
        return backend

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _check_log_level(cls, value: Any) -> str:
        level = str(value).strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown LOG_LEVEL {value!r}.")
        return level

    @field_validator("REDIS_URL", "POSTGRES_URL", "QDRANT_URL", mode="before")
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_thresholds(self) -> VigilSettings:
        if self.SIMILAR_TASK_MIN_SCORE < self.LONG_TERM_MIN_SCORE:
            logger.warning(
                "SIMILAR_TASK_MIN_SCORE (%.2f) is below LONG_TERM_MIN_SCORE (%.2f).",
                self.SIMILAR_TASK_MIN_SCORE,
                self.LONG_TERM_MIN_SCORE,
            )
        return self

    # ------------------------------------------------------------------
    # Repr safety -- redact secrets in logs / debug output
    # ------------------------------------------------------------------

    _SENSITIVE_FIELDS: ClassVar[set[str]] = {"OPENROUTER_API_KEY", "POSTGRES_URL", "REDIS_URL"}

    def __repr__(self) -> str:
        fields = []
        for name in type(self).model_fields:
            val = getattr(self, name)
            if name in self._SENSITIVE_FIELDS:
                val = "***" if val else None
            fields.append(f"{name}={val!r}")
        return f"VigilSettings({', '.join(fields)})"


# ---------------------------------------------------------------------------
# Lazy accessor
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=1)
def get_settings() -> VigilSettings:
    """Return the process-wide :class:`VigilSettings`.

    Raises:
        pydantic.ValidationError: If ``OPENROUTER_API_KEY`` is missing or any
            value fails validation.
    """
    logger.debug("Initialising VigilSettings from environment.")
    return VigilSettings()  # type: ignore[call-arg]
