"""Formula store configuration.

Mirrors the pydantic-settings pattern used by the service configs.
Loads from environment variables and .env file.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class KnowledgeSettings(BaseSettings):
    """Tunables for evaluation and inference.

    All values can be set via environment variables or .env file.
    Prefix: KNOWLEDGE_
    """

    # ----- Reasoning -----
    max_iterations: int = Field(
        default=1000,
        ge=1,
        description="Fixpoint rounds before a closure is reported divergent.",
    )
    max_formulas: int = Field(
        default=1_000_000,
        ge=1,
        description="Closure size bound before a closure is reported divergent.",
    )

    # ----- Query evaluation -----
    parallel_find_threshold: int = Field(
        default=50_000,
        ge=1,
        description="Candidate count above which read-only find() is partitioned across threads.",
    )
    max_workers: int = Field(
        default=4,
        ge=1,
        description="Thread pool size for partitioned find() and push-based delivery.",
    )

    # ----- Subscriptions -----
    subscriber_queue_size: int = Field(
        default=256,
        ge=1,
        description="Bounded per-subscriber queue for push-based query delivery.",
    )

    model_config = {
        "env_prefix": "KNOWLEDGE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> KnowledgeSettings:
    """Get cached settings singleton."""
    return KnowledgeSettings()
