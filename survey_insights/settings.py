"""
Application configuration from environment variables.

This module defines the configuration dataclasses for the analysis pipeline
and its external services, and exposes `load_settings()` to build them from
the process environment (optionally seeded from a .env file).

Configurable services:
    - LLM: OpenAI or Azure OpenAI chat + embedding models
    - Queue: worker pool size, rate limiter, retry and timeout policy
    - PostgreSQL: job and analysis result persistence
    - Redis: Celery broker/backend when QUEUE_BACKEND=celery

Usage:
    from survey_insights.settings import load_settings

    settings = load_settings()                 # reads .env if present
    settings = load_settings("path/.env.test") # explicit file

    # Safe for logs (hides credentials)
    logger.info("settings.loaded", settings=settings.masked())
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Optional

from dotenv import load_dotenv, find_dotenv


# =============================================================================
# CONFIGURATION DATACLASSES
# =============================================================================

@dataclass
class LLMSettings:
    """
    Model service configuration.

    Attributes:
        api_key: API key (OpenAI or Azure OpenAI)
        base_url: Optional OpenAI-compatible base URL
        azure_endpoint: When set, an AzureOpenAI client is built instead
        azure_api_version: API version used with Azure endpoints
        model: Chat model / deployment used for analyses
        max_tokens: Completion token ceiling per call
        temperature: Sampling temperature
        timeout: Request timeout in seconds
        embedding_model: Embedding model / deployment
    """
    api_key: Optional[str]
    base_url: Optional[str] = None
    azure_endpoint: Optional[str] = None
    azure_api_version: str = "2024-02-15-preview"
    model: str = "gpt-4-turbo-preview"
    max_tokens: int = 4000
    temperature: float = 0.3
    timeout: float = 60.0
    embedding_model: str = "text-embedding-3-small"

    def masked(self) -> "LLMSettings":
        return replace(self, api_key=mask(self.api_key))


@dataclass
class QueueSettings:
    """
    Job queue and worker pool policy.

    Attributes:
        concurrency: Number of workers processing jobs in parallel
        rate_limit_max: Max dequeues per rolling window
        rate_limit_window: Window length in seconds
        max_attempts: Attempts per job, first run included
        backoff_seconds: Base delay for exponential backoff between attempts
        job_timeout: Hard wall-clock ceiling per job attempt, in seconds
        backend: "local" (in-process thread pool) or "celery"
    """
    concurrency: int = 3
    rate_limit_max: int = 10
    rate_limit_window: float = 60.0
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    job_timeout: float = 300.0
    backend: str = "local"


@dataclass
class PostgresSettings:
    host: str
    port: int
    username: str
    password: Optional[str]
    database: str
    sslmode: str = "prefer"

    def masked(self) -> "PostgresSettings":
        return replace(self, password=mask(self.password))


@dataclass
class RedisSettings:
    url: str

    def masked(self) -> "RedisSettings":
        # redis://:password@host:port/db
        if "@" in self.url:
            scheme, _, rest = self.url.partition("://")
            host = rest.split("@", 1)[1]
            return RedisSettings(url=f"{scheme}://****@{host}")
        return self


@dataclass
class AppSettings:
    """
    Consolidated application configuration.

    Attributes:
        llm: Model service configuration
        queue: Worker pool policy
        postgres: Persistence configuration
        redis: Celery broker configuration
        default_language: Language used when a job does not name one
        anonymization_salt: Salt for anonymous response ids (random per process if unset)
    """
    llm: LLMSettings
    queue: QueueSettings
    postgres: PostgresSettings
    redis: RedisSettings
    default_language: str = "en"
    anonymization_salt: Optional[str] = None

    def masked(self) -> "AppSettings":
        return replace(
            self,
            llm=self.llm.masked(),
            postgres=self.postgres.masked(),
            redis=self.redis.masked(),
            anonymization_salt=mask(self.anonymization_salt),
        )


# =============================================================================
# HELPERS
# =============================================================================

def mask(value: Optional[str], prefix: int = 4) -> str:
    """
    Mask a sensitive value for logging.

    Example:
        >>> mask("sk-test-key-1234567890")
        'sk-t...7890'
    """
    if not value:
        return "****"
    if len(value) <= prefix * 2:
        return "****"
    return f"{value[:prefix]}...{value[-prefix:]}"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def load_settings(env_file: Optional[str | os.PathLike[str]] = None) -> AppSettings:
    """
    Load configuration from environment variables.

    Args:
        env_file: Optional path to a .env file. When omitted, a .env file in
                  the current directory (or its parents) is used if present.

    Returns:
        AppSettings with every group populated.

    Note:
        PostgreSQL accepts both POSTGRES_* and PG* variable names.
    """
    if env_file:
        load_dotenv(env_file, override=True)
    else:
        dotenv_path = find_dotenv(usecwd=True)
        if dotenv_path:
            load_dotenv(dotenv_path, override=True)

    llm = LLMSettings(
        api_key=os.getenv("OPENAI_API_KEY") or os.getenv("AZURE_OPENAI_API_KEY"),
        base_url=os.getenv("OPENAI_BASE_URL"),
        azure_endpoint=os.getenv("AZURE_OPENAI_ENDPOINT") or None,
        azure_api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-15-preview"),
        model=os.getenv("LLM_MODEL", "gpt-4-turbo-preview"),
        max_tokens=_env_int("LLM_MAX_TOKENS", 4000),
        temperature=_env_float("LLM_TEMPERATURE", 0.3),
        timeout=_env_float("LLM_TIMEOUT", 60.0),
        embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
    )

    queue = QueueSettings(
        concurrency=_env_int("QUEUE_CONCURRENCY", 3),
        rate_limit_max=_env_int("QUEUE_RATE_LIMIT_MAX", 10),
        rate_limit_window=_env_float("QUEUE_RATE_LIMIT_WINDOW", 60.0),
        max_attempts=_env_int("QUEUE_MAX_ATTEMPTS", 3),
        backoff_seconds=_env_float("QUEUE_BACKOFF_SECONDS", 2.0),
        job_timeout=_env_float("QUEUE_JOB_TIMEOUT", 300.0),
        backend=os.getenv("QUEUE_BACKEND", "local").strip().lower(),
    )

    postgres = PostgresSettings(
        host=os.getenv("POSTGRES_HOST") or os.getenv("PGHOST", "localhost"),
        port=int(os.getenv("POSTGRES_PORT") or os.getenv("PGPORT", "5432")),
        username=os.getenv("POSTGRES_USER") or os.getenv("PGUSER", "postgres"),
        password=os.getenv("POSTGRES_PASSWORD") or os.getenv("PGPASSWORD"),
        database=os.getenv("POSTGRES_DB") or os.getenv("PGDATABASE", "workshops"),
        sslmode=os.getenv("POSTGRES_SSLMODE") or os.getenv("PGSSLMODE", "prefer"),
    )

    redis = RedisSettings(
        url=os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL", "redis://localhost:6379/0"),
    )

    return AppSettings(
        llm=llm,
        queue=queue,
        postgres=postgres,
        redis=redis,
        default_language=os.getenv("ANALYSIS_DEFAULT_LANGUAGE", "en"),
        anonymization_salt=os.getenv("ANONYMIZATION_SALT"),
    )
