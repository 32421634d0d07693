"""
External service clients: OpenAI / Azure OpenAI and a PostgreSQL pool.

Clients are built once per process and shared by workers:

    - build_llm_client(): AzureOpenAI when an Azure endpoint is configured,
      plain OpenAI otherwise
    - get_pg_pool(): psycopg2 ThreadedConnectionPool sized for the worker pool
    - pg_connection(): context manager that checks a connection out and back in
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Union

import structlog
from openai import AzureOpenAI, OpenAI
from psycopg2.extensions import connection as PGConnection
from psycopg2.pool import ThreadedConnectionPool

from survey_insights.error_handling import PostgresError
from survey_insights.settings import AppSettings, LLMSettings

_logger = structlog.get_logger()

LLMClient = Union[OpenAI, AzureOpenAI]

_pg_pool: Optional[ThreadedConnectionPool] = None
_pg_pool_lock = threading.Lock()


def build_llm_client(settings: LLMSettings) -> LLMClient:
    """Create the chat/embedding client described by the settings."""
    if settings.azure_endpoint:
        _logger.info("llm.client.azure", endpoint=settings.azure_endpoint)
        return AzureOpenAI(
            azure_endpoint=settings.azure_endpoint,
            api_key=settings.api_key,
            api_version=settings.azure_api_version,
            timeout=settings.timeout,
        )
    return OpenAI(api_key=settings.api_key, base_url=settings.base_url, timeout=settings.timeout)


def get_pg_pool(settings: AppSettings) -> ThreadedConnectionPool:
    """Lazily create the process-wide PostgreSQL pool."""
    global _pg_pool
    with _pg_pool_lock:
        if _pg_pool is None:
            pg = settings.postgres
            # One connection per worker, plus the API and the embedding writer.
            maxconn = max(4, settings.queue.concurrency + 2)
            try:
                _pg_pool = ThreadedConnectionPool(
                    1,
                    maxconn,
                    host=pg.host,
                    port=pg.port,
                    user=pg.username,
                    password=pg.password,
                    dbname=pg.database,
                    sslmode=pg.sslmode,
                )
            except Exception as exc:
                raise PostgresError(f"connection to PostgreSQL failed: {exc}", {"host": pg.host}) from exc
            _logger.info("pool.created", host=pg.host, database=pg.database, maxconn=maxconn)
        return _pg_pool


def close_pg_pool() -> None:
    global _pg_pool
    with _pg_pool_lock:
        if _pg_pool is not None:
            _pg_pool.closeall()
            _pg_pool = None
            _logger.info("pool.closed")


@contextmanager
def pg_connection(pool: ThreadedConnectionPool) -> Iterator[PGConnection]:
    """Check out a connection; roll back on error and always return it."""
    conn = pool.getconn()
    try:
        conn.set_client_encoding("UTF8")
        yield conn
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)
