"""
Response embeddings via OpenAI / Azure OpenAI.

The pipeline calls `EmbeddingStore.store_embedding()` once per anonymized
answer. Storage is best-effort: the pipeline logs failures and moves on.

`OpenAIEmbeddingStore` generates the vector (with retry and exponential
backoff, 3 attempts) and persists it into `response_embeddings`.

Example:
    >>> store = OpenAIEmbeddingStore(client, pool)
    >>> store.store_embedding("resp_1", "q1", "We need a shared garden", "text-embedding-3-small")
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List

import structlog
from psycopg2.extensions import connection as PGConnection
from psycopg2.extras import Json
from tenacity import retry, stop_after_attempt, wait_exponential

from survey_insights.clients import pg_connection

_logger = structlog.get_logger()


class EmbeddingStore(ABC):
    @abstractmethod
    def store_embedding(self, response_id: str, question_id: str, text: str, model: str) -> None:
        ...


@retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=30), reraise=True)
def _call_embeddings(client: Any, model: str, text: str):
    return client.embeddings.create(model=model, input=[text])


def embed_text(client: Any, model: str, text: str) -> List[float]:
    response = _call_embeddings(client, model, text)
    return list(response.data[0].embedding)


def ensure_response_embeddings_table(pg: PGConnection) -> None:
    sql = """
    CREATE TABLE IF NOT EXISTS response_embeddings (
        id SERIAL PRIMARY KEY,
        response_id TEXT NOT NULL,
        question_id TEXT NOT NULL,
        model TEXT NOT NULL,
        dimensions INT NOT NULL,
        embedding JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (response_id, question_id, model)
    );
    CREATE INDEX IF NOT EXISTS ix_response_embeddings_response ON response_embeddings(response_id);
    """
    with pg.cursor() as cur:
        cur.execute(sql)
    pg.commit()


class OpenAIEmbeddingStore(EmbeddingStore):
    def __init__(self, client: Any, pool: Any):
        self._client = client
        self._pool = pool
        with pg_connection(self._pool) as pg:
            ensure_response_embeddings_table(pg)

    def store_embedding(self, response_id: str, question_id: str, text: str, model: str) -> None:
        if not text.strip():
            return
        vector = embed_text(self._client, model, text)
        with pg_connection(self._pool) as pg:
            with pg.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO response_embeddings (response_id, question_id, model, dimensions, embedding)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (response_id, question_id, model)
                    DO UPDATE SET embedding = EXCLUDED.embedding,
                                  dimensions = EXCLUDED.dimensions,
                                  created_at = NOW()
                    """,
                    (response_id, question_id, model, len(vector), Json(vector)),
                )
            pg.commit()
        _logger.debug("embed.stored", response_id=response_id, question_id=question_id, dims=len(vector))
