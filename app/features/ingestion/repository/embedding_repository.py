"""
Persistence layer for embeddings (pgvector).

Embeddings are replaced whole on conflict, never patched in place.
"""

import numpy as np
import psycopg

from app.db.helpers import execute_query, fetch_all, fetch_val
from app.features.ingestion.domain import EmbeddingRecord
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EmbeddingRepository:
    """Vector storage and similarity search."""

    @staticmethod
    async def get_content_hash(user_id: str, owner_type: str, owner_id: str) -> str | None:
        query = """
            SELECT content_hash
            FROM embeddings
            WHERE user_id = %s AND owner_type = %s AND owner_id = %s
        """
        return await fetch_val(query, (user_id, owner_type, owner_id))

    @staticmethod
    async def replace(
        record: EmbeddingRecord, *, connection: psycopg.AsyncConnection | None = None
    ) -> None:
        if not record.vector:
            raise ValueError("Embedding record has no vector")

        query = """
            INSERT INTO embeddings (
                user_id, owner_type, owner_id, embedding, content_hash, model
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, owner_type, owner_id)
            DO UPDATE SET
                embedding = EXCLUDED.embedding,
                content_hash = EXCLUDED.content_hash,
                model = EXCLUDED.model,
                created_at = NOW()
        """
        await execute_query(
            query,
            (
                record.user_id,
                record.owner_type,
                record.owner_id,
                np.array(record.vector, dtype=np.float32),
                record.content_hash,
                record.model,
            ),
            connection=connection,
        )
        logger.debug(
            "Embedding stored",
            user_id=record.user_id,
            owner_type=record.owner_type,
            owner_id=record.owner_id,
        )

    @staticmethod
    async def search_similar(
        user_id: str, vector: list[float], limit: int = 10, owner_type: str = "interaction"
    ) -> list[dict]:
        """Nearest owners by cosine distance, closest first."""
        query = """
            SELECT owner_id, embedding <=> %s AS distance
            FROM embeddings
            WHERE user_id = %s AND owner_type = %s
            ORDER BY embedding <=> %s
            LIMIT %s
        """
        query_vector = np.array(vector, dtype=np.float32)
        rows = await fetch_all(query, (query_vector, user_id, owner_type, query_vector, limit))
        return [
            {"owner_id": str(row["owner_id"]), "distance": float(row["distance"])} for row in rows
        ]
