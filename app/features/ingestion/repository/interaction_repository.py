"""
Persistence layer for normalized interactions.

(user_id, source, source_id) is the identity of an interaction, so
normalizing the same provider item twice updates one row.
"""

from dataclasses import asdict

import psycopg
from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_one, fetch_val
from app.features.ingestion.domain import Interaction, Participant
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class InteractionRepository:
    """Upserts and lookups for the interactions table."""

    SELECT_COLUMNS = """
        id, user_id, contact_id, type, subject, body_text, participants,
        occurred_at, source, source_id, source_meta, batch_id, raw_record_id
    """

    @classmethod
    def _row_to_interaction(cls, row: dict | None) -> Interaction | None:
        if not row:
            return None

        participants = [
            Participant(email=p.get("email", ""), name=p.get("name"), role=p.get("role", "to"))
            for p in (row.get("participants") or [])
            if isinstance(p, dict)
        ]
        return Interaction(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            contact_id=str(row["contact_id"]) if row.get("contact_id") else None,
            type=row["type"],
            subject=row.get("subject"),
            body_text=row.get("body_text"),
            participants=participants,
            occurred_at=row["occurred_at"],
            source=row["source"],
            source_id=row["source_id"],
            source_meta=row.get("source_meta") or {},
            batch_id=str(row["batch_id"]) if row.get("batch_id") else None,
            raw_record_id=str(row["raw_record_id"]) if row.get("raw_record_id") else None,
        )

    @classmethod
    async def upsert(
        cls, interaction: Interaction, *, connection: psycopg.AsyncConnection | None = None
    ) -> str:
        """Insert or refresh an interaction and return its id."""
        query = """
            INSERT INTO interactions (
                user_id, type, subject, body_text, participants, occurred_at,
                source, source_id, source_meta, batch_id, raw_record_id
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, source, source_id)
            DO UPDATE SET
                type = EXCLUDED.type,
                subject = EXCLUDED.subject,
                body_text = EXCLUDED.body_text,
                participants = EXCLUDED.participants,
                occurred_at = EXCLUDED.occurred_at,
                source_meta = EXCLUDED.source_meta,
                raw_record_id = COALESCE(EXCLUDED.raw_record_id, interactions.raw_record_id),
                updated_at = NOW()
            RETURNING id
        """

        interaction_id = await fetch_val(
            query,
            (
                interaction.user_id,
                interaction.type,
                interaction.subject,
                interaction.body_text,
                Jsonb([asdict(p) for p in interaction.participants]),
                interaction.occurred_at,
                interaction.source,
                interaction.source_id,
                Jsonb(interaction.source_meta),
                interaction.batch_id,
                interaction.raw_record_id,
            ),
            connection=connection,
        )
        if not interaction_id:
            raise DatabaseError("Interaction upsert returned no id", operation="upsert_interaction")
        return str(interaction_id)

    @classmethod
    async def get(cls, user_id: str, interaction_id: str) -> Interaction | None:
        query = f"SELECT {cls.SELECT_COLUMNS} FROM interactions WHERE id = %s AND user_id = %s"
        row = await fetch_one(query, (interaction_id, user_id))
        return cls._row_to_interaction(row)

    @staticmethod
    async def link_contact(
        user_id: str,
        interaction_id: str,
        contact_id: str,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> bool:
        query = """
            UPDATE interactions
            SET contact_id = %s,
                updated_at = NOW()
            WHERE id = %s AND user_id = %s
        """
        affected = await execute_query(
            query, (contact_id, interaction_id, user_id), connection=connection
        )
        return affected == 1
