"""
Repository helpers for contacts and their identities.

Contact creation is an atomic upsert on (user_id, primary_email) so two
extraction jobs seeing the same new address converge on one row.
"""

import psycopg

from app.db.helpers import DatabaseError, execute_query, fetch_one, fetch_val
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ContactRepository:
    """Persistence helpers for contacts + contact_identities."""

    @staticmethod
    async def fetch_user_email(user_id: str) -> str | None:
        email = await fetch_val("SELECT email FROM users WHERE id = %s", (user_id,))
        return email.strip().lower() if email else None

    @staticmethod
    async def resolve_contact_id(user_id: str, email: str) -> str | None:
        """Existing contact for an address: identity match first, then primary email."""
        row = await fetch_one(
            """
            SELECT contact_id
            FROM contact_identities
            WHERE user_id = %s AND kind = 'email' AND value = %s
            LIMIT 1
            """,
            (user_id, email),
        )
        if row:
            return str(row["contact_id"])

        row = await fetch_one(
            "SELECT id FROM contacts WHERE user_id = %s AND primary_email = %s",
            (user_id, email),
        )
        return str(row["id"]) if row else None

    @staticmethod
    async def upsert_contact(
        user_id: str,
        email: str,
        display_name: str | None,
        source: str,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> str:
        query = """
            INSERT INTO contacts (user_id, primary_email, display_name, source)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (user_id, primary_email)
            DO UPDATE SET
                display_name = COALESCE(contacts.display_name, EXCLUDED.display_name),
                updated_at = NOW()
            RETURNING id
        """
        contact_id = await fetch_val(
            query, (user_id, email, display_name or None, source), connection=connection
        )
        if not contact_id:
            raise DatabaseError("Contact upsert returned no id", operation="upsert_contact")
        return str(contact_id)

    @staticmethod
    async def upsert_identity(
        user_id: str,
        contact_id: str,
        email: str,
        provider: str,
        display_name: str | None = None,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> None:
        query = """
            INSERT INTO contact_identities (
                user_id, contact_id, kind, value, provider, display_name
            )
            VALUES (%s, %s, 'email', %s, %s, %s)
            ON CONFLICT (user_id, kind, value, provider) DO NOTHING
        """
        await execute_query(
            query,
            (user_id, contact_id, email, provider, display_name or None),
            connection=connection,
        )
