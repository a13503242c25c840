"""
Contact extraction stage: interaction participants -> contacts.

Candidates are resolved against existing identities first, then primary
emails; unknown addresses create a contact through an atomic upsert.
"""

import re

from app.features.ingestion.domain import ContactCandidate, Interaction, Job
from app.features.ingestion.domain.payloads import ExtractContactsPayload
from app.features.ingestion.repository.contact_repository import ContactRepository
from app.features.ingestion.repository.interaction_repository import InteractionRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s<>(),;:\"]+@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)+$")
MAX_EMAIL_LENGTH = 254

# Counterpart preference when linking an interaction to one contact
ROLE_PRIORITY = {"from": 0, "organizer": 1, "to": 2, "attendee": 3, "cc": 4, "bcc": 5}


def is_valid_email(value: str) -> bool:
    return bool(value) and len(value) <= MAX_EMAIL_LENGTH and bool(EMAIL_PATTERN.match(value))


def extract_candidates(interaction: Interaction, user_email: str | None) -> list[ContactCandidate]:
    """Unique, valid, lower-cased participant identities other than the user."""
    excluded = {e.lower() for e in interaction.source_meta.get("self_emails", []) if e}
    if user_email:
        excluded.add(user_email.lower())

    candidates: dict[str, ContactCandidate] = {}
    for participant in interaction.participants:
        email = (participant.email or "").strip().lower()
        if email in excluded:
            continue
        if not is_valid_email(email):
            logger.debug("Skipping invalid identity", value=email[:80])
            continue

        existing = candidates.get(email)
        if existing is None:
            candidates[email] = ContactCandidate(
                email=email, display_name=participant.name, role=participant.role
            )
        else:
            if not existing.display_name and participant.name:
                existing.display_name = participant.name
            if ROLE_PRIORITY.get(participant.role, 9) < ROLE_PRIORITY.get(existing.role, 9):
                existing.role = participant.role

    return list(candidates.values())


def pick_counterpart(
    interaction: Interaction, candidates: list[ContactCandidate]
) -> ContactCandidate | None:
    """
    The contact an interaction is about: the sender of inbound mail,
    otherwise the first recipient or organizer.
    """
    if not candidates:
        return None

    direction = interaction.source_meta.get("direction")
    if direction == "outbound":
        recipients = [c for c in candidates if c.role in ("to", "cc", "bcc")]
        if recipients:
            return min(recipients, key=lambda c: ROLE_PRIORITY.get(c.role, 9))

    return min(candidates, key=lambda c: ROLE_PRIORITY.get(c.role, 9))


async def handle_extract_contacts_job(job: Job, payload: ExtractContactsPayload) -> dict[str, int]:
    interaction_id = str(payload.interaction_id)
    interaction = await InteractionRepository.get(job.user_id, interaction_id)
    if interaction is None:
        logger.warning("Interaction not found, skipping contact extraction", interaction_id=interaction_id)
        return {"candidates": 0, "created": 0, "linked": 0}

    user_email = await ContactRepository.fetch_user_email(job.user_id)
    candidates = extract_candidates(interaction, user_email)

    contact_ids: dict[str, str] = {}
    created = 0
    for candidate in candidates:
        contact_id = await ContactRepository.resolve_contact_id(job.user_id, candidate.email)
        if contact_id is None:
            contact_id = await ContactRepository.upsert_contact(
                job.user_id, candidate.email, candidate.display_name, source=interaction.source
            )
            created += 1
        await ContactRepository.upsert_identity(
            job.user_id,
            contact_id,
            candidate.email,
            interaction.source,
            candidate.display_name,
        )
        contact_ids[candidate.email] = contact_id

    linked = 0
    counterpart = pick_counterpart(interaction, candidates)
    if counterpart and interaction.contact_id != contact_ids[counterpart.email]:
        if await InteractionRepository.link_contact(
            job.user_id, interaction_id, contact_ids[counterpart.email]
        ):
            linked = 1

    logger.info(
        "Contacts extracted",
        interaction_id=interaction_id,
        candidates=len(candidates),
        created=created,
        linked=linked,
    )
    return {"candidates": len(candidates), "created": created, "linked": linked}
