"""
Embed stage: interaction text -> vector.

The stored content hash makes re-delivery cheap: unchanged text never
reaches the embedding API or the usage guardrail.
"""

import hashlib

from app.config import settings
from app.features.ingestion.domain import EmbeddingRecord, Interaction, Job
from app.features.ingestion.domain.payloads import GenerateEmbeddingPayload
from app.features.ingestion.repository.embedding_repository import EmbeddingRepository
from app.features.ingestion.repository.interaction_repository import InteractionRepository
from app.features.ingestion.services.usage_guardrail import AI_EMBEDDING, usage_guardrail
from app.infrastructure.observability.logging import get_logger
from app.services.openai_service import openai_service

logger = get_logger(__name__)

OWNER_TYPE = "interaction"


def build_embedding_text(interaction: Interaction, max_chars: int | None = None) -> str:
    limit = max_chars or settings.EMBEDDING_MAX_CHARS
    parts = [
        (interaction.subject or "").strip(),
        (interaction.body_text or "").strip(),
    ]
    return "\n\n".join(part for part in parts if part)[:limit]


def content_hash(text: str, model: str) -> str:
    return hashlib.sha256(f"{model}\n{text}".encode("utf-8")).hexdigest()


async def handle_embed_job(job: Job, payload: GenerateEmbeddingPayload) -> str:
    """Returns one of: embedded, unchanged, empty, missing."""
    interaction_id = str(payload.interaction_id)
    interaction = await InteractionRepository.get(job.user_id, interaction_id)
    if interaction is None:
        logger.warning("Interaction not found, skipping embedding", interaction_id=interaction_id)
        return "missing"

    text = build_embedding_text(interaction)
    if not text:
        logger.info("No text to embed", interaction_id=interaction_id)
        return "empty"

    model = openai_service.model
    digest = content_hash(text, model)
    if await EmbeddingRepository.get_content_hash(job.user_id, OWNER_TYPE, interaction_id) == digest:
        logger.debug("Embedding up to date", interaction_id=interaction_id)
        return "unchanged"

    await usage_guardrail.require(job.user_id, AI_EMBEDDING)
    vector = await openai_service.embed(text)

    await EmbeddingRepository.replace(
        EmbeddingRecord(
            user_id=job.user_id,
            owner_type=OWNER_TYPE,
            owner_id=interaction_id,
            content_hash=digest,
            model=model,
            vector=vector,
        )
    )
    logger.info("Interaction embedded", interaction_id=interaction_id, chars=len(text))
    return "embedded"
