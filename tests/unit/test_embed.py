import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from app.features.ingestion.domain import Interaction, RateLimitExceeded
from app.features.ingestion.domain.payloads import GenerateEmbeddingPayload
from app.features.ingestion.pipeline import embed
from app.features.ingestion.pipeline.embed import build_embedding_text, content_hash, handle_embed_job
from app.features.ingestion.repository.embedding_repository import EmbeddingRepository
from app.features.ingestion.repository.interaction_repository import InteractionRepository
from app.features.ingestion.repository.usage_repository import UsageRepository


def _interaction(subject="Renewal", body="Can we talk Tuesday?") -> Interaction:
    return Interaction(
        user_id="user-123",
        type="email",
        source="gmail",
        source_id="m1",
        occurred_at=datetime(2024, 1, 1, tzinfo=UTC),
        subject=subject,
        body_text=body,
        id="int-1",
    )


@pytest.fixture
def payload():
    return GenerateEmbeddingPayload(interaction_id=uuid.uuid4())


@pytest.fixture
def fake_openai(monkeypatch):
    embed_call = AsyncMock(return_value=[0.1, 0.2, 0.3])
    monkeypatch.setattr(embed.openai_service, "embed", embed_call)
    monkeypatch.setattr(embed.openai_service, "model", "text-embedding-3-small")
    return embed_call


def test_embedding_text_joins_subject_and_body_and_is_bounded():
    assert build_embedding_text(_interaction()) == "Renewal\n\nCan we talk Tuesday?"
    assert build_embedding_text(_interaction(subject=None)) == "Can we talk Tuesday?"
    assert len(build_embedding_text(_interaction(body="x" * 50), max_chars=10)) == 10


def test_content_hash_depends_on_model():
    assert content_hash("hello", "a") == content_hash("hello", "a")
    assert content_hash("hello", "a") != content_hash("hello", "b")


@pytest.mark.asyncio
async def test_embeds_new_text(monkeypatch, make_job, payload, fake_openai):
    monkeypatch.setattr(InteractionRepository, "get", AsyncMock(return_value=_interaction()))
    monkeypatch.setattr(EmbeddingRepository, "get_content_hash", AsyncMock(return_value=None))
    monkeypatch.setattr(UsageRepository, "increment_if_below", AsyncMock(return_value=1))
    replace = AsyncMock()
    monkeypatch.setattr(EmbeddingRepository, "replace", replace)

    assert await handle_embed_job(make_job("generate_embedding"), payload) == "embedded"

    fake_openai.assert_awaited_once_with("Renewal\n\nCan we talk Tuesday?")
    record = replace.await_args.args[0]
    assert record.owner_type == "interaction"
    assert record.owner_id == str(payload.interaction_id)
    assert record.vector == [0.1, 0.2, 0.3]
    assert record.content_hash == content_hash("Renewal\n\nCan we talk Tuesday?", "text-embedding-3-small")


@pytest.mark.asyncio
async def test_unchanged_text_skips_api_and_quota(monkeypatch, make_job, payload, fake_openai):
    text = "Renewal\n\nCan we talk Tuesday?"
    monkeypatch.setattr(InteractionRepository, "get", AsyncMock(return_value=_interaction()))
    monkeypatch.setattr(
        EmbeddingRepository,
        "get_content_hash",
        AsyncMock(return_value=content_hash(text, "text-embedding-3-small")),
    )
    increment = AsyncMock(return_value=1)
    monkeypatch.setattr(UsageRepository, "increment_if_below", increment)

    assert await handle_embed_job(make_job("generate_embedding"), payload) == "unchanged"
    fake_openai.assert_not_awaited()
    increment.assert_not_awaited()


@pytest.mark.asyncio
async def test_empty_text_is_skipped(monkeypatch, make_job, payload, fake_openai):
    monkeypatch.setattr(
        InteractionRepository, "get", AsyncMock(return_value=_interaction(subject=None, body="  "))
    )

    assert await handle_embed_job(make_job("generate_embedding"), payload) == "empty"
    fake_openai.assert_not_awaited()


@pytest.mark.asyncio
async def test_quota_exhaustion_raises_rate_limit(monkeypatch, make_job, payload, fake_openai):
    monkeypatch.setattr(InteractionRepository, "get", AsyncMock(return_value=_interaction()))
    monkeypatch.setattr(EmbeddingRepository, "get_content_hash", AsyncMock(return_value=None))
    monkeypatch.setattr(UsageRepository, "increment_if_below", AsyncMock(return_value=None))

    with pytest.raises(RateLimitExceeded) as exc:
        await handle_embed_job(make_job("generate_embedding"), payload)

    assert exc.value.recoverable is True
    fake_openai.assert_not_awaited()
