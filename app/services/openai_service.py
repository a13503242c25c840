# app/services/openai_service.py
"""
OpenAI Service for interaction embeddings.
Wraps the AsyncOpenAI embeddings endpoint and maps its errors onto
recoverable / non-recoverable service errors for the job engine.
"""

import openai
from openai import AsyncOpenAI

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 30  # seconds
CLIENT_MAX_RETRIES = 2


class OpenAIServiceError(Exception):
    """Base exception for OpenAI service errors."""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.recoverable = recoverable


class OpenAIService:
    """
    Embedding client.

    The underlying AsyncOpenAI client is created on first use so importing
    this module never requires an API key.
    """

    def __init__(self, model: str | None = None, dimensions: int | None = None):
        self.client: AsyncOpenAI | None = None
        self.model = model or settings.EMBEDDING_MODEL
        self.dimensions = dimensions or settings.EMBEDDING_DIMENSIONS

    def _initialize_client(self) -> AsyncOpenAI:
        if self.client is not None:
            return self.client

        if not settings.OPENAI_API_KEY:
            raise OpenAIServiceError("OPENAI_API_KEY not configured in settings", recoverable=False)

        self.client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=REQUEST_TIMEOUT,
            max_retries=CLIENT_MAX_RETRIES,
        )
        logger.info("OpenAI client initialized", model=self.model, timeout=REQUEST_TIMEOUT)
        return self.client

    async def embed(self, text: str) -> list[float]:
        """
        Embed one piece of text.

        Raises:
            OpenAIServiceError: rate limits, timeouts and 5xx are recoverable,
                other 4xx responses are not
        """
        if not text or not text.strip():
            raise OpenAIServiceError("Cannot embed empty text", recoverable=False)

        client = self._initialize_client()

        try:
            response = await client.embeddings.create(
                model=self.model,
                input=text,
                dimensions=self.dimensions,
            )

        except openai.RateLimitError as e:
            logger.warning("OpenAI rate limit hit", error=str(e))
            raise OpenAIServiceError(f"OpenAI rate limited: {e}", recoverable=True) from e

        except openai.APITimeoutError as e:
            logger.warning("OpenAI API timeout", timeout=REQUEST_TIMEOUT, error=str(e))
            raise OpenAIServiceError("OpenAI request timed out", recoverable=True) from e

        except openai.APIConnectionError as e:
            logger.warning("OpenAI connection error", error=str(e))
            raise OpenAIServiceError(f"OpenAI connection failed: {e}", recoverable=True) from e

        except openai.APIStatusError as e:
            recoverable = e.status_code >= 500
            logger.error(
                "OpenAI API error",
                status_code=e.status_code,
                recoverable=recoverable,
                error=str(e),
            )
            raise OpenAIServiceError(
                f"OpenAI API error ({e.status_code}): {e}", recoverable=recoverable
            ) from e

        if not response.data or not response.data[0].embedding:
            raise OpenAIServiceError("Empty embedding response from OpenAI", recoverable=True)

        vector = list(response.data[0].embedding)
        logger.debug(
            "Embedding created",
            model=self.model,
            dimensions=len(vector),
            usage_tokens=response.usage.total_tokens if response.usage else 0,
        )
        return vector


# Singleton instance for application use
openai_service = OpenAIService()
