# ============================================================================
# backend/kb_ingest/core/search/embedding_service.py
# ============================================================================
"""
Embedding Service for KB Ingest - OpenAI API Embeddings

This module generates embeddings for document chunks through an
OpenAI-compatible embeddings endpoint and reports the token usage of each
call so ingestion logs can record cost.

Key Features:
    - One request per batch (default 100 chunks); larger documents are sent
      as sequential batches whose vectors are concatenated in order
    - Vectors re-sorted by the `index` the service returns
    - Typed errors so callers can tell transient failures from bad input and
      exhausted quota
    - Exponential backoff for transient failures, honoring "try again in Ns"

Usage:
    from kb_ingest.core.search.embedding_service import embedding_service

    result = await embedding_service.embed(["chunk one", "chunk two"])
    print(len(result.vectors), result.tokens_used)

Configuration (environment):
    OPENAI_API_KEY, OPENAI_BASE_URL, OPENAI_TIMEOUT, EMBEDDING_MODEL,
    EMBEDDING_BATCH_SIZE

Author: KB Ingest Development Team
Version: 1.0.0
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import openai
from openai import OpenAI

from kb_ingest.config import settings

logger = logging.getLogger("kb_ingest.embedding_service")

# Rate limit handling constants
MAX_RETRIES = 5
INITIAL_BACKOFF_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 10.0
BACKOFF_MULTIPLIER = 2.0


class EmbeddingError(RuntimeError):
    """Base error for embedding generation failures."""

    retryable = False


class ServiceUnavailableError(EmbeddingError):
    """Network failure, timeout, 5xx, or rate limit that outlasted retries."""

    retryable = True


class InvalidInputError(EmbeddingError):
    """Empty batch, rejected request, or malformed response."""


class QuotaExceededError(EmbeddingError):
    """The account has no remaining quota."""


@dataclass
class EmbeddingResult:
    """Vectors in chunk order plus the total tokens billed for them."""

    vectors: List[List[float]] = field(default_factory=list)
    tokens_used: int = 0
    model: str = ""


class EmbeddingService:
    """
    OpenAI API-based embedding generation.

    The OpenAI sync client runs in the default executor so the event loop is
    never blocked. The SDK's own retries are disabled; retries happen here so
    every failure is classified the same way.
    """

    def __init__(self, client: Optional[OpenAI] = None, batch_size: Optional[int] = None):
        self._client = client
        self.batch_size = batch_size or settings.embedding_batch_size

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not settings.openai_api_key:
                raise EmbeddingError("Embedding API key not configured")

            client_kwargs = {
                "api_key": settings.openai_api_key,
                "timeout": settings.openai_timeout,
                "max_retries": 0,
            }
            if settings.openai_base_url:
                client_kwargs["base_url"] = settings.openai_base_url

            self._client = OpenAI(**client_kwargs)
            logger.info(f"OpenAI client initialized for embeddings (model: {settings.embedding_model})")

        return self._client

    @staticmethod
    def _get_retry_after(error: Exception) -> float:
        """Extract retry-after time from error message if available."""
        match = re.search(r"try again in (\d+\.?\d*)s", str(error))
        if match:
            return float(match.group(1))
        return INITIAL_BACKOFF_SECONDS

    @staticmethod
    def classify_error(error: Exception) -> EmbeddingError:
        """Map an OpenAI SDK exception onto the embedding error taxonomy."""
        message = str(error)

        if isinstance(error, openai.RateLimitError):
            code = getattr(error, "code", None)
            if code == "insufficient_quota" or "quota" in message.lower():
                return QuotaExceededError(f"Embedding quota exceeded: {message}")
            return ServiceUnavailableError(f"Embedding rate limit: {message}")

        if isinstance(error, (openai.APIConnectionError, openai.InternalServerError)):
            # APITimeoutError is a subclass of APIConnectionError
            return ServiceUnavailableError(f"Embedding service unavailable: {message}")

        if isinstance(
            error,
            (openai.BadRequestError, openai.UnprocessableEntityError, openai.NotFoundError),
        ):
            return InvalidInputError(f"Embedding request rejected: {message}")

        if isinstance(error, openai.APIStatusError) and error.status_code >= 500:
            return ServiceUnavailableError(f"Embedding service error {error.status_code}: {message}")

        return EmbeddingError(f"Embedding request failed: {message}")

    def _embed_batch_with_retry(
        self, client: OpenAI, model: str, batch: List[str]
    ) -> Tuple[List[List[float]], int]:
        """
        Embed one batch, retrying transient failures with exponential backoff.

        Returns:
            (vectors in input order, total tokens)

        Raises:
            EmbeddingError subclass once retries are exhausted or the failure
            is not retryable
        """
        backoff = INITIAL_BACKOFF_SECONDS

        for attempt in range(MAX_RETRIES):
            try:
                response = client.embeddings.create(model=model, input=batch)
            except openai.OpenAIError as e:
                error = self.classify_error(e)
                if not error.retryable:
                    logger.error(f"Embedding batch failed ({type(error).__name__}): {e}")
                    raise error from e
                if attempt >= MAX_RETRIES - 1:
                    logger.error(f"Embedding still failing after {MAX_RETRIES} attempts: {e}")
                    raise error from e

                wait_time = max(self._get_retry_after(e), backoff)
                wait_time = min(wait_time, MAX_BACKOFF_SECONDS)
                logger.warning(
                    f"Transient embedding failure, waiting {wait_time:.1f}s before retry "
                    f"(attempt {attempt + 1}/{MAX_RETRIES}): {e}"
                )
                time.sleep(wait_time)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                continue

            items = sorted(response.data, key=lambda item: item.index)
            if len(items) != len(batch):
                raise InvalidInputError(
                    f"Embedding response has {len(items)} vectors for {len(batch)} inputs"
                )
            usage = getattr(response, "usage", None)
            tokens = getattr(usage, "total_tokens", 0) or 0
            return [list(item.embedding) for item in items], int(tokens)

        raise ServiceUnavailableError("Embedding retries exhausted")

    def _embed_sync(self, texts: List[str], model: str) -> EmbeddingResult:
        client = self._get_client()
        result = EmbeddingResult(model=model)

        for i in range(0, len(texts), self.batch_size):
            batch = texts[i : i + self.batch_size]
            vectors, tokens = self._embed_batch_with_retry(client, model, batch)
            result.vectors.extend(vectors)
            result.tokens_used += tokens

        return result

    async def embed(self, texts: List[str], model: Optional[str] = None) -> EmbeddingResult:
        """
        Generate embeddings for chunk texts.

        Args:
            texts: Chunk contents, in chunk order
            model: Model override (knowledge base setting)

        Returns:
            EmbeddingResult with one vector per text, in the same order

        Raises:
            InvalidInputError: If texts is empty or a chunk is blank
            ServiceUnavailableError: Transient failure outlasted retries
            QuotaExceededError: Account quota exhausted
        """
        if not texts:
            raise InvalidInputError("No text provided for embedding")
        if any(not t or not t.strip() for t in texts):
            raise InvalidInputError("Cannot embed blank text")

        model_name = model or settings.embedding_model
        loop = asyncio.get_event_loop()
        result = await loop.run_in_executor(None, self._embed_sync, texts, model_name)
        logger.info(
            f"Generated {len(result.vectors)} embeddings with {model_name} "
            f"({result.tokens_used} tokens)"
        )
        return result

    @property
    def is_available(self) -> bool:
        """Check if the embedding service is configured."""
        return self._client is not None or bool(settings.openai_api_key)


# Global service instance
embedding_service = EmbeddingService()
