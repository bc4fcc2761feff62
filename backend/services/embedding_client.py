"""
EmbeddingClient — narrow boundary to the embedding provider.

Responsibilities:
  - Truncate input to the provider's maximum accepted length (8000 chars)
  - Attach the caller's OwnerContext (owner-specific key wins over the service key)
  - Enforce a per-call timeout and surface every failure as ProviderError
  - Optionally retry rate-limited calls with exponential backoff

No chunk-store or business logic lives here. Components depend on
EmbeddingClient, and tests swap the EmbeddingProvider for a fake.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from core.config import settings
from core.exceptions import InputTooLarge, ProviderError, RetrievalEngineError
from models.knowledge import OwnerContext

logger = logging.getLogger(__name__)

TASK_DOCUMENT = "RETRIEVAL_DOCUMENT"
TASK_QUERY = "RETRIEVAL_QUERY"

RETRY_BASE_DELAY = 1.0   # seconds, doubled per attempt
RETRY_MAX_DELAY = 30.0


class EmbeddingProvider(ABC):
    """Contract for embedding providers."""

    @abstractmethod
    async def embed(self, text: str, owner: OwnerContext, task_type: str = TASK_DOCUMENT) -> List[float]:
        raise NotImplementedError


class GeminiEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by the Google GenAI SDK (text-embedding-004, 768-dim)."""

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        output_dimensionality: Optional[int] = None,
    ) -> None:
        self.model = model or settings.embedding_model
        self.api_key = api_key or settings.gemini_api_key
        self.output_dimensionality = output_dimensionality or settings.embedding_dimensions
        self._service_client: Optional[genai.Client] = None

    def _client_for(self, owner: OwnerContext) -> genai.Client:
        """
        Owner key > service key > Vertex AI project credentials.

        Only the service client is kept. Owner keys arrive per request and get
        a fresh client that is not retained.
        """
        if owner.api_key:
            return genai.Client(api_key=owner.api_key)
        if self._service_client is None:
            self._service_client = self._build_service_client()
        return self._service_client

    def _build_service_client(self) -> genai.Client:
        if self.api_key:
            client = genai.Client(api_key=self.api_key)
        elif settings.google_cloud_project:
            logger.info("🧠 [Embeddings] Using Vertex AI project %s", settings.google_cloud_project)
            client = genai.Client(
                vertexai=True,
                project=settings.google_cloud_project,
                location=settings.google_cloud_location,
            )
        else:
            raise ProviderError(
                "No embedding API key configured. Please contact your administrator.",
                reason="auth",
            )
        return client

    async def embed(self, text: str, owner: OwnerContext, task_type: str = TASK_DOCUMENT) -> List[float]:
        client = self._client_for(owner)
        config = types.EmbedContentConfig(
            task_type=task_type,
            output_dimensionality=self.output_dimensionality,
        )
        try:
            result = await client.aio.models.embed_content(
                model=self.model,
                contents=text,
                config=config,
            )
        except genai_errors.APIError as exc:
            raise _provider_error_from_status(exc.code, exc.message or str(exc)) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Embedding transport error: {exc}", retryable=True, reason="transport") from exc

        if not result.embeddings or not result.embeddings[0].values:
            raise ProviderError("Embedding API returned no vector")
        return list(result.embeddings[0].values)


def _provider_error_from_status(status_code: Optional[int], message: str) -> ProviderError:
    if status_code == 429:
        return ProviderError(message, status_code=status_code, retryable=True, reason="rate_limit")
    if status_code in (401, 403):
        return ProviderError(message, status_code=status_code, reason="auth")
    return ProviderError(
        f"Embedding API error: {message}",
        status_code=status_code,
        retryable=bool(status_code and status_code >= 500),
    )


class EmbeddingClient:
    """Truncating, timing-out, error-normalising wrapper around an EmbeddingProvider."""

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        max_input_chars: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        expected_dimensions: Optional[int] = None,
    ) -> None:
        self.provider = provider or GeminiEmbeddingProvider()
        self.max_input_chars = max_input_chars or settings.embedding_max_input_chars
        self.timeout_seconds = timeout_seconds or settings.embedding_timeout_seconds
        self.max_retries = settings.embedding_max_retries if max_retries is None else max_retries
        self.expected_dimensions = expected_dimensions or settings.embedding_dimensions

    def truncate(self, text: str) -> str:
        return text[: self.max_input_chars]

    async def embed(self, text: str, owner: OwnerContext, task_type: str = TASK_DOCUMENT) -> List[float]:
        """Embed `text` on behalf of `owner`. Raises ProviderError or InputTooLarge."""
        truncated = self.truncate(text or "")
        if not truncated.strip():
            raise InputTooLarge(
                f"No usable text within the first {self.max_input_chars} characters"
            )

        attempt = 0
        while True:
            try:
                vector = await asyncio.wait_for(
                    self.provider.embed(truncated, owner, task_type=task_type),
                    timeout=self.timeout_seconds,
                )
                break
            except asyncio.TimeoutError as exc:
                raise ProviderError(
                    f"Embedding call timed out after {self.timeout_seconds:.1f}s",
                    retryable=True,
                    reason="timeout",
                ) from exc
            except ProviderError as exc:
                if exc.reason != "rate_limit" or attempt >= self.max_retries:
                    raise
                delay = min(RETRY_BASE_DELAY * (2 ** attempt), RETRY_MAX_DELAY)
                attempt += 1
                logger.warning(
                    "⏳ Embedding rate-limited for owner=%s — retry %d/%d in %.1fs",
                    owner.owner_id, attempt, self.max_retries, delay,
                )
                await asyncio.sleep(delay)
            except RetrievalEngineError:
                raise
            except Exception as exc:
                raise ProviderError(
                    f"Embedding call failed: {exc}",
                    retryable=True,
                    reason="transport",
                ) from exc

        return self._validate(vector)

    def _validate(self, vector) -> List[float]:
        if not isinstance(vector, (list, tuple)) or not vector:
            raise ProviderError("Embedding provider returned an empty or malformed vector")
        try:
            values = [float(v) for v in vector]
        except (TypeError, ValueError) as exc:
            raise ProviderError("Embedding provider returned non-numeric values") from exc
        if self.expected_dimensions and len(values) != self.expected_dimensions:
            raise ProviderError(
                f"Embedding has {len(values)} dimensions, expected {self.expected_dimensions}"
            )
        return values


# Module-level singleton
embedding_client = EmbeddingClient()
