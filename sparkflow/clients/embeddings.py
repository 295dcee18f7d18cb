"""OpenAI embedding provider."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from openai import AsyncOpenAI, OpenAIError

from ..config import EmbeddingsConfig
from ..errors import ConfigurationError, EmbeddingError

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100


class EmbeddingProvider:
    """Generate text embeddings with the OpenAI embeddings API.

    The OpenAI client is created lazily so a missing key only fails the
    workflows that actually need embeddings.
    """

    def __init__(
        self, config: Optional[EmbeddingsConfig] = None, client: Any = None
    ) -> None:
        self.config = config or EmbeddingsConfig()
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self.config.api_key)

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.config.api_key:
                raise ConfigurationError("OPENAI_API_KEY is not configured")
            self._client = AsyncOpenAI(api_key=self.config.api_key)
            logger.info(f"OpenAI embeddings initialized with model: {self.config.model}")
        return self._client

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Return one embedding per text, in input order."""
        if not texts:
            return []
        if len(texts) > MAX_BATCH_SIZE:
            raise EmbeddingError(
                f"Batch size {len(texts)} exceeds maximum of {MAX_BATCH_SIZE}"
            )
        valid = [text for text in texts if text and text.strip()]
        if not valid:
            raise EmbeddingError("All texts in batch are empty")

        client = self._get_client()
        try:
            response = await client.embeddings.create(
                model=self.config.model, input=valid, encoding_format="float"
            )
        except OpenAIError as exc:
            raise EmbeddingError(f"Failed to generate embeddings batch: {exc}", exc) from exc

        data = list(response.data or [])
        if len(data) != len(valid):
            raise EmbeddingError("Invalid response from OpenAI: embedding count mismatch")
        # The API does not guarantee ordering.
        return [item.embedding for item in sorted(data, key=lambda item: item.index)]

    async def embed_all(
        self, texts: List[str], batch_size: Optional[int] = None
    ) -> List[List[float]]:
        """Embed ``texts`` in sequential sub-batches."""
        size = batch_size or self.config.batch_size
        embeddings: List[List[float]] = []
        total = (len(texts) + size - 1) // size
        for number, start in enumerate(range(0, len(texts), size), start=1):
            chunk = texts[start : start + size]
            logger.info(f"Processing chunk {number}/{total} ({len(chunk)} texts)")
            embeddings.extend(await self.embed_batch(chunk))
        return embeddings
