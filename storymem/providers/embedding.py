"""Embedding gateway: turns text into fixed-length vectors."""

import asyncio
import math
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Literal

import litellm
from litellm import aembedding
from loguru import logger

from storymem.config.schema import EmbeddingConfig
from storymem.errors import EmbeddingError, MissingCredentialsError

EmbeddingRole = Literal["query", "document"]


def normalize_embedding(vector: list[float]) -> list[float]:
    """Scale a vector to unit L2 norm; zero or non-finite vectors are returned as-is."""
    norm = math.sqrt(sum(x * x for x in vector))
    if not math.isfinite(norm) or norm == 0:
        return list(vector)
    return [x / norm for x in vector]


class EmbeddingGateway(ABC):
    """Abstract embedding backend."""

    @abstractmethod
    async def embed(self, texts: list[str], role: EmbeddingRole = "document") -> list[list[float]]:
        """
        Embed texts.

        Args:
            texts: Texts to embed.
            role: "query" for retrieval queries, "document" for stored chunks.

        Returns:
            One vector per input text, all of the same dimensionality.
        """
        ...


class LiteLLMEmbeddingGateway(EmbeddingGateway):
    """
    Embedding gateway backed by LiteLLM ``aembedding``.

    Works with hosted models (``text-embedding-3-small``, ``gemini/text-embedding-004``)
    and local OpenAI-compatible servers via ``api_base``. Results are cached
    per (role, text) with a TTL and LRU eviction so repeated queries do not
    spend quota.
    """

    def __init__(self, config: EmbeddingConfig | None = None, retry_delay: float = 2.0):
        self.config = config or EmbeddingConfig()
        self.retry_delay = retry_delay
        self._cache: OrderedDict[tuple[str, str], tuple[float, list[float]]] = OrderedDict()
        litellm.suppress_debug_info = True

    # -- cache --

    def _cache_get(self, role: str, text: str) -> list[float] | None:
        key = (role, text)
        entry = self._cache.get(key)
        if entry is None:
            return None
        created, vector = entry
        if time.monotonic() - created > self.config.cache_ttl_seconds:
            del self._cache[key]
            return None
        self._cache.move_to_end(key)
        return vector

    def _cache_put(self, role: str, text: str, vector: list[float]) -> None:
        if self.config.cache_size <= 0:
            return
        self._cache[(role, text)] = (time.monotonic(), vector)
        self._cache.move_to_end((role, text))
        while len(self._cache) > self.config.cache_size:
            self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        """Drop all cached embeddings."""
        self._cache.clear()
        logger.debug("Embedding cache cleared")

    # -- embedding --

    def _prefixed(self, text: str, role: EmbeddingRole) -> str:
        prefix = self.config.query_prefix if role == "query" else self.config.document_prefix
        return f"{prefix}{text}" if prefix else text

    async def embed(self, texts: list[str], role: EmbeddingRole = "document") -> list[list[float]]:
        if not texts:
            return []

        vectors: list[list[float] | None] = [self._cache_get(role, t) for t in texts]
        missing = [i for i, v in enumerate(vectors) if v is None]
        if missing:
            logger.debug(f"Embedding cache: {len(texts) - len(missing)}/{len(texts)} hits, fetching {len(missing)}")

        batch_size = self.config.batch_size
        for start in range(0, len(missing), batch_size):
            batch = missing[start:start + batch_size]
            fetched = await self._call_embedding([self._prefixed(texts[i], role) for i in batch])
            if len(fetched) != len(batch):
                raise EmbeddingError(
                    f"Embedding API returned {len(fetched)} vectors for {len(batch)} texts"
                )
            for i, vector in zip(batch, fetched):
                vectors[i] = vector
                self._cache_put(role, texts[i], vector)

        result = [v for v in vectors if v is not None]
        dims = {len(v) for v in result}
        if len(dims) > 1:
            raise EmbeddingError(f"Embedding API returned mixed dimensionalities: {sorted(dims)}")
        return result

    async def _call_embedding(self, texts: list[str]) -> list[list[float]]:
        """Call LiteLLM with retries; auth failures are not retried."""
        kwargs = {"model": self.config.model, "input": texts}
        if self.config.api_key:
            kwargs["api_key"] = self.config.api_key
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base

        last_error: Exception | None = None
        for attempt in range(1, self.config.max_retries + 1):
            try:
                response = await aembedding(**kwargs)
                return [item["embedding"] for item in response.data]
            except litellm.AuthenticationError as e:
                raise MissingCredentialsError(
                    f"Embedding model '{self.config.model}' rejected credentials: {e}"
                ) from e
            except Exception as e:
                last_error = e
                logger.warning(f"(Attempt {attempt}/{self.config.max_retries}) Embedding call failed: {e}")
                if attempt < self.config.max_retries:
                    await asyncio.sleep(self.retry_delay * attempt)

        raise EmbeddingError(f"Embedding failed after {self.config.max_retries} attempts: {last_error}") from last_error

    async def test_connection(self) -> bool:
        """Embed a fixed probe string; raises on failure."""
        await self.embed(["connection test"], role="document")
        logger.info(f"Embedding connection OK ({self.config.model})")
        return True
