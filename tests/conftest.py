"""Shared fixtures: deterministic embedding, tokenizer and enrichment fakes."""

import re
import zlib

import pytest

from storymem.config.schema import Config, StorageConfig
from storymem.memory.sanitize import split_into_sentences, strip_speaker_prefixes
from storymem.memory.service import MemoryService
from storymem.memory.types import ChatMessage, SceneEnrichment
from storymem.providers.embedding import EmbeddingGateway
from storymem.providers.tokenizer import TokenCounter
from storymem.storage import InMemoryStorage


class FakeEmbeddingGateway(EmbeddingGateway):
    """Bag-of-words hashing embedder: texts sharing words land close together."""

    def __init__(self, dims: int = 64):
        self.dims = dims
        self.calls: list[tuple[list[str], str]] = []

    async def embed(self, texts, role="document"):
        self.calls.append((list(texts), role))
        vectors = []
        for text in texts:
            vector = [0.0] * self.dims
            for word in re.findall(r"\w+", text.lower()):
                vector[zlib.crc32(word.encode()) % self.dims] += 1.0
            if not any(vector):
                vector[0] = 1.0
            vectors.append(vector)
        return vectors


class FakeTokenCounter(TokenCounter):
    """One token per whitespace-separated word."""

    def count_tokens(self, text: str) -> int:
        return len(text.split())


class FakeEnricher:
    """Enricher stand-in: summary is the first two speaker-free sentences."""

    def __init__(self, enrichment: SceneEnrichment | None = None):
        self.enrichment = enrichment
        self.calls: list[str] = []

    async def enrich(self, text: str) -> SceneEnrichment:
        self.calls.append(text)
        if self.enrichment is not None:
            return self.enrichment.model_copy(deep=True)
        sentences = split_into_sentences(strip_speaker_prefixes(text))
        return SceneEnrichment(
            summary=" ".join(sentences[:2]),
            tags={"characters": ["Mira"], "themes": ["journey"]},
            importance=6,
            mood="Tense",
            relations=[{"subject": "Mira", "predicate": "seeks", "object": "the lighthouse"}],
        )


def make_turn(turn_id: str, user: str, model: str, timestamp: int = 1_000) -> list[ChatMessage]:
    """A user+model message pair with ids ``{turn_id}-u`` / ``{turn_id}-m``."""
    return [
        ChatMessage(id=f"{turn_id}-u", role="user", content=user, timestamp=timestamp),
        ChatMessage(id=f"{turn_id}-m", role="model", content=model, timestamp=timestamp + 1),
    ]


@pytest.fixture
def embedder():
    return FakeEmbeddingGateway()


@pytest.fixture
def enricher():
    return FakeEnricher()


@pytest.fixture
def tokenizer():
    return FakeTokenCounter()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def config():
    return Config(storage=StorageConfig(backend="memory"))


@pytest.fixture
def service(config, storage, embedder, enricher, tokenizer):
    """A MemoryService wired entirely to in-process fakes."""
    return MemoryService(
        config=config,
        storage=storage,
        embedder=embedder,
        enricher=enricher,
        tokenizer=tokenizer,
    )
