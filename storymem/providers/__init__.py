"""External collaborators: embedding backends and tokenizers."""

from storymem.providers.embedding import EmbeddingGateway, LiteLLMEmbeddingGateway, normalize_embedding
from storymem.providers.tokenizer import TiktokenCounter, TokenCounter

__all__ = [
    "EmbeddingGateway",
    "LiteLLMEmbeddingGateway",
    "normalize_embedding",
    "TokenCounter",
    "TiktokenCounter",
]
