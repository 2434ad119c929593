"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EmbeddingConfig(BaseModel):
    """Embedding gateway configuration."""
    model_config = ConfigDict(frozen=True)

    model: str = Field(default="text-embedding-3-small", description="LiteLLM embedding model id")
    api_key: str = ""
    api_base: str | None = None  # e.g. "http://127.0.0.1:5001/v1" for a local koboldcpp/llama.cpp server
    # E5/Nomic style models retrieve better with task prefixes; empty disables them
    query_prefix: str = ""
    document_prefix: str = ""
    batch_size: int = Field(default=16, ge=1, le=2048)
    max_retries: int = Field(default=2, ge=1, le=10)
    cache_size: int = Field(default=1000, ge=0, le=100000)
    cache_ttl_seconds: float = Field(default=24 * 60 * 60, gt=0)


class EnrichmentConfig(BaseModel):
    """Scene enrichment (summary/tags/importance/mood/relations) configuration."""
    model: str = Field(default="gpt-4o-mini", description="LiteLLM chat model used for enrichment")
    api_key: str = ""
    api_base: str | None = None
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_retries: int = Field(default=3, ge=1, le=10)
    timeout: float = Field(default=45.0, gt=0)


class ChunkingConfig(BaseModel):
    """Chunker configuration."""
    chunk_size: int = Field(default=400, ge=1, description="Maximum characters per chunk")
    overlap_size: int = Field(default=100, ge=0, description="Characters carried into the next chunk")


class RetrievalConfig(BaseModel):
    """Retrieval and re-ranking tunables."""
    top_k: int = Field(default=8, ge=1, le=100)
    token_budget: int = Field(default=4000, ge=0)
    dedup_window: int = Field(default=8, ge=0, description="Recent messages whose memories are skipped")
    relevance_weight: float = Field(default=0.6, ge=0.0)
    importance_weight: float = Field(default=0.3, ge=0.0)
    recency_weight: float = Field(default=0.1, ge=0.0)
    pool_multiplier: int = Field(default=10, ge=1)
    min_pool: int = Field(default=10, ge=1)


class IndexConfig(BaseModel):
    """HNSW index parameters."""
    m: int = Field(default=16, ge=2, le=256)
    ef_construction: int = Field(default=200, ge=1)
    ef_search: int = Field(default=200, ge=1)


class StorageConfig(BaseModel):
    """Durable storage configuration."""
    backend: Literal["sqlite", "memory"] = "sqlite"
    path: str = "~/.storymem/memory.sqlite3"

    @property
    def resolved_path(self) -> Path:
        return Path(self.path).expanduser()


class Config(BaseSettings):
    """Root configuration for storymem."""
    model_config = SettingsConfigDict(
        env_prefix="STORYMEM_",
        env_nested_delimiter="__",
        extra="ignore",  # tolerate keys written by newer versions
    )

    log_level: str = "INFO"
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
