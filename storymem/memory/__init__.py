"""Semantic memory: chunking, enrichment, vector index, ranking and the service API."""

from storymem.memory.chunker import smart_chunk
from storymem.memory.enricher import Enricher, rule_based_enrichment
from storymem.memory.index import IndexHandle, IndexRegistry, IndexStats, VectorIndexManager
from storymem.memory.ranker import RetrievalRanker
from storymem.memory.service import MemoryService, create_service
from storymem.memory.types import ChatMessage, Memory, MemoryRelation, MemoryTag, SceneEnrichment

__all__ = [
    "ChatMessage",
    "Enricher",
    "IndexHandle",
    "IndexRegistry",
    "IndexStats",
    "Memory",
    "MemoryRelation",
    "MemoryService",
    "MemoryTag",
    "RetrievalRanker",
    "SceneEnrichment",
    "VectorIndexManager",
    "create_service",
    "rule_based_enrichment",
    "smart_chunk",
]
