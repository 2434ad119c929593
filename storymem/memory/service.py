"""Memory service: the API the chat client calls to ingest, retrieve and forget."""

import uuid
from typing import Iterable, Sequence

from loguru import logger

from storymem.config.schema import Config, EmbeddingConfig
from storymem.errors import (
    ConfigurationError,
    EmbeddingCountMismatchError,
    EmbeddingDimensionError,
    EmbeddingError,
    StorageError,
)
from storymem.memory.chunker import smart_chunk
from storymem.memory.enricher import Enricher
from storymem.memory.index import IndexHandle, IndexRegistry, IndexStats, VectorIndexManager
from storymem.memory.ranker import RetrievalRanker
from storymem.memory.sanitize import (
    build_sanitized_facts,
    sanitize_message_content,
    strip_one_time_instruction,
)
from storymem.memory.types import ChatMessage, Memory
from storymem.providers.embedding import EmbeddingGateway, LiteLLMEmbeddingGateway, normalize_embedding
from storymem.providers.tokenizer import TokenCounter
from storymem.storage import MemoryStorage, create_storage
from storymem.utils.helpers import now_ms


def _same_turn(memories: Iterable[Memory], source_ids: list[str]) -> list[Memory]:
    target = set(source_ids)
    return sorted(
        (m for m in memories if m.source_message_ids and set(m.source_message_ids) == target),
        key=lambda m: m.timestamp or 0,
    )


def _skip_past(start: str | None, doomed: set[str], memories: dict[str, Memory], attr: str) -> str | None:
    """Follow a chain link until it leaves the deleted set."""
    seen: set[str] = set()
    current = start
    while current in doomed and current not in seen:
        seen.add(current)
        current = getattr(memories[current], attr)
    return None if current in doomed else current


class MemoryService:
    """
    Composition root of the memory engine.

    Owns the index registry, the vector index manager, the ranker and the
    enricher, plus one embedding gateway per distinct embedding config.
    Mutations of one collection are serialized; different collections never
    wait on each other.
    """

    def __init__(
        self,
        config: Config | None = None,
        storage: MemoryStorage | None = None,
        embedder: EmbeddingGateway | None = None,
        enricher: Enricher | None = None,
        tokenizer: TokenCounter | None = None,
        registry: IndexRegistry | None = None,
    ):
        self.config = config or Config()
        self.storage = storage or create_storage(self.config.storage)
        self.registry = registry or IndexRegistry()
        self.index = VectorIndexManager(self.storage, self.registry, self.config.index)
        self.ranker = RetrievalRanker(self.config.retrieval, tokenizer)
        self.enricher = enricher or Enricher(self.config.enrichment)
        self.embedder = embedder or LiteLLMEmbeddingGateway(self.config.embedding)
        self._gateways: dict[EmbeddingConfig, EmbeddingGateway] = {}

    def _gateway(self, embedding: EmbeddingConfig | None) -> EmbeddingGateway:
        if embedding is None:
            return self.embedder
        if embedding not in self._gateways:
            self._gateways[embedding] = LiteLLMEmbeddingGateway(embedding)
        return self._gateways[embedding]

    async def _embed_documents(self, gateway: EmbeddingGateway, texts: list[str]) -> list[list[float]]:
        vectors = await gateway.embed(texts, role="document")
        if len(vectors) != len(texts):
            raise EmbeddingCountMismatchError(len(texts), len(vectors))
        return [normalize_embedding(v) for v in vectors]

    async def _load_for_write(self, collection: str, dims: int) -> IndexHandle:
        """Load a collection for insertion; an unused handle may still adopt ``dims``."""
        handle = await self.index.load_index(collection, dims)
        if handle.dimensions != dims and handle.size == 0 and not handle.memories:
            self.index.invalidate(collection)
            handle = await self.index.load_index(collection, dims)
        if handle.dimensions != dims:
            raise EmbeddingDimensionError(handle.dimensions, dims, collection)
        return handle

    async def _commit(self, collection: str, handle: IndexHandle,
                      items: list[tuple[Memory, list[float]]]) -> None:
        """Insert memories at the end of the chain and persist."""
        last = handle.latest()
        try:
            for memory, vector in items:
                memory.previous_memory_id = last.id if last else None
                self.index.insert(handle, vector, memory)
                if last is not None:
                    last.next_memory_id = memory.id
                last = memory
            await self.index.persist(collection)
        except Exception:
            # drop half-applied in-memory state; storage still holds the last good snapshot
            self.index.invalidate(collection)
            raise

    # -- ingestion --

    async def add_messages_to_collection(
        self,
        collection: str,
        messages: Sequence[ChatMessage],
        embedding: EmbeddingConfig | None = None,
        chunk_size: int | None = None,
    ) -> list[Memory]:
        """
        Turn one conversation turn into chained, enriched memories.

        The turn is sanitized, enriched once, chunked, embedded in one batch and
        appended to the collection's chronological chain. Re-ingesting a turn
        that is already stored is a no-op.

        Returns:
            The memories created (or already stored) for the turn; ``[]`` when
            the turn was skipped.

        Raises:
            EmbeddingCountMismatchError: the embedding backend returned a
                different number of vectors than chunks.
        """
        if not messages:
            return []
        try:
            return await self._ingest_turn(collection, list(messages), embedding, chunk_size)
        except EmbeddingCountMismatchError:
            raise
        except (ConfigurationError, EmbeddingError, StorageError) as e:
            logger.warning(f"Skipping memory creation for '{collection}': {e}")
        except Exception as e:
            logger.error(f"Failed to add messages to memory store '{collection}': {e}")
        return []

    async def _ingest_turn(self, collection: str, messages: list[ChatMessage],
                           embedding: EmbeddingConfig | None, chunk_size: int | None) -> list[Memory]:
        turns = [(m.role_label, sanitize_message_content(m.content or "")) for m in messages]
        turns = [(label, text) for label, text in turns if text]
        if not turns:
            logger.warning("Skipping memory creation due to empty sanitized turn text")
            return []

        source_ids = [m.id for m in messages]
        existing = await self.find_memories_for_messages(collection, source_ids)
        if existing:
            logger.debug(f"Turn {source_ids} already stored in '{collection}' ({len(existing)} memories)")
            return existing

        full_turn_text = "\n\n".join(f"{label}: {text}" for label, text in turns)

        enrichment = await self.enricher.enrich(full_turn_text)
        clean_summary = sanitize_message_content(enrichment.summary)
        if not clean_summary:
            logger.warning("Skipping memory creation due to empty summary from enrichment")
            return []
        facts = build_sanitized_facts(full_turn_text, clean_summary)

        chunks = smart_chunk(
            full_turn_text,
            chunk_size or self.config.chunking.chunk_size,
            self.config.chunking.overlap_size,
        )
        if not chunks:
            return []

        vectors = await self._embed_documents(self._gateway(embedding), chunks)
        dims = len(vectors[0])

        async with self.registry.write_lock(collection):
            handle = await self._load_for_write(collection, dims)
            already = _same_turn(handle.memories.values(), source_ids)
            if already:
                return already

            base_ts = messages[-1].timestamp or now_ms()
            latest = handle.latest()
            if latest is not None and latest.timestamp >= base_ts:
                base_ts = latest.timestamp + 1

            created = []
            for i, (chunk, vector) in enumerate(zip(chunks, vectors)):
                summary = (
                    f"Chunk {i + 1}/{len(chunks)} of a larger scene. Full scene summary: {clean_summary}"
                    if len(chunks) > 1 else clean_summary
                )
                memory = Memory(
                    id=str(uuid.uuid4()),
                    timestamp=base_ts + i,
                    full_text=chunk,
                    source_message_ids=list(source_ids),
                    summary=summary,
                    sanitized_facts=list(facts),
                    tags=enrichment.memory_tags(),
                    importance=enrichment.importance,
                    mood=enrichment.mood,
                    relations=enrichment.memory_relations(),
                )
                created.append((memory, vector))

            await self._commit(collection, handle, created)

        logger.info(f"Stored {len(created)} memories in '{collection}' for turn {source_ids}")
        return [m for m, _ in created]

    async def add_memory(self, collection: str, text: str,
                         embedding: EmbeddingConfig | None = None) -> Memory | None:
        """
        Store one manually written memory without chunking.

        Unlike turn ingestion, failures here are raised to the caller.
        """
        try:
            sanitized = sanitize_message_content(text)
            if not sanitized:
                logger.warning("Skipping manual memory addition due to empty sanitized text")
                return None

            enrichment = await self.enricher.enrich(sanitized)
            clean_summary = sanitize_message_content(enrichment.summary) or None
            facts = build_sanitized_facts(sanitized, clean_summary)

            vectors = await self._embed_documents(self._gateway(embedding), [clean_summary or sanitized])
            vector = vectors[0]

            async with self.registry.write_lock(collection):
                handle = await self._load_for_write(collection, len(vector))
                latest = handle.latest()
                timestamp = now_ms()
                if latest is not None and latest.timestamp >= timestamp:
                    timestamp = latest.timestamp + 1
                memory = Memory(
                    id=str(uuid.uuid4()),
                    timestamp=timestamp,
                    full_text=sanitized,
                    summary=clean_summary,
                    sanitized_facts=facts,
                    tags=enrichment.memory_tags(),
                    importance=enrichment.importance,
                    mood=enrichment.mood,
                    relations=enrichment.memory_relations(),
                )
                await self._commit(collection, handle, [(memory, vector)])

            logger.info(f"Added manual memory {memory.id} to '{collection}'")
            return memory
        except Exception as e:
            logger.error(f"Failed to add memory to '{collection}': {e}")
            raise

    # -- retrieval --

    async def search_relevant_memories(
        self,
        collection: str,
        query: str,
        embedding: EmbeddingConfig | None = None,
        active_context: Sequence[ChatMessage] = (),
        k: int | None = None,
        token_budget: int | None = None,
    ) -> list[Memory]:
        """
        Memories relevant to ``query``, best first.

        Never raises: any failure (including an embedding model whose
        dimensionality differs from the collection's) yields ``[]``.
        """
        k = self.config.retrieval.top_k if k is None else k
        try:
            query = strip_one_time_instruction(query).strip()
            if not query or k <= 0:
                return []

            vectors = await self._gateway(embedding).embed([query], role="query")
            if not vectors:
                raise EmbeddingError("Failed to generate query embedding")
            query_vector = normalize_embedding(vectors[0])
            dims = len(query_vector)

            saved_dims = await self.index.saved_dimensions(collection)
            cached = self.registry.get(collection)
            known_dims = saved_dims or (cached.dimensions if cached is not None else None)
            if known_dims is not None and known_dims != dims:
                logger.warning(
                    f"Dimension mismatch! Collection '{collection}' has {known_dims}D embeddings, "
                    f"but the query uses {dims}D. Rebuild the collection or switch back to its embedding model."
                )
                return []
            if saved_dims is None and cached is None and not await self.storage.read_index(collection):
                return []

            handle = await self.index.load_index(collection, dims)
            if handle.dimensions != dims:
                logger.warning(
                    f"Dimension mismatch! Collection '{collection}' index has {handle.dimensions}D embeddings, "
                    f"but the query uses {dims}D."
                )
                return []
            if handle.live == 0:
                return []

            pool = max(
                self.config.retrieval.min_pool,
                min(self.config.retrieval.pool_multiplier * k, handle.size),
            )
            candidates = []
            for label, distance in await self.index.search(handle, query_vector, pool):
                memory = handle.by_label(label)
                if memory is not None:
                    candidates.append((memory, distance))

            return self.ranker.rank(candidates, active_context, k, token_budget)
        except Exception as e:
            logger.error(f"Failed to search memories in '{collection}': {e}")
            return []

    async def get_all_memories(self, collection: str) -> list[Memory]:
        """Every stored memory of a collection in chronological order."""
        try:
            records = await self.storage.load_records(collection)
        except Exception as e:
            logger.warning(f"Failed to get all memories for '{collection}': {e}")
            return []
        return sorted((Memory.from_record(r) for r in records), key=lambda m: m.timestamp or 0)

    async def find_memories_for_messages(self, collection: str, message_ids: Sequence[str]) -> list[Memory]:
        """Memories derived from exactly this set of messages."""
        if not message_ids:
            return []
        return _same_turn(await self.get_all_memories(collection), list(message_ids))

    async def expand_context(self, collection: str, memory_id: str,
                             before: int = 1, after: int = 1) -> list[Memory]:
        """A memory with up to ``before``/``after`` chain neighbors, oldest first."""
        memories = {m.id: m for m in await self.get_all_memories(collection)}
        center = memories.get(memory_id)
        if center is None:
            return []

        earlier: list[Memory] = []
        current = center
        while len(earlier) < before and current.previous_memory_id in memories:
            current = memories[current.previous_memory_id]
            if current is center or current in earlier:
                break
            earlier.append(current)

        later: list[Memory] = []
        current = center
        while len(later) < after and current.next_memory_id in memories:
            current = memories[current.next_memory_id]
            if current is center or current in later or current in earlier:
                break
            later.append(current)

        return list(reversed(earlier)) + [center] + later

    # -- deletion --

    async def delete_memories(self, collection: str, memory_ids: Sequence[str]) -> None:
        """
        Remove memories and re-link the chain around them.

        Vectors of deleted memories stay in the index as dead entries; only
        their metadata goes. Links that pointed into the deleted set are
        walked past it to the nearest surviving memory.
        """
        if not memory_ids:
            return
        try:
            async with self.registry.write_lock(collection):
                records = await self.storage.load_records(collection)
                memories = {m.id: m for m in (Memory.from_record(r) for r in records)}
                doomed = {i for i in memory_ids if i in memories}
                if not doomed:
                    return

                survivors = [m for m in memories.values() if m.id not in doomed]
                for memory in survivors:
                    memory.next_memory_id = _skip_past(memory.next_memory_id, doomed, memories, "next_memory_id")
                    memory.previous_memory_id = _skip_past(
                        memory.previous_memory_id, doomed, memories, "previous_memory_id"
                    )

                await self.index.save_metadata(collection, survivors)
            logger.info(f"{len(doomed)} memory metadata entries removed from '{collection}'")
        except Exception as e:
            logger.error(f"Failed to delete memories from '{collection}': {e}")
            raise

    async def delete_collection(self, collection: str) -> None:
        try:
            async with self.registry.write_lock(collection):
                await self.index.delete_collection(collection)
        except Exception as e:
            logger.error(f"Failed to delete collection '{collection}': {e}")
            raise

    # -- maintenance --

    async def collection_stats(self, collection: str) -> IndexStats:
        return await self.index.stats(collection)

    async def list_collections(self) -> list[str]:
        return await self.storage.list_collections()

    async def close(self) -> None:
        await self.storage.close()


def create_service(config: Config | None = None) -> MemoryService:
    """Build a service wired to the configured storage, embedding and enrichment backends."""
    config = config or Config()
    return MemoryService(
        config=config,
        storage=create_storage(config.storage),
        embedder=LiteLLMEmbeddingGateway(config.embedding),
        enricher=Enricher(config.enrichment),
    )
