"""Per-collection ANN index (faiss HNSW, L2) with its parallel memory metadata."""

import asyncio
from dataclasses import dataclass, field

import faiss
import numpy as np
from loguru import logger

from storymem.config.schema import IndexConfig
from storymem.errors import EmbeddingDimensionError
from storymem.memory.types import Memory
from storymem.storage.base import MemoryStorage


@dataclass
class IndexHandle:
    """A loaded collection: the faiss index plus label and id maps."""

    collection: str
    index: faiss.Index
    dimensions: int
    memories: dict[str, Memory] = field(default_factory=dict)
    labels: dict[int, str] = field(default_factory=dict)

    @property
    def size(self) -> int:
        """Vectors held by the index, dead ones included."""
        return int(self.index.ntotal)

    @property
    def live(self) -> int:
        return len(self.labels)

    @property
    def dead(self) -> int:
        return self.size - self.live

    def by_label(self, label: int) -> Memory | None:
        memory_id = self.labels.get(label)
        return self.memories.get(memory_id) if memory_id is not None else None

    def latest(self) -> Memory | None:
        """The chronologically last memory, i.e. the current tail of the chain."""
        if not self.memories:
            return None
        return max(self.memories.values(), key=lambda m: m.timestamp or 0)

    def ordered(self) -> list[Memory]:
        return sorted(self.memories.values(), key=lambda m: m.timestamp or 0)


@dataclass
class IndexStats:
    collection: str
    memories: int
    vectors: int
    live: int
    dead: int
    dimensions: int | None
    loaded: bool


class IndexRegistry:
    """
    Process-wide cache of loaded collections.

    Owned by the service and injected into the index manager. A handle lives
    from its first load until the collection is deleted or invalidated.
    """

    def __init__(self):
        self._handles: dict[str, IndexHandle] = {}
        self._persist_locks: dict[str, asyncio.Lock] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}

    def get(self, collection: str) -> IndexHandle | None:
        return self._handles.get(collection)

    def put(self, handle: IndexHandle) -> None:
        self._handles[handle.collection] = handle

    def drop(self, collection: str) -> IndexHandle | None:
        return self._handles.pop(collection, None)

    def __contains__(self, collection: str) -> bool:
        return collection in self._handles

    def collections(self) -> list[str]:
        return list(self._handles)

    def forget(self, collection: str) -> None:
        """Drop the handle and both locks of a deleted collection."""
        self._handles.pop(collection, None)
        self._persist_locks.pop(collection, None)
        self._write_locks.pop(collection, None)

    def has_locks(self, collection: str) -> bool:
        return collection in self._persist_locks or collection in self._write_locks

    def persist_lock(self, collection: str) -> asyncio.Lock:
        """Lock held across one serialize-and-write of a collection."""
        return self._persist_locks.setdefault(collection, asyncio.Lock())

    def write_lock(self, collection: str) -> asyncio.Lock:
        """Lock held across a read-modify-write of a collection's memories."""
        return self._write_locks.setdefault(collection, asyncio.Lock())


class VectorIndexManager:
    """
    Loads, mutates, searches and persists collection indexes.

    Labels are assigned sequentially (``ntotal`` at insert time) and stored
    on each memory record. Deleting a memory leaves its vector behind as a
    dead entry; the index is never compacted.
    """

    def __init__(self, storage: MemoryStorage, registry: IndexRegistry | None = None,
                 config: IndexConfig | None = None):
        self.storage = storage
        self.registry = registry or IndexRegistry()
        self.config = config or IndexConfig()

    def _new_index(self, dims: int) -> faiss.Index:
        index = faiss.IndexHNSWFlat(dims, self.config.m)
        index.hnsw.efConstruction = self.config.ef_construction
        index.hnsw.efSearch = self.config.ef_search
        return index

    def _restore_index(self, collection: str, blob: bytes, dims: int | None) -> faiss.Index | None:
        try:
            index = faiss.deserialize_index(np.frombuffer(blob, dtype=np.uint8))
        except Exception as e:
            logger.warning(f"Index for '{collection}' is corrupt, starting fresh: {e}")
            return None
        if dims is not None and index.d != dims:
            logger.warning(
                f"Index for '{collection}' has {index.d} dimensions but {dims} are recorded, starting fresh"
            )
            return None
        if hasattr(index, "hnsw"):
            index.hnsw.efSearch = self.config.ef_search
        return index

    async def saved_dimensions(self, collection: str) -> int | None:
        """Dimensionality persisted for a collection, if any."""
        return await self.storage.read_dimensions(collection)

    async def load_index(self, collection: str, dims: int) -> IndexHandle:
        """
        Return the collection's handle, loading it on first use.

        A persisted dimension record wins over ``dims``. A blob that cannot be
        restored is replaced by an empty index; memories whose vector is not
        in the loaded index stay listed but are no longer searchable.
        """
        cached = self.registry.get(collection)
        if cached is not None:
            return cached

        records = await self.storage.load_records(collection)
        memories = sorted((Memory.from_record(r) for r in records), key=lambda m: m.timestamp or 0)
        saved_dims = await self.storage.read_dimensions(collection)

        index = None
        blob = await self.storage.read_index(collection)
        if blob:
            logger.debug(f"Loading index for '{collection}' ({len(blob)} bytes)")
            index = self._restore_index(collection, blob, saved_dims)
        restored = index is not None
        dimensions = saved_dims or (int(index.d) if restored else dims)
        if index is None:
            index = self._new_index(dimensions)

        handle = IndexHandle(collection=collection, index=index, dimensions=dimensions)
        legacy = restored and all(m.label is None for m in memories)
        for position, memory in enumerate(memories):
            if legacy:
                memory.label = position
            if not restored or memory.label is None or not 0 <= memory.label < handle.size:
                memory.label = None
            handle.memories[memory.id] = memory
            if memory.label is not None:
                handle.labels[memory.label] = memory.id

        orphaned = sum(1 for m in memories if m.label is None)
        if memories and orphaned:
            logger.warning(f"{orphaned}/{len(memories)} memories in '{collection}' have no vector in the index")

        self.registry.put(handle)
        logger.debug(
            f"Loaded '{collection}': {len(memories)} memories, {handle.size} vectors, {dimensions} dims"
        )
        return handle

    def insert(self, handle: IndexHandle, vector: list[float], memory: Memory) -> int:
        """
        Append a vector and register its memory; returns the assigned label.

        Raises:
            EmbeddingDimensionError: vector length differs from the collection's
                dimensionality. Nothing is modified in that case.
        """
        if len(vector) != handle.dimensions:
            raise EmbeddingDimensionError(handle.dimensions, len(vector), handle.collection)

        label = handle.size
        handle.index.add(np.asarray([vector], dtype=np.float32))
        memory.label = label
        handle.memories[memory.id] = memory
        handle.labels[label] = memory.id
        return label

    async def search(self, handle: IndexHandle, query_vector: list[float], top_k: int) -> list[tuple[int, float]]:
        """Nearest neighbors by L2 distance as ``(label, distance)`` pairs."""
        if handle.size == 0 or top_k <= 0:
            return []
        if len(query_vector) != handle.dimensions:
            raise EmbeddingDimensionError(handle.dimensions, len(query_vector), handle.collection)

        top_k = min(top_k, handle.size)
        if hasattr(handle.index, "hnsw"):
            handle.index.hnsw.efSearch = max(self.config.ef_search, top_k)
        distances, labels = handle.index.search(np.asarray([query_vector], dtype=np.float32), top_k)
        return [(int(label), float(dist)) for label, dist in zip(labels[0], distances[0]) if label >= 0]

    async def persist(self, collection: str) -> None:
        """Write index blob, dimension record and the full memory snapshot."""
        handle = self.registry.get(collection)
        if handle is None:
            return

        async with self.registry.persist_lock(collection):
            try:
                blob = faiss.serialize_index(handle.index).tobytes()
                await self.storage.write_index(collection, blob)
                await self.storage.write_dimensions(collection, handle.dimensions)
                await self.storage.save_records(collection, [m.to_record() for m in handle.ordered()])
            except Exception as e:
                logger.error(f"Failed to persist index for '{collection}': {e}")
                raise
        logger.info(f"Persisted '{collection}': {len(handle.memories)} memories, {handle.size} vectors")

    async def save_metadata(self, collection: str, memories: list[Memory]) -> None:
        """Replace the stored memory set without touching the index blob."""
        async with self.registry.persist_lock(collection):
            await self.storage.save_records(collection, [m.to_record() for m in memories])
        self.invalidate(collection)

    def invalidate(self, collection: str) -> None:
        """Forget the cached handle; the next load rebuilds it from storage."""
        if self.registry.drop(collection) is not None:
            logger.debug(f"Invalidated cached index for '{collection}'")

    async def delete_collection(self, collection: str) -> None:
        async with self.registry.persist_lock(collection):
            await self.storage.delete_index(collection)
            await self.storage.delete_records(collection)
            await self.storage.delete_dimensions(collection)
        self.registry.forget(collection)
        logger.info(f"Collection '{collection}' deleted")

    async def stats(self, collection: str) -> IndexStats:
        handle = self.registry.get(collection)
        if handle is not None:
            return IndexStats(
                collection=collection,
                memories=len(handle.memories),
                vectors=handle.size,
                live=handle.live,
                dead=handle.dead,
                dimensions=handle.dimensions,
                loaded=True,
            )

        records = await self.storage.load_records(collection)
        dims = await self.storage.read_dimensions(collection)
        blob = await self.storage.read_index(collection)
        vectors = 0
        if blob:
            index = self._restore_index(collection, blob, dims)
            vectors = int(index.ntotal) if index is not None else 0
        live = sum(1 for r in records if r.get("label") is not None and r["label"] < vectors)
        return IndexStats(
            collection=collection,
            memories=len(records),
            vectors=vectors,
            live=live,
            dead=vectors - live,
            dimensions=dims,
            loaded=False,
        )
