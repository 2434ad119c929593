"""In-process storage backend (nothing survives a restart)."""

import copy
from typing import Any

from storymem.storage.base import MemoryStorage, record_key


class InMemoryStorage(MemoryStorage):
    """Dict-backed storage; records are deep-copied in and out like a real store."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._records: dict[str, dict[str, dict[str, Any]]] = {}
        self._dims: dict[str, int] = {}

    async def read_index(self, collection: str) -> bytes | None:
        return self._blobs.get(collection)

    async def write_index(self, collection: str, blob: bytes) -> None:
        self._blobs[collection] = bytes(blob)

    async def delete_index(self, collection: str) -> None:
        self._blobs.pop(collection, None)

    async def load_records(self, collection: str) -> list[dict[str, Any]]:
        return copy.deepcopy(list(self._records.get(collection, {}).values()))

    async def save_records(self, collection: str, records: list[dict[str, Any]]) -> None:
        self._records[collection] = {
            record_key(collection, r["id"]): copy.deepcopy(r) for r in records
        }

    async def delete_records(self, collection: str) -> None:
        self._records.pop(collection, None)

    async def read_dimensions(self, collection: str) -> int | None:
        return self._dims.get(collection)

    async def write_dimensions(self, collection: str, dims: int) -> None:
        self._dims[collection] = int(dims)

    async def delete_dimensions(self, collection: str) -> None:
        self._dims.pop(collection, None)

    async def list_collections(self) -> list[str]:
        return sorted(set(self._blobs) | set(self._records) | set(self._dims))
