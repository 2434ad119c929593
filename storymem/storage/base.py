"""Abstract base class for durable memory storage."""

from abc import ABC, abstractmethod
from typing import Any


def record_key(collection: str, memory_id: str) -> str:
    """Key under which a memory record is stored."""
    return f"{collection}:{memory_id}"


class MemoryStorage(ABC):
    """
    Opaque blob + record store used by the vector index manager.

    Three kinds of data are kept per collection and must read back exactly
    as written:

    - the serialized ANN index (one binary blob),
    - the memory records (JSON-compatible dicts keyed ``collection:memoryId``),
    - the vector dimensionality (a small integer).
    """

    # -- index blob --

    @abstractmethod
    async def read_index(self, collection: str) -> bytes | None:
        ...

    @abstractmethod
    async def write_index(self, collection: str, blob: bytes) -> None:
        ...

    @abstractmethod
    async def delete_index(self, collection: str) -> None:
        ...

    # -- metadata records --

    @abstractmethod
    async def load_records(self, collection: str) -> list[dict[str, Any]]:
        """All records of a collection, in no particular order."""
        ...

    @abstractmethod
    async def save_records(self, collection: str, records: list[dict[str, Any]]) -> None:
        """Replace the full record set of a collection atomically."""
        ...

    @abstractmethod
    async def delete_records(self, collection: str) -> None:
        ...

    # -- dimension record --

    @abstractmethod
    async def read_dimensions(self, collection: str) -> int | None:
        ...

    @abstractmethod
    async def write_dimensions(self, collection: str, dims: int) -> None:
        ...

    @abstractmethod
    async def delete_dimensions(self, collection: str) -> None:
        ...

    async def list_collections(self) -> list[str]:
        """Names of collections with any persisted data."""
        return []

    async def close(self) -> None:
        """Release resources; the default implementation has none."""
        return None
