"""Shared error types for storymem.

Memory is a convenience layer: most failures degrade to "no memories"
at the service boundary. These types let each layer say which kind of
failure happened so the boundary can decide between skipping and raising.
"""


class StorymemError(Exception):
    """Base error for storymem."""


class ConfigurationError(StorymemError):
    """Setup is wrong in a way retrying will not fix."""


class EmbeddingDimensionError(ConfigurationError):
    """Vector dimensionality does not match the collection's dimensionality."""

    def __init__(self, expected: int, actual: int, collection: str | None = None):
        self.expected = expected
        self.actual = actual
        self.collection = collection
        where = f" in collection '{collection}'" if collection else ""
        super().__init__(
            f"Embedding dimension mismatch{where}: expected {expected}D, got {actual}D"
        )


class MissingCredentialsError(ConfigurationError):
    """Embedding or enrichment backend rejected the configured credentials."""


class EmbeddingError(StorymemError):
    """Embedding call failed (network/quota/model)."""


class StorageError(StorymemError):
    """Durable storage read or write failed."""


class EmbeddingCountMismatchError(StorymemError):
    """Embedding backend returned a different number of vectors than texts sent."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Mismatch between chunks ({expected}) and generated embeddings ({actual})")
