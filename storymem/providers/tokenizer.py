"""Token counting for retrieval budgets."""

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

CHARS_PER_TOKEN = 4  # fallback estimate when no encoding is available


class TokenCounter(ABC):
    """Counts tokens the way the chat model will see them."""

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        ...


class TiktokenCounter(TokenCounter):
    """
    tiktoken-based counter (``cl100k_base`` by default).

    The encoding is loaded lazily on first use. If it cannot be loaded
    (e.g. offline with no cached BPE file) counting falls back to
    ``len(text) // 4``.
    """

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name
        self._encoder: Any = None
        self._load_failed = False

    def _get_tokenizer(self) -> Any:
        if self._encoder is not None or self._load_failed:
            return self._encoder
        try:
            import tiktoken

            self._encoder = tiktoken.get_encoding(self.encoding_name)
        except Exception as e:
            self._load_failed = True
            logger.warning(f"Failed to load tiktoken encoding '{self.encoding_name}', using chars // {CHARS_PER_TOKEN}: {e}")
        return self._encoder

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        encoder = self._get_tokenizer()
        if encoder is None:
            return len(text) // CHARS_PER_TOKEN
        return len(encoder.encode(text, disallowed_special=()))
