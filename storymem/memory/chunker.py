"""Sentence-respecting text chunking with overlap."""

import re

from loguru import logger

DEFAULT_OVERLAP_SIZE = 100

# Terminal punctuation followed by whitespace; the capture group keeps the
# delimiter so it can be glued back onto its sentence.
_SENTENCE_ENDERS = re.compile(r"([.!?]+\s+)")
_PARAGRAPHS = re.compile(r"\n\n+")
_LINES = re.compile(r"\n+")


def split_sentences_keep_terminators(text: str) -> list[str]:
    """Split text into sentences, each keeping its terminator and trailing whitespace."""
    parts = _SENTENCE_ENDERS.split(text)
    sentences: list[str] = []
    for i in range(0, len(parts), 2):
        if parts[i]:
            delimiter = parts[i + 1] if i + 1 < len(parts) else ""
            sentences.append(parts[i] + delimiter)
    return sentences


def _segments(text: str) -> list[str]:
    """Sentences, or paragraphs/lines when the text has no sentence boundaries."""
    sentences = split_sentences_keep_terminators(text)
    if len(sentences) > 1:
        return sentences

    paragraphs = _PARAGRAPHS.split(text)
    if len(paragraphs) > 1:
        return [p + "\n\n" for p in paragraphs]
    return [line + "\n" for line in _LINES.split(text)]


def smart_chunk(text: str, max_chunk_size: int, overlap_size: int = DEFAULT_OVERLAP_SIZE) -> list[str]:
    """
    Split text into chunks of at most ``max_chunk_size`` characters.

    Chunks never cut inside a sentence: a single sentence longer than the
    limit becomes its own oversized chunk. Each new chunk starts with up to
    ``overlap_size`` trailing characters of the previous one.

    Args:
        text: The full text to chunk.
        max_chunk_size: Maximum size of each chunk in characters.
        overlap_size: Characters of the previous chunk carried into the next.

    Returns:
        Ordered chunks; ``[text]`` unchanged when it already fits.
    """
    if not text:
        return []
    if len(text) <= max_chunk_size:
        return [text]

    chunks: list[str] = []
    current = ""
    for segment in _segments(text):
        if len(current) + len(segment) > max_chunk_size and current:
            chunks.append(current.strip())
            # overlap shrinks so that it alone never pushes a chunk past the limit
            room = min(overlap_size, max_chunk_size - len(segment))
            tail = current[-room:] if room > 0 else ""
            current = tail + segment
        else:
            current += segment

    if current.strip():
        chunks.append(current.strip())

    if not chunks:
        return [text.strip() or text]

    logger.debug(
        f"Chunked {len(text)} chars into {len(chunks)} chunks "
        f"(avg {round(sum(len(c) for c in chunks) / len(chunks))} chars, overlap {overlap_size})"
    )
    return chunks
