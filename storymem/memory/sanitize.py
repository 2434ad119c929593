"""
Sanitization of conversation text before it becomes long-term memory.

Raw turns can carry one-off steering text (``[Instruction For This Turn
Only]: ...`` blocks, ``Instant Directives`` lines, per-turn system notes).
None of it may be stored as memory or replayed to the model later, so it
is stripped structurally here, before enrichment and fact extraction.
"""

import re
from typing import Iterable

from storymem.memory.types import Memory

MAX_FACTS = 8
MIN_FACT_LEN = 12
MAX_FACT_LEN = 180

# "[... Instruction ...]: free text" or "[... System Note ...]: free text", up to a blank line
_INSTRUCTION_BLOCK = re.compile(
    r"(?:^|\n)\s*\[[^\]]*?(?:Instruction|System Note)[^\]]*?\]:[\s\S]*?(?=\n\s*\n|\Z)",
    re.IGNORECASE,
)
_INSTANT_LINE = re.compile(r"^[ \t]*Instant\s+(?:Directives|Instructions).*$", re.IGNORECASE | re.MULTILINE)
_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")
_SPEAKER_PREFIX = re.compile(r"^[ \t]*(?:User|Model|Assistant|System)[ \t]*:[ \t]*", re.IGNORECASE | re.MULTILINE)
_ONE_TIME_INSTRUCTION = re.compile(
    r"^\s*\[Instruction For This Turn Only\]:.*?\n\n", re.IGNORECASE | re.DOTALL
)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?؟])\s+")
_SURROUNDING_QUOTES = re.compile("^[\"'“”«»]+|[\"'“”«»]+$")
_BRACKET_ONLY = re.compile(r"^\[.*\]$")
_ROLE_PREFIXED = re.compile(r"^(?:User|Model|Assistant|System)\s*:", re.IGNORECASE)
_TRANSIENT_VOCABULARY = (
    re.compile(r"Instant\s+(?:Directives|Instructions)", re.IGNORECASE),
    re.compile(r"Instruction For This Turn Only", re.IGNORECASE),
    re.compile(r"System Note for this turn", re.IGNORECASE),
)


def strip_transient_instructions(text: str) -> str:
    """Remove bracketed instruction/system-note blocks and instant-directive lines."""
    if not text:
        return ""
    cleaned = _INSTRUCTION_BLOCK.sub("\n\n", text)
    cleaned = _INSTANT_LINE.sub("", cleaned)
    return _EXTRA_BLANK_LINES.sub("\n\n", cleaned)


def sanitize_message_content(text: str) -> str:
    """Message text as it may be stored: transient instructions removed, trimmed."""
    if not text:
        return ""
    return strip_transient_instructions(text).strip()


def strip_speaker_prefixes(text: str) -> str:
    """Drop ``User:``/``Model:``/``Assistant:``/``System:`` line prefixes."""
    cleaned = _SPEAKER_PREFIX.sub("", strip_transient_instructions(text))
    return re.sub(r"[\r\t]+", " ", cleaned)


def strip_one_time_instruction(query: str) -> str:
    """Remove a leading ``[Instruction For This Turn Only]: ...`` block from a query."""
    return _ONE_TIME_INSTRUCTION.sub("", query or "", count=1)


def split_into_sentences(text: str) -> list[str]:
    """Split on Latin and Arabic sentence terminators after normalizing whitespace."""
    normalized = re.sub(r"\s+", " ", text or "").strip()
    if not normalized:
        return []
    return [s.strip() for s in _SENTENCE_SPLIT.split(normalized) if s.strip()]


def mentions_transient_vocabulary(text: str) -> bool:
    return any(p.search(text) for p in _TRANSIENT_VOCABULARY)


def _is_fact_candidate(sentence: str) -> bool:
    if not MIN_FACT_LEN <= len(sentence) <= MAX_FACT_LEN:
        return False
    if _BRACKET_ONLY.match(sentence) or _ROLE_PREFIXED.match(sentence):
        return False
    return not mentions_transient_vocabulary(sentence)


def _dedupe(items: Iterable[str], limit: int) -> list[str]:
    """Case-insensitive de-duplication preserving first occurrence."""
    seen: set[str] = set()
    unique: list[str] = []
    for item in items:
        key = item.lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
        if len(unique) >= limit:
            break
    return unique


def build_sanitized_facts(full_turn_text: str, enriched_summary: str | None = None) -> list[str]:
    """
    Derive short, instruction-free facts that are safe to inject into a prompt.

    Sentences from the enrichment summary come first, then sentences from the
    speaker-stripped raw turn.
    """
    candidates: list[str] = []
    if enriched_summary and enriched_summary.strip():
        candidates.extend(split_into_sentences(strip_transient_instructions(enriched_summary)))
    candidates.extend(split_into_sentences(strip_speaker_prefixes(full_turn_text or "")))

    cleaned = (_SURROUNDING_QUOTES.sub("", re.sub(r"\s+", " ", s)).strip() for s in candidates)
    return _dedupe((s for s in cleaned if _is_fact_candidate(s)), MAX_FACTS)


def compact_facts(memories: Iterable[Memory], limit: int = MAX_FACTS) -> list[str]:
    """
    Collect injectable facts from retrieved memories.

    Prefers each memory's sanitized facts, then the first sentences of its
    summary, then a short speaker-free snippet of its text.
    """
    facts: list[str] = []
    for memory in memories:
        if memory.sanitized_facts:
            facts.extend(memory.sanitized_facts)
        elif memory.summary:
            facts.extend(split_into_sentences(memory.summary)[:3])
        elif memory.full_text:
            snippet = re.sub(r"\s+", " ", _SPEAKER_PREFIX.sub("", memory.full_text)).strip()
            if snippet:
                facts.append(snippet[:MAX_FACT_LEN])

    stripped = (f.strip() for f in facts)
    return _dedupe((f for f in stripped if f and not mentions_transient_vocabulary(f)), limit)
