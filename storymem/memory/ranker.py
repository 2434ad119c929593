"""Re-ranking of ANN candidates: dedup filter, composite score, token budget."""

import math
from dataclasses import replace
from typing import Iterable, Sequence

from loguru import logger

from storymem.config.schema import RetrievalConfig
from storymem.memory.types import ChatMessage, Memory
from storymem.providers.tokenizer import TiktokenCounter, TokenCounter

ELLIPSIS = "..."


class RetrievalRanker:
    """
    Turns raw ``(memory, distance)`` neighbors into the final memory list.

    Score = ``w_rel * 1/(1+d) + w_imp * (importance-1)/9 + w_rec * recency``
    where recency is the timestamp min/max-normalized across the pool.
    """

    def __init__(self, config: RetrievalConfig | None = None, tokenizer: TokenCounter | None = None):
        self.config = config or RetrievalConfig()
        self.tokenizer = tokenizer or TiktokenCounter()

    def filter_in_context(self, candidates: Iterable[tuple[Memory, float]],
                          active_context: Sequence[ChatMessage]) -> list[tuple[Memory, float]]:
        """Drop memories whose every source message is still in the recent window."""
        window = self.config.dedup_window
        recent = {m.id for m in active_context[-window:]} if window > 0 else set()
        kept = []
        for memory, distance in candidates:
            sources = memory.source_message_ids
            if sources and all(sid in recent for sid in sources):
                continue
            kept.append((memory, distance))
        return kept

    def score(self, candidates: list[tuple[Memory, float]]) -> list[Memory]:
        """Scored copies of the candidate memories, best first."""
        if not candidates:
            return []
        timestamps = [m.timestamp or 0 for m, _ in candidates]
        low, span = min(timestamps), max(timestamps) - min(timestamps)

        scored = []
        for memory, distance in candidates:
            relevance = 1.0 / (1.0 + max(0.0, distance)) if math.isfinite(distance) else 0.0
            importance = (memory.effective_importance - 1) / 9
            recency = ((memory.timestamp or 0) - low) / span if span > 0 else 0.0
            total = (
                self.config.relevance_weight * relevance
                + self.config.importance_weight * importance
                + self.config.recency_weight * recency
            )
            scored.append(replace(memory, score=total))

        scored.sort(key=lambda m: m.score, reverse=True)
        return scored

    def _truncate(self, text: str, tokens: int, budget: int) -> str:
        """Cut text so that it plus the ellipsis fits within ``budget`` tokens."""
        if budget <= 0:
            return ""
        chars_per_token = len(text) / tokens if tokens else 1.0
        cut = int(budget * chars_per_token)
        while cut > 0 and self.tokenizer.count_tokens(text[:cut] + ELLIPSIS) > budget:
            cut = int(cut * 0.9) if cut > 10 else cut - 1
        return text[:cut] + ELLIPSIS if cut > 0 else ""

    def apply_budget(self, ranked: list[Memory], k: int, token_budget: int) -> list[Memory]:
        """Greedy selection under ``k`` and ``token_budget``."""
        selected: list[Memory] = []
        used = 0
        for memory in ranked:
            if len(selected) >= k:
                break
            tokens = self.tokenizer.count_tokens(memory.full_text)
            if used + tokens <= token_budget:
                selected.append(memory)
                used += tokens
                continue
            if not selected:
                truncated = self._truncate(memory.full_text, tokens, token_budget)
                if truncated:
                    selected.append(replace(memory, full_text=truncated))
                    used = self.tokenizer.count_tokens(truncated)
                    logger.warning(f"Memory truncated to fit context window ({tokens} -> {used} tokens)")
            break

        if token_budget > 0:
            logger.debug(
                f"Retrieval: {len(selected)}/{len(ranked)} memories, "
                f"{used}/{token_budget} tokens ({round(used / token_budget * 100)}%)"
            )
        return selected

    def rank(self, candidates: Iterable[tuple[Memory, float]], active_context: Sequence[ChatMessage] = (),
             k: int | None = None, token_budget: int | None = None) -> list[Memory]:
        """Filter, score and budget candidates; returns at most ``k`` memories."""
        k = self.config.top_k if k is None else k
        token_budget = self.config.token_budget if token_budget is None else token_budget
        candidates = list(candidates)
        kept = self.filter_in_context(candidates, active_context)
        logger.debug(f"Candidates fetched: {len(candidates)}, after filter: {len(kept)}")
        if not kept or k <= 0:
            return []
        return self.apply_budget(self.score(kept), k, token_budget)
