"""Tests for retrieval re-ranking: dedup filter, composite score, token budget."""

import pytest

from storymem.config.schema import RetrievalConfig
from storymem.memory.ranker import RetrievalRanker
from storymem.memory.types import ChatMessage, Memory


def _memory(memory_id, text="a few words here", sources=(), timestamp=0, importance=None):
    return Memory(
        id=memory_id,
        timestamp=timestamp,
        full_text=text,
        source_message_ids=list(sources),
        importance=importance,
    )


def _context(*ids):
    return [ChatMessage(id=i, role="user", content="...") for i in ids]


@pytest.fixture
def ranker(tokenizer):
    return RetrievalRanker(RetrievalConfig(), tokenizer)


# ============================================================================
# Dedup filter
# ============================================================================


def test_memory_fully_in_recent_context_is_excluded(ranker):
    candidates = [(_memory("both", sources=["a", "b"]), 0.1), (_memory("other", sources=["x"]), 0.5)]
    result = ranker.rank(candidates, _context("a", "b"), k=5, token_budget=100)
    assert [m.id for m in result] == ["other"]


def test_memory_partially_in_context_is_kept(ranker):
    candidates = [(_memory("half", sources=["a", "c"]), 0.1)]
    result = ranker.rank(candidates, _context("a", "b"), k=5, token_budget=100)
    assert [m.id for m in result] == ["half"]


def test_memory_without_sources_is_kept(ranker):
    result = ranker.rank([(_memory("manual"), 0.1)], _context("a"), k=5, token_budget=100)
    assert [m.id for m in result] == ["manual"]


def test_only_last_eight_messages_count(ranker):
    context = _context("old", *[f"n{i}" for i in range(8)])
    candidates = [(_memory("aged-out", sources=["old"]), 0.1), (_memory("recent", sources=["n7"]), 0.1)]
    result = ranker.rank(candidates, context, k=5, token_budget=100)
    assert [m.id for m in result] == ["aged-out"]


def test_dedup_window_is_configurable(tokenizer):
    ranker = RetrievalRanker(RetrievalConfig(dedup_window=0), tokenizer)
    result = ranker.rank([(_memory("m", sources=["a"]), 0.1)], _context("a"), k=5, token_budget=100)
    assert [m.id for m in result] == ["m"]


# ============================================================================
# Composite score
# ============================================================================


def test_score_formula_single_candidate(ranker):
    [scored] = ranker.score([(_memory("m", importance=10), 0.0)])
    # relevance 1.0 * 0.6 + importance 1.0 * 0.3 + recency 0 (single timestamp)
    assert scored.score == pytest.approx(0.9)


def test_missing_importance_counts_as_five(ranker):
    [scored] = ranker.score([(_memory("m"), 1.0)])
    assert scored.score == pytest.approx(0.6 * 0.5 + 0.3 * (4 / 9))


def test_recency_normalized_across_pool(ranker):
    scored = ranker.score([(_memory("old", timestamp=100), 1.0), (_memory("new", timestamp=200), 1.0)])
    assert [m.id for m in scored] == ["new", "old"]
    assert scored[0].score - scored[1].score == pytest.approx(0.1)


def test_importance_can_outrank_closer_match(ranker):
    scored = ranker.score([
        (_memory("close-minor", importance=1), 0.0),
        (_memory("far-major", importance=10), 0.2),
    ])
    # 0.6 + 0.0 vs 0.6/1.2 + 0.3 = 0.8
    assert [m.id for m in scored] == ["far-major", "close-minor"]


def test_weights_are_configurable(tokenizer):
    ranker = RetrievalRanker(
        RetrievalConfig(relevance_weight=1.0, importance_weight=0.0, recency_weight=0.0), tokenizer
    )
    scored = ranker.score([
        (_memory("close-minor", importance=1), 0.0),
        (_memory("far-major", importance=10), 0.2),
    ])
    assert [m.id for m in scored] == ["close-minor", "far-major"]


def test_scoring_does_not_mutate_candidates(ranker):
    memory = _memory("m")
    ranker.score([(memory, 0.0)])
    assert memory.score == 0.0


# ============================================================================
# Token budget
# ============================================================================


def test_budget_respected(ranker, tokenizer):
    candidates = [(_memory(f"m{i}", text="word " * 10, timestamp=0), 0.1 * i) for i in range(6)]
    result = ranker.rank(candidates, k=10, token_budget=35)

    assert [m.id for m in result] == ["m0", "m1", "m2"]
    assert sum(tokenizer.count_tokens(m.full_text) for m in result) <= 35


def test_budget_stops_at_first_overflow(ranker):
    candidates = [
        (_memory("small", text="one two three four five"), 0.0),
        (_memory("big", text="w " * 10), 0.1),
        (_memory("tiny", text="x"), 0.2),
    ]
    result = ranker.rank(candidates, k=10, token_budget=12)
    assert [m.id for m in result] == ["small"]


def test_k_limits_results(ranker):
    candidates = [(_memory(f"m{i}"), 0.1 * i) for i in range(10)]
    assert len(ranker.rank(candidates, k=3, token_budget=1000)) == 3


def test_oversized_top_candidate_is_truncated(ranker, tokenizer):
    text = " ".join(f"w{i}" for i in range(50))
    result = ranker.rank([(_memory("huge", text=text), 0.0), (_memory("next"), 0.5)], k=5, token_budget=10)

    assert len(result) == 1
    assert result[0].id == "huge"
    assert result[0].full_text.endswith("...")
    assert tokenizer.count_tokens(result[0].full_text) <= 10


def test_defaults_come_from_config(tokenizer):
    ranker = RetrievalRanker(RetrievalConfig(top_k=2, token_budget=1000), tokenizer)
    candidates = [(_memory(f"m{i}"), 0.1 * i) for i in range(5)]
    assert len(ranker.rank(candidates)) == 2


def test_empty_candidates(ranker):
    assert ranker.rank([], k=5, token_budget=100) == []
