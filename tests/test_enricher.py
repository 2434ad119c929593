"""Tests for LLM scene enrichment and its rule-based fallback."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

from storymem.config.schema import EnrichmentConfig
from storymem.memory.enricher import Enricher, rule_based_enrichment

SCENE = (
    "Mira arrived at Saltmarsh before the storm. She was nervous and anxious. "
    '"We must hurry," Oren said. Suddenly the bridge collapsed behind them.'
)


def _mock_completion(content: str):
    """Create a mock litellm acompletion response."""
    resp = MagicMock()
    resp.choices = [MagicMock()]
    resp.choices[0].message.content = content
    return resp


def _payload(**overrides):
    data = {
        "summary": "Mira and Oren reach Saltmarsh as the bridge collapses.",
        "importance": 8,
        "mood": "Tense",
        "tags": {"characters": ["Mira", "Oren"], "locations": ["Saltmarsh"], "events": [], "themes": ["danger"]},
        "relations": [{"subject": "Mira", "predicate": "travels with", "object": "Oren"}],
    }
    data.update(overrides)
    return json.dumps(data)


# ============================================================================
# LLM path
# ============================================================================


async def test_enrich_parses_llm_json():
    enricher = Enricher(EnrichmentConfig(model="test-model"), retry_delay=0)

    with patch("storymem.memory.enricher.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.return_value = _mock_completion(_payload())
        result = await enricher.enrich(SCENE)

    assert result.summary.startswith("Mira and Oren reach Saltmarsh")
    assert result.importance == 8
    assert result.mood == "Tense"
    assert ("character", "Oren") in [(t.type, t.value) for t in result.tags]
    assert result.relations[0].predicate == "travels with"

    kwargs = mock_llm.call_args.kwargs
    assert kwargs["model"] == "test-model"
    assert kwargs["temperature"] == 0.1
    assert kwargs["response_format"] == {"type": "json_object"}
    assert SCENE in kwargs["messages"][-1]["content"]


async def test_enrich_strips_markdown_fence():
    enricher = Enricher(retry_delay=0)

    with patch("storymem.memory.enricher.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.return_value = _mock_completion("```json\n" + _payload(importance=3) + "\n```")
        result = await enricher.enrich(SCENE)

    assert result.importance == 3


async def test_enrich_uses_scene_when_summary_empty():
    enricher = Enricher(retry_delay=0)

    with patch("storymem.memory.enricher.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.return_value = _mock_completion(_payload(summary=""))
        result = await enricher.enrich(SCENE)

    assert result.summary == SCENE


async def test_enrich_passes_credentials():
    enricher = Enricher(EnrichmentConfig(api_key="sk-test", api_base="http://localhost:5001/v1"), retry_delay=0)

    with patch("storymem.memory.enricher.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.return_value = _mock_completion(_payload())
        await enricher.enrich(SCENE)

    assert mock_llm.call_args.kwargs["api_key"] == "sk-test"
    assert mock_llm.call_args.kwargs["api_base"] == "http://localhost:5001/v1"


async def test_enrich_retries_then_succeeds():
    enricher = Enricher(EnrichmentConfig(max_retries=3), retry_delay=0)

    with patch("storymem.memory.enricher.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.side_effect = [RuntimeError("timeout"), _mock_completion("not json"), _mock_completion(_payload())]
        result = await enricher.enrich(SCENE)

    assert mock_llm.call_count == 3
    assert result.importance == 8


async def test_enrich_falls_back_after_all_attempts_fail():
    enricher = Enricher(EnrichmentConfig(max_retries=2), retry_delay=0)

    with patch("storymem.memory.enricher.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.side_effect = RuntimeError("service unavailable")
        result = await enricher.enrich(SCENE)

    assert mock_llm.call_count == 2
    assert result == rule_based_enrichment(SCENE)


async def test_enrich_rejects_json_array():
    enricher = Enricher(EnrichmentConfig(max_retries=1), retry_delay=0)

    with patch("storymem.memory.enricher.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.return_value = _mock_completion("[1, 2, 3]")
        result = await enricher.enrich(SCENE)

    assert result == rule_based_enrichment(SCENE)


# ============================================================================
# Rule-based fallback
# ============================================================================


def test_rule_based_extracts_tags():
    result = rule_based_enrichment(SCENE)
    tags = {(t.type, t.value) for t in result.tags}

    assert ("character", "Mira") in tags
    assert ("location", "Saltmarsh") in tags
    assert ("event", "arrived") in tags


def test_rule_based_importance_and_mood():
    result = rule_based_enrichment(SCENE)

    # base 5, +1 dialogue, +1 "suddenly"
    assert result.importance == 7
    assert result.mood == "Tense"


def test_rule_based_defaults_for_bland_text():
    result = rule_based_enrichment("the end")

    assert result.importance == 5
    assert result.mood == "Reflective"
    assert result.tags == []
    assert result.summary == "the end"


def test_rule_based_summary_is_bounded():
    text = ". ".join("A" + "x" * 300 for _ in range(5)) + "."
    result = rule_based_enrichment(text)
    assert len(result.summary) <= 503
