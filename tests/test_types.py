"""Tests for memory records and the validated enrichment payload."""

import pytest

from storymem.memory.types import ChatMessage, Memory, MemoryRelation, MemoryTag, SceneEnrichment


# ============================================================================
# SceneEnrichment
# ============================================================================


def test_enrichment_defaults():
    enrichment = SceneEnrichment()
    assert enrichment.summary == ""
    assert enrichment.importance == 5
    assert enrichment.mood == "Reflective"
    assert enrichment.tags == []
    assert enrichment.relations == []


def test_grouped_tags_are_flattened():
    enrichment = SceneEnrichment.model_validate({
        "summary": "s",
        "tags": {
            "characters": ["Mira", "  "],
            "locations": ["Saltmarsh"],
            "events": ["storm"],
            "themes": ["loss"],
        },
    })
    assert [(t.type, t.value) for t in enrichment.memory_tags()] == [
        ("character", "Mira"),
        ("location", "Saltmarsh"),
        ("event", "storm"),
        ("theme", "loss"),
    ]


def test_flat_tags_with_unknown_types_are_dropped():
    enrichment = SceneEnrichment(tags=[
        {"type": "character", "value": "Mira"},
        {"type": "weather", "value": "rain"},
        {"type": "location", "value": ""},
    ])
    assert [t.value for t in enrichment.tags] == ["Mira"]


@pytest.mark.parametrize("raw,expected", [
    (15, 10),
    (-3, 1),
    (0, 5),
    (7.6, 8),
    ("7", 7),
    ("high", 5),
    (None, 5),
    (float("nan"), 5),
])
def test_importance_is_clamped(raw, expected):
    assert SceneEnrichment(importance=raw).importance == expected


def test_blank_mood_and_null_summary_fall_back():
    enrichment = SceneEnrichment(mood="  ", summary=None)
    assert enrichment.mood == "Reflective"
    assert enrichment.summary == ""


def test_unknown_fields_ignored():
    enrichment = SceneEnrichment.model_validate({"summary": "ok", "confidence": 0.9})
    assert enrichment.summary == "ok"


def test_relations_converted():
    enrichment = SceneEnrichment(relations=[{"subject": "Mira", "predicate": "distrusts", "object": "Oren"}])
    assert enrichment.memory_relations() == [MemoryRelation("Mira", "distrusts", "Oren")]


# ============================================================================
# Memory records
# ============================================================================


def test_memory_record_uses_camel_case_and_omits_unset_fields():
    memory = Memory(
        id="m1",
        timestamp=42,
        full_text="Mira lit the lamp.",
        source_message_ids=["a", "b"],
        tags=[MemoryTag("character", "Mira")],
        importance=7,
        label=3,
        score=0.8,
    )
    record = memory.to_record()

    assert record["fullText"] == "Mira lit the lamp."
    assert record["sourceMessageIds"] == ["a", "b"]
    assert record["tags"] == [{"type": "character", "value": "Mira"}]
    assert record["label"] == 3
    assert "summary" not in record
    assert "previousMemoryId" not in record
    assert "score" not in record


def test_memory_from_record_round_trip():
    memory = Memory(
        id="m1",
        timestamp=42,
        full_text="text",
        source_message_ids=["a"],
        summary="sum",
        sanitized_facts=["A fact worth keeping."],
        tags=[MemoryTag("theme", "hope")],
        importance=4,
        mood="Hopeful",
        relations=[MemoryRelation("a", "b", "c")],
        previous_memory_id="m0",
        next_memory_id="m2",
        label=0,
    )
    assert Memory.from_record(memory.to_record()) == memory


def test_memory_from_minimal_legacy_record():
    memory = Memory.from_record({"id": "old", "fullText": "legacy"})
    assert memory.timestamp == 0
    assert memory.label is None
    assert memory.effective_importance == 5


def test_chat_message_role_label():
    assert ChatMessage(id="1", role="user", content="hi").role_label == "User"
    assert ChatMessage(id="2", role="assistant", content="hi").role_label == "Model"
