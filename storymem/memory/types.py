"""Types for the memory system."""

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TagType = Literal["character", "location", "event", "theme"]

DEFAULT_IMPORTANCE = 5


@dataclass
class ChatMessage:
    """A single conversation message as handed over by the chat client."""

    id: str
    role: str  # "user", "model", "assistant" or "system"
    content: str
    timestamp: int = 0

    @property
    def role_label(self) -> str:
        return "User" if self.role == "user" else "Model"


@dataclass
class MemoryTag:
    type: str
    value: str


@dataclass
class MemoryRelation:
    """Subject-predicate-object triple."""

    subject: str
    predicate: str
    object: str


@dataclass
class Memory:
    """The atomic retrievable unit of a collection."""

    id: str
    timestamp: int
    full_text: str
    source_message_ids: list[str] = field(default_factory=list)
    summary: str | None = None
    sanitized_facts: list[str] = field(default_factory=list)
    tags: list[MemoryTag] = field(default_factory=list)
    importance: int | None = None
    mood: str | None = None
    relations: list[MemoryRelation] = field(default_factory=list)
    previous_memory_id: str | None = None
    next_memory_id: str | None = None
    label: int | None = None
    score: float = 0.0  # composite retrieval score, never persisted

    @property
    def effective_importance(self) -> int:
        return self.importance or DEFAULT_IMPORTANCE

    def to_record(self) -> dict[str, Any]:
        """Serialize to the camelCase record layout shared with the chat client."""
        record: dict[str, Any] = {
            "id": self.id,
            "sourceMessageIds": list(self.source_message_ids),
            "timestamp": self.timestamp,
            "fullText": self.full_text,
            "sanitizedFacts": list(self.sanitized_facts),
            "tags": [{"type": t.type, "value": t.value} for t in self.tags],
            "relations": [
                {"subject": r.subject, "predicate": r.predicate, "object": r.object}
                for r in self.relations
            ],
        }
        optional = {
            "summary": self.summary,
            "importance": self.importance,
            "mood": self.mood,
            "previousMemoryId": self.previous_memory_id,
            "nextMemoryId": self.next_memory_id,
            "label": self.label,
        }
        record.update({k: v for k, v in optional.items() if v is not None})
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Memory":
        """Build a Memory from a stored record; tolerant of missing optional keys."""
        return cls(
            id=record["id"],
            timestamp=int(record.get("timestamp") or 0),
            full_text=record.get("fullText", ""),
            source_message_ids=list(record.get("sourceMessageIds") or []),
            summary=record.get("summary"),
            sanitized_facts=list(record.get("sanitizedFacts") or []),
            tags=[MemoryTag(type=t.get("type", ""), value=t.get("value", "")) for t in record.get("tags") or []],
            importance=record.get("importance"),
            mood=record.get("mood"),
            relations=[
                MemoryRelation(
                    subject=r.get("subject", ""),
                    predicate=r.get("predicate", ""),
                    object=r.get("object", ""),
                )
                for r in record.get("relations") or []
            ],
            previous_memory_id=record.get("previousMemoryId"),
            next_memory_id=record.get("nextMemoryId"),
            label=record.get("label"),
        )


class TagSchema(BaseModel):
    type: TagType
    value: str = Field(..., min_length=1)


class RelationSchema(BaseModel):
    subject: str
    predicate: str
    object: str


class SceneEnrichment(BaseModel):
    """Validated enrichment payload for one conversation turn.

    Accepts the LLM's grouped tag object (``{"characters": [...], ...}``)
    as well as a flat list of ``{"type", "value"}`` tags.
    """

    model_config = ConfigDict(extra="ignore")

    summary: str = ""
    tags: list[TagSchema] = Field(default_factory=list)
    importance: int = DEFAULT_IMPORTANCE
    mood: str = "Reflective"
    relations: list[RelationSchema] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _flatten_grouped_tags(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        tags = data.get("tags")
        if isinstance(tags, dict):
            groups = {"characters": "character", "locations": "location", "events": "event", "themes": "theme"}
            flat = []
            for key, tag_type in groups.items():
                for value in tags.get(key) or []:
                    if isinstance(value, str) and value.strip():
                        flat.append({"type": tag_type, "value": value.strip()})
            data = {**data, "tags": flat}
        elif isinstance(tags, list):
            allowed = ("character", "location", "event", "theme")
            data = {
                **data,
                "tags": [
                    t for t in tags
                    if isinstance(t, dict) and t.get("type") in allowed and str(t.get("value") or "").strip()
                ],
            }
        return data

    @field_validator("importance", mode="before")
    @classmethod
    def _clamp_importance(cls, value: Any) -> int:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return DEFAULT_IMPORTANCE
        if number != number or number == 0:  # NaN, or 0 meaning "unset"
            return DEFAULT_IMPORTANCE
        return int(round(max(1.0, min(10.0, number))))

    @field_validator("mood", mode="before")
    @classmethod
    def _default_mood(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) and value.strip() else "Reflective"

    @field_validator("summary", mode="before")
    @classmethod
    def _none_summary(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    def memory_tags(self) -> list[MemoryTag]:
        return [MemoryTag(type=t.type, value=t.value) for t in self.tags]

    def memory_relations(self) -> list[MemoryRelation]:
        return [MemoryRelation(subject=r.subject, predicate=r.predicate, object=r.object) for r in self.relations]
