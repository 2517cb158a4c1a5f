"""
Typed alert context payloads.

Each alert type stores a context payload in alerts.context (JSON). The
payload shape depends on the type, so it is modelled as a pydantic
discriminated union keyed by ``kind``:

- tags: UNMATCHED_TAGS, SOURCE_KENNEL_MISMATCH
- event_count: EVENT_COUNT_ANOMALY
- field_fill: FIELD_FILL_DROP
- structure_change: STRUCTURE_CHANGE
- failure: SCRAPE_FAILURE, CONSECUTIVE_FAILURES

Repair log entries share one model (RepairLogEntry) regardless of action.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


class TagListContext(BaseModel):
    kind: Literal["tags"] = "tags"
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def drop_blank_tags(cls, v: list[str]) -> list[str]:
        return [t for t in v if t and t.strip()]


class EventCountContext(BaseModel):
    kind: Literal["event_count"] = "event_count"
    current_count: int
    baseline_avg: int
    baseline_window: int
    drop_percent: int


class FieldFillContext(BaseModel):
    kind: Literal["field_fill"] = "field_fill"
    field: str
    current_rate: int
    baseline_avg: int


class StructureChangeContext(BaseModel):
    kind: Literal["structure_change"] = "structure_change"
    previous_hash: str
    current_hash: str
    previous_event_count: int
    current_event_count: int
    fill_rate_baseline: dict[str, int] = Field(default_factory=dict)
    fill_rate_current: dict[str, int] = Field(default_factory=dict)
    quality_impacted: bool = False


class FailureContext(BaseModel):
    kind: Literal["failure"] = "failure"
    error_messages: list[str] = Field(default_factory=list)
    consecutive_count: int = 1


AlertContext = Annotated[
    Union[
        TagListContext,
        EventCountContext,
        FieldFillContext,
        StructureChangeContext,
        FailureContext,
    ],
    Field(discriminator="kind"),
]

_context_adapter: TypeAdapter[AlertContext] = TypeAdapter(AlertContext)


def parse_context(raw: Optional[dict]) -> Optional[AlertContext]:
    """
    Load a stored context payload.

    Returns None for a missing payload.

    Raises:
        pydantic.ValidationError: payload has an unknown kind or bad fields
    """
    if raw is None:
        return None
    return _context_adapter.validate_python(raw)


def dump_context(context: Optional[AlertContext]) -> Optional[dict]:
    """Serialize a context payload for the JSON column."""
    if context is None:
        return None
    return context.model_dump(mode="json")


def context_tags(raw: Optional[dict]) -> list[str]:
    """Kennel tags recorded in a stored context (empty for non-tag payloads)."""
    context = parse_context(raw)
    if isinstance(context, TagListContext):
        return list(context.tags)
    return []


class RepairLogEntry(BaseModel):
    """One entry in an alert's append-only repair log."""
    action: str
    timestamp: datetime
    actor: str
    details: dict[str, Any] = Field(default_factory=dict)
    result: Literal["success", "error"]
    result_message: Optional[str] = None

    @field_validator("actor")
    @classmethod
    def validate_actor_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("actor cannot be empty")
        return v
