"""Pydantic schemas for command input validation and façade results."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator

from .models import (
    EntityKind,
    EntityStatus,
    ChangeType,
    PRIORITY_MIN,
    PRIORITY_MAX,
    PRIORITY_DEFAULT,
)


# Entity Schemas

class EntityCreate(BaseModel):
    """Fields shared by every create command."""

    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    priority: int = Field(PRIORITY_DEFAULT, ge=PRIORITY_MIN, le=PRIORITY_MAX, description="0 = Critical … 5 = Someday")

    model_config = ConfigDict(extra="forbid")

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, value):
        return value.strip() if isinstance(value, str) else value


class EpicCreate(EntityCreate):
    """Schema for creating an epic."""


class TaskCreate(EntityCreate):
    """Schema for creating a task under an existing epic."""

    epic_id: str = Field(..., min_length=1, description="Parent epic id (e.g., EPIC-1)")


class SubtaskCreate(EntityCreate):
    """Schema for creating a subtask under an existing task."""

    task_id: str = Field(..., min_length=1, description="Parent task id (e.g., TREK-3)")


class EntityUpdate(BaseModel):
    """Schema for updating an existing epic, task or subtask.

    parent_id and kind are accepted only so that attempts to change them
    can be reported as immutable-field violations instead of unknown fields.
    """

    status: Optional[EntityStatus] = None
    priority: Optional[int] = Field(None, ge=PRIORITY_MIN, le=PRIORITY_MAX)
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    parent_id: Optional[str] = None
    kind: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, value):
        return value.strip() if isinstance(value, str) else value


class CommentCreate(BaseModel):
    """Schema for adding a comment."""

    author: str = Field(..., min_length=1, max_length=100)
    body: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")

    @field_validator("author", "body", mode="before")
    @classmethod
    def strip_text(cls, value):
        return value.strip() if isinstance(value, str) else value


# Response Schemas

class EntityResponse(BaseModel):
    """Schema for epic, task and subtask results."""

    id: str = Field(description="Human-readable id, e.g. EPIC-1 or TREK-7")
    kind: EntityKind
    title: str
    description: Optional[str] = None
    status: EntityStatus
    priority: int
    parent_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(use_enum_values=True)


class EpicCompletionResponse(BaseModel):
    """Schema for the result of completing an epic."""

    epic: EntityResponse
    archived: list[EntityResponse] = Field(default_factory=list, description="Children archived by the cascade")


class CommentResponse(BaseModel):
    """Schema for comment results."""

    id: str
    entity_id: str
    author: str
    body: str
    created_at: datetime


class DependencyResponse(BaseModel):
    """Schema for a dependency edge."""

    dependent_id: str
    dependency_id: str
    created: bool = Field(description="False if the edge already existed")


class DependencyInfoResponse(BaseModel):
    """Schema for the dependency neighbourhood of one entity."""

    id: str
    depends_on: list[str] = Field(default_factory=list)
    blocked_by: list[str] = Field(default_factory=list, description="Dependencies not yet completed")
    blocks: list[str] = Field(default_factory=list, description="Entities that depend on this one")


class HistoryEventResponse(BaseModel):
    """Schema for history events."""

    seq: int
    entity_id: str
    entity_kind: EntityKind
    change_type: ChangeType
    field_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    actor: str
    changed_at: datetime

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class SearchHit(BaseModel):
    """Schema for ranked search results."""

    id: str
    kind: EntityKind
    status: EntityStatus
    title: str
    score: int = Field(description="Number of distinct query tokens matched")
    hits: int = Field(description="Total postings matched across title, description and comments")
    comment_ids: list[str] = Field(default_factory=list, description="Comments that matched the query")
    updated_at: datetime

    model_config = ConfigDict(use_enum_values=True)
