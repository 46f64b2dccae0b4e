from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SnapshotRecordOut(CamelModel):
    """Snapshot record as exposed to the owning user."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    save_id: uuid.UUID
    space_id: uuid.UUID
    status: str
    blocked_reason: Optional[str] = None
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    fetched_at: Optional[datetime] = None
    storage_path: Optional[str] = None
    canonical_url: Optional[str] = None
    title: Optional[str] = None
    byline: Optional[str] = None
    excerpt: Optional[str] = None
    word_count: Optional[int] = None
    language: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CreateSavePayload(BaseModel):
    url: str = Field(min_length=1, max_length=4096)
    title: Optional[str] = None
    description: Optional[str] = None


class RequestSnapshotPayload(BaseModel):
    force: bool = False


class TriggerSnapshotPayload(CamelModel):
    save_id: uuid.UUID


def dump_camel(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True, mode="json")
