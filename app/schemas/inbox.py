from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class InboxNotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    person_id: UUID
    title: str
    body: str
    event_type: str
    entity_type: str
    entity_id: str
    action_url: str | None = None
    is_read: bool
    read_at: datetime | None = None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_")
    created_at: datetime


class MarkReadRequest(BaseModel):
    person_id: UUID
    notification_ids: list[UUID]


class MarkAllReadRequest(BaseModel):
    person_id: UUID


class UnreadCountResponse(BaseModel):
    count: int
