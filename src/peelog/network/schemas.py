"""Pydantic schemas for remote service payloads."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from peelog.core.schemas import Event, Quality, SyncState, parse_timestamp, utcnow

# Event documents store quality as an index into this order
QUALITY_INDEX = [Quality.CLEAR, Quality.PALE_YELLOW, Quality.YELLOW, Quality.DARK_YELLOW, Quality.AMBER]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RemoteEvent(WireModel):
    """An event document as stored by the sync service."""

    id: str
    user_id: str | None = None
    timestamp: datetime
    quality: Quality
    notes: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    location_name: str | None = None
    updated_at: datetime | None = None

    @field_validator("quality", mode="before")
    @classmethod
    def _quality_from_index(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            if 0 <= value < len(QUALITY_INDEX):
                return QUALITY_INDEX[value]
            return Quality.PALE_YELLOW
        return value

    @classmethod
    def from_event(cls, event: Event, user_id: str) -> RemoteEvent:
        return cls(
            id=event.id,
            user_id=user_id,
            timestamp=event.timestamp,
            quality=event.quality,
            notes=event.notes or None,
            latitude=event.latitude,
            longitude=event.longitude,
            location_name=event.location_name or None,
            updated_at=utcnow(),
        )

    def to_event(self, owner_id: str) -> Event:
        return Event(
            id=self.id,
            timestamp=parse_timestamp(self.timestamp),
            quality=self.quality,
            notes=self.notes,
            latitude=self.latitude,
            longitude=self.longitude,
            location_name=self.location_name,
            owner_id=owner_id,
            sync_state=SyncState.SYNCED,
            updated_at=parse_timestamp(self.updated_at or self.timestamp),
        )

    def to_wire(self) -> dict:
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        data["quality"] = QUALITY_INDEX.index(self.quality)
        return data


class EventSetResponse(WireModel):
    events: list[RemoteEvent] = Field(default_factory=list)


class EventDeltaResponse(WireModel):
    events: list[RemoteEvent] = Field(default_factory=list)
    deleted_ids: list[str] = Field(default_factory=list)


class MutationResponse(WireModel):
    """Acknowledgement of an upsert or delete batch."""

    accepted: list[str] = Field(default_factory=list)


class AuthResponse(WireModel):
    uid: str
    email: str | None = None
    display_name: str | None = None
    id_token: str
    provider: str = "email"


class AIInsightKind(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"


class AIInsight(WireModel):
    type: AIInsightKind
    content: str
    generated_at: datetime
    question: str | None = None


class AskAIResponse(WireModel):
    insight: str = Field(min_length=1)
