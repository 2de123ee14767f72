from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


# ---------- Normalized inputs ----------


class MessageInput(BaseModel):
    conversation_id: str = ""
    message_id: str = ""
    correlation_id: Optional[str] = None
    body: str = ""
    created_at: datetime
    status: Optional[MessageStatus] = None  # None: not supplied
    sender_display_name: str = "Unknown"
    is_outgoing: bool = False


class StatusUpdateInput(BaseModel):
    target_message_id: Optional[str] = None
    correlation_id: Optional[str] = None
    status: MessageStatus
    # narrows the match to one conversation when set
    conversation_id: Optional[str] = None


class NormalizedPayload(BaseModel):
    messages: list[MessageInput] = Field(default_factory=list)
    statuses: list[StatusUpdateInput] = Field(default_factory=list)


# ---------- Stored views ----------


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    conversation_id: str
    message_id: str
    correlation_id: Optional[str] = None
    body: str
    created_at: datetime
    status: MessageStatus
    sender_display_name: str
    is_outgoing: bool

    @field_validator("created_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class ConversationSummary(BaseModel):
    conversation_id: str
    last_body: str
    last_created_at: datetime
    status: MessageStatus
    sender_display_name: str

    @field_validator("last_created_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


# ---------- Ingest results ----------


class IngestSummary(BaseModel):
    messages_created: int = 0
    messages_duplicate: int = 0
    messages_rejected: int = 0
    statuses_applied: int = 0
    statuses_unmatched: int = 0
    notifications_failed: int = 0

    def add(self, other: "IngestSummary") -> None:
        for name in IngestSummary.model_fields:
            setattr(self, name, getattr(self, name) + getattr(other, name))


class SourceError(BaseModel):
    source: str
    error: str


class BatchReport(IngestSummary):
    sources_total: int = 0
    sources_succeeded: int = 0
    errors: list[SourceError] = Field(default_factory=list)

    @computed_field
    @property
    def sources_failed(self) -> int:
        return len(self.errors)
