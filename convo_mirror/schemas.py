"""
Pydantic schemas for the conversation mirror.

This module contains:
- Domain records stored by the store adapters (Conversation, Message)
- The partial update applied to a conversation (ConversationUpdate)
- Response models for the HTTP API
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from convo_mirror.utils import to_utc


Direction = Literal["incoming", "outgoing"]

# Fields that never change once a message has been stored
IMMUTABLE_MESSAGE_FIELDS = ("from_number", "to", "direction", "text", "created_at")


# =============================================================================
# Domain Records
# =============================================================================

class Message(BaseModel):
    """
    A single SMS/voice message inside a conversation.

    Only `status` is mutable; every other field is fixed by whichever
    source (webhook or backfill) observes the message first.
    """
    id: str = Field(..., min_length=1, description="Provider-assigned message id")
    # Note: 'from' is a reserved word in Python, so we use alias
    from_number: str = Field(..., alias="from", serialization_alias="from")
    to: list[str] = Field(default_factory=list)
    direction: Direction
    text: str = ""
    status: str = ""
    created_at: datetime = Field(..., alias="createdAt", serialization_alias="createdAt")

    model_config = {"populate_by_name": True}

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        return to_utc(v)

    @field_validator("text", mode="before")
    @classmethod
    def none_text_is_empty(cls, v):
        return "" if v is None else v

    def identity(self) -> dict:
        """Immutable fields in comparable form (recipient order is irrelevant)."""
        return {
            "from_number": self.from_number,
            "to": sorted(set(self.to)),
            "direction": self.direction,
            "text": self.text,
            "created_at": to_utc(self.created_at),
        }


def identity_diff(stored: Message, observed: Message) -> list[str]:
    """Return the immutable field names on which two observations disagree."""
    left, right = stored.identity(), observed.identity()
    return [name for name in IMMUTABLE_MESSAGE_FIELDS if left[name] != right[name]]


class Conversation(BaseModel):
    """A thread between one provider line and a set of participants."""
    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    participants: list[str] = Field(default_factory=list)
    phone_number_id: Optional[str] = Field(
        None, alias="phoneNumberId", serialization_alias="phoneNumberId"
    )
    last_activity_at: Optional[datetime] = Field(
        None, alias="lastActivityAt", serialization_alias="lastActivityAt"
    )

    model_config = {"populate_by_name": True}

    @field_validator("last_activity_at")
    @classmethod
    def normalize_last_activity(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc(v) if v is not None else None


class ConversationUpdate(BaseModel):
    """
    Merge-write applied to a conversation document.

    - last_activity_at only ever moves forward
    - participants_mode "replace" overwrites the set, "seed" only fills it
      when the conversation is being created
    - fields left as None are preserved
    """
    conversation_id: str = Field(..., min_length=1)
    phone_number_id: Optional[str] = None
    participants: Optional[list[str]] = None
    participants_mode: Literal["replace", "seed"] = "replace"
    last_activity_at: Optional[datetime] = None
    name: Optional[str] = None

    @field_validator("last_activity_at")
    @classmethod
    def normalize_last_activity(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc(v) if v is not None else None


def apply_update(current: Optional[Conversation], update: ConversationUpdate) -> Conversation:
    """
    Compute the merged conversation for an update.

    Shared by the in-memory store; the SQL store expresses the same rules
    as conditional UPDATE statements.
    """
    if current is None:
        return Conversation(
            id=update.conversation_id,
            name=update.name,
            participants=list(update.participants or []),
            phone_number_id=update.phone_number_id,
            last_activity_at=update.last_activity_at,
        )

    merged = current.model_copy(deep=True)
    if update.name is not None:
        merged.name = update.name
    if update.phone_number_id is not None:
        merged.phone_number_id = update.phone_number_id
    if update.participants is not None and update.participants_mode == "replace":
        merged.participants = list(update.participants)
    if update.last_activity_at is not None and (
        merged.last_activity_at is None or update.last_activity_at > merged.last_activity_at
    ):
        merged.last_activity_at = update.last_activity_at
    return merged


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ConversationsListResponse(BaseModel):
    """Conversations ordered by most recent activity first."""
    data: list[Conversation] = Field(default_factory=list)
    limit: int = Field(..., ge=1, le=500)


class MessagesListResponse(BaseModel):
    """Messages of one conversation ordered by creation time ascending."""
    data: list[Message] = Field(default_factory=list)
    limit: int = Field(..., ge=1, le=500)


class BackfillResponse(BaseModel):
    status: str = Field(default="scheduled")
    conversation_id: str


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
