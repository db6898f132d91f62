"""
Closed variant type for provider webhook events.

Raw provider JSON is validated here, at the boundary, before anything
touches the store:

    {"type": "message.received", "data": {"object": {...message...}}}

Recognized types become MessageReceivedEvent / MessageDeliveredEvent,
anything else becomes OtherEvent. Structurally invalid documents raise
MalformedPayload.
"""

from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from convo_mirror.errors import MalformedPayload
from convo_mirror.schemas import Direction, Message


MESSAGE_RECEIVED = "message.received"
MESSAGE_DELIVERED = "message.delivered"


class MessagePayload(BaseModel):
    """The `data.object` of a message event (also the shape of history records)."""
    id: str = Field(..., min_length=1)
    conversation_id: Optional[str] = Field(None, alias="conversationId", min_length=1)
    from_number: str = Field(..., alias="from", min_length=1)
    to: list[str] = Field(default_factory=list)
    direction: Direction
    text: str = Field("", validation_alias=AliasChoices("body", "text"))
    status: str = ""
    created_at: datetime = Field(..., alias="createdAt")
    phone_number_id: Optional[str] = Field(None, alias="phoneNumberId", min_length=1)

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("to", mode="before")
    @classmethod
    def single_recipient_as_list(cls, v):
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("text", "status", mode="before")
    @classmethod
    def null_as_empty(cls, v):
        return "" if v is None else v

    def to_message(self) -> Message:
        return Message(
            id=self.id,
            from_number=self.from_number,
            to=self.to,
            direction=self.direction,
            text=self.text,
            status=self.status,
            created_at=self.created_at,
        )


class WebhookMessagePayload(MessagePayload):
    """Webhook payloads must name their conversation, line and recipients."""
    conversation_id: str = Field(..., alias="conversationId", min_length=1)
    phone_number_id: str = Field(..., alias="phoneNumberId", min_length=1)
    # Outgoing events replace the participant set with these
    to: list[str] = Field(..., min_length=1)


class _EventData(BaseModel):
    object: WebhookMessagePayload


class MessageReceivedEvent(BaseModel):
    type: Literal["message.received"]
    data: _EventData

    @property
    def message(self) -> WebhookMessagePayload:
        return self.data.object


class MessageDeliveredEvent(BaseModel):
    type: Literal["message.delivered"]
    data: _EventData

    @property
    def message(self) -> WebhookMessagePayload:
        return self.data.object


class OtherEvent(BaseModel):
    """Any event type this engine does not act on."""
    type: str


WebhookEvent = Union[MessageReceivedEvent, MessageDeliveredEvent, OtherEvent]

_RECOGNIZED = {
    MESSAGE_RECEIVED: MessageReceivedEvent,
    MESSAGE_DELIVERED: MessageDeliveredEvent,
}


def parse_event(document: Any) -> WebhookEvent:
    """
    Validate a decoded webhook body into the closed event variant.

    Raises:
        MalformedPayload: body is not an object, has no string `type`, or a
            recognized event is missing required message fields
    """
    if not isinstance(document, dict):
        raise MalformedPayload("event body must be a JSON object")

    event_type = document.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedPayload("event is missing a string 'type'")

    model = _RECOGNIZED.get(event_type)
    if model is None:
        return OtherEvent(type=event_type)

    try:
        return model.model_validate(document)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise MalformedPayload(f"invalid {event_type} event: {', '.join(fields)}") from e
