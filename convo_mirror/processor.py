"""
Webhook event processor.

Applies one verified provider event to the store. The handler is stateless:
all coordination between concurrent deliveries (and the reconciler) happens
through the store's insert-if-absent and monotonic merge semantics.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from convo_mirror.errors import DataIntegrityConflict
from convo_mirror.events import (
    MessageDeliveredEvent,
    MessageReceivedEvent,
    parse_event,
)
from convo_mirror.metrics import record_integrity_conflict
from convo_mirror.schemas import ConversationUpdate
from convo_mirror.store import ConversationStore, UpsertOutcome

logger = logging.getLogger(__name__)


class ProcessOutcome(str, Enum):
    ACCEPTED = "accepted"
    IGNORED = "ignored"


@dataclass
class ProcessResult:
    outcome: ProcessOutcome
    event_type: str
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    upsert: Optional[UpsertOutcome] = None
    conflict: bool = False

    @property
    def duplicate(self) -> bool:
        return self.upsert in (UpsertOutcome.UPDATED, UpsertOutcome.UNCHANGED)


class WebhookEventProcessor:
    """
    Converts provider events into idempotent store mutations.

    Raises MalformedPayload (from parse_event) for structurally invalid
    documents; unrecognized event types are reported as IGNORED.
    """

    def __init__(self, store: ConversationStore):
        self.store = store

    def process(self, document: Any) -> ProcessResult:
        event = parse_event(document)

        if isinstance(event, MessageReceivedEvent):
            return self._apply(event, participants_mode="replace")
        if isinstance(event, MessageDeliveredEvent):
            # Delivery confirmations never narrow an existing participant set
            return self._apply(event, participants_mode="seed")

        logger.info(f"Ignoring webhook event type: {event.type}")
        return ProcessResult(outcome=ProcessOutcome.IGNORED, event_type=event.type)

    def _apply(self, event, participants_mode: str) -> ProcessResult:
        payload = event.message
        message = payload.to_message()
        result = ProcessResult(
            outcome=ProcessOutcome.ACCEPTED,
            event_type=event.type,
            conversation_id=payload.conversation_id,
            message_id=payload.id,
        )

        try:
            result.upsert = self.store.upsert_message(
                payload.conversation_id, message, update_status=True
            )
        except DataIntegrityConflict as e:
            # Keep the first observation; the conversation is left untouched too
            logger.error(
                f"Data integrity conflict from webhook: {e}",
                extra={"conversation_id": e.conversation_id, "message_id": e.message_id,
                       "fields": e.fields, "source": "webhook"},
            )
            record_integrity_conflict("webhook")
            result.conflict = True
            return result

        participants = [payload.from_number] if payload.direction == "incoming" else list(payload.to)
        self.store.merge_conversation(ConversationUpdate(
            conversation_id=payload.conversation_id,
            phone_number_id=payload.phone_number_id,
            participants=participants,
            participants_mode=participants_mode,
            last_activity_at=payload.created_at,
        ))

        logger.info(
            f"Applied {event.type}: conversation={payload.conversation_id}, "
            f"message={payload.id}, result={result.upsert.value}"
        )
        return result
