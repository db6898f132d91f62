"""
Store adapter interface shared by the webhook processor and the reconciler.

The engine needs four capabilities from its document store:
- point read by id
- merge-write by id (partial update, unspecified fields preserved)
- ordered range query on a single sort key
- live subscription: initial snapshot, then incremental deltas

No multi-document transactions are required. Message writes are atomic
insert-if-absent keyed by (conversation_id, message_id); conversation
writes merge lastActivityAt monotonically.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from convo_mirror.errors import DataIntegrityConflict
from convo_mirror.schemas import (
    Conversation,
    ConversationUpdate,
    Message,
    apply_update,
    identity_diff,
)
from convo_mirror.utils import to_utc

logger = logging.getLogger(__name__)


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"      # existed, mutable status changed
    UNCHANGED = "unchanged"  # existed, nothing to do


@dataclass
class DocumentChange:
    kind: str  # "added" | "modified"
    document: object


@dataclass
class QuerySnapshot:
    initial: bool
    changes: list[DocumentChange] = field(default_factory=list)


SnapshotCallback = Callable[[QuerySnapshot], None]


class Subscription:
    """Handle returned by subscribe_*; call unsubscribe() to stop deltas."""

    def __init__(self, hub: "SubscriptionHub", key: str, callback: SnapshotCallback):
        self._hub = hub
        self.key = key
        self.callback = callback
        self.active = True
        self._delivering = False
        self._pending: deque[QuerySnapshot] = deque()

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._hub.remove(self)

    def deliver(self, snapshot: QuerySnapshot) -> None:
        """
        Hand a snapshot to the callback, in order.

        A write made from inside the callback publishes on the same thread;
        its delta is queued and delivered once the running callback returns.
        """
        if self._delivering:
            self._pending.append(snapshot)
            return
        self._delivering = True
        try:
            self._invoke(snapshot)
            while self._pending:
                self._invoke(self._pending.popleft())
        finally:
            self._delivering = False

    def _invoke(self, snapshot: QuerySnapshot) -> None:
        if not self.active:
            return
        try:
            self.callback(snapshot)
        except Exception:
            # A broken listener must not fail the write that triggered it
            logger.exception(f"Subscriber callback failed for {self.key}")


class SubscriptionHub:
    """
    In-process fan-out of committed changes to live query subscribers.

    Keys are "conversations" for the conversation list and
    "messages:<conversation_id>" for one conversation's messages.

    `lock` is held by store writers from the write through its publish, and
    by `add` from the snapshot read through registration. Subscribers
    therefore see deltas in commit order, and every write lands either in
    the initial snapshot or in a later delta.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self._subscribers: dict[str, list[Subscription]] = {}

    def add(self, key: str, callback: SnapshotCallback, load_initial: Callable[[], list]) -> Subscription:
        subscription = Subscription(self, key, callback)
        with self.lock:
            initial = load_initial()
            self._subscribers.setdefault(key, []).append(subscription)
            subscription.deliver(QuerySnapshot(
                initial=True,
                changes=[DocumentChange("added", doc) for doc in initial],
            ))
        return subscription

    def remove(self, subscription: Subscription) -> None:
        with self.lock:
            subscribers = self._subscribers.get(subscription.key, [])
            if subscription in subscribers:
                subscribers.remove(subscription)

    def publish(self, key: str, kind: str, document: object) -> None:
        with self.lock:
            for subscription in list(self._subscribers.get(key, [])):
                subscription.deliver(QuerySnapshot(
                    initial=False,
                    changes=[DocumentChange(kind, document)],
                ))


def messages_key(conversation_id: str) -> str:
    return f"messages:{conversation_id}"


CONVERSATIONS_KEY = "conversations"


class ConversationStore(ABC):
    """Abstract store adapter injected into the processor and the reconciler."""

    def __init__(self):
        self.hub = SubscriptionHub()

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    def get_message(self, conversation_id: str, message_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    def upsert_message(
        self, conversation_id: str, message: Message, update_status: bool = True
    ) -> UpsertOutcome:
        """
        Insert the message if absent; otherwise leave immutable fields alone.

        Args:
            conversation_id: Owning conversation
            message: The observed message
            update_status: Apply the observed status to an existing message

        Raises:
            DataIntegrityConflict: an existing message with the same id has
                different immutable fields
        """

    @abstractmethod
    def merge_conversation(self, update: ConversationUpdate) -> Conversation:
        """Create or merge a conversation document; returns the merged state."""

    @abstractmethod
    def list_conversations(self, limit: int = 50) -> list[Conversation]:
        """Conversations ordered by lastActivityAt descending."""

    @abstractmethod
    def list_messages(
        self,
        conversation_id: str,
        created_after: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Message]:
        """Messages ordered by createdAt ascending, strictly after created_after."""

    def subscribe_conversations(self, callback: SnapshotCallback, limit: int = 50) -> Subscription:
        return self.hub.add(CONVERSATIONS_KEY, callback, lambda: self.list_conversations(limit=limit))

    def subscribe_messages(self, conversation_id: str, callback: SnapshotCallback) -> Subscription:
        return self.hub.add(
            messages_key(conversation_id), callback, lambda: self.list_messages(conversation_id)
        )

    @staticmethod
    def check_identity(conversation_id: str, stored: Message, observed: Message) -> None:
        fields = identity_diff(stored, observed)
        if fields:
            raise DataIntegrityConflict(conversation_id, observed.id, fields)


class InMemoryConversationStore(ConversationStore):
    """
    Thread-safe in-memory store.

    Each operation runs under one lock, which gives the same per-document
    atomicity a real document store provides. Writes take the hub lock
    first and keep it through their publish.
    """

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, dict[str, Message]] = {}

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return conversation.model_copy(deep=True) if conversation else None

    def get_message(self, conversation_id: str, message_id: str) -> Optional[Message]:
        with self._lock:
            message = self._messages.get(conversation_id, {}).get(message_id)
            return message.model_copy(deep=True) if message else None

    def upsert_message(
        self, conversation_id: str, message: Message, update_status: bool = True
    ) -> UpsertOutcome:
        with self.hub.lock:
            with self._lock:
                messages = self._messages.setdefault(conversation_id, {})
                existing = messages.get(message.id)
                if existing is None:
                    stored = message.model_copy(deep=True)
                    messages[message.id] = stored
                    outcome, kind = UpsertOutcome.CREATED, "added"
                else:
                    self.check_identity(conversation_id, existing, message)
                    if not update_status or existing.status == message.status:
                        return UpsertOutcome.UNCHANGED
                    existing.status = message.status
                    stored = existing
                    outcome, kind = UpsertOutcome.UPDATED, "modified"
                snapshot = stored.model_copy(deep=True)

            self.hub.publish(messages_key(conversation_id), kind, snapshot)
        return outcome

    def merge_conversation(self, update: ConversationUpdate) -> Conversation:
        with self.hub.lock:
            with self._lock:
                current = self._conversations.get(update.conversation_id)
                merged = apply_update(current, update)
                self._conversations[update.conversation_id] = merged
                snapshot = merged.model_copy(deep=True)

            self.hub.publish(CONVERSATIONS_KEY, "added" if current is None else "modified", snapshot)
        return snapshot

    def list_conversations(self, limit: int = 50) -> list[Conversation]:
        with self._lock:
            conversations = [c.model_copy(deep=True) for c in self._conversations.values()]
        dated = sorted(
            (c for c in conversations if c.last_activity_at is not None),
            key=lambda c: (c.last_activity_at, c.id),
            reverse=True,
        )
        undated = sorted(
            (c for c in conversations if c.last_activity_at is None),
            key=lambda c: c.id,
            reverse=True,
        )
        return (dated + undated)[:limit]

    def list_messages(
        self,
        conversation_id: str,
        created_after: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Message]:
        with self._lock:
            messages = [
                m.model_copy(deep=True)
                for m in self._messages.get(conversation_id, {}).values()
            ]
        if created_after is not None:
            lower = to_utc(created_after)
            messages = [m for m in messages if m.created_at > lower]
        messages.sort(key=lambda m: (m.created_at, m.id))
        return messages[:limit] if limit is not None else messages
