import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, create_engine, or_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker

from convo_mirror.config import settings
from convo_mirror.schemas import Conversation, ConversationUpdate, Message
from convo_mirror.store import (
    CONVERSATIONS_KEY,
    ConversationStore,
    UpsertOutcome,
    messages_key,
)
from convo_mirror.utils import to_naive_utc, to_utc, utcnow

logger = logging.getLogger(__name__)


def make_engine(database_url: str):
    """
    Create a SQLAlchemy engine.
    check_same_thread=False is required for SQLite to work with FastAPI's threadpool.
    """
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args, echo=False)


engine = make_engine(settings.DATABASE_URL)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db(bind=None) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    bind = bind or engine
    logger.debug(f"Initializing database with URL: {bind.url}")
    try:
        # Import models to register them with Base.metadata
        from convo_mirror import models  # noqa: F401

        Base.metadata.create_all(bind=bind)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health(session_factory=None) -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    session_factory = session_factory or SessionLocal
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
            for table in ("conversations", "messages"):
                result = db.execute(
                    text("SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name=:name"),
                    {"name": table},
                ).scalar()
                if result == 0:
                    logger.error(f"Database schema not applied: '{table}' table not found")
                    return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Record Conversion
# =============================================================================

def _conversation_from_record(record) -> Conversation:
    return Conversation(
        id=record.id,
        name=record.name,
        participants=list(record.participants or []),
        phone_number_id=record.phone_number_id,
        last_activity_at=to_utc(record.last_activity_at) if record.last_activity_at else None,
    )


def _message_from_record(record) -> Message:
    return Message(
        id=record.message_id,
        from_number=record.from_number,
        to=list(record.to_numbers or []),
        direction=record.direction,
        text=record.text or "",
        status=record.status or "",
        created_at=to_utc(record.created_at),
    )


# =============================================================================
# SQL Store Adapter
# =============================================================================

class SqlConversationStore(ConversationStore):
    """
    ConversationStore backed by SQLAlchemy.

    Insert-if-absent is enforced by the primary key: an IntegrityError on
    insert means another writer already stored the document. Monotonic
    fields are merged with a single conditional UPDATE, so no read-then-write
    window exists.
    """

    def __init__(self, session_factory=None):
        super().__init__()
        self._session_factory = session_factory or SessionLocal

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        from convo_mirror.models import ConversationRecord

        with self._session_factory() as db:
            record = db.get(ConversationRecord, conversation_id)
            return _conversation_from_record(record) if record else None

    def get_message(self, conversation_id: str, message_id: str) -> Optional[Message]:
        from convo_mirror.models import MessageRecord

        with self._session_factory() as db:
            record = db.get(MessageRecord, (conversation_id, message_id))
            return _message_from_record(record) if record else None

    def upsert_message(
        self, conversation_id: str, message: Message, update_status: bool = True
    ) -> UpsertOutcome:
        from convo_mirror.models import MessageRecord

        logger.debug(f"Upserting message: conversation={conversation_id}, id={message.id}")

        # Subscribers see commits in the order they happened in this process
        with self.hub.lock:
            with self._session_factory() as db:
                db.add(MessageRecord(
                    conversation_id=conversation_id,
                    message_id=message.id,
                    from_number=message.from_number,
                    to_numbers=list(message.to),
                    direction=message.direction,
                    text=message.text,
                    status=message.status,
                    created_at=to_naive_utc(message.created_at),
                    stored_at=to_naive_utc(utcnow()),
                ))
                try:
                    db.commit()
                    outcome, kind, stored = UpsertOutcome.CREATED, "added", message.model_copy(deep=True)
                except IntegrityError:
                    # Already stored by this or another writer
                    db.rollback()
                    existing = db.get(MessageRecord, (conversation_id, message.id))
                    if existing is None:
                        raise
                    stored = _message_from_record(existing)
                    self.check_identity(conversation_id, stored, message)

                    if not update_status or stored.status == message.status:
                        return UpsertOutcome.UNCHANGED

                    db.query(MessageRecord).filter(
                        MessageRecord.conversation_id == conversation_id,
                        MessageRecord.message_id == message.id,
                    ).update({"status": message.status}, synchronize_session=False)
                    db.commit()
                    stored.status = message.status
                    outcome, kind = UpsertOutcome.UPDATED, "modified"

            self.hub.publish(messages_key(conversation_id), kind, stored)
        return outcome

    def merge_conversation(self, update: ConversationUpdate) -> Conversation:
        from convo_mirror.models import ConversationRecord

        last_activity = (
            to_naive_utc(update.last_activity_at) if update.last_activity_at else None
        )

        with self.hub.lock:
            with self._session_factory() as db:
                db.add(ConversationRecord(
                    id=update.conversation_id,
                    name=update.name,
                    participants=list(update.participants or []),
                    phone_number_id=update.phone_number_id,
                    last_activity_at=last_activity,
                ))
                created = True
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    created = False

                    values = {}
                    if update.name is not None:
                        values["name"] = update.name
                    if update.phone_number_id is not None:
                        values["phone_number_id"] = update.phone_number_id
                    if update.participants is not None and update.participants_mode == "replace":
                        values["participants"] = list(update.participants)
                    if last_activity is not None:
                        column = ConversationRecord.last_activity_at
                        values["last_activity_at"] = case(
                            (or_(column.is_(None), column < last_activity), last_activity),
                            else_=column,
                        )
                    if values:
                        db.query(ConversationRecord).filter(
                            ConversationRecord.id == update.conversation_id
                        ).update(values, synchronize_session=False)
                        db.commit()

                record = db.get(ConversationRecord, update.conversation_id)
                merged = _conversation_from_record(record)

            self.hub.publish(CONVERSATIONS_KEY, "added" if created else "modified", merged)
        return merged

    def list_conversations(self, limit: int = 50) -> list[Conversation]:
        from convo_mirror.models import ConversationRecord

        with self._session_factory() as db:
            records = (
                db.query(ConversationRecord)
                .order_by(
                    ConversationRecord.last_activity_at.is_(None),
                    ConversationRecord.last_activity_at.desc(),
                    ConversationRecord.id.desc(),
                )
                .limit(limit)
                .all()
            )
            return [_conversation_from_record(r) for r in records]

    def list_messages(
        self,
        conversation_id: str,
        created_after: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Message]:
        from convo_mirror.models import MessageRecord

        with self._session_factory() as db:
            query = db.query(MessageRecord).filter(MessageRecord.conversation_id == conversation_id)
            if created_after is not None:
                query = query.filter(MessageRecord.created_at > to_naive_utc(created_after))

            # Apply ordering: created_at ASC, message_id ASC (deterministic)
            query = query.order_by(MessageRecord.created_at.asc(), MessageRecord.message_id.asc())
            if limit is not None:
                query = query.limit(limit)
            return [_message_from_record(r) for r in query.all()]
