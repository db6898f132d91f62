"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic domain records and response schemas, see schemas.py.
"""

from sqlalchemy import JSON, Column, DateTime, String, Text

from convo_mirror.storage import Base


class ConversationRecord(Base):
    """
    One conversation document.

    Table: conversations
    Primary Key: id (provider conversation id)
    All timestamps are naive UTC.
    """
    __tablename__ = "conversations"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    participants = Column(JSON, nullable=False, default=list)
    phone_number_id = Column(String, nullable=True, index=True)
    last_activity_at = Column(DateTime, nullable=True, index=True)


class MessageRecord(Base):
    """
    One message, contained in a conversation.

    Table: messages
    Primary Key: (conversation_id, message_id), the insert-if-absent key
    """
    __tablename__ = "messages"

    conversation_id = Column(String, primary_key=True)
    message_id = Column(String, primary_key=True)
    from_number = Column(String, nullable=False)
    to_numbers = Column(JSON, nullable=False, default=list)
    direction = Column(String, nullable=False)
    text = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="")
    created_at = Column(DateTime, nullable=False, index=True)
    stored_at = Column(DateTime, nullable=False)  # Server time of first observation
