"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

Channels, sessions and messages are independent tables related by string
identifiers; there are no foreign keys between them.
"""

import uuid

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

from chatrelay.utils import utcnow

# Base class for SQLAlchemy models
Base = declarative_base()


def _new_id() -> str:
    return uuid.uuid4().hex


class Channel(Base):
    """
    A provisioned phone-number endpoint.

    Table: channels
    """
    __tablename__ = "channels"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    phone_number = Column(String, nullable=False, index=True)
    country_code = Column(String, nullable=False)
    type = Column(String, nullable=False, default="whatsapp")  # sms, whatsapp, voice
    status = Column(String, nullable=False, default="active")  # active, inactive, suspended
    provider_sid = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Contact(Base):
    """
    Address-book entry. The routing engine never reads or writes contacts.

    Table: contacts
    """
    __tablename__ = "contacts"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False, index=True)
    phone_number = Column(String, nullable=False, unique=True)
    email = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class ChatSession(Base):
    """
    A conversation thread scoped to one channel and one communication kind.

    Table: sessions
    message_count and last_message_at are caches over the messages table.
    """
    __tablename__ = "sessions"
    __table_args__ = (
        Index("ix_sessions_lookup", "channel_id", "communication_type", "status"),
        Index("ix_sessions_remote", "remote_number", "last_message_at"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    channel_id = Column(String, nullable=False, index=True)
    communication_type = Column(String, nullable=False)  # sms, whatsapp, voice
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="active")  # active, archived, closed
    message_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    remote_number = Column(String, nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Message(Base):
    """
    A single message within a session.

    Table: messages
    Only status, provider_message_id and delivery metadata change after insert.
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_channel_created", "channel_id", "created_at"),
        Index("ix_messages_session_created", "session_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    channel_id = Column(String, nullable=False)
    session_id = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    sender = Column(String, nullable=False)  # user, contact
    type = Column(String, nullable=False, default="text")
    communication_type = Column(String, nullable=True)
    status = Column(String, nullable=False, default="sent")
    direction = Column(String, nullable=False)  # inbound, outbound
    authored_by = Column(String, nullable=False)  # remote_party, local_operator, automated_reply
    provider_message_id = Column(String, nullable=True, index=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
