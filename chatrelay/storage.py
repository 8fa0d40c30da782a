import functools
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from chatrelay.errors import ConflictError, PersistenceError
from chatrelay.models import Base, Channel, ChatSession, Contact, Message
from chatrelay.utils import utcnow

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """
    Create the SQLAlchemy engine.

    check_same_thread=False is required for SQLite because store calls run
    on the thread pool.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args, echo=False)


def _offloaded(fn):
    """Run a blocking store method on the thread pool and await it."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        return await run_in_threadpool(fn, *args, **kwargs)

    return wrapper


class ConversationStore:
    """
    Durable record of channels, contacts, sessions and messages.

    Every public data method is awaitable. Each call opens its own database
    session and commits before returning, so a mutation is a single
    statement or a single short transaction; nothing is held open across
    calls. Returned ORM objects are detached snapshots.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(
            bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
        )

    @classmethod
    def from_url(cls, database_url: str) -> "ConversationStore":
        logger.debug(f"Creating conversation store for URL: {database_url}")
        return cls(build_engine(database_url))

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Conversation store operation failed: {e}")
            raise PersistenceError("conversation store unavailable") from e
        finally:
            db.close()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def init_db(self) -> None:
        """Create all tables. Called during application startup."""
        logger.debug("Creating database tables...")
        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database initialized successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise PersistenceError("failed to initialize database") from e

    def drop_all(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and the tables exist, False otherwise.
        """
        logger.debug("Checking database health...")
        try:
            with self._session_factory() as db:
                db.execute(text("SELECT 1"))
            tables = set(inspect(self.engine).get_table_names())
            missing = {"channels", "sessions", "messages"} - tables
            if missing:
                logger.error(f"Database schema not applied, missing tables: {sorted(missing)}")
                return False
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    # =========================================================================
    # Channels
    # =========================================================================

    @_offloaded
    def create_channel(
        self,
        name: str,
        phone_number: str,
        country_code: str,
        type: str = "whatsapp",
        status: str = "active",
        provider_sid: Optional[str] = None,
    ) -> Channel:
        with self._session() as db:
            channel = Channel(
                name=name,
                phone_number=phone_number,
                country_code=country_code,
                type=type,
                status=status,
                provider_sid=provider_sid,
            )
            db.add(channel)
        logger.info(f"Channel created: {channel.id} ({phone_number}, {type})")
        return channel

    @_offloaded
    def get_channel(self, channel_id: str) -> Optional[Channel]:
        with self._session() as db:
            return db.get(Channel, channel_id)

    @_offloaded
    def find_channel_by_number(self, phone_number: str) -> Optional[Channel]:
        """Oldest channel provisioned for this number, if any."""
        with self._session() as db:
            return (
                db.query(Channel)
                .filter(Channel.phone_number == phone_number)
                .order_by(Channel.created_at.asc())
                .first()
            )

    @_offloaded
    def list_channels(self) -> list:
        with self._session() as db:
            return db.query(Channel).order_by(Channel.created_at.desc()).all()

    @_offloaded
    def update_channel(self, channel_id: str, **fields: Any) -> Optional[Channel]:
        with self._session() as db:
            channel = db.get(Channel, channel_id)
            if channel is None:
                return None
            for key, value in fields.items():
                setattr(channel, key, value)
        return channel

    @_offloaded
    def delete_channel(self, channel_id: str) -> bool:
        with self._session() as db:
            deleted = db.query(Channel).filter(Channel.id == channel_id).delete()
        return deleted > 0

    # =========================================================================
    # Contacts
    # =========================================================================

    @_offloaded
    def create_contact(self, name: str, phone_number: str, email: Optional[str] = None) -> Contact:
        try:
            with self._session() as db:
                contact = Contact(name=name, phone_number=phone_number, email=email)
                db.add(contact)
        except IntegrityError:
            logger.info(f"Duplicate contact phone number: {phone_number}")
            raise ConflictError("contact with this phone number already exists")
        return contact

    @_offloaded
    def get_contact(self, contact_id: str) -> Optional[Contact]:
        with self._session() as db:
            return db.get(Contact, contact_id)

    @_offloaded
    def list_contacts(self) -> list:
        with self._session() as db:
            return db.query(Contact).order_by(Contact.name.asc()).all()

    @_offloaded
    def update_contact(self, contact_id: str, **fields: Any) -> Optional[Contact]:
        try:
            with self._session() as db:
                contact = db.get(Contact, contact_id)
                if contact is None:
                    return None
                for key, value in fields.items():
                    setattr(contact, key, value)
        except IntegrityError:
            raise ConflictError("contact with this phone number already exists")
        return contact

    @_offloaded
    def delete_contact(self, contact_id: str) -> bool:
        with self._session() as db:
            deleted = db.query(Contact).filter(Contact.id == contact_id).delete()
        return deleted > 0

    # =========================================================================
    # Sessions
    # =========================================================================

    @_offloaded
    def create_session(
        self,
        channel_id: str,
        communication_type: str,
        title: str,
        now: datetime,
        description: str = "",
        remote_number: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> ChatSession:
        with self._session() as db:
            session = ChatSession(
                channel_id=channel_id,
                communication_type=communication_type,
                title=title,
                description=description,
                status="active",
                message_count=0,
                last_message_at=now,
                remote_number=remote_number,
                meta=dict(meta or {}),
                created_at=now,
                updated_at=now,
            )
            db.add(session)
        logger.info(
            f"Session created: {session.id} (channel={channel_id}, "
            f"type={communication_type}, remote={remote_number})"
        )
        return session

    @_offloaded
    def get_session(self, session_id: str) -> Optional[ChatSession]:
        with self._session() as db:
            return db.get(ChatSession, session_id)

    @_offloaded
    def find_latest_active_session(
        self,
        channel_id: str,
        communication_type: str,
        remote_number: Optional[str] = None,
    ) -> Optional[ChatSession]:
        """
        Most recently active session for channel + kind.

        When remote_number is given only sessions bound to that number match;
        when it is None any active session for channel + kind matches.
        """
        with self._session() as db:
            query = db.query(ChatSession).filter(
                ChatSession.channel_id == channel_id,
                ChatSession.communication_type == communication_type,
                ChatSession.status == "active",
            )
            if remote_number is not None:
                query = query.filter(ChatSession.remote_number == remote_number)
            return query.order_by(
                ChatSession.last_message_at.desc(), ChatSession.created_at.desc()
            ).first()

    @_offloaded
    def list_sessions(
        self,
        channel_id: Optional[str] = None,
        status: Optional[str] = None,
        communication_type: Optional[str] = None,
    ) -> list:
        with self._session() as db:
            query = db.query(ChatSession)
            if channel_id:
                query = query.filter(ChatSession.channel_id == channel_id)
            if status:
                query = query.filter(ChatSession.status == status)
            if communication_type:
                query = query.filter(ChatSession.communication_type == communication_type)
            return query.order_by(ChatSession.last_message_at.desc()).all()

    @_offloaded
    def update_session(self, session_id: str, **fields: Any) -> Optional[ChatSession]:
        with self._session() as db:
            session = db.get(ChatSession, session_id)
            if session is None:
                return None
            for key, value in fields.items():
                setattr(session, key, value)
        return session

    @_offloaded
    def touch_session(self, session_id: str, at: datetime) -> bool:
        """
        Count one more message on the session and move last_message_at.

        A single UPDATE statement; concurrent callers never lose increments.
        """
        with self._session() as db:
            updated = (
                db.query(ChatSession)
                .filter(ChatSession.id == session_id)
                .update(
                    {
                        ChatSession.message_count: ChatSession.message_count + 1,
                        ChatSession.last_message_at: at,
                        ChatSession.updated_at: at,
                    },
                    synchronize_session=False,
                )
            )
        if not updated:
            logger.warning(f"Session counters not updated, session missing: {session_id}")
        return updated > 0

    @_offloaded
    def delete_session(self, session_id: str, delete_messages: bool = False) -> Tuple[bool, int]:
        """
        Delete a session and optionally its messages.

        Returns:
            Tuple of (session_deleted, messages_deleted)
        """
        with self._session() as db:
            deleted = db.query(ChatSession).filter(ChatSession.id == session_id).delete()
            removed = 0
            if deleted and delete_messages:
                removed = db.query(Message).filter(Message.session_id == session_id).delete()
        if removed:
            logger.info(f"Deleted {removed} messages from session {session_id}")
        return deleted > 0, removed

    # =========================================================================
    # Messages
    # =========================================================================

    @_offloaded
    def create_message(
        self,
        channel_id: str,
        session_id: str,
        content: str,
        sender: str,
        direction: str,
        authored_by: str,
        now: datetime,
        type: str = "text",
        communication_type: Optional[str] = None,
        status: str = "sent",
        provider_message_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Message:
        with self._session() as db:
            message = Message(
                channel_id=channel_id,
                session_id=session_id,
                content=content,
                sender=sender,
                type=type,
                communication_type=communication_type,
                status=status,
                direction=direction,
                authored_by=authored_by,
                provider_message_id=provider_message_id,
                meta=dict(meta or {}),
                created_at=now,
            )
            db.add(message)
        logger.info(
            f"Message created: {message.id} (session={session_id}, "
            f"sender={sender}, direction={direction}, status={status})"
        )
        return message

    @_offloaded
    def get_message(self, message_id: str) -> Optional[Message]:
        with self._session() as db:
            return db.get(Message, message_id)

    @_offloaded
    def find_message_by_provider_id(self, provider_message_id: str) -> Optional[Message]:
        with self._session() as db:
            return (
                db.query(Message)
                .filter(Message.provider_message_id == provider_message_id)
                .order_by(Message.created_at.asc())
                .first()
            )

    @_offloaded
    def list_channel_messages(
        self,
        channel_id: str,
        session_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list:
        """Messages for a channel, newest first."""
        with self._session() as db:
            query = db.query(Message).filter(Message.channel_id == channel_id)
            if session_id:
                query = query.filter(Message.session_id == session_id)
            return (
                query.order_by(Message.created_at.desc(), Message.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )

    @_offloaded
    def list_session_messages(self, session_id: str, limit: int = 50, offset: int = 0) -> list:
        """Messages for a session, oldest first."""
        with self._session() as db:
            return (
                db.query(Message)
                .filter(Message.session_id == session_id)
                .order_by(Message.created_at.asc(), Message.id.asc())
                .offset(offset)
                .limit(limit)
                .all()
            )

    @_offloaded
    def count_session_messages(self, session_id: str) -> int:
        with self._session() as db:
            return db.query(Message).filter(Message.session_id == session_id).count()

    @_offloaded
    def record_delivery(
        self,
        message_id: str,
        provider_message_id: str,
        delivery_meta: dict,
    ) -> Optional[Message]:
        """Attach provider delivery metadata to an already persisted message."""
        with self._session() as db:
            message = db.get(Message, message_id)
            if message is None:
                return None
            message.provider_message_id = provider_message_id
            message.meta = {**(message.meta or {}), **delivery_meta}
        return message

    @_offloaded
    def update_status_by_provider_id(self, provider_message_id: str, status: str) -> Optional[Message]:
        """
        Overwrite the status of the message carrying this provider id.

        Returns None when no message matches.
        """
        with self._session() as db:
            message = (
                db.query(Message)
                .filter(Message.provider_message_id == provider_message_id)
                .order_by(Message.created_at.asc())
                .first()
            )
            if message is None:
                return None
            message.status = status
        return message


def create_store(database_url: str, initialize: bool = True) -> ConversationStore:
    store = ConversationStore.from_url(database_url)
    if initialize:
        store.init_db()
    return store
