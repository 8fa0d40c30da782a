"""
Administrative CRUD routes: channels, contacts, sessions and the
automated-reply switch. These are thin wrappers over the conversation store;
messages only enter the system through main.py.
"""

import asyncio
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, status

from chatrelay.config import Settings
from chatrelay.dependencies import get_app_settings, get_message_router, get_store
from chatrelay.errors import GeneratorError, NotFoundError
from chatrelay.routing import MessageRouter
from chatrelay.schemas import (
    AutoReplyStatusResponse,
    AutoReplyTestRequest,
    AutoReplyTestResponse,
    ChannelCreate,
    ChannelResponse,
    ChannelUpdate,
    ContactCreate,
    ContactResponse,
    ContactUpdate,
    MessageResponse,
    SessionArchiveResponse,
    SessionCreate,
    SessionDeleteResponse,
    SessionResponse,
    SessionUpdate,
)
from chatrelay.sessions import default_session_title
from chatrelay.storage import ConversationStore
from chatrelay.utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

Store = Annotated[ConversationStore, Depends(get_store)]


# =============================================================================
# Channel Routes
# =============================================================================

@router.get("/channels", response_model=list[ChannelResponse], tags=["channels"])
async def list_channels(store: Store):
    return await store.list_channels()


@router.post("/channels", response_model=ChannelResponse, status_code=status.HTTP_201_CREATED, tags=["channels"])
async def create_channel(body: ChannelCreate, store: Store):
    return await store.create_channel(**body.model_dump())


@router.get("/channels/{channel_id}", response_model=ChannelResponse, tags=["channels"])
async def get_channel(channel_id: str, store: Store):
    channel = await store.get_channel(channel_id)
    if channel is None:
        raise NotFoundError("Channel", channel_id)
    return channel


@router.put("/channels/{channel_id}", response_model=ChannelResponse, tags=["channels"])
async def update_channel(channel_id: str, body: ChannelUpdate, store: Store):
    channel = await store.update_channel(channel_id, **body.model_dump(exclude_none=True))
    if channel is None:
        raise NotFoundError("Channel", channel_id)
    return channel


@router.delete("/channels/{channel_id}", tags=["channels"])
async def delete_channel(channel_id: str, store: Store) -> dict:
    if not await store.delete_channel(channel_id):
        raise NotFoundError("Channel", channel_id)
    logger.info(f"Channel deleted: {channel_id}")
    return {"message": "Channel deleted successfully"}


# =============================================================================
# Contact Routes
# =============================================================================

@router.get("/contacts", response_model=list[ContactResponse], tags=["contacts"])
async def list_contacts(store: Store):
    return await store.list_contacts()


@router.post("/contacts", response_model=ContactResponse, status_code=status.HTTP_201_CREATED, tags=["contacts"])
async def create_contact(body: ContactCreate, store: Store):
    return await store.create_contact(**body.model_dump())


@router.get("/contacts/{contact_id}", response_model=ContactResponse, tags=["contacts"])
async def get_contact(contact_id: str, store: Store):
    contact = await store.get_contact(contact_id)
    if contact is None:
        raise NotFoundError("Contact", contact_id)
    return contact


@router.put("/contacts/{contact_id}", response_model=ContactResponse, tags=["contacts"])
async def update_contact(contact_id: str, body: ContactUpdate, store: Store):
    contact = await store.update_contact(contact_id, **body.model_dump(exclude_unset=True))
    if contact is None:
        raise NotFoundError("Contact", contact_id)
    return contact


@router.delete("/contacts/{contact_id}", tags=["contacts"])
async def delete_contact(contact_id: str, store: Store) -> dict:
    if not await store.delete_contact(contact_id):
        raise NotFoundError("Contact", contact_id)
    return {"message": "Contact deleted successfully"}


# =============================================================================
# Session Routes
# =============================================================================

@router.get("/sessions", response_model=list[SessionResponse], tags=["sessions"])
async def list_sessions(
    store: Store,
    channel_id: Optional[str] = None,
    status_filter: Annotated[Optional[str], Query(alias="status")] = None,
    communication_type: Optional[str] = None,
):
    """
    List sessions, most recently active first.

    Query Parameters:
        - channel_id: only sessions of this channel
        - status: active, archived or closed
        - communication_type: sms, whatsapp or voice
    """
    return await store.list_sessions(
        channel_id=channel_id, status=status_filter, communication_type=communication_type
    )


@router.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED, tags=["sessions"])
async def create_session(body: SessionCreate, store: Store):
    """
    Open a session manually. Sessions created here are not bound to a
    remote number, so inbound provider traffic never attaches to them.
    """
    if await store.get_channel(body.channel_id) is None:
        raise NotFoundError("Channel", body.channel_id)
    now = utcnow()
    return await store.create_session(
        channel_id=body.channel_id,
        communication_type=body.communication_type,
        title=body.title or default_session_title(body.communication_type, None, now),
        description=body.description,
        now=now,
    )


@router.get("/sessions/{session_id}", response_model=SessionResponse, tags=["sessions"])
async def get_session(session_id: str, store: Store):
    session = await store.get_session(session_id)
    if session is None:
        raise NotFoundError("Session", session_id)
    return session


@router.get("/sessions/{session_id}/messages", response_model=list[MessageResponse], tags=["sessions"])
async def list_session_messages(
    session_id: str,
    store: Store,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
):
    """Messages of one session in conversation order (oldest first)."""
    if await store.get_session(session_id) is None:
        raise NotFoundError("Session", session_id)
    return await store.list_session_messages(session_id, limit=limit, offset=offset)


@router.put("/sessions/{session_id}", response_model=SessionResponse, tags=["sessions"])
async def update_session(session_id: str, body: SessionUpdate, store: Store):
    session = await store.update_session(session_id, **body.model_dump(exclude_none=True))
    if session is None:
        raise NotFoundError("Session", session_id)
    return session


@router.delete("/sessions/{session_id}", response_model=SessionDeleteResponse, tags=["sessions"])
async def delete_session(session_id: str, store: Store, delete_messages: bool = False):
    deleted, removed = await store.delete_session(session_id, delete_messages=delete_messages)
    if not deleted:
        raise NotFoundError("Session", session_id)
    return SessionDeleteResponse(messages_deleted=delete_messages, deleted_count=removed)


@router.post("/sessions/{session_id}/archive", response_model=SessionArchiveResponse, tags=["sessions"])
async def archive_session(session_id: str, store: Store):
    session = await store.update_session(session_id, status="archived")
    if session is None:
        raise NotFoundError("Session", session_id)
    logger.info(f"Session archived: {session_id}")
    return SessionArchiveResponse(session=SessionResponse.model_validate(session))


# =============================================================================
# Automated Reply Routes
# =============================================================================

def _auto_reply_status(message_router: MessageRouter, settings: Settings) -> AutoReplyStatusResponse:
    return AutoReplyStatusResponse(
        enabled=message_router.auto_reply_enabled,
        provider=message_router.generator.name,
        delay_ms=settings.AUTO_REPLY_DELAY_MS,
        timeout_seconds=message_router.reply_timeout_seconds,
    )


@router.get("/ai/status", response_model=AutoReplyStatusResponse, tags=["ai"])
async def auto_reply_status(
    message_router: Annotated[MessageRouter, Depends(get_message_router)],
    settings: Annotated[Settings, Depends(get_app_settings)],
):
    return _auto_reply_status(message_router, settings)


@router.post("/ai/enable", response_model=AutoReplyStatusResponse, tags=["ai"])
async def enable_auto_reply(
    message_router: Annotated[MessageRouter, Depends(get_message_router)],
    settings: Annotated[Settings, Depends(get_app_settings)],
):
    message_router.set_auto_reply(True)
    return _auto_reply_status(message_router, settings)


@router.post("/ai/disable", response_model=AutoReplyStatusResponse, tags=["ai"])
async def disable_auto_reply(
    message_router: Annotated[MessageRouter, Depends(get_message_router)],
    settings: Annotated[Settings, Depends(get_app_settings)],
):
    message_router.set_auto_reply(False)
    return _auto_reply_status(message_router, settings)


@router.post("/ai/test", response_model=AutoReplyTestResponse, tags=["ai"])
async def test_auto_reply(
    body: AutoReplyTestRequest,
    message_router: Annotated[MessageRouter, Depends(get_message_router)],
):
    """Run the reply generator once without storing anything."""
    reply = None
    if message_router.auto_reply_enabled:
        try:
            reply = await asyncio.wait_for(
                message_router.generator.generate("test-session", body.message, body.communication_type),
                timeout=message_router.reply_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise GeneratorError("reply generator timed out")
    return AutoReplyTestResponse(
        user_message=body.message,
        ai_response=reply,
        enabled=message_router.auto_reply_enabled,
    )
