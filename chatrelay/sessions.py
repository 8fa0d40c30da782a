"""
Session continuity: decide which conversation thread an event belongs to.

Sessions are grouped by time-windowed affinity on (channel, communication
kind, remote number). An active session whose last message is older than
the idle window is left untouched in storage but is no longer eligible for
reuse; the next event opens a fresh session.

The lookup and the create below are two separate store calls with no lock
between them. Two events for the same remote number arriving at the same
instant with no existing session can both create one. Both sessions stay
valid; later events attach to whichever has the newest last_message_at.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from chatrelay.models import ChatSession
from chatrelay.storage import ConversationStore
from chatrelay.utils import ensure_utc, isoformat

logger = logging.getLogger(__name__)

DEFAULT_IDLE_WINDOW = timedelta(minutes=5)

KIND_LABELS = {
    "sms": "SMS",
    "whatsapp": "WhatsApp",
    "voice": "Call",
}


def default_session_title(communication_type: str, remote_number: Optional[str], now: datetime) -> str:
    label = KIND_LABELS.get(communication_type, communication_type.title())
    if remote_number:
        return f"{label} from {remote_number}"
    if communication_type == "voice":
        label = "Voice"
    return f"{label} Session {now.strftime('%Y-%m-%d %H:%M:%S')}"


class SessionResolver:
    """Find-or-create the session an inbound or operator message attaches to."""

    def __init__(self, store: ConversationStore, idle_window: timedelta = DEFAULT_IDLE_WINDOW):
        self.store = store
        self.idle_window = idle_window

    def is_within_window(self, session: ChatSession, now: datetime) -> bool:
        last = ensure_utc(session.last_message_at)
        if last is None:
            return False
        return ensure_utc(now) - last <= self.idle_window

    async def resolve_session(
        self,
        channel_id: str,
        communication_type: str,
        remote_number: Optional[str],
        now: datetime,
    ) -> ChatSession:
        """
        Return the session for this event, creating one when needed.

        With a remote number, the newest active session bound to that number
        is reused if its last message is within the idle window. Without
        one, the newest active session for channel + kind is reused
        regardless of age or number.
        """
        if not remote_number:
            session = await self.store.find_latest_active_session(channel_id, communication_type)
            if session is not None:
                logger.info(f"Reusing latest {communication_type} session {session.id} (no remote number)")
                return session
            return await self._create(channel_id, communication_type, None, now)

        session = await self.store.find_latest_active_session(
            channel_id, communication_type, remote_number
        )
        if session is not None:
            gap = (ensure_utc(now) - ensure_utc(session.last_message_at)).total_seconds()
            if self.is_within_window(session, now):
                logger.info(f"Reusing existing session {session.id} (last message {round(gap)}s ago)")
                return session
            logger.info(f"Time gap of {round(gap)}s detected for {remote_number}. Creating new session.")

        return await self._create(channel_id, communication_type, remote_number, now)

    async def _create(
        self,
        channel_id: str,
        communication_type: str,
        remote_number: Optional[str],
        now: datetime,
    ) -> ChatSession:
        meta = {"firstMessageAt": isoformat(now)}
        if remote_number:
            meta["remotePhoneNumber"] = remote_number
        return await self.store.create_session(
            channel_id=channel_id,
            communication_type=communication_type,
            title=default_session_title(communication_type, remote_number, now),
            now=now,
            remote_number=remote_number,
            meta=meta,
        )
