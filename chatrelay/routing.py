"""
Message routing: the path every message takes from arrival to subscribers.

Inbound provider events and operator sends both go through the same steps:

1. find (or auto-provision) the channel
2. resolve the session
3. persist the message
4. bump the session counters
5. broadcast the stored message
6. ask the reply generator for an automated reply
7. persist, deliver, count and broadcast that reply

Steps 6-7 never undo 1-5. Generator and provider failures are logged,
counted and reported in a ReplyOutcome; they are not raised.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from chatrelay.autoreply import ReplyGenerator
from chatrelay.broadcaster import Broadcaster
from chatrelay.errors import NotFoundError, PersistenceError, ValidationError
from chatrelay.metrics import record_auto_reply_outcome, record_provider_send
from chatrelay.models import Channel, ChatSession, Message
from chatrelay.providers import MessagingGateway, SendResult
from chatrelay.schemas import MessageResponse
from chatrelay.sessions import SessionResolver
from chatrelay.storage import ConversationStore
from chatrelay.utils import country_code_for, utcnow

logger = logging.getLogger(__name__)

COMMUNICATION_TYPES = ("sms", "whatsapp", "voice")
SENDERS = ("user", "contact")

# Provider delivery statuses mapped onto the stored status vocabulary
STATUS_ALIASES = {
    "sent": "sent",
    "delivered": "delivered",
    "read": "read",
    "failed": "failed",
    "undelivered": "failed",
    "received": "received",
    "receiving": "received",
    "queued": "queued",
    "accepted": "queued",
    "scheduled": "queued",
    "sending": "queued",
}

Scheduler = Callable[..., Any]


@dataclass
class InboundEvent:
    """A provider event reduced to what routing needs."""
    communication_type: str
    remote_number: Optional[str]
    local_number: Optional[str]
    body: str = ""
    provider_message_id: Optional[str] = None
    media_count: int = 0
    media_urls: list[str] = field(default_factory=list)
    profile_name: Optional[str] = None


@dataclass
class ReplyOutcome:
    """
    Result of one run of the automated reply pipeline.

    outcome is one of: replied, no_reply, failed, disabled.
    """
    outcome: str
    message: Optional[Message] = None
    delivery: Optional[SendResult] = None
    error: Optional[str] = None


@dataclass
class RoutedMessage:
    channel: Channel
    session: Optional[ChatSession]
    message: Message
    channel_created: bool = False
    duplicate: bool = False
    # Only populated when the reply pipeline ran inline
    reply: Optional[ReplyOutcome] = None


def message_view(message: Message) -> dict:
    """The externally shaped message used by the API and realtime stream."""
    return MessageResponse.model_validate(message).model_dump(mode="json")


def normalize_status(status: Optional[str]) -> Optional[str]:
    if not status:
        return None
    return STATUS_ALIASES.get(status.strip().lower())


class MessageRouter:
    def __init__(
        self,
        store: ConversationStore,
        resolver: SessionResolver,
        gateway: MessagingGateway,
        generator: ReplyGenerator,
        broadcaster: Broadcaster,
        auto_reply_enabled: bool = False,
        reply_timeout_seconds: float = 30.0,
        provider_timeout_seconds: Optional[float] = 15.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.resolver = resolver
        self.gateway = gateway
        self.generator = generator
        self.broadcaster = broadcaster
        self.auto_reply_enabled = auto_reply_enabled
        self.reply_timeout_seconds = reply_timeout_seconds
        self.provider_timeout_seconds = provider_timeout_seconds
        self._clock = clock

    def set_auto_reply(self, enabled: bool) -> None:
        self.auto_reply_enabled = enabled
        logger.info(f"Automated replies {'enabled' if enabled else 'disabled'}")

    # =========================================================================
    # Inbound provider events
    # =========================================================================

    async def handle_inbound(self, event: InboundEvent, schedule: Optional[Scheduler] = None) -> RoutedMessage:
        """
        Route one inbound provider event.

        When schedule is given (e.g. BackgroundTasks.add_task) the reply
        pipeline is handed to it and this call returns as soon as the inbound
        message is stored and broadcast; otherwise the pipeline runs inline.
        """
        if event.communication_type not in COMMUNICATION_TYPES:
            raise ValidationError(f"unsupported communication type: {event.communication_type}")
        if not event.remote_number or not event.local_number:
            raise ValidationError("from and to numbers are required")

        kind = event.communication_type
        channel, created = await self._channel_for_inbound(event.local_number, kind)

        if event.provider_message_id:
            existing = await self.store.find_message_by_provider_id(event.provider_message_id)
            if existing is not None:
                logger.info(f"Duplicate provider event ignored: {event.provider_message_id}")
                return RoutedMessage(
                    channel=channel,
                    session=await self.store.get_session(existing.session_id),
                    message=existing,
                    duplicate=True,
                )

        now = self._clock()
        session = await self.resolver.resolve_session(channel.id, kind, event.remote_number, now)

        if kind == "voice":
            content = f"Incoming call from {event.remote_number}"
            message_type = "call"
        else:
            content = event.body
            message_type = "mms" if event.media_count > 0 else "text"

        meta = {
            "providerMessageId": event.provider_message_id,
            "fromNumber": event.remote_number,
            "toNumber": event.local_number,
            "direction": "inbound",
        }
        if event.media_urls:
            meta["mediaUrls"] = list(event.media_urls)
        if event.profile_name:
            meta["profileName"] = event.profile_name

        message = await self.store.create_message(
            channel_id=channel.id,
            session_id=session.id,
            content=content,
            sender="user",
            direction="inbound",
            authored_by="remote_party",
            now=now,
            type=message_type,
            communication_type=kind,
            status="received",
            provider_message_id=event.provider_message_id,
            meta=meta,
        )
        await self.store.touch_session(session.id, now)
        await self._broadcast(message)

        routed = RoutedMessage(channel=channel, session=session, message=message, channel_created=created)
        if kind != "voice":
            routed.reply = await self._dispatch_reply(
                channel, session, message, event.remote_number, event.local_number, schedule
            )
        return routed

    async def _channel_for_inbound(self, local_number: str, kind: str) -> tuple[Channel, bool]:
        channel = await self.store.find_channel_by_number(local_number)
        if channel is not None:
            return channel, False

        logger.warning(f"No channel found for number {local_number}; auto-provisioning a {kind} channel")
        channel = await self.store.create_channel(
            name=f"Auto-provisioned {local_number}",
            phone_number=local_number,
            country_code=country_code_for(local_number),
            type=kind,
            status="active",
        )
        return channel, True

    # =========================================================================
    # Operator sends
    # =========================================================================

    async def handle_outbound_user_send(
        self,
        channel_id: str,
        content: str,
        sender: str,
        communication_type: str = "whatsapp",
        remote_number: Optional[str] = None,
        local_number: Optional[str] = None,
        session_id: Optional[str] = None,
        message_type: str = "text",
        schedule: Optional[Scheduler] = None,
    ) -> RoutedMessage:
        """
        Route a message composed in the operator UI.

        sender="user" is the operator speaking as the remote party; it is
        stored as inbound and triggers the reply pipeline. sender="contact"
        is the operator replying; it is stored as outbound and delivered to
        the remote number when one is known.
        """
        if not content or not content.strip():
            raise ValidationError("content is required")
        if sender not in SENDERS:
            raise ValidationError(f"sender must be one of {', '.join(SENDERS)}")
        if communication_type not in COMMUNICATION_TYPES:
            raise ValidationError(f"unsupported communication type: {communication_type}")

        channel = await self.store.get_channel(channel_id)
        if channel is None:
            raise NotFoundError("Channel", channel_id)
        local_number = local_number or channel.phone_number

        now = self._clock()
        if session_id:
            session = await self.store.get_session(session_id)
            if session is None:
                raise NotFoundError("Session", session_id)
        else:
            session = await self.resolver.resolve_session(channel.id, communication_type, remote_number, now)

        if sender == "user":
            direction = "inbound"
            meta = {"fromNumber": remote_number, "toNumber": local_number}
        else:
            direction = "outbound"
            meta = {"fromNumber": local_number, "toNumber": remote_number}
        meta["direction"] = direction

        message = await self.store.create_message(
            channel_id=channel.id,
            session_id=session.id,
            content=content,
            sender=sender,
            direction=direction,
            authored_by="local_operator",
            now=now,
            type=message_type,
            communication_type=communication_type,
            status="sent",
            meta=meta,
        )
        await self.store.touch_session(session.id, now)
        await self._broadcast(message)

        routed = RoutedMessage(channel=channel, session=session, message=message)
        if sender == "contact":
            delivered, _ = await self._deliver(message, communication_type, remote_number, local_number)
            if delivered is not None:
                routed.message = delivered
        else:
            routed.reply = await self._dispatch_reply(
                channel, session, message, remote_number, local_number, schedule
            )
        return routed

    # =========================================================================
    # Provider status callbacks
    # =========================================================================

    async def handle_status_callback(self, provider_message_id: Optional[str], new_status: Optional[str]) -> Optional[Message]:
        """
        Apply a delivery status update. Unknown ids and statuses are no-ops.
        """
        if not provider_message_id:
            return None
        status = normalize_status(new_status)
        if status is None:
            logger.warning(f"Ignoring unknown provider status {new_status!r} for {provider_message_id}")
            return None

        message = await self.store.update_status_by_provider_id(provider_message_id, status)
        if message is None:
            logger.info(f"Status callback for unknown message {provider_message_id}")
            return None
        logger.info(f"Updated message {provider_message_id} status to: {status}")
        return message

    # =========================================================================
    # Automated reply pipeline
    # =========================================================================

    async def _dispatch_reply(
        self,
        channel: Channel,
        session: ChatSession,
        prompt: Message,
        remote_number: Optional[str],
        local_number: Optional[str],
        schedule: Optional[Scheduler],
    ) -> Optional[ReplyOutcome]:
        if schedule is not None:
            schedule(self.run_auto_reply, channel, session, prompt, remote_number, local_number)
            return None
        return await self.run_auto_reply(channel, session, prompt, remote_number, local_number)

    async def run_auto_reply(
        self,
        channel: Channel,
        session: ChatSession,
        prompt: Message,
        remote_number: Optional[str],
        local_number: Optional[str],
    ) -> ReplyOutcome:
        """
        Generate, persist, deliver and broadcast an automated reply.

        Never raises; the returned ReplyOutcome says what happened.
        """
        outcome = await self._auto_reply(channel, session, prompt, remote_number, local_number)
        record_auto_reply_outcome(outcome.outcome)
        if outcome.outcome == "failed":
            logger.error(f"Automated reply failed for session {session.id}: {outcome.error}")
        else:
            logger.info(f"Automated reply for session {session.id}: {outcome.outcome}")
        return outcome

    async def _auto_reply(
        self,
        channel: Channel,
        session: ChatSession,
        prompt: Message,
        remote_number: Optional[str],
        local_number: Optional[str],
    ) -> ReplyOutcome:
        if not self.auto_reply_enabled:
            return ReplyOutcome(outcome="disabled")

        kind = prompt.communication_type or session.communication_type
        try:
            reply_text = await asyncio.wait_for(
                self.generator.generate(session.id, prompt.content, kind),
                timeout=self.reply_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return ReplyOutcome(outcome="failed", error=f"generator timed out after {self.reply_timeout_seconds}s")
        except Exception as e:
            logger.exception("Error generating automated reply")
            return ReplyOutcome(outcome="failed", error=str(e) or type(e).__name__)

        if not reply_text or not reply_text.strip():
            return ReplyOutcome(outcome="no_reply")

        try:
            now = self._clock()
            reply = await self.store.create_message(
                channel_id=channel.id,
                session_id=session.id,
                content=reply_text,
                sender="contact",
                direction="outbound",
                authored_by="automated_reply",
                now=now,
                type="text",
                communication_type=kind,
                status="sent",
                meta={
                    "inResponseTo": prompt.provider_message_id or prompt.id,
                    "fromNumber": local_number,
                    "toNumber": remote_number,
                    "direction": "outbound",
                    "generatedBy": self.generator.name,
                },
            )
        except PersistenceError as e:
            return ReplyOutcome(outcome="failed", error=e.detail)

        # The reply is stored from here on: it is always counted and broadcast
        delivered, delivery = await self._deliver(reply, kind, remote_number, local_number)
        stored = delivered or reply
        error = None
        try:
            await self.store.touch_session(session.id, now)
        except PersistenceError as e:
            error = e.detail

        await self._broadcast(stored)
        if error is not None:
            return ReplyOutcome(outcome="failed", message=stored, delivery=delivery, error=error)
        return ReplyOutcome(outcome="replied", message=stored, delivery=delivery)

    async def _deliver(
        self,
        message: Message,
        kind: str,
        remote_number: Optional[str],
        local_number: Optional[str],
    ) -> tuple[Optional[Message], Optional[SendResult]]:
        """
        Best-effort delivery through the gateway.

        On success the provider id is attached to the stored message with a
        second write and (updated message, send result) is returned. If only
        that second write fails, (None, send result) is returned. On send
        failure nothing is written and (None, None) is returned.
        """
        if not remote_number:
            logger.info(f"Message {message.id} has no remote number; skipping provider delivery")
            return None, None
        if kind == "sms":
            send = self.gateway.send_sms
        elif kind == "whatsapp":
            send = self.gateway.send_whatsapp
        else:
            logger.info(f"No provider delivery for {kind} messages")
            return None, None

        try:
            result = await asyncio.wait_for(
                send(remote_number, message.content, local_number),
                timeout=self.provider_timeout_seconds,
            )
        except asyncio.TimeoutError:
            record_provider_send(kind, "timeout")
            logger.error(f"Provider send timed out for message {message.id}")
            return None, None
        except Exception as e:
            record_provider_send(kind, "failed")
            logger.error(f"Failed to deliver message {message.id} via {self.gateway.name}: {e}")
            return None, None

        record_provider_send(kind, "mock" if result.is_mock else "sent")
        try:
            updated = await self.store.record_delivery(
                message.id,
                result.provider_message_id,
                {
                    "providerMessageId": result.provider_message_id,
                    "providerStatus": result.status,
                    "isMock": result.is_mock,
                },
            )
        except PersistenceError as e:
            logger.error(
                f"Message {message.id} delivered as {result.provider_message_id} "
                f"but the delivery could not be recorded: {e.detail}"
            )
            return None, result
        return updated, result

    async def _broadcast(self, message: Message) -> None:
        await self.broadcaster.publish(message.channel_id, message_view(message))
