"""
Tests for MessageRouter without the HTTP layer.

The reply pipeline runs inline here (no scheduler), so every test can look
at the ReplyOutcome directly.
"""

import pytest
import pytest_asyncio

from chatrelay.errors import NotFoundError, PersistenceError, ValidationError
from chatrelay.routing import InboundEvent, normalize_status

from conftest import (
    CANNED_REPLY,
    CHANNEL_NUMBER,
    REMOTE_NUMBER,
    BrokenSubscriber,
    FailingGateway,
    RecordingSubscriber,
    ScriptedGenerator,
)


def sms_event(body="Hello", sid=None, remote=REMOTE_NUMBER, local=CHANNEL_NUMBER, kind="sms", **extra):
    return InboundEvent(
        communication_type=kind,
        remote_number=remote,
        local_number=local,
        body=body,
        provider_message_id=sid,
        **extra,
    )


@pytest_asyncio.fixture
async def channel(store):
    return await store.create_channel(
        name="Support line", phone_number=CHANNEL_NUMBER, country_code="+1", type="sms"
    )


class TestHandleInbound:
    @pytest.mark.asyncio
    async def test_persists_counts_and_replies(self, store, message_router, channel):
        routed = await message_router.handle_inbound(sms_event("Hello", sid="SM1"))

        assert routed.channel.id == channel.id
        assert routed.channel_created is False
        assert routed.duplicate is False
        assert routed.message.provider_message_id == "SM1"
        assert routed.message.sender == "user"
        assert routed.message.direction == "inbound"
        assert routed.message.authored_by == "remote_party"

        assert routed.reply.outcome == "replied"
        assert routed.reply.message.content == CANNED_REPLY
        assert routed.reply.message.meta["inResponseTo"] == "SM1"
        assert routed.reply.delivery.is_mock is True
        assert routed.reply.message.provider_message_id == routed.reply.delivery.provider_message_id

        session = await store.get_session(routed.message.session_id)
        assert session.message_count == 2
        assert await store.count_session_messages(session.id) == 2

    @pytest.mark.asyncio
    async def test_broadcasts_inbound_then_reply(self, message_router, broadcaster, channel):
        subscriber = RecordingSubscriber()
        broadcaster.join(channel.id, subscriber)

        routed = await message_router.handle_inbound(sms_event("Hello"))

        assert [e["event"] for e in subscriber.events] == ["new_message", "new_message"]
        inbound, reply = (e["data"] for e in subscriber.events)
        assert inbound["id"] == routed.message.id
        assert inbound["sender"] == "user"
        assert reply["id"] == routed.reply.message.id
        assert reply["sender"] == "contact"
        assert set(inbound) == {
            "id", "channel_id", "session_id", "content", "sender", "type",
            "communication_type", "status", "created_at",
        }

    @pytest.mark.asyncio
    async def test_broken_subscriber_does_not_fail_routing(self, message_router, broadcaster, channel):
        broadcaster.join(channel.id, BrokenSubscriber())

        routed = await message_router.handle_inbound(sms_event())

        assert routed.reply.outcome == "replied"
        assert broadcaster.subscriber_count(channel.id) == 0

    @pytest.mark.asyncio
    async def test_auto_provisions_unknown_channel(self, store, message_router):
        routed = await message_router.handle_inbound(sms_event(local="+4915112345678", kind="whatsapp"))

        assert routed.channel_created is True
        assert routed.channel.phone_number == "+4915112345678"
        assert routed.channel.country_code == "+49"
        assert routed.channel.type == "whatsapp"
        assert routed.channel.name == "Auto-provisioned +4915112345678"
        assert len(await store.list_channels()) == 1

    @pytest.mark.asyncio
    async def test_duplicate_provider_id(self, store, message_router, generator, channel):
        first = await message_router.handle_inbound(sms_event(sid="SMdup"))
        again = await message_router.handle_inbound(sms_event(sid="SMdup"))

        assert again.duplicate is True
        assert again.message.id == first.message.id
        assert again.reply is None
        assert len(generator.calls) == 1
        assert await store.count_session_messages(first.message.session_id) == 2

    @pytest.mark.asyncio
    async def test_voice_never_replies(self, message_router, generator, channel):
        routed = await message_router.handle_inbound(sms_event(body="", kind="voice", sid="CA1"))

        assert routed.message.type == "call"
        assert routed.message.content == f"Incoming call from {REMOTE_NUMBER}"
        assert routed.reply is None
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_media_makes_mms(self, message_router, channel):
        routed = await message_router.handle_inbound(
            sms_event("pic", media_count=2, media_urls=["https://m/1", "https://m/2"])
        )

        assert routed.message.type == "mms"
        assert routed.message.meta["mediaUrls"] == ["https://m/1", "https://m/2"]

    @pytest.mark.asyncio
    async def test_unknown_kind_rejected(self, message_router):
        with pytest.raises(ValidationError):
            await message_router.handle_inbound(sms_event(kind="fax"))

    @pytest.mark.asyncio
    async def test_missing_numbers_rejected(self, store, message_router):
        with pytest.raises(ValidationError):
            await message_router.handle_inbound(sms_event(remote=None))

        assert await store.list_channels() == []

    @pytest.mark.asyncio
    async def test_scheduled_reply_runs_later(self, store, message_router, channel):
        scheduled = []

        routed = await message_router.handle_inbound(
            sms_event(), schedule=lambda fn, *args: scheduled.append((fn, args))
        )

        assert routed.reply is None
        assert await store.count_session_messages(routed.message.session_id) == 1

        fn, args = scheduled[0]
        outcome = await fn(*args)
        assert outcome.outcome == "replied"
        assert await store.count_session_messages(routed.message.session_id) == 2


class TestReplyFailures:
    """Steps after the inbound broadcast never undo it."""

    @pytest.mark.asyncio
    async def test_generator_error(self, store, message_router, channel):
        message_router.generator = ScriptedGenerator(error=RuntimeError("model offline"))

        routed = await message_router.handle_inbound(sms_event())

        assert routed.reply.outcome == "failed"
        assert "model offline" in routed.reply.error
        stored = await store.get_message(routed.message.id)
        assert stored.status == "received"
        assert (await store.get_session(routed.message.session_id)).message_count == 1

    @pytest.mark.asyncio
    async def test_generator_timeout(self, store, message_router, channel):
        message_router.generator = ScriptedGenerator(delay=1.0)
        message_router.reply_timeout_seconds = 0.05

        routed = await message_router.handle_inbound(sms_event())

        assert routed.reply.outcome == "failed"
        assert "timed out" in routed.reply.error
        assert await store.count_session_messages(routed.message.session_id) == 1

    @pytest.mark.asyncio
    async def test_no_reply(self, message_router, channel):
        message_router.generator = ScriptedGenerator(reply=None)

        routed = await message_router.handle_inbound(sms_event())

        assert routed.reply.outcome == "no_reply"

    @pytest.mark.asyncio
    async def test_disabled(self, message_router, generator, channel):
        message_router.set_auto_reply(False)

        routed = await message_router.handle_inbound(sms_event())

        assert routed.reply.outcome == "disabled"
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_delivery_failure_keeps_reply(self, store, message_router, channel):
        message_router.gateway = FailingGateway(CHANNEL_NUMBER)

        routed = await message_router.handle_inbound(sms_event())

        assert routed.reply.outcome == "replied"
        assert routed.reply.delivery is None
        reply = await store.get_message(routed.reply.message.id)
        assert reply.provider_message_id is None
        assert reply.status == "sent"
        assert "providerMessageId" not in reply.meta
        assert (await store.get_session(routed.message.session_id)).message_count == 2

    @pytest.mark.asyncio
    async def test_delivery_record_failure_still_counts_and_broadcasts(
        self, store, message_router, broadcaster, channel, monkeypatch
    ):
        """Losing the provider-id write must not lose the stored reply."""
        async def fail_record_delivery(*args, **kwargs):
            raise PersistenceError("store blip")

        monkeypatch.setattr(store, "record_delivery", fail_record_delivery)
        subscriber = RecordingSubscriber()
        broadcaster.join(channel.id, subscriber)

        routed = await message_router.handle_inbound(sms_event("Hello", sid="SM1"))

        assert routed.reply.outcome == "replied"
        assert routed.reply.delivery is not None
        assert routed.reply.message.provider_message_id is None
        session = await store.get_session(routed.message.session_id)
        assert session.message_count == 2
        assert await store.count_session_messages(session.id) == 2
        assert [e["data"]["sender"] for e in subscriber.events] == ["user", "contact"]


class TestOperatorSend:
    @pytest.mark.asyncio
    async def test_unknown_channel(self, message_router):
        with pytest.raises(NotFoundError):
            await message_router.handle_outbound_user_send("missing", "hi", "contact")

    @pytest.mark.asyncio
    async def test_bad_sender(self, message_router, channel):
        with pytest.raises(ValidationError):
            await message_router.handle_outbound_user_send(channel.id, "hi", "robot")

    @pytest.mark.asyncio
    async def test_blank_content(self, message_router, channel):
        with pytest.raises(ValidationError):
            await message_router.handle_outbound_user_send(channel.id, "  ", "contact")

    @pytest.mark.asyncio
    async def test_contact_send_delivers(self, message_router, gateway, channel):
        routed = await message_router.handle_outbound_user_send(
            channel.id, "On my way", "contact", communication_type="sms", remote_number=REMOTE_NUMBER
        )

        assert routed.message.direction == "outbound"
        assert routed.message.provider_message_id == gateway.sent[0].provider_message_id
        assert gateway.sent[0].from_number == CHANNEL_NUMBER
        assert routed.reply is None

    @pytest.mark.asyncio
    async def test_user_send_replies(self, message_router, channel):
        routed = await message_router.handle_outbound_user_send(
            channel.id, "Hello?", "user", communication_type="sms", remote_number=REMOTE_NUMBER
        )

        assert routed.message.direction == "inbound"
        assert routed.message.authored_by == "local_operator"
        assert routed.reply.outcome == "replied"
        assert routed.reply.message.session_id == routed.message.session_id


class TestStatusCallback:
    @pytest.mark.asyncio
    async def test_update_and_repeat(self, store, message_router, channel):
        routed = await message_router.handle_inbound(sms_event())
        pid = routed.reply.message.provider_message_id

        first = await message_router.handle_status_callback(pid, "delivered")
        second = await message_router.handle_status_callback(pid, "delivered")

        assert first.status == second.status == "delivered"
        assert (await store.get_message(routed.reply.message.id)).status == "delivered"

    @pytest.mark.asyncio
    async def test_unknown_id_is_noop(self, message_router):
        assert await message_router.handle_status_callback("SMmissing", "delivered") is None

    @pytest.mark.asyncio
    async def test_missing_id_is_noop(self, message_router):
        assert await message_router.handle_status_callback(None, "delivered") is None

    @pytest.mark.parametrize(
        "provider_status,expected",
        [
            ("delivered", "delivered"),
            ("undelivered", "failed"),
            ("sending", "queued"),
            ("accepted", "queued"),
            ("READ", "read"),
            ("bogus", None),
            (None, None),
        ],
    )
    def test_normalize_status(self, provider_status, expected):
        assert normalize_status(provider_status) == expected
