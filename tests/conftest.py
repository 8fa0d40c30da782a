"""
Pytest configuration and shared fixtures.

Every test gets a fresh SQLite database under tmp_path, the mock messaging
gateway, a scripted reply generator and a clock the test can move forward.
Settings are built explicitly so a developer's .env never leaks in.
"""

import asyncio
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient

# Set test environment before importing chatrelay modules
os.environ.setdefault("MESSAGING_PROVIDER", "mock")
os.environ.setdefault("AUTO_REPLY_DELAY_MS", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from chatrelay.config import Settings, get_settings  # noqa: E402
get_settings.cache_clear()

from chatrelay.broadcaster import Broadcaster  # noqa: E402
from chatrelay.errors import ProviderError  # noqa: E402
from chatrelay.main import create_app  # noqa: E402
from chatrelay.providers import MockGateway  # noqa: E402
from chatrelay.routing import MessageRouter  # noqa: E402
from chatrelay.sessions import SessionResolver  # noqa: E402
from chatrelay.storage import create_store  # noqa: E402


CHANNEL_NUMBER = "+14155550100"
REMOTE_NUMBER = "+14155551234"
CANNED_REPLY = "Thanks for your message! I'm here to assist you."


class FakeClock:
    """
    Callable clock; tests move it with advance().

    Every read also ticks one millisecond so messages stored in the same
    request still have distinct, ordered timestamps.
    """

    def __init__(self, start: datetime, tick: timedelta = timedelta(milliseconds=1)):
        self.now = start
        self.tick = tick

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + self.tick
        return current

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedGenerator:
    """Reply generator returning a fixed reply, optionally slow or failing."""

    name = "scripted"

    def __init__(self, reply: Optional[str] = CANNED_REPLY, error: Optional[Exception] = None, delay: float = 0.0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls = []

    async def generate(self, session_id: str, message_text: str, communication_type: str) -> Optional[str]:
        self.calls.append((session_id, message_text, communication_type))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


class FailingGateway(MockGateway):
    """Gateway whose sends always fail."""

    name = "failing"

    async def send_sms(self, to_number, body, from_number=None):
        raise ProviderError("carrier rejected the message")

    async def send_whatsapp(self, to_number, body, from_number=None):
        raise ProviderError("carrier rejected the message")


class RecordingSubscriber:
    """Realtime subscriber that keeps every event it receives."""

    def __init__(self):
        self.events = []

    async def send_json(self, data):
        self.events.append(data)


class BrokenSubscriber:
    async def send_json(self, data):
        raise ConnectionError("socket closed")


class FakeSns:
    """Stands in for the boto3 SNS client; records publish calls."""

    def __init__(self, error=None):
        self.error = error
        self.published = []

    def publish(self, **kwargs):
        self.published.append(kwargs)
        if self.error is not None:
            raise self.error
        return {"MessageId": f"sns-{len(self.published)}"}


class FakeSocialMessaging:
    """Stands in for the boto3 socialmessaging client."""

    def __init__(self):
        self.sent = []

    def send_whatsapp_message(self, **kwargs):
        self.sent.append(kwargs)
        return {"messageId": f"wamid-{len(self.sent)}"}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{tmp_path / 'chatrelay.db'}",
        LOG_LEVEL="WARNING",
        MESSAGING_PROVIDER="mock",
        TWILIO_PHONE_NUMBER=CHANNEL_NUMBER,
        AUTO_REPLY_ENABLED=True,
        AUTO_REPLY_DELAY_MS=0,
        AUTO_REPLY_TIMEOUT_SECONDS=1.0,
        PROVIDER_TIMEOUT_SECONDS=1.0,
    )


@pytest.fixture
def store(settings):
    """Fresh conversation store with the schema applied."""
    store = create_store(settings.DATABASE_URL)
    yield store
    store.drop_all()
    store.dispose()


@pytest.fixture
def gateway() -> MockGateway:
    return MockGateway(CHANNEL_NUMBER, CHANNEL_NUMBER)


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def broadcaster() -> Broadcaster:
    return Broadcaster()


@pytest.fixture
def message_router(store, gateway, generator, broadcaster, clock) -> MessageRouter:
    """Router wired like create_app() does, for tests that skip HTTP."""
    return MessageRouter(
        store=store,
        resolver=SessionResolver(store),
        gateway=gateway,
        generator=generator,
        broadcaster=broadcaster,
        auto_reply_enabled=True,
        reply_timeout_seconds=1.0,
        provider_timeout_seconds=1.0,
        clock=clock,
    )


@pytest.fixture
def make_client(settings, store, gateway, generator, broadcaster, clock):
    """
    Factory for TestClients over the shared fixtures.

    Keyword arguments override any create_app() collaborator.
    """
    clients = []

    def _make(**overrides) -> TestClient:
        wiring = dict(
            settings=settings,
            store=store,
            gateway=gateway,
            generator=generator,
            broadcaster=broadcaster,
            clock=clock,
        )
        wiring.update(overrides)
        client = TestClient(create_app(**wiring))
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()


def sms_form(body: str = "Hello", sid: Optional[str] = None, remote: str = REMOTE_NUMBER, local: str = CHANNEL_NUMBER, **extra) -> dict:
    """Form body as the provider posts it to /webhooks/sms."""
    form = {"From": remote, "To": local, "Body": body, "NumMedia": "0"}
    if sid:
        form["MessageSid"] = sid
    form.update(extra)
    return form


def whatsapp_form(body: str = "Hello", sid: Optional[str] = None, remote: str = REMOTE_NUMBER, local: str = CHANNEL_NUMBER, **extra) -> dict:
    return sms_form(body, sid, f"whatsapp:{remote}", f"whatsapp:{local}", **extra)


SNS_TOPIC_ARN = "arn:aws:sns:us-east-1:123456789012:chatrelay-inbound"


def sns_envelope(message: dict, message_type: str = "Notification", topic_arn: str = SNS_TOPIC_ARN) -> dict:
    """SNS HTTP delivery envelope wrapping one inbound event."""
    return {
        "Type": message_type,
        "MessageId": "0f3e2b6a-sns",
        "TopicArn": topic_arn,
        "Message": json.dumps(message),
        "Timestamp": "2025-01-15T10:00:00.000Z",
        "SignatureVersion": "1",
        "Signature": "c2lnbmF0dXJl",
        "SigningCertURL": "https://sns.us-east-1.amazonaws.com/SimpleNotificationService-0000.pem",
    }


def sns_sms_message(body: str = "Hello", message_id: str = "in-1", remote: str = REMOTE_NUMBER, local: str = CHANNEL_NUMBER) -> dict:
    """Inbound SMS event as AWS End User Messaging publishes it to SNS."""
    return {
        "originationNumber": remote,
        "destinationNumber": local,
        "messageKeyword": "KEYWORD_123456789012",
        "messageBody": body,
        "inboundMessageId": message_id,
    }
