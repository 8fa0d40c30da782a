"""
Automated reply generators.

A generator turns (session id, inbound text, communication kind) into reply
text, or None when it has nothing to say. Variants:

- mock: keyword-matched canned replies, for demos and local development
- http: forwards the message to an external chat service

Generators may be slow and may fail; failures raise GeneratorError and the
caller decides what to do with them.
"""

import asyncio
import json
import logging
import random
import re
from typing import Optional, Protocol

import httpx

from chatrelay.config import Settings
from chatrelay.errors import GeneratorError

logger = logging.getLogger(__name__)


class ReplyGenerator(Protocol):
    name: str

    async def generate(self, session_id: str, message_text: str, communication_type: str) -> Optional[str]: ...


GREETINGS = (
    "Hello! How can I assist you today?",
    "Hi there! What can I help you with?",
    "Hey! Great to hear from you. What do you need?",
    "Hello! I'm here to help. What's on your mind?",
)
QUESTION_REPLIES = (
    "That's a great question! Let me help you with that.",
    "I understand your question. Here's what I can tell you...",
    "Good question! Based on what you're asking...",
    "Let me answer that for you.",
)
HELP_REPLY = (
    "I'm here to help! You can ask me questions about our services, check order "
    "status, or get general information. What would you like to know?"
)
THANKS_REPLIES = (
    "You're welcome! Is there anything else I can help with?",
    "Happy to help! Let me know if you need anything else.",
    "My pleasure! Feel free to reach out anytime.",
    "Glad I could help! Have a great day!",
)
GOODBYE_REPLIES = (
    "Goodbye! Have a wonderful day!",
    "See you later! Take care!",
    "Bye! Feel free to message anytime.",
    "Have a great day! Talk to you soon!",
)
INFO_REPLIES = (
    "Let me provide you with that information...",
    "Based on your inquiry, here's what I found...",
    "That's a good question. Here's the answer...",
    "I can help you with that. Here's what you need to know...",
)
ORDER_REPLY = "I can help you with that! Could you provide me with your order number or more details?"
DEFAULT_REPLIES = (
    "Thanks for your message! I'm here to assist you.",
    "I received your message. How can I help you today?",
    "Got it! Is there anything specific you'd like to know?",
    "Thanks for reaching out! What would you like to discuss?",
    "I'm listening! What can I do for you?",
)

# Checked in order; the first matching rule wins
_RULES = (
    (re.compile(r"\b(hi|hello|hey|greetings)\b"), GREETINGS),
    (re.compile(r"\?"), QUESTION_REPLIES),
    (re.compile(r"\b(help|support|assist)\b"), (HELP_REPLY,)),
    (re.compile(r"\b(thank|thanks|thx)\b"), THANKS_REPLIES),
    (re.compile(r"\b(bye|goodbye|see you|later)\b"), GOODBYE_REPLIES),
    (re.compile(r"\b(what|when|where|how|why|who)\b"), INFO_REPLIES),
    (re.compile(r"\b(order|booking|reservation|purchase)\b"), (ORDER_REPLY,)),
)


class MockReplyGenerator:
    """Canned replies picked by keyword."""

    name = "mock"

    def __init__(self, delay_seconds: float = 0.0, rng: Optional[random.Random] = None):
        self.delay_seconds = delay_seconds
        self._rng = rng or random.Random()

    def choose_reply(self, message_text: str) -> str:
        lowered = message_text.lower()
        for pattern, replies in _RULES:
            if pattern.search(lowered):
                return self._rng.choice(replies)
        return self._rng.choice(DEFAULT_REPLIES)

    async def generate(self, session_id: str, message_text: str, communication_type: str) -> Optional[str]:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if not message_text.strip():
            return None
        return self.choose_reply(message_text)


def extract_reply_text(data) -> Optional[str]:
    """Pull reply text out of whatever shape the chat service answered with."""
    if data is None:
        return None
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        for key in ("reply", "message", "text"):
            if isinstance(data.get(key), str):
                return data[key]
    return json.dumps(data)


class HttpReplyGenerator:
    """Delegates reply generation to an external chat API over HTTP."""

    name = "http"

    def __init__(
        self,
        url: str,
        actor_id: str,
        timeout_seconds: float = 30.0,
        delay_seconds: float = 0.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.actor_id = actor_id
        self.timeout_seconds = timeout_seconds
        self.delay_seconds = delay_seconds
        self._transport = transport

    async def generate(self, session_id: str, message_text: str, communication_type: str) -> Optional[str]:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        logger.info(f"Calling external chat API for session {session_id} ({communication_type})")
        payload = {
            "actor_id": self.actor_id,
            "session_id": session_id,
            "message": message_text,
            "enable_tools": False,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Chat API responded with status {e.response.status_code}")
            raise GeneratorError(f"chat API returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error(f"Error calling external chat API: {e!r}")
            raise GeneratorError("chat API unreachable") from e

        try:
            data = response.json()
        except ValueError:
            data = response.text

        reply = extract_reply_text(data)
        logger.info(f"External chat API response received for session {session_id}")
        return reply


def build_generator(settings: Settings) -> ReplyGenerator:
    delay_seconds = max(settings.AUTO_REPLY_DELAY_MS, 0) / 1000
    if settings.AUTO_REPLY_PROVIDER == "http":
        return HttpReplyGenerator(
            url=settings.AUTO_REPLY_HTTP_URL,
            actor_id=settings.AUTO_REPLY_ACTOR_ID,
            timeout_seconds=settings.AUTO_REPLY_TIMEOUT_SECONDS,
            delay_seconds=delay_seconds,
        )
    return MockReplyGenerator(delay_seconds=delay_seconds)
