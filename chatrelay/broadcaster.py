"""
Realtime fan-out of persisted messages to per-channel subscribers.

Best-effort live view: no buffering for offline subscribers, no delivery
guarantee. A subscriber whose send fails is dropped.
"""

import asyncio
import logging
from typing import Any, Protocol


logger = logging.getLogger(__name__)

NEW_MESSAGE_EVENT = "new_message"


class Subscriber(Protocol):
    async def send_json(self, data: Any) -> None: ...


class Broadcaster:
    def __init__(self):
        # Lists, not sets: Starlette WebSockets are unhashable
        self._channels: dict[str, list] = {}

    def join(self, channel_id: str, subscriber: Subscriber) -> None:
        subscribers = self._channels.setdefault(channel_id, [])
        if not any(s is subscriber for s in subscribers):
            subscribers.append(subscriber)
        logger.info(f"Subscriber joined channel {channel_id}")

    def leave(self, channel_id: str, subscriber: Subscriber) -> None:
        subscribers = self._channels.get(channel_id)
        if not subscribers:
            return
        remaining = [s for s in subscribers if s is not subscriber]
        if len(remaining) == len(subscribers):
            return
        subscribers[:] = remaining
        if not subscribers:
            del self._channels[channel_id]
        logger.info(f"Subscriber left channel {channel_id}")

    def subscriber_count(self, channel_id: str) -> int:
        return len(self._channels.get(channel_id, ()))

    async def publish(self, channel_id: str, message_view: dict) -> int:
        """
        Push a message event to every current subscriber of the channel.

        Returns the number of subscribers the event reached. Never raises.
        """
        subscribers = list(self._channels.get(channel_id, ()))
        if not subscribers:
            return 0

        payload = {"event": NEW_MESSAGE_EVENT, "data": message_view}
        results = await asyncio.gather(
            *(subscriber.send_json(payload) for subscriber in subscribers),
            return_exceptions=True,
        )

        delivered = 0
        for subscriber, result in zip(subscribers, results):
            if isinstance(result, Exception):
                logger.warning(f"Dropping subscriber on channel {channel_id}: {result!r}")
                self.leave(channel_id, subscriber)
            else:
                delivered += 1

        logger.debug(f"Message {message_view.get('id')} broadcast to {delivered} subscriber(s) on {channel_id}")
        return delivered
