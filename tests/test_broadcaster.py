"""
Tests for the realtime broadcaster and the WebSocket stream.
"""

import pytest

from chatrelay.broadcaster import Broadcaster

from conftest import BrokenSubscriber, RecordingSubscriber


VIEW = {"id": "m1", "channel_id": "c1", "content": "Hello"}


class TestBroadcaster:
    @pytest.mark.asyncio
    async def test_publish_reaches_channel_subscribers(self):
        broadcaster = Broadcaster()
        first, second, other = RecordingSubscriber(), RecordingSubscriber(), RecordingSubscriber()
        broadcaster.join("c1", first)
        broadcaster.join("c1", second)
        broadcaster.join("c2", other)

        delivered = await broadcaster.publish("c1", VIEW)

        assert delivered == 2
        assert first.events == [{"event": "new_message", "data": VIEW}]
        assert second.events == first.events
        assert other.events == []

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self):
        assert await Broadcaster().publish("c1", VIEW) == 0

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_dropped(self):
        broadcaster = Broadcaster()
        healthy = RecordingSubscriber()
        broadcaster.join("c1", BrokenSubscriber())
        broadcaster.join("c1", healthy)

        delivered = await broadcaster.publish("c1", VIEW)

        assert delivered == 1
        assert len(healthy.events) == 1
        assert broadcaster.subscriber_count("c1") == 1

    def test_join_is_idempotent(self):
        broadcaster = Broadcaster()
        subscriber = RecordingSubscriber()
        broadcaster.join("c1", subscriber)
        broadcaster.join("c1", subscriber)

        assert broadcaster.subscriber_count("c1") == 1

    def test_leave(self):
        broadcaster = Broadcaster()
        subscriber = RecordingSubscriber()
        broadcaster.join("c1", subscriber)

        broadcaster.leave("c1", subscriber)
        broadcaster.leave("c1", subscriber)

        assert broadcaster.subscriber_count("c1") == 0


class TestWebSocketStream:
    """WS /ws/channels/{channel_id}"""

    def test_connection_joins_and_leaves_channel(self, client, broadcaster):
        with client.websocket_connect("/ws/channels/c1"):
            assert broadcaster.subscriber_count("c1") == 1

        assert broadcaster.subscriber_count("c1") == 0

    def test_channels_are_independent(self, client, broadcaster):
        with client.websocket_connect("/ws/channels/c1"):
            assert broadcaster.subscriber_count("c2") == 0
