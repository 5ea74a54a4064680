"""Tests for the Redis pub/sub to WebSocket bridge."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from crolars.ws.bridge import CHANNEL_MAP, PATTERNS, PubSubBridge


def _pmessage(channel: str, data: object) -> dict:
    return {"type": "pmessage", "pattern": channel.split(":")[0] + ":*", "channel": channel, "data": json.dumps(data)}


class TestChannelMapping:
    def test_broadcast_channels(self) -> None:
        assert CHANNEL_MAP == {"events:live": "events", "system:announcements": "system"}

    def test_patterns(self) -> None:
        assert set(PATTERNS) == {"notifications:*", "feed:*", "chat:*"}


class TestDispatch:
    @pytest.mark.asyncio
    async def test_user_notification(self) -> None:
        bridge = PubSubBridge(AsyncMock())
        with patch("crolars.ws.bridge.manager") as mock_manager:
            mock_manager.send_to_user = AsyncMock(return_value=2)
            sent = await bridge.dispatch(_pmessage("notifications:42", {"type": "notification", "data": {}}))
        assert sent == 2
        mock_manager.send_to_user.assert_awaited_once_with(42, "notifications", {"type": "notification", "data": {}})

    @pytest.mark.asyncio
    async def test_feed_bytes_payload(self) -> None:
        bridge = PubSubBridge(AsyncMock())
        message = {
            "type": "pmessage",
            "channel": b"feed:7",
            "data": json.dumps({"type": "post"}).encode(),
        }
        with patch("crolars.ws.bridge.manager") as mock_manager:
            mock_manager.send_to_user = AsyncMock(return_value=1)
            await bridge.dispatch(message)
        mock_manager.send_to_user.assert_awaited_once_with(7, "feed", {"type": "post"})

    @pytest.mark.asyncio
    async def test_chat_fans_out_to_channel(self) -> None:
        bridge = PubSubBridge(AsyncMock())
        with patch("crolars.ws.bridge.manager") as mock_manager:
            mock_manager.broadcast_to_channel = AsyncMock(return_value=3)
            assert await bridge.dispatch(_pmessage("chat:room-1", {"text": "hi"})) == 3
        mock_manager.broadcast_to_channel.assert_awaited_once_with("chat:room-1", {"text": "hi"})

    @pytest.mark.asyncio
    async def test_system_announcement(self) -> None:
        bridge = PubSubBridge(AsyncMock())
        message = {"type": "message", "channel": "system:announcements", "data": json.dumps({"type": "x"})}
        with patch("crolars.ws.bridge.manager") as mock_manager:
            mock_manager.broadcast_to_channel = AsyncMock(return_value=1)
            await bridge.dispatch(message)
        mock_manager.broadcast_to_channel.assert_awaited_once_with("system", {"type": "x"})

    @pytest.mark.asyncio
    async def test_bad_user_id_dropped(self) -> None:
        bridge = PubSubBridge(AsyncMock())
        with patch("crolars.ws.bridge.manager") as mock_manager:
            mock_manager.send_to_user = AsyncMock()
            assert await bridge.dispatch(_pmessage("notifications:abc", {})) == 0
        mock_manager.send_to_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_json_dropped(self) -> None:
        bridge = PubSubBridge(AsyncMock())
        message = {"type": "message", "channel": "events:live", "data": "{not json"}
        with patch("crolars.ws.bridge.manager") as mock_manager:
            mock_manager.broadcast_to_channel = AsyncMock()
            assert await bridge.dispatch(message) == 0
        mock_manager.broadcast_to_channel.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_channel_ignored(self) -> None:
        bridge = PubSubBridge(AsyncMock())
        message = {"type": "message", "channel": "something:else", "data": "{}"}
        with patch("crolars.ws.bridge.manager") as mock_manager:
            mock_manager.broadcast_to_channel = AsyncMock()
            assert await bridge.dispatch(message) == 0


class TestBridgeLifecycle:
    @pytest.mark.asyncio
    async def test_bridge_forwards_message(self) -> None:
        """A message on events:live reaches the events WebSocket channel."""
        mock_redis = AsyncMock()
        mock_pubsub = AsyncMock()
        messages = [
            {"type": "message", "channel": "events:live", "data": json.dumps({"type": "level_up", "user": 1})},
        ]

        async def fake_get_message(**kwargs):
            if messages:
                return messages.pop(0)
            await asyncio.sleep(0.01)
            return None

        mock_pubsub.get_message = fake_get_message
        mock_redis.pubsub = MagicMock(return_value=mock_pubsub)
        bridge = PubSubBridge(mock_redis)

        with patch("crolars.ws.bridge.manager") as mock_manager:
            mock_manager.broadcast_to_channel = AsyncMock(return_value=1)

            async def stop_after_delay():
                await asyncio.sleep(0.1)
                await bridge.stop()

            await asyncio.gather(bridge.start(), stop_after_delay())

        mock_manager.broadcast_to_channel.assert_awaited_once_with("events", {"type": "level_up", "user": 1})
        mock_pubsub.psubscribe.assert_awaited_once_with(*PATTERNS)
        mock_pubsub.close.assert_awaited_once()
