"""
Tests for the realtime portal stream.

Redis is replaced by mocks; the generator is driven directly.
"""

from __future__ import annotations

import json
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.core import events


def fake_redis(buffered: list[dict], live: list[dict | None]):
    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    pubsub.get_message = AsyncMock(side_effect=live)

    redis = MagicMock()
    redis.pubsub.return_value = pubsub
    # LPUSH keeps the newest first
    redis.lrange = AsyncMock(return_value=[json.dumps(e) for e in reversed(buffered)])
    return redis, pubsub


def fake_request(polls: int):
    request = MagicMock()
    request.is_disconnected = AsyncMock(side_effect=[False] * polls + [True])
    return request


class TestRecentEvents:
    @pytest.mark.asyncio
    async def test_oldest_first(self):
        buffered = [{"type": "stage_delivered"}, {"type": "payment_received"}]
        redis, _ = fake_redis(buffered, [])
        with patch("app.core.events.get_redis", new=AsyncMock(return_value=redis)):
            result = await events.recent_events(uuid.uuid4())
        assert [e["type"] for e in result] == ["stage_delivered", "payment_received"]


class TestEventGenerator:
    @pytest.mark.asyncio
    async def test_replay_then_live(self):
        project_id = uuid.uuid4()
        live = {"type": "message", "data": json.dumps({"type": "stage_approved"})}
        redis, pubsub = fake_redis([{"type": "stage_delivered"}], [live])

        with patch("app.core.events.get_redis", new=AsyncMock(return_value=redis)):
            received = [
                item async for item in events.event_generator(fake_request(1), project_id, replay=True)
            ]

        assert [item["event"] for item in received] == ["stage_delivered", "stage_approved"]
        pubsub.subscribe.assert_awaited_once_with(f"ms:events:{project_id}")
        pubsub.unsubscribe.assert_awaited_once()
        pubsub.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_replay_by_default(self):
        redis, _ = fake_redis([{"type": "stage_delivered"}], [])
        with patch("app.core.events.get_redis", new=AsyncMock(return_value=redis)):
            received = [item async for item in events.event_generator(fake_request(0), uuid.uuid4())]
        assert received == []
        redis.lrange.assert_not_called()

    @pytest.mark.asyncio
    async def test_heartbeat_after_idle_interval(self):
        redis, _ = fake_redis([], [None])
        with patch("app.core.events.get_redis", new=AsyncMock(return_value=redis)), \
                patch.object(events, "HEARTBEAT_INTERVAL", 0):
            received = [item async for item in events.event_generator(fake_request(1), uuid.uuid4())]
        assert received == [": heartbeat\n\n"]
