"""
Stage event log and realtime fan-out.

Events are persisted inside the transaction of the transition they
describe, so the audit log never disagrees with stage state. Publishing to
Redis happens after commit and is best-effort.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncGenerator, Optional
from uuid import UUID

import structlog
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.auth import ActorContext
from app.core.redis import get_redis
from app.models.stage_event import StageEvent

log = structlog.get_logger()

REDIS_CHANNEL_PREFIX = "ms:events:"
REDIS_BUFFER_KEY_PREFIX = "ms:events:buffer:"
BUFFER_SIZE = 200
HEARTBEAT_INTERVAL = 30  # seconds


async def record_event(
    session: AsyncSession,
    project_id: UUID,
    event_type: str,
    actor: ActorContext,
    *,
    stage_id: Optional[UUID] = None,
    payload: Optional[dict[str, Any]] = None,
    dedupe_key: Optional[str] = None,
) -> StageEvent:
    """Append an event to the audit log within the caller's transaction."""
    event = StageEvent(
        project_id=project_id,
        stage_id=stage_id,
        type=event_type,
        actor_role=actor.role.value,
        actor_id=actor.user_id,
        payload=payload or {},
        dedupe_key=dedupe_key,
    )
    session.add(event)
    return event


async def list_events(
    session: AsyncSession,
    project_id: UUID,
    event_type: Optional[str] = None,
) -> list[StageEvent]:
    stmt = select(StageEvent).where(StageEvent.project_id == project_id)
    if event_type:
        stmt = stmt.where(StageEvent.type == event_type)
    result = await session.execute(stmt.order_by(StageEvent.timestamp))
    return list(result.scalars().all())


async def publish_event(project_id: UUID, event_data: dict[str, Any]) -> None:
    """Buffer the event for late subscribers and publish it on the project channel."""
    redis = await get_redis()
    event_json = json.dumps(event_data, default=str)

    buffer_key = f"{REDIS_BUFFER_KEY_PREFIX}{project_id}"
    async with redis.pipeline() as pipe:
        pipe.lpush(buffer_key, event_json)
        pipe.ltrim(buffer_key, 0, BUFFER_SIZE - 1)
        pipe.expire(buffer_key, 86400)  # 24h retention
        await pipe.execute()

    await redis.publish(f"{REDIS_CHANNEL_PREFIX}{project_id}", event_json)


async def recent_events(project_id: UUID, limit: int = BUFFER_SIZE) -> list[dict[str, Any]]:
    """Buffered realtime events for a project, oldest first."""
    redis = await get_redis()
    raw_events = await redis.lrange(f"{REDIS_BUFFER_KEY_PREFIX}{project_id}", 0, limit - 1)
    return [json.loads(e) for e in reversed(raw_events)]


async def event_generator(
    request: Request,
    project_id: UUID,
    replay: bool = False,
) -> AsyncGenerator[dict | str, None]:
    """
    SSE generator for a client portal:
    - Optional replay of the Redis buffer
    - Live events from the project channel
    - Keepalive heartbeat
    """
    redis = await get_redis()
    pubsub = redis.pubsub()
    channel = f"{REDIS_CHANNEL_PREFIX}{project_id}"
    await pubsub.subscribe(channel)

    try:
        if replay:
            for event_data in await recent_events(project_id):
                yield {"event": event_data["type"], "data": json.dumps(event_data)}

        loop = asyncio.get_running_loop()
        last_sent = loop.time()
        while True:
            if await request.is_disconnected():
                break

            try:
                message = await asyncio.wait_for(
                    pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0),
                    timeout=HEARTBEAT_INTERVAL,
                )
            except asyncio.TimeoutError:
                message = None

            if message is None:
                # get_message polls once a second; only heartbeat when idle long enough
                if loop.time() - last_sent >= HEARTBEAT_INTERVAL:
                    last_sent = loop.time()
                    yield ": heartbeat\n\n"
                continue

            last_sent = loop.time()

            if message["type"] == "message":
                event_data = json.loads(message["data"])
                yield {"event": event_data["type"], "data": message["data"]}

    except asyncio.CancelledError:
        log.info("events.stream_cancelled", project_id=str(project_id))
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
