"""
Client portal endpoints, addressed by share code.

- GET /{shareCode}: project read model without the share code
- GET /{shareCode}/events: SSE stream of realtime project events
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from app.core.events import event_generator
from app.services.milestones import MilestoneService, get_milestone_service
from milestage_shared.schemas.projects import ProjectRead

router = APIRouter()


@router.get("/{share_code}", response_model=ProjectRead)
async def get_portal(
    share_code: str,
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.get_portal(share_code)


@router.get("/{share_code}/events")
async def stream_portal_events(
    request: Request,
    share_code: str,
    replay: bool = False,
    service: MilestoneService = Depends(get_milestone_service),
):
    """
    Stream realtime events for the portal's project via SSE.

    With replay=true the buffered recent events are sent first.
    Emits `: heartbeat` comments every 30 seconds to keep the connection alive.
    """
    project = await service.get_portal(share_code)
    return EventSourceResponse(event_generator(request, project.id, replay=replay))
