"""
API v1 Router

Freelancer routes authenticate with a bearer JWT, client routes with the
project share code, the webhook with a shared secret.
"""

from fastapi import APIRouter
from . import claims, portal, projects, stages, webhooks

router = APIRouter()

router.include_router(projects.router, prefix="/projects", tags=["Projects"])
router.include_router(stages.router, prefix="/stages", tags=["Stages"])
router.include_router(claims.router, tags=["Claims"])
router.include_router(portal.router, prefix="/portal", tags=["Portal"])
router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])


@router.get("/", tags=["API"])
async def api_root():
    """API root: returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/projects",
            "/projects/reminders",
            "/stages/{stageId}",
            "/payments/{claimId}",
            "/extensions/{claimId}",
            "/portal/{shareCode}",
            "/webhooks/payments",
        ],
    }
