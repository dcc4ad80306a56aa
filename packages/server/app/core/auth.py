"""
Authorization context for MileStage.

Identity itself is provided externally. This module turns request
credentials into an explicit ActorContext that every core operation
receives:

- Freelancer: JWT bearer token issued by the identity provider (sub = user id)
- Client: share code of a single project (X-Share-Code header)
- System: trusted payment confirmation channel (X-Webhook-Secret header)
"""

from __future__ import annotations

import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import structlog
from fastapi import Depends, Header, HTTPException
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.config import get_settings
from app.core.database import get_session
from app.core.errors import Unauthorized
from app.models.project import Project
from milestage_shared.schemas.common import ActorRole

log = structlog.get_logger()
settings = get_settings()

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)
share_code_header = APIKeyHeader(name="X-Share-Code", auto_error=False)


# ---------------------------------------------------------------------------
# Actor context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ActorContext:
    """Who is calling. project_id is set for clients (share-code scope)."""

    role: ActorRole
    user_id: Optional[uuid.UUID] = None
    project_id: Optional[uuid.UUID] = None

    @classmethod
    def freelancer(cls, user_id: uuid.UUID) -> "ActorContext":
        return cls(role=ActorRole.FREELANCER, user_id=user_id)

    @classmethod
    def client(cls, project_id: uuid.UUID) -> "ActorContext":
        return cls(role=ActorRole.CLIENT, project_id=project_id)

    @classmethod
    def system(cls) -> "ActorContext":
        return cls(role=ActorRole.SYSTEM)


def ensure_actor(actor: ActorContext, project: Project, *roles: ActorRole) -> None:
    """Raise Unauthorized unless actor has one of roles on this project."""
    if actor.role not in roles:
        allowed = ", ".join(r.value for r in roles)
        raise Unauthorized(f"This action requires the {allowed} role")

    if actor.role == ActorRole.FREELANCER and actor.user_id != project.owner_id:
        raise Unauthorized("Only the project owner can perform this action")

    if actor.role == ActorRole.CLIENT and actor.project_id != project.id:
        raise Unauthorized("Share code does not grant access to this project")


# ---------------------------------------------------------------------------
# Share codes
# ---------------------------------------------------------------------------

def generate_share_code() -> str:
    """Generate a URL-safe capability token for client portal access."""
    return secrets.token_urlsafe(12)


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def create_jwt(user_id: uuid.UUID, *, expires_delta: timedelta | None = None) -> str:
    """Create a signed freelancer token (used by the identity provider and tests)."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + (expires_delta or timedelta(hours=1)),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_jwt(token: str) -> dict:
    """Decode and verify a JWT. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

def _authenticate_jwt(token: str) -> ActorContext:
    try:
        payload = decode_jwt(token)
        user_id = uuid.UUID(payload["sub"])
    except (jwt.PyJWTError, KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return ActorContext.freelancer(user_id)


async def _authenticate_share_code(code: str, session: AsyncSession) -> ActorContext:
    result = await session.execute(select(Project.id).where(Project.share_code == code))
    project_id = result.scalar_one_or_none()
    if project_id is None:
        raise HTTPException(status_code=401, detail="Invalid share code")
    return ActorContext.client(project_id)


async def get_actor(
    authorization: Optional[str] = Depends(api_key_header),
    share_code: Optional[str] = Depends(share_code_header),
    session: AsyncSession = Depends(get_session),
) -> ActorContext:
    """Main authentication dependency. Tries bearer token first, then share code."""
    if authorization and authorization.startswith("Bearer "):
        return _authenticate_jwt(authorization[7:].strip())

    if share_code:
        return await _authenticate_share_code(share_code.strip(), session)

    raise HTTPException(status_code=401, detail="Authentication required")


async def require_freelancer(actor: ActorContext = Depends(get_actor)) -> ActorContext:
    """Requires a freelancer session."""
    if actor.role != ActorRole.FREELANCER:
        raise HTTPException(status_code=403, detail="Freelancer access required")
    return actor


async def require_system(
    x_webhook_secret: Optional[str] = Header(default=None),
) -> ActorContext:
    """Authenticates the trusted payment confirmation channel."""
    if not x_webhook_secret or not hmac.compare_digest(
        x_webhook_secret, settings.webhook_secret
    ):
        log.warning("auth.webhook_rejected")
        raise HTTPException(status_code=401, detail="Invalid webhook secret")
    return ActorContext.system()
