"""
Business error taxonomy and its HTTP rendering.

Services raise these; the API layer renders them with the same envelope
the middleware uses: {"error": {"code", "message", "status"}}.
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from starlette.responses import JSONResponse


class MilestageError(Exception):
    """Base class for recoverable business errors surfaced to the caller."""

    code = "ERROR"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status_code,
            }
        }


class InvalidState(MilestageError):
    code = "INVALID_STATE"
    status_code = 409


class NoCreditsAvailable(MilestageError):
    code = "NO_CREDITS_AVAILABLE"
    status_code = 409

    def __init__(self, message: str = "No revisions remaining. The client can purchase an extension for more revisions."):
        super().__init__(message)


class DuplicateClaim(MilestageError):
    code = "DUPLICATE_CLAIM"
    status_code = 409


class AlreadyVerified(MilestageError):
    code = "ALREADY_VERIFIED"
    status_code = 409


class AlreadyRejected(MilestageError):
    code = "ALREADY_REJECTED"
    status_code = 409


class NotFound(MilestageError):
    code = "NOT_FOUND"
    status_code = 404


class Unauthorized(MilestageError):
    code = "UNAUTHORIZED"
    status_code = 403


class Conflict(MilestageError):
    """Storage contention that survived every retry."""

    code = "CONFLICT"
    status_code = 409

    def __init__(self, message: str = "The resource was modified concurrently. Please retry."):
        super().__init__(message)


class ValidationFailed(MilestageError):
    code = "VALIDATION_FAILED"
    status_code = 422


async def milestage_error_handler(request: Request, exc: MilestageError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MilestageError, milestage_error_handler)
