from enum import Enum
from pydantic import BaseModel

class ProjectStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"

class StageStatus(str, Enum):
    LOCKED = "locked"
    ACTIVE = "active"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    REVISION_REQUESTED = "revision_requested"
    APPROVED = "approved"
    PAYMENT_PENDING = "payment_pending"
    COMPLETED = "completed"

class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PENDING = "pending"
    RECEIVED = "received"

class ClaimStatus(str, Enum):
    MARKED_PAID = "marked_paid"
    VERIFIED = "verified"
    REJECTED = "rejected"

class ClaimKind(str, Enum):
    STAGE = "stage"
    EXTENSION = "extension"

class PaymentChannel(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"
    VENMO = "venmo"
    STRIPE = "stripe"
    OTHER = "other"

class ActorRole(str, Enum):
    FREELANCER = "freelancer"
    CLIENT = "client"
    SYSTEM = "system"

class ReminderTone(str, Enum):
    FRIENDLY = "friendly"
    FOLLOWUP = "followup"
    URGENT = "urgent"

# Stages a freelancer can still work on (deliverables, manual revisions)
WORKABLE_STAGE_STATUSES: frozenset["StageStatus"] = frozenset({
    StageStatus.ACTIVE,
    StageStatus.IN_PROGRESS,
    StageStatus.DELIVERED,
    StageStatus.REVISION_REQUESTED,
})

# Legal status edges; locked -> active is only fired by the unlock coordinator
STAGE_TRANSITIONS: dict["StageStatus", frozenset["StageStatus"]] = {
    StageStatus.LOCKED: frozenset({StageStatus.ACTIVE}),
    StageStatus.ACTIVE: frozenset({
        StageStatus.IN_PROGRESS,
        StageStatus.DELIVERED,
        StageStatus.PAYMENT_PENDING,
    }),
    StageStatus.IN_PROGRESS: frozenset({StageStatus.DELIVERED}),
    StageStatus.DELIVERED: frozenset({
        StageStatus.REVISION_REQUESTED,
        StageStatus.APPROVED,
        StageStatus.PAYMENT_PENDING,
        StageStatus.IN_PROGRESS,
    }),
    StageStatus.REVISION_REQUESTED: frozenset({StageStatus.IN_PROGRESS}),
    StageStatus.APPROVED: frozenset({StageStatus.PAYMENT_PENDING}),
    StageStatus.PAYMENT_PENDING: frozenset({
        StageStatus.COMPLETED,
        StageStatus.APPROVED,
        StageStatus.DELIVERED,
        StageStatus.ACTIVE,
    }),
    StageStatus.COMPLETED: frozenset(),
}

class ErrorBody(BaseModel):
    code: str
    message: str
    status: int

class APIError(BaseModel):
    error: ErrorBody
