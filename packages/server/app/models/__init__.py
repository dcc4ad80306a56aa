# SQLModel definitions, imported here to ensure metadata is populated for Alembic.
from .base import UUIDMixin, TimestampMixin  # noqa: F401
from .project import Project  # noqa: F401
from .stage import Stage  # noqa: F401
from .deliverable import Deliverable  # noqa: F401
from .revision import Revision  # noqa: F401
from .payment_claim import PaymentClaim  # noqa: F401
from .stage_event import StageEvent  # noqa: F401
