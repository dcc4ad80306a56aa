"""
Credit ledger: revision balances for a stage.

Pure computation over a stage row, no I/O. Two pools exist:

- included: ``revisions_included - revisions_used``. Verified extension
  purchases raise ``revisions_included`` by one.
- extension: a fixed pool of EXTENSION_POOL_SIZE revisions available when
  ``extension_purchased`` is set, tracked by ``extension_revisions_used``.

Consumption always drains the included pool first.
"""

from __future__ import annotations

from enum import Enum
from typing import Protocol

from app.core.errors import NoCreditsAvailable, InvalidState

EXTENSION_POOL_SIZE = 3

# Included revisions granted per verified extension purchase
EXTENSION_GRANT = 1


class CreditPool(str, Enum):
    INCLUDED = "included"
    EXTENSION = "extension"


class HasCredits(Protocol):
    stage_number: int
    revisions_included: int
    revisions_used: int
    extension_purchased: bool
    extension_revisions_used: int


def remaining_included(stage: HasCredits) -> int:
    return max(0, stage.revisions_included - stage.revisions_used)


def remaining_extension(stage: HasCredits) -> int:
    if not stage.extension_purchased:
        return 0
    return max(0, EXTENSION_POOL_SIZE - stage.extension_revisions_used)


def remaining_total(stage: HasCredits) -> int:
    return remaining_included(stage) + remaining_extension(stage)


def consume_one(stage: HasCredits) -> CreditPool:
    """Draw one revision credit, included pool first.

    Mutates the stage counters and returns the pool drawn from. Raises
    NoCreditsAvailable when both pools are empty. The caller persists the
    stage; its version column turns concurrent draws into a conflict.
    """
    if remaining_total(stage) == 0:
        raise NoCreditsAvailable()

    if remaining_included(stage) > 0:
        stage.revisions_used += 1
        return CreditPool.INCLUDED

    stage.extension_revisions_used += 1
    return CreditPool.EXTENSION


def grant_extension(stage: HasCredits) -> int:
    """Apply a verified extension purchase. Returns the new included allotment."""
    if stage.stage_number == 0:
        raise InvalidState("The down payment stage does not carry revisions")
    stage.revisions_included += EXTENSION_GRANT
    return stage.revisions_included


def consumed_count(stage: HasCredits) -> int:
    """Total revisions drawn from both pools."""
    return stage.revisions_used + stage.extension_revisions_used
