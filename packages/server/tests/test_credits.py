"""
Unit tests for the credit ledger.

Tests cover:
- Remaining balances per pool
- Consumption order (included before extension)
- Exhaustion
- Extension grants
"""

from __future__ import annotations

import uuid

import pytest

from app.core.errors import InvalidState, NoCreditsAvailable
from app.models.stage import Stage
from app.services import credits


def make_stage(**overrides) -> Stage:
    values = dict(
        project_id=uuid.uuid4(),
        stage_number=1,
        name="Concepts",
        amount=1000,
        revisions_included=2,
        revisions_used=0,
        extension_purchased=False,
        extension_revisions_used=0,
    )
    values.update(overrides)
    return Stage(**values)


class TestBalances:
    def test_fresh_stage(self):
        stage = make_stage()
        assert credits.remaining_included(stage) == 2
        assert credits.remaining_extension(stage) == 0
        assert credits.remaining_total(stage) == 2

    def test_extension_pool_only_when_purchased(self):
        stage = make_stage(extension_purchased=True)
        assert credits.remaining_extension(stage) == credits.EXTENSION_POOL_SIZE
        assert credits.remaining_total(stage) == 2 + credits.EXTENSION_POOL_SIZE

    def test_never_negative(self):
        """Balances clamp at zero even if counters were pushed past the allotment."""
        stage = make_stage(revisions_included=1, revisions_used=3, extension_purchased=True,
                           extension_revisions_used=5)
        assert credits.remaining_included(stage) == 0
        assert credits.remaining_extension(stage) == 0


class TestConsumeOne:
    def test_included_pool_first(self):
        stage = make_stage(extension_purchased=True)
        assert credits.consume_one(stage) == credits.CreditPool.INCLUDED
        assert stage.revisions_used == 1
        assert stage.extension_revisions_used == 0

    def test_extension_pool_after_included_exhausted(self):
        stage = make_stage(revisions_used=2, extension_purchased=True)
        assert credits.consume_one(stage) == credits.CreditPool.EXTENSION
        assert stage.revisions_used == 2
        assert stage.extension_revisions_used == 1

    def test_exhausted_raises(self):
        stage = make_stage(revisions_used=2)
        with pytest.raises(NoCreditsAvailable):
            credits.consume_one(stage)
        assert stage.revisions_used == 2

    def test_drains_both_pools_then_stops(self):
        stage = make_stage(extension_purchased=True)
        for _ in range(2 + credits.EXTENSION_POOL_SIZE):
            credits.consume_one(stage)
        assert credits.remaining_total(stage) == 0
        assert credits.consumed_count(stage) == 5
        with pytest.raises(NoCreditsAvailable):
            credits.consume_one(stage)

    def test_counters_stay_within_bounds(self):
        stage = make_stage(revisions_included=1, extension_purchased=True)
        for _ in range(10):
            try:
                credits.consume_one(stage)
            except NoCreditsAvailable:
                pass
            assert 0 <= stage.revisions_used <= stage.revisions_included
            assert 0 <= stage.extension_revisions_used <= credits.EXTENSION_POOL_SIZE


class TestGrantExtension:
    def test_adds_one_included_revision(self):
        stage = make_stage(revisions_used=2)
        assert credits.grant_extension(stage) == 3
        assert credits.remaining_included(stage) == 1
        # The purchase flag drives the separate fixed pool and is left alone
        assert stage.extension_purchased is False

    def test_down_payment_stage_rejected(self):
        stage = make_stage(stage_number=0, revisions_included=0)
        with pytest.raises(InvalidState):
            credits.grant_extension(stage)
