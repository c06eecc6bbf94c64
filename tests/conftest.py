"""Shared test fixtures for the deal pipeline.

Provides:
- make_deal: factory for Deal records with sensible defaults
- assert_partition: checks the stage-partition invariant of a PipelineCache
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

import pytest

from src.app.deals.pipeline import PipelineCache
from src.app.deals.schemas import Deal, DealStage


@pytest.fixture
def make_deal() -> Callable[..., Deal]:
    """Factory for Deal records; keyword overrides replace defaults."""

    def _make(**overrides) -> Deal:
        defaults = {
            "id": "d1",
            "title": "Test Deal",
            "stage": DealStage.LEAD,
            "monetary_value": 5000.0,
            "probability_percentage": 20,
            "contact_id": "3f1c1a6e-6d0c-4d57-9f4b-0d7f5cf6a001",
            "user_id": "user-1",
            "created_at": datetime(2026, 1, 15, tzinfo=timezone.utc),
            "updated_at": datetime(2026, 1, 20, tzinfo=timezone.utc),
        }
        defaults.update(overrides)
        return Deal(**defaults)

    return _make


@pytest.fixture
def assert_partition() -> Callable[[PipelineCache], None]:
    """Assert every cached deal sits in exactly one list matching its stage."""

    def _check(cache: PipelineCache) -> None:
        seen: set[str] = set()
        for stage, deals in cache.get_pipeline().items():
            for deal in deals:
                assert deal.stage == stage, f"{deal.id} in {stage} list has stage {deal.stage}"
                assert deal.id not in seen, f"{deal.id} appears in more than one list"
                seen.add(deal.id)

    return _check
