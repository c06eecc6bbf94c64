"""Tests for DealRepository and its model/schema converters.

The session factory yields an AsyncMock session, so SQL is never executed;
the tests cover conversion, UUID handling and the not-found paths.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.app.deals.models import DealModel, PurchaseHistoryModel
from src.app.deals.repository import (
    DealRepository,
    _model_to_deal,
    _model_to_purchase,
    _parse_uuid,
)
from src.app.deals.schemas import (
    DealCreate,
    DealStage,
    PurchaseHistoryCreate,
    PurchaseStatus,
)

DEAL_ID = uuid.UUID("5b0c8a4e-1f7e-4f0a-8d3e-2c9a6b1d0e01")
CONTACT_ID = uuid.UUID("3f1c1a6e-6d0c-4d57-9f4b-0d7f5cf6a001")


def _deal_model(**overrides) -> DealModel:
    fields = {
        "id": DEAL_ID,
        "title": "Renewal",
        "stage": "negotiation",
        "monetary_value": 2500.0,
        "probability_percentage": 60,
        "expected_close_date": date(2026, 3, 31),
        "contact_id": CONTACT_ID,
        "user_id": None,
        "created_at": datetime(2026, 1, 2, tzinfo=timezone.utc),
        "updated_at": None,
    }
    fields.update(overrides)
    return DealModel(**fields)


def _session_with(result: MagicMock) -> AsyncMock:
    session = AsyncMock()
    session.add = MagicMock()
    session.execute.return_value = result
    return session


def _repo_for(session: AsyncMock) -> DealRepository:
    async def session_factory():
        yield session

    return DealRepository(session_factory=session_factory)


# ── Converters ───────────────────────────────────────────────────────────────


class TestConverters:
    def test_parse_uuid(self):
        assert _parse_uuid(str(DEAL_ID)) == DEAL_ID
        assert _parse_uuid("not-a-uuid") is None
        assert _parse_uuid(None) is None

    def test_model_to_deal(self):
        deal = _model_to_deal(_deal_model())

        assert deal.id == str(DEAL_ID)
        assert deal.stage == DealStage.NEGOTIATION
        assert deal.contact_id == str(CONTACT_ID)
        assert deal.user_id is None
        assert deal.expected_close_date == date(2026, 3, 31)

    def test_model_to_deal_defaults_missing_numbers(self):
        deal = _model_to_deal(_deal_model(monetary_value=None, probability_percentage=None))

        assert deal.monetary_value == 0.0
        assert deal.probability_percentage == 0

    def test_model_to_deal_rejects_unknown_stage(self):
        with pytest.raises(ValueError):
            _model_to_deal(_deal_model(stage="archived"))

    def test_model_to_purchase(self):
        model = PurchaseHistoryModel(
            id=uuid.uuid4(),
            contact_id=CONTACT_ID,
            deal_id=DEAL_ID,
            purchase_date=date(2026, 2, 1),
            amount=2500.0,
            product_service="Renewal",
            status="completed",
            created_at=None,
        )

        purchase = _model_to_purchase(model)

        assert purchase.deal_id == str(DEAL_ID)
        assert purchase.status == PurchaseStatus.COMPLETED
        assert purchase.amount == 2500.0


# ── Repository ───────────────────────────────────────────────────────────────


class TestDealRepository:
    async def test_list_deals_converts_rows(self):
        result = MagicMock()
        result.scalars.return_value.all.return_value = [_deal_model()]
        repo = _repo_for(_session_with(result))

        deals = await repo.list_deals()

        assert [d.id for d in deals] == [str(DEAL_ID)]

    async def test_get_deal_with_malformed_id_skips_query(self):
        session = _session_with(MagicMock())
        repo = _repo_for(session)

        assert await repo.get_deal("not-a-uuid") is None
        session.execute.assert_not_awaited()

    async def test_get_deal_not_found(self):
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        repo = _repo_for(_session_with(result))

        assert await repo.get_deal(str(DEAL_ID)) is None

    async def test_update_stage_sets_stage_value(self):
        model = _deal_model(stage="lead")
        result = MagicMock()
        result.scalar_one_or_none.return_value = model
        session = _session_with(result)
        repo = _repo_for(session)

        deal = await repo.update_stage(str(DEAL_ID), DealStage.CLOSED_WON)

        assert model.stage == "closed-won"
        assert deal.stage == DealStage.CLOSED_WON
        session.commit.assert_awaited_once()

    async def test_update_stage_missing_deal_raises(self):
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        repo = _repo_for(_session_with(result))

        with pytest.raises(ValueError, match="Deal not found"):
            await repo.update_stage(str(DEAL_ID), DealStage.PROSPECT)

    async def test_delete_deal_reports_rowcount(self):
        result = MagicMock()
        result.rowcount = 0
        repo = _repo_for(_session_with(result))

        assert await repo.delete_deal(str(DEAL_ID)) is False
        assert await repo.delete_deal("bad-id") is False

    async def test_create_purchase_history(self):
        session = _session_with(MagicMock())

        async def refresh(model):
            model.id = uuid.uuid4()
            model.created_at = datetime(2026, 2, 1, tzinfo=timezone.utc)

        session.refresh.side_effect = refresh
        repo = _repo_for(session)

        purchase = await repo.create_purchase_history(
            PurchaseHistoryCreate(
                contact_id=str(CONTACT_ID),
                deal_id=str(DEAL_ID),
                purchase_date=date(2026, 2, 1),
                amount=2500.0,
                product_service="Renewal",
            )
        )

        added = session.add.call_args.args[0]
        assert added.contact_id == CONTACT_ID
        assert added.status == "completed"
        assert purchase.product_service == "Renewal"

    async def test_create_deal_rejects_malformed_contact_id(self):
        session = _session_with(MagicMock())
        repo = _repo_for(session)

        with pytest.raises(ValueError, match="Invalid contact_id"):
            await repo.create_deal(DealCreate(title="Renewal", contact_id="crm-contact-7"))

        session.add.assert_not_called()
        session.commit.assert_not_awaited()

    async def test_create_deal_rejects_malformed_user_id(self):
        session = _session_with(MagicMock())
        repo = _repo_for(session)

        with pytest.raises(ValueError, match="Invalid user_id"):
            await repo.create_deal(DealCreate(title="Renewal", user_id="user-1"))

        session.add.assert_not_called()

    async def test_create_deal_keeps_valid_references(self):
        session = _session_with(MagicMock())

        async def refresh(model):
            model.id = DEAL_ID
            model.created_at = datetime(2026, 2, 1, tzinfo=timezone.utc)

        session.refresh.side_effect = refresh
        repo = _repo_for(session)

        deal = await repo.create_deal(
            DealCreate(title="Renewal", monetary_value=900.0, contact_id=str(CONTACT_ID))
        )

        added = session.add.call_args.args[0]
        assert added.contact_id == CONTACT_ID
        assert added.user_id is None
        assert deal.contact_id == str(CONTACT_ID)
