"""Tests for the persistence gateway contract and PostgresGateway.

PostgresGateway is tested against an AsyncMock DealRepository so retries,
error translation, and the closed-won purchase side effect can be checked
without a database.
"""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from src.app.deals.crm.adapter import PersistenceGateway
from src.app.deals.crm.postgres import PostgresGateway
from src.app.deals.errors import GatewayError
from src.app.deals.repository import DealRepository
from src.app.deals.schemas import DealCreate, DealStage, PurchaseStatus


@pytest.fixture
def repo():
    return AsyncMock(spec=DealRepository)


@pytest.fixture
def gateway(repo):
    return PostgresGateway(repo, max_retries=3)


def _won(deal):
    return deal.model_copy(update={"stage": DealStage.CLOSED_WON})


# ── Contract ─────────────────────────────────────────────────────────────────


class TestPersistenceGatewayContract:
    def test_cannot_instantiate_abstract_gateway(self):
        with pytest.raises(TypeError):
            PersistenceGateway()

    def test_abstract_methods(self):
        assert PersistenceGateway.__abstractmethods__ == {
            "fetch_all",
            "update_stage",
            "create_deal",
            "delete_deal",
        }

    def test_postgres_gateway_is_a_gateway(self, gateway):
        assert isinstance(gateway, PersistenceGateway)


# ── Fetch ────────────────────────────────────────────────────────────────────


class TestFetchAll:
    async def test_returns_repository_deals(self, gateway, repo, make_deal):
        deals = [make_deal(id="d1"), make_deal(id="d2", stage=DealStage.PROSPECT)]
        repo.list_deals.return_value = deals

        result = await gateway.fetch_all()

        assert result == deals
        repo.list_deals.assert_awaited_once()

    async def test_transient_error_is_retried(self, gateway, repo, make_deal):
        """One database hiccup followed by success returns the deals."""
        repo.list_deals.side_effect = [
            OperationalError("SELECT", {}, Exception("connection reset")),
            [make_deal()],
        ]

        result = await gateway.fetch_all()

        assert len(result) == 1
        assert repo.list_deals.await_count == 2

    async def test_persistent_error_becomes_gateway_error(self, gateway, repo):
        repo.list_deals.side_effect = SQLAlchemyError("database is down")

        with pytest.raises(GatewayError, match="Failed to fetch deals") as exc_info:
            await gateway.fetch_all()

        assert repo.list_deals.await_count == 3
        assert isinstance(exc_info.value.__cause__, SQLAlchemyError)

    async def test_max_retries_is_at_least_one(self, repo):
        repo.list_deals.side_effect = SQLAlchemyError("down")
        gateway = PostgresGateway(repo, max_retries=0)

        with pytest.raises(GatewayError):
            await gateway.fetch_all()

        assert repo.list_deals.await_count == 1

    async def test_non_database_errors_are_not_retried(self, gateway, repo):
        repo.list_deals.side_effect = RuntimeError("bug")

        with pytest.raises(RuntimeError):
            await gateway.fetch_all()

        assert repo.list_deals.await_count == 1


# ── Stage updates ────────────────────────────────────────────────────────────


class TestUpdateStage:
    async def test_returns_updated_deal(self, gateway, repo, make_deal):
        deal = make_deal(id="d1", stage=DealStage.LEAD)
        repo.get_deal.return_value = deal
        repo.update_stage.return_value = deal.model_copy(update={"stage": DealStage.PROSPECT})

        result = await gateway.update_stage("d1", DealStage.PROSPECT)

        assert result.stage == DealStage.PROSPECT
        repo.update_stage.assert_awaited_once_with("d1", DealStage.PROSPECT)
        repo.create_purchase_history.assert_not_awaited()

    async def test_missing_deal_raises_without_update(self, gateway, repo):
        repo.get_deal.return_value = None

        with pytest.raises(GatewayError, match="Deal not found: ghost"):
            await gateway.update_stage("ghost", DealStage.PROSPECT)

        repo.update_stage.assert_not_awaited()

    async def test_row_deleted_between_read_and_write(self, gateway, repo, make_deal):
        repo.get_deal.return_value = make_deal(id="d1")
        repo.update_stage.side_effect = ValueError("Deal d1 not found")

        with pytest.raises(GatewayError, match="Failed to update deal stage"):
            await gateway.update_stage("d1", DealStage.PROSPECT)

    async def test_database_failure_becomes_gateway_error(self, gateway, repo, make_deal):
        repo.get_deal.return_value = make_deal(id="d1")
        repo.update_stage.side_effect = SQLAlchemyError("deadlock detected")

        with pytest.raises(GatewayError, match="deadlock detected"):
            await gateway.update_stage("d1", DealStage.PROSPECT)

        assert repo.update_stage.await_count == 3


# ── Closed-won purchase record ───────────────────────────────────────────────


class TestClosedWonPurchase:
    async def test_winning_records_purchase(self, gateway, repo, make_deal):
        deal = make_deal(id="d1", stage=DealStage.NEGOTIATION, title="Annual licence", monetary_value=9000.0)
        repo.get_deal.return_value = deal
        repo.update_stage.return_value = _won(deal)

        await gateway.update_stage("d1", DealStage.CLOSED_WON)

        repo.create_purchase_history.assert_awaited_once()
        purchase = repo.create_purchase_history.await_args.args[0]
        assert purchase.contact_id == deal.contact_id
        assert purchase.deal_id == "d1"
        assert purchase.amount == 9000.0
        assert purchase.product_service == "Annual licence"
        assert purchase.status == PurchaseStatus.COMPLETED
        assert purchase.purchase_date == date.today()

    async def test_already_won_does_not_record_again(self, gateway, repo, make_deal):
        deal = make_deal(id="d1", stage=DealStage.CLOSED_WON)
        repo.get_deal.return_value = deal
        repo.update_stage.return_value = deal

        await gateway.update_stage("d1", DealStage.CLOSED_WON)

        repo.create_purchase_history.assert_not_awaited()

    async def test_no_contact_skips_purchase(self, gateway, repo, make_deal):
        deal = make_deal(id="d1", contact_id=None)
        repo.get_deal.return_value = deal
        repo.update_stage.return_value = _won(deal)

        await gateway.update_stage("d1", DealStage.CLOSED_WON)

        repo.create_purchase_history.assert_not_awaited()

    async def test_zero_value_skips_purchase(self, gateway, repo, make_deal):
        deal = make_deal(id="d1", monetary_value=0.0)
        repo.get_deal.return_value = deal
        repo.update_stage.return_value = _won(deal)

        await gateway.update_stage("d1", DealStage.CLOSED_WON)

        repo.create_purchase_history.assert_not_awaited()

    async def test_purchase_failure_does_not_fail_update(self, gateway, repo, make_deal):
        deal = make_deal(id="d1")
        repo.get_deal.return_value = deal
        repo.update_stage.return_value = _won(deal)
        repo.create_purchase_history.side_effect = SQLAlchemyError("fk violation")

        result = await gateway.update_stage("d1", DealStage.CLOSED_WON)

        assert result.stage == DealStage.CLOSED_WON


# ── CRUD passthrough ─────────────────────────────────────────────────────────


class TestCrud:
    async def test_create_deal(self, gateway, repo, make_deal):
        repo.create_deal.return_value = make_deal(id="new", title="Fresh")
        data = DealCreate(title="Fresh", monetary_value=100.0)

        result = await gateway.create_deal(data)

        assert result.id == "new"
        repo.create_deal.assert_awaited_once_with(data)

    async def test_create_deal_malformed_reference_is_not_retried(self, gateway, repo):
        repo.create_deal.side_effect = ValueError("Invalid contact_id: 'abc'")

        with pytest.raises(ValueError, match="contact_id"):
            await gateway.create_deal(DealCreate(title="Fresh", contact_id="abc"))

        assert repo.create_deal.await_count == 1

    async def test_delete_deal(self, gateway, repo):
        repo.delete_deal.return_value = True

        await gateway.delete_deal("d1")

        repo.delete_deal.assert_awaited_once_with("d1")

    async def test_delete_missing_deal_raises(self, gateway, repo):
        repo.delete_deal.return_value = False

        with pytest.raises(GatewayError, match="Deal not found: d1"):
            await gateway.delete_deal("d1")
