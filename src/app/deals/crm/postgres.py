"""PostgreSQL persistence gateway -- the hosted deal store behind the pipeline cache.

PostgresGateway delegates to DealRepository, retries transient database
failures with tenacity, and translates every failure into GatewayError so
the pipeline cache sees one error type regardless of cause.

Winning a deal has a side effect carried over from the CRM's deal service:
the first transition into closed-won records a purchase for the deal's
contact. That record is best-effort and never fails the stage update.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import date
from typing import TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.app.deals.crm.adapter import PersistenceGateway
from src.app.deals.errors import GatewayError
from src.app.deals.repository import DealRepository
from src.app.deals.schemas import (
    Deal,
    DealCreate,
    DealStage,
    PurchaseHistoryCreate,
    PurchaseStatus,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class PostgresGateway(PersistenceGateway):
    """Persistence gateway backed by PostgreSQL via DealRepository.

    Args:
        repository: DealRepository instance for database operations.
        max_retries: Attempts per call before a database error is surfaced.
    """

    def __init__(self, repository: DealRepository, max_retries: int = 3) -> None:
        self._repo = repository
        self._max_retries = max(1, max_retries)

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run fn with retry on SQLAlchemyError, translating failures to GatewayError."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_retries),
                wait=wait_exponential(multiplier=0.1, max=2),
                retry=retry_if_exception_type(SQLAlchemyError),
                reraise=True,
            ):
                with attempt:
                    return await fn()
        except SQLAlchemyError as exc:
            logger.error(
                "postgres_gateway.operation_failed",
                operation=operation,
                attempts=self._max_retries,
                error=str(exc),
            )
            raise GatewayError(f"Failed to {operation}: {exc}") from exc
        raise GatewayError(f"Failed to {operation}: no attempt was made")

    async def fetch_all(self) -> list[Deal]:
        """Fetch every deal from PostgreSQL."""
        deals = await self._call("fetch deals", self._repo.list_deals)
        logger.debug("postgres_gateway.deals_fetched", count=len(deals))
        return deals

    async def update_stage(self, deal_id: str, stage: DealStage) -> Deal:
        """Persist a stage change, recording a purchase on the first win.

        Raises:
            GatewayError: If the deal does not exist or the database fails.
        """
        current = await self._call("fetch deal", lambda: self._repo.get_deal(deal_id))
        if current is None:
            raise GatewayError(f"Failed to update deal stage: Deal not found: {deal_id}")

        try:
            updated = await self._call(
                "update deal stage", lambda: self._repo.update_stage(deal_id, stage)
            )
        except ValueError as exc:
            # Row vanished between read and write
            raise GatewayError(f"Failed to update deal stage: {exc}") from exc

        logger.info(
            "postgres_gateway.stage_updated",
            deal_id=deal_id,
            from_stage=current.stage.value,
            to_stage=updated.stage.value,
        )

        if updated.stage == DealStage.CLOSED_WON and current.stage != DealStage.CLOSED_WON:
            await self._record_purchase(updated)

        return updated

    async def create_deal(self, data: DealCreate) -> Deal:
        """Create a deal in PostgreSQL.

        Raises:
            ValueError: If contact_id or user_id is not a valid UUID.
            GatewayError: If the database fails.
        """
        deal = await self._call("create deal", lambda: self._repo.create_deal(data))
        logger.info("postgres_gateway.deal_created", deal_id=deal.id, stage=deal.stage.value)
        return deal

    async def delete_deal(self, deal_id: str) -> None:
        """Delete a deal from PostgreSQL.

        Raises:
            GatewayError: If no such deal exists.
        """
        removed = await self._call("delete deal", lambda: self._repo.delete_deal(deal_id))
        if not removed:
            raise GatewayError(f"Failed to delete deal: Deal not found: {deal_id}")
        logger.info("postgres_gateway.deal_deleted", deal_id=deal_id)

    async def _record_purchase(self, deal: Deal) -> None:
        """Record the purchase for a newly won deal (no contact or no value: skipped)."""
        if not deal.contact_id or deal.monetary_value <= 0:
            return

        purchase = PurchaseHistoryCreate(
            contact_id=deal.contact_id,
            deal_id=deal.id,
            purchase_date=date.today(),
            amount=deal.monetary_value,
            product_service=deal.title,
            status=PurchaseStatus.COMPLETED,
        )
        try:
            await self._repo.create_purchase_history(purchase)
        except Exception:
            logger.warning(
                "postgres_gateway.purchase_record_failed",
                deal_id=deal.id,
                exc_info=True,
            )
            return

        logger.info(
            "postgres_gateway.purchase_recorded",
            deal_id=deal.id,
            contact_id=deal.contact_id,
            amount=deal.monetary_value,
        )
