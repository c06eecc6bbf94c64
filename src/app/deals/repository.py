"""Deal repository -- async CRUD for deals and purchase history.

Provides DealRepository with the session_factory callable pattern. Handles
conversion between SQLAlchemy models and the Pydantic schemas consumed by
the gateway and pipeline cache.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.deals.models import DealModel, PurchaseHistoryModel
from src.app.deals.schemas import (
    Deal,
    DealCreate,
    DealStage,
    DealUpdate,
    PurchaseHistoryCreate,
    PurchaseHistoryRead,
    PurchaseStatus,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    """Parse a UUID string, returning None for missing or malformed input."""
    if value is None:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


def _reference_uuid(value: str | None, field_name: str) -> uuid.UUID | None:
    """Parse a referenced id for a write; malformed input raises ValueError."""
    if value is None:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ValueError(f"Invalid {field_name}: {value!r}") from None


def _model_to_deal(model: DealModel) -> Deal:
    """Convert DealModel to Deal schema."""
    return Deal(
        id=str(model.id),
        title=model.title,
        stage=DealStage(model.stage),
        monetary_value=model.monetary_value or 0.0,
        probability_percentage=model.probability_percentage or 0,
        expected_close_date=model.expected_close_date,
        contact_id=str(model.contact_id) if model.contact_id else None,
        user_id=str(model.user_id) if model.user_id else None,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_purchase(model: PurchaseHistoryModel) -> PurchaseHistoryRead:
    """Convert PurchaseHistoryModel to PurchaseHistoryRead schema."""
    return PurchaseHistoryRead(
        id=str(model.id),
        contact_id=str(model.contact_id),
        deal_id=str(model.deal_id) if model.deal_id else None,
        purchase_date=model.purchase_date,
        amount=model.amount,
        product_service=model.product_service,
        status=PurchaseStatus(model.status),
        created_at=model.created_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class DealRepository:
    """Async CRUD operations for deals and purchase history.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Deals ───────────────────────────────────────────────────────────────

    async def list_deals(self) -> list[Deal]:
        """List every deal, newest first."""
        async for session in self._session_factory():
            stmt = select(DealModel).order_by(DealModel.created_at.desc())
            result = await session.execute(stmt)
            models = result.scalars().all()
            return [_model_to_deal(m) for m in models]

    async def get_deal(self, deal_id: str) -> Deal | None:
        """Get a deal by ID, or None if it does not exist."""
        deal_uuid = _parse_uuid(deal_id)
        if deal_uuid is None:
            return None

        async for session in self._session_factory():
            result = await session.execute(
                select(DealModel).where(DealModel.id == deal_uuid)
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_deal(model)

    async def create_deal(self, data: DealCreate) -> Deal:
        """Create a new deal and return it with all persisted fields."""
        async for session in self._session_factory():
            model = DealModel(
                title=data.title,
                stage=data.stage.value,
                monetary_value=data.monetary_value,
                probability_percentage=data.probability_percentage,
                expected_close_date=data.expected_close_date,
                contact_id=_reference_uuid(data.contact_id, "contact_id"),
                user_id=_reference_uuid(data.user_id, "user_id"),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("deal_repository.deal_created", deal_id=str(model.id))
            return _model_to_deal(model)

    async def update_deal(self, deal_id: str, data: DealUpdate) -> Deal:
        """Update an existing deal with the non-None fields of data.

        Raises:
            ValueError: If the deal does not exist.
        """
        deal_uuid = _parse_uuid(deal_id)
        async for session in self._session_factory():
            model = None
            if deal_uuid is not None:
                result = await session.execute(
                    select(DealModel).where(DealModel.id == deal_uuid)
                )
                model = result.scalar_one_or_none()

            if model is None:
                raise ValueError(f"Deal not found: {deal_id}")

            for field_name, value in data.model_dump(exclude_none=True).items():
                if field_name == "stage":
                    value = DealStage(value).value
                elif field_name == "contact_id":
                    value = _reference_uuid(value, "contact_id")
                setattr(model, field_name, value)

            await session.commit()
            await session.refresh(model)
            return _model_to_deal(model)

    async def update_stage(self, deal_id: str, stage: DealStage) -> Deal:
        """Persist a stage change for one deal.

        Raises:
            ValueError: If the deal does not exist.
        """
        return await self.update_deal(deal_id, DealUpdate(stage=stage))

    async def delete_deal(self, deal_id: str) -> bool:
        """Delete a deal. Returns True if a row was removed."""
        deal_uuid = _parse_uuid(deal_id)
        if deal_uuid is None:
            return False

        async for session in self._session_factory():
            result = await session.execute(
                delete(DealModel).where(DealModel.id == deal_uuid)
            )
            await session.commit()
            return result.rowcount > 0

    # ── Purchase History ────────────────────────────────────────────────────

    async def create_purchase_history(
        self, data: PurchaseHistoryCreate
    ) -> PurchaseHistoryRead:
        """Record a purchase."""
        async for session in self._session_factory():
            model = PurchaseHistoryModel(
                contact_id=uuid.UUID(data.contact_id),
                deal_id=_parse_uuid(data.deal_id),
                purchase_date=data.purchase_date,
                amount=data.amount,
                product_service=data.product_service,
                status=data.status.value,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_purchase(model)
