"""Deal pipeline persistence models.

Two SQLAlchemy models:
- DealModel: Deals moving through the pipeline stages
- PurchaseHistoryModel: Purchases recorded against contacts, typically when a deal is won
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import Date, DateTime, Float, Integer, String, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


class DealModel(Base):
    """A sales deal positioned in exactly one pipeline stage.

    contact_id and user_id are plain references (contacts and users live in
    the hosted auth/contacts tables, not managed here).
    """

    __tablename__ = "deals"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    stage: Mapped[str] = mapped_column(
        String(20), default="lead", server_default=text("'lead'"), index=True
    )
    monetary_value: Mapped[float] = mapped_column(
        Float, default=0.0, server_default=text("0")
    )
    probability_percentage: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    expected_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    contact_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class PurchaseHistoryModel(Base):
    """A purchase made by a contact, optionally linked to the deal that produced it."""

    __tablename__ = "purchase_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True
    )
    purchase_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    product_service: Mapped[str] = mapped_column(String(300), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="completed", server_default=text("'completed'")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
