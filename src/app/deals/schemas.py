"""Pydantic schemas for the deal pipeline -- stages, deals, stats, purchases, events.

Defines all structured types for the pipeline:
- Enums: DealStage, PurchaseStatus, PipelineEventKind
- Deal payloads: Deal, DealCreate, DealUpdate
- Pipeline statistics: StageStats, PipelineStats
- Purchase history: PurchaseHistoryCreate, PurchaseHistoryRead
- Observer notifications: PipelineEvent
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class DealStage(str, Enum):
    """Pipeline stage a deal occupies (exactly one at any time)."""

    LEAD = "lead"
    PROSPECT = "prospect"
    NEGOTIATION = "negotiation"
    CLOSED_WON = "closed-won"
    CLOSED_LOST = "closed-lost"


# Board column order.
PIPELINE_STAGES: tuple[DealStage, ...] = (
    DealStage.LEAD,
    DealStage.PROSPECT,
    DealStage.NEGOTIATION,
    DealStage.CLOSED_WON,
    DealStage.CLOSED_LOST,
)

_CLOSED_STAGES = frozenset({DealStage.CLOSED_WON, DealStage.CLOSED_LOST})


def is_closed_stage(stage: DealStage | str) -> bool:
    """Return True if the stage ends the deal (won or lost).

    Callers use this to decide on close-specific follow-ups, e.g. offering
    a purchase record. The pipeline cache itself treats every stage alike.
    """
    return DealStage(stage) in _CLOSED_STAGES


class PurchaseStatus(str, Enum):
    """Lifecycle of a purchase-history record."""

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PipelineEventKind(str, Enum):
    """Kinds of state change the pipeline cache reports to observers."""

    LOADED = "loaded"
    MOVED = "moved"
    CONFIRMED = "confirmed"
    RECONCILED = "reconciled"
    CREATED = "created"
    DELETED = "deleted"
    ERROR = "error"


# ── Deal Schemas ────────────────────────────────────────────────────────────


class Deal(BaseModel):
    """A persisted deal record.

    Immutable so cached snapshots can be shared with readers; stage moves
    produce a copy via model_copy(update={"stage": ...}).
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    title: str
    stage: DealStage = DealStage.LEAD
    monetary_value: float = 0.0
    probability_percentage: int = Field(default=0, ge=0, le=100)
    expected_close_date: date | None = None
    contact_id: str | None = None
    user_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DealCreate(BaseModel):
    """Schema for creating a new deal."""

    title: str
    stage: DealStage = DealStage.LEAD
    monetary_value: float = Field(default=0.0, ge=0.0)
    probability_percentage: int = Field(default=0, ge=0, le=100)
    expected_close_date: date | None = None
    contact_id: str | None = None
    user_id: str | None = None


class DealUpdate(BaseModel):
    """Schema for updating a deal (all fields optional)."""

    title: str | None = None
    stage: DealStage | None = None
    monetary_value: float | None = Field(default=None, ge=0.0)
    probability_percentage: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    contact_id: str | None = None


# ── Pipeline Statistics ─────────────────────────────────────────────────────


class StageStats(BaseModel):
    """Deal count and summed monetary value for one stage."""

    count: int = 0
    value: float = 0.0


class PipelineStats(BaseModel):
    """Summary of the whole pipeline."""

    total_deals: int = 0
    total_value: float = 0.0
    stages: dict[DealStage, StageStats] = Field(
        default_factory=lambda: {stage: StageStats() for stage in PIPELINE_STAGES}
    )


# ── Purchase History ────────────────────────────────────────────────────────


class PurchaseHistoryCreate(BaseModel):
    """Schema for recording a purchase (e.g. when a deal is won)."""

    contact_id: str
    deal_id: str | None = None
    purchase_date: date
    amount: float = Field(ge=0.0)
    product_service: str
    status: PurchaseStatus = PurchaseStatus.COMPLETED


class PurchaseHistoryRead(BaseModel):
    """Schema for reading a purchase-history record."""

    id: str
    contact_id: str
    deal_id: str | None = None
    purchase_date: date
    amount: float
    product_service: str
    status: PurchaseStatus
    created_at: datetime | None = None


# ── Observer Notifications ──────────────────────────────────────────────────


class PipelineEvent(BaseModel):
    """Notification delivered to pipeline observers after a state change."""

    kind: PipelineEventKind
    deal_id: str | None = None
    stage: DealStage | None = None
    error: str | None = None
