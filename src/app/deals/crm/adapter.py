"""Persistence gateway abstract base class -- the remote deal store as seen by the pipeline.

The PipelineCache depends only on this interface, so any backend (the hosted
PostgreSQL database, a test double) can be injected at construction time.
Implementations raise GatewayError for every failure the caller should see.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.app.deals.schemas import Deal, DealCreate, DealStage


class PersistenceGateway(ABC):
    """Abstract interface for the authoritative deal store.

    Methods:
        fetch_all: Return the full deal collection with current stages.
        update_stage: Persist one deal's stage change, return the canonical record.
        create_deal: Create a deal, return the persisted record.
        delete_deal: Delete a deal by ID.
    """

    @abstractmethod
    async def fetch_all(self) -> list[Deal]:
        """Return every deal with its current stage."""
        ...

    @abstractmethod
    async def update_stage(self, deal_id: str, stage: DealStage) -> Deal:
        """Persist a stage change and return the canonical updated deal."""
        ...

    @abstractmethod
    async def create_deal(self, data: DealCreate) -> Deal:
        """Create a deal and return the persisted record."""
        ...

    @abstractmethod
    async def delete_deal(self, deal_id: str) -> None:
        """Delete a deal by ID."""
        ...
