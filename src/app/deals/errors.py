"""Exception hierarchy for the deal pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all deal pipeline errors."""


class DealNotFoundError(PipelineError):
    """Raised when a move targets a deal the pipeline cache does not hold."""

    def __init__(self, deal_id: str) -> None:
        self.deal_id = deal_id
        super().__init__(f"Deal not found: {deal_id}")


class GatewayError(PipelineError):
    """Raised when the persistence gateway fails (network, auth, conflict, missing row)."""


class StageUpdateError(GatewayError):
    """Raised by PipelineCache.move_deal after a failed confirmation was reconciled.

    Attributes:
        deal_id: The deal whose move failed.
        to_stage: The stage the move attempted to reach.
        strategy: How the cache was made consistent: "reload" when it was
            refreshed from the server, "revert" when the deal was put back
            to its last confirmed record (also used when a reload fails).
    """

    def __init__(self, deal_id: str, to_stage: str, strategy: str, message: str) -> None:
        self.deal_id = deal_id
        self.to_stage = to_stage
        self.strategy = strategy
        super().__init__(f"Failed to update deal stage: {message}")
