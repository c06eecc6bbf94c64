"""REST API endpoints for the Kanban deal pipeline.

Thin binding over the PipelineCache held on app.state: the board snapshot,
reload, deal creation and deletion, stage moves, and summary stats. Domain
errors map to HTTP status codes; the cache keeps itself consistent before
any error reaches here.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from src.app.deals.errors import DealNotFoundError, GatewayError, StageUpdateError
from src.app.deals.pipeline import PipelineCache
from src.app.deals.schemas import Deal, DealCreate, DealStage, PipelineStats

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


# ── Schemas ──────────────────────────────────────────────────────────────────


class PipelineResponse(BaseModel):
    """Board view: deals grouped by stage with counts and totals."""

    stages: dict[str, list[Deal]] = Field(default_factory=dict)
    stage_counts: dict[str, int] = Field(default_factory=dict)
    total_value: float = 0.0
    last_error: str | None = None


class MoveDealRequest(BaseModel):
    """Request body for moving a deal to another stage."""

    stage: DealStage


# ── Dependency Injection Helper ──────────────────────────────────────────────


def _get_pipeline_cache(request: Request) -> PipelineCache:
    """Retrieve PipelineCache from app.state, 503 if not available."""
    cache = getattr(request.app.state, "pipeline_cache", None)
    if cache is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deal pipeline not initialized",
        )
    return cache


async def _load(cache: PipelineCache) -> None:
    try:
        await cache.load()
    except GatewayError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to fetch pipeline: {exc}",
        )


def _to_response(cache: PipelineCache) -> PipelineResponse:
    pipeline = cache.get_pipeline()
    stats = cache.stats()
    return PipelineResponse(
        stages={stage.value: deals for stage, deals in pipeline.items()},
        stage_counts={stage.value: len(deals) for stage, deals in pipeline.items()},
        total_value=stats.total_value,
        last_error=cache.last_error,
    )


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("", response_model=PipelineResponse)
async def get_pipeline(request: Request) -> PipelineResponse:
    """Current board view; the first request loads it from the database."""
    cache = _get_pipeline_cache(request)
    if not cache.loaded:
        await _load(cache)
    return _to_response(cache)


@router.post("/refresh", response_model=PipelineResponse)
async def refresh_pipeline(request: Request) -> PipelineResponse:
    """Discard the cached board and reload it from the database."""
    cache = _get_pipeline_cache(request)
    await _load(cache)
    return _to_response(cache)


@router.post("/deals", response_model=Deal, status_code=status.HTTP_201_CREATED)
async def create_deal(body: DealCreate, request: Request) -> Deal:
    """Create a deal; it is appended to the column for its stage."""
    cache = _get_pipeline_cache(request)
    if not cache.loaded:
        await _load(cache)

    try:
        return await cache.create_deal(body)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        )
    except GatewayError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(exc),
        )


@router.delete("/deals/{deal_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_deal(deal_id: str, request: Request) -> None:
    """Delete a deal and drop it from the board."""
    cache = _get_pipeline_cache(request)
    if not cache.loaded:
        await _load(cache)

    try:
        await cache.delete_deal(deal_id)
    except DealNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        )
    except GatewayError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(exc),
        )


@router.post("/deals/{deal_id}/move", response_model=Deal)
async def move_deal(deal_id: str, body: MoveDealRequest, request: Request) -> Deal:
    """Move a deal to another stage (drag and drop)."""
    cache = _get_pipeline_cache(request)
    if not cache.loaded:
        await _load(cache)

    try:
        return await cache.move_deal(deal_id, body.stage)
    except DealNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        )
    except StageUpdateError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "strategy": exc.strategy},
        )


@router.get("/stats", response_model=PipelineStats)
async def get_pipeline_stats(request: Request) -> PipelineStats:
    """Deal counts and monetary totals per stage."""
    cache = _get_pipeline_cache(request)
    if not cache.loaded:
        await _load(cache)
    return cache.stats()
