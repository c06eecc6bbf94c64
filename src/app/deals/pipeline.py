"""Stage-partitioned deal cache with optimistic stage moves.

PipelineCache holds the board view of the deal collection: one ordered list
per DealStage, every known deal in exactly one list whose key equals the
deal's stage. It is a read-through cache of a PersistenceGateway, rebuilt
wholesale by load().

move_deal() is a two-phase protocol:

1. Optimistic apply -- synchronous, no await: the deal leaves its current
   list and is appended (with the new stage) to the target list, then
   observers are notified. Readers therefore never see a torn state.
2. Confirmation -- gateway.update_stage(), serialized per deal_id with an
   asyncio.Lock so a second move of the same deal reaches the server only
   after the first one confirmed or was reconciled. On failure the cache is
   reconciled (full reload, or point revert to the last confirmed record)
   before StageUpdateError reaches the caller. A cancelled move reverts
   the deal to its last confirmed record.

create_deal() and delete_deal() go to the gateway first and only then
append or drop the deal. Changes confirmed locally while a load() fetch is
in flight win over the fetched rows, which may predate them.

Everything runs on one event loop; the lists are only touched between awaits.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog

from src.app.config import ReconcileStrategy
from src.app.core.monitoring import (
    pipeline_load_duration_seconds,
    pipeline_moves_total,
    pipeline_reconciliations_total,
)
from src.app.deals.crm.adapter import PersistenceGateway
from src.app.deals.errors import DealNotFoundError, GatewayError, StageUpdateError
from src.app.deals.schemas import (
    PIPELINE_STAGES,
    Deal,
    DealCreate,
    DealStage,
    PipelineEvent,
    PipelineEventKind,
    PipelineStats,
    StageStats,
)

logger = structlog.get_logger(__name__)

PipelineObserver = Callable[[PipelineEvent], None]


def _empty_partition() -> dict[DealStage, list[Deal]]:
    return {stage: [] for stage in PIPELINE_STAGES}


class _PendingMove:
    """A move whose optimistic state is applied but not yet confirmed."""

    __slots__ = ("to_stage",)

    def __init__(self, to_stage: DealStage) -> None:
        self.to_stage = to_stage


class PipelineCache:
    """In-memory deal pipeline partitioned by stage.

    Args:
        gateway: Authoritative deal store (fetch_all / update_stage).
        reconcile_strategy: What to do after a failed confirmation --
            "reload" refetches the whole pipeline, "revert" restores only
            the moved deal to its last confirmed record.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        reconcile_strategy: ReconcileStrategy | str = ReconcileStrategy.reload,
    ) -> None:
        self._gateway = gateway
        self._strategy = ReconcileStrategy(reconcile_strategy)
        self._stages: dict[DealStage, list[Deal]] = _empty_partition()
        self._confirmed: dict[str, Deal] = {}
        self._pending: dict[str, list[_PendingMove]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._observers: list[PipelineObserver] = []
        self._fetch_watchers: list[dict[str, Deal | None]] = []
        self._closed = False
        self.loaded = False
        self.last_error: str | None = None

    # ── Reads ────────────────────────────────────────────────────────────────

    def get_pipeline(self) -> dict[DealStage, list[Deal]]:
        """Return a snapshot of the partition (new lists; deals are immutable)."""
        return {stage: list(self._stages[stage]) for stage in PIPELINE_STAGES}

    def get_deal(self, deal_id: str) -> Deal | None:
        """Return the cached deal, or None if the cache does not hold it."""
        for deals in self._stages.values():
            for deal in deals:
                if deal.id == deal_id:
                    return deal
        return None

    def has_pending(self, deal_id: str | None = None) -> bool:
        """Whether any move (or a move of deal_id) awaits confirmation."""
        if deal_id is None:
            return any(self._pending.values())
        return bool(self._pending.get(deal_id))

    def stats(self) -> PipelineStats:
        """Count and total monetary value per stage from the current view."""
        stats = PipelineStats()
        for stage in PIPELINE_STAGES:
            deals = self._stages[stage]
            value = sum(deal.monetary_value or 0.0 for deal in deals)
            stats.stages[stage] = StageStats(count=len(deals), value=value)
            stats.total_deals += len(deals)
            stats.total_value += value
        return stats

    # ── Observers ────────────────────────────────────────────────────────────

    def subscribe(self, observer: PipelineObserver) -> Callable[[], None]:
        """Register an observer; returns a callable that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def close(self) -> None:
        """Detach all observers.

        Confirmations still in flight finish their reconciliation work, but
        nobody is notified any more.
        """
        self._closed = True
        self._observers.clear()

    def _notify(self, event: PipelineEvent) -> None:
        if self._closed:
            return
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.warning(
                    "pipeline.observer_failed",
                    event_kind=event.kind.value,
                    exc_info=True,
                )

    # ── Load ─────────────────────────────────────────────────────────────────

    async def load(self) -> None:
        """Replace the whole partition with a fresh fetch from the gateway.

        On failure the previous state is kept untouched (stale but consistent)
        and the GatewayError propagates.

        Deals confirmed, created or deleted while the fetch is in flight keep
        their newer local record; the fetched rows for them may predate it.
        """
        newer: dict[str, Deal | None] = {}
        self._fetch_watchers.append(newer)
        start = time.perf_counter()
        try:
            deals = await self._gateway.fetch_all()
        except GatewayError as exc:
            self.last_error = str(exc)
            logger.warning("pipeline.load_failed", error=str(exc))
            self._notify(PipelineEvent(kind=PipelineEventKind.ERROR, error=str(exc)))
            raise
        finally:
            self._fetch_watchers = [w for w in self._fetch_watchers if w is not newer]
            pipeline_load_duration_seconds.observe(time.perf_counter() - start)

        self._replace(deals, newer)
        self.loaded = True
        self.last_error = None
        logger.info(
            "pipeline.loaded",
            total=sum(len(d) for d in self._stages.values()),
            pending=sum(len(p) for p in self._pending.values()),
            kept_local=len(newer),
        )
        self._notify(PipelineEvent(kind=PipelineEventKind.LOADED))

    def _replace(self, deals: list[Deal], newer: dict[str, Deal | None]) -> None:
        """Partition fetched deals, keeping in-flight moves at their optimistic stage."""
        partition = _empty_partition()
        confirmed: dict[str, Deal] = {}

        def add(deal: Deal) -> None:
            confirmed[deal.id] = deal
            pending = self._pending.get(deal.id)
            if pending:
                deal = deal.model_copy(update={"stage": pending[-1].to_stage})
            partition[deal.stage].append(deal)

        seen: set[str] = set()
        for fetched in deals:
            if fetched.id in seen:
                logger.warning("pipeline.duplicate_deal_skipped", deal_id=fetched.id)
                continue
            seen.add(fetched.id)
            deal = newer.get(fetched.id, fetched)
            if deal is not None:
                add(deal)

        # Created while the fetch was in flight and missing from its snapshot
        for deal_id, deal in newer.items():
            if deal is not None and deal_id not in seen:
                add(deal)

        self._stages = partition
        self._confirmed = confirmed

    def _note_newer(self, deal_id: str, deal: Deal | None) -> None:
        """Record a local change for every fetch currently in flight (None: deleted)."""
        for watcher in self._fetch_watchers:
            watcher[deal_id] = deal

    # ── Create / Delete ──────────────────────────────────────────────────────

    async def create_deal(self, data: DealCreate) -> Deal:
        """Persist a new deal and append it to the list for its stage.

        Raises:
            GatewayError: If the gateway rejected the deal; the cache is unchanged.
        """
        try:
            deal = await self._gateway.create_deal(data)
        except GatewayError as exc:
            self.last_error = str(exc)
            logger.warning("pipeline.create_failed", title=data.title, error=str(exc))
            raise

        self._confirmed[deal.id] = deal
        self._note_newer(deal.id, deal)
        self._place(deal)
        logger.info("pipeline.deal_created", deal_id=deal.id, stage=deal.stage.value)
        self._notify(
            PipelineEvent(kind=PipelineEventKind.CREATED, deal_id=deal.id, stage=deal.stage)
        )
        return deal

    async def delete_deal(self, deal_id: str) -> None:
        """Delete a deal remotely, then drop it from the cache.

        Raises:
            DealNotFoundError: If the cache does not hold deal_id.
            GatewayError: If the gateway failed; the deal stays cached.
        """
        if self.get_deal(deal_id) is None:
            raise DealNotFoundError(deal_id)

        try:
            await self._gateway.delete_deal(deal_id)
        except GatewayError as exc:
            self.last_error = str(exc)
            logger.warning("pipeline.delete_failed", deal_id=deal_id, error=str(exc))
            raise

        for deals in self._stages.values():
            deals[:] = [deal for deal in deals if deal.id != deal_id]
        self._confirmed.pop(deal_id, None)
        self._note_newer(deal_id, None)
        logger.info("pipeline.deal_deleted", deal_id=deal_id)
        self._notify(PipelineEvent(kind=PipelineEventKind.DELETED, deal_id=deal_id))

    # ── Move ─────────────────────────────────────────────────────────────────

    async def move_deal(self, deal_id: str, to_stage: DealStage | str) -> Deal:
        """Move a deal to another stage, optimistically, then confirm remotely.

        Returns:
            The deal as confirmed by the gateway (or the cached deal if it
            already sat in to_stage -- no remote call is made then).

        Raises:
            ValueError: If to_stage is not a pipeline stage.
            DealNotFoundError: If the cache does not hold deal_id. Nothing
                changes and the gateway is not called.
            StageUpdateError: If the gateway rejected the change. Raised only
                after the cache is consistent again.
        """
        to_stage = DealStage(to_stage)
        current = self.get_deal(deal_id)
        if current is None:
            logger.info("pipeline.move_not_found", deal_id=deal_id, to_stage=to_stage.value)
            raise DealNotFoundError(deal_id)

        if current.stage == to_stage:
            pipeline_moves_total.labels(outcome="noop").inc()
            return current

        from_stage = current.stage
        move = _PendingMove(to_stage)
        self._pending.setdefault(deal_id, []).append(move)
        self._place(current.model_copy(update={"stage": to_stage}))
        logger.debug(
            "pipeline.move_applied",
            deal_id=deal_id,
            from_stage=from_stage.value,
            to_stage=to_stage.value,
        )
        self._notify(
            PipelineEvent(kind=PipelineEventKind.MOVED, deal_id=deal_id, stage=to_stage)
        )

        lock = self._locks.get(deal_id)
        if lock is None:
            lock = self._locks[deal_id] = asyncio.Lock()

        try:
            async with lock:
                try:
                    confirmed = await self._gateway.update_stage(deal_id, to_stage)
                except Exception as exc:
                    self._finish(deal_id, move)
                    pipeline_moves_total.labels(outcome="failed").inc()
                    logger.warning(
                        "pipeline.move_failed",
                        deal_id=deal_id,
                        from_stage=from_stage.value,
                        to_stage=to_stage.value,
                        error=str(exc),
                    )
                    strategy = await self._reconcile(deal_id, exc)
                    raise StageUpdateError(
                        deal_id, to_stage.value, strategy.value, str(exc)
                    ) from exc

                self._finish(deal_id, move)
                self._apply_confirmed(confirmed)
        except asyncio.CancelledError:
            # Abandoned before confirmation: fall back to the last server record
            self._finish(deal_id, move)
            pipeline_moves_total.labels(outcome="cancelled").inc()
            logger.warning(
                "pipeline.move_cancelled",
                deal_id=deal_id,
                from_stage=from_stage.value,
                to_stage=to_stage.value,
            )
            self._revert(deal_id)
            self._notify(
                PipelineEvent(kind=PipelineEventKind.RECONCILED, deal_id=deal_id)
            )
            raise
        finally:
            self._finish(deal_id, move)
            if not self._pending.get(deal_id):
                self._pending.pop(deal_id, None)
                self._locks.pop(deal_id, None)

        pipeline_moves_total.labels(outcome="confirmed").inc()
        self.last_error = None
        logger.info(
            "pipeline.move_confirmed",
            deal_id=deal_id,
            from_stage=from_stage.value,
            to_stage=confirmed.stage.value,
        )
        self._notify(
            PipelineEvent(
                kind=PipelineEventKind.CONFIRMED, deal_id=deal_id, stage=confirmed.stage
            )
        )
        return confirmed

    def _finish(self, deal_id: str, move: _PendingMove) -> None:
        pending = self._pending.get(deal_id)
        if pending and move in pending:
            pending.remove(move)

    def _place(self, deal: Deal) -> None:
        """Put deal in the list for its stage, removing it from wherever it was.

        A deal already in the right list is replaced where it stands.
        """
        for stage, deals in self._stages.items():
            for index, existing in enumerate(deals):
                if existing.id != deal.id:
                    continue
                if stage == deal.stage:
                    deals[index] = deal
                    return
                del deals[index]
                break
        self._stages[deal.stage].append(deal)

    def _apply_confirmed(self, deal: Deal) -> None:
        """Adopt the canonical record unless a later move of the deal is in flight."""
        if self.get_deal(deal.id) is None:
            # Deleted while the confirmation was in flight
            return
        self._confirmed[deal.id] = deal
        self._note_newer(deal.id, deal)
        if not self._pending.get(deal.id):
            self._place(deal)

    # ── Reconciliation ───────────────────────────────────────────────────────

    async def _reconcile(self, deal_id: str, exc: Exception) -> ReconcileStrategy:
        """Bring the cache back in line with the server after a failed move."""
        applied = self._strategy
        if applied == ReconcileStrategy.reload:
            try:
                await self.load()
            except GatewayError:
                logger.warning("pipeline.reload_failed_reverting", deal_id=deal_id)
                applied = ReconcileStrategy.revert

        if applied == ReconcileStrategy.revert:
            self._revert(deal_id)

        pipeline_reconciliations_total.labels(strategy=applied.value).inc()
        self.last_error = f"Failed to update deal stage: {exc}"
        logger.info("pipeline.reconciled", deal_id=deal_id, strategy=applied.value)
        self._notify(
            PipelineEvent(
                kind=PipelineEventKind.RECONCILED,
                deal_id=deal_id,
                error=self.last_error,
            )
        )
        return applied

    def _revert(self, deal_id: str) -> None:
        """Restore a deal to its last confirmed record.

        While another move of the same deal is pending, the deal is shown at
        the latest pending stage instead; that move's own confirmation
        decides the deal's final place.
        """
        pending = self._pending.get(deal_id)
        if pending:
            current = self.get_deal(deal_id)
            if current is not None:
                self._place(current.model_copy(update={"stage": pending[-1].to_stage}))
            return
        confirmed = self._confirmed.get(deal_id)
        if confirmed is None:
            logger.warning("pipeline.revert_without_record", deal_id=deal_id)
            return
        self._place(confirmed)
