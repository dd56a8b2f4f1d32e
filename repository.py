"""
YNAB Repository with differential sync.

Provides local-first access to YNAB budgets: each budget is held as a
LocalReplica, refreshed with full or delta syncs as the sync policy decides,
and periodically checked for drift against a fresh full fetch.
"""

import asyncio
import logging
import time
from collections.abc import Coroutine
from typing import Any

from pydantic import BaseModel, Field

from config import SyncSettings
from drift import DriftCheckScheduler, DriftResult, compare_replicas, log_drift_result
from history import DriftSampler, DriftSnapshot, SyncHistory
from merge import merge_delta
from policy import ForceSync, SyncType, decide_sync_type
from providers import SyncProvider, SyncResponse
from replica import LocalReplica, ReplicaStore, build_replica

logger = logging.getLogger(__name__)


class SyncTiming(BaseModel):
    api_ms: float = 0.0
    merge_ms: float = 0.0
    drift_check_ms: float = 0.0
    total_ms: float = 0.0


class SyncResult(BaseModel):
    """Outcome of one sync request."""

    replica: LocalReplica
    sync_type: SyncType
    changes_received: dict[str, int] | None = Field(
        None, description="Records received per collection (delta syncs only)"
    )
    timing: SyncTiming = Field(default_factory=SyncTiming)
    drift: DriftResult | None = Field(
        None, description="Drift check result, when one ran"
    )
    self_healed: bool = False


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


class YNABRepository:
    """Local replicas of YNAB budgets kept in sync with the server.

    This is the only writer of the replica store. Audit history writes and
    drift snapshots run as background tasks whose failures only show up in
    the logs; `wait_for_background_tasks` joins them.
    """

    def __init__(
        self,
        provider: SyncProvider,
        settings: SyncSettings | None = None,
        *,
        store: ReplicaStore | None = None,
        history: SyncHistory | None = None,
        scheduler: DriftCheckScheduler | None = None,
    ):
        self.provider = provider
        self.settings = settings or SyncSettings()
        self.store = store if store is not None else ReplicaStore()
        self.history = history
        self.scheduler = scheduler or DriftCheckScheduler.from_settings(self.settings)
        self.drift_sampler = DriftSampler(self.settings.drift_sample_rate)
        self._background_tasks: set[asyncio.Task[Any]] = set()

    async def get_replica(
        self, budget_id: str, force_sync: ForceSync | None = None
    ) -> LocalReplica:
        """Get a budget's replica, syncing first if the policy calls for it."""
        result = await self.sync(budget_id, force_sync)
        return result.replica

    async def sync(
        self, budget_id: str, force_sync: ForceSync | None = None
    ) -> SyncResult:
        """Bring a budget's replica up to date.

        Transport errors from the sync fetch propagate and leave any existing
        replica untouched.
        """
        async with self.store.lock(budget_id):
            existing = self.store.get(budget_id)
            sync_type = decide_sync_type(existing, force_sync, self.settings)

            if existing is None or sync_type is SyncType.FULL:
                logger.info(f"Performing full sync for budget {budget_id}")
                return await self._full_sync(budget_id, existing)

            if sync_type is SyncType.NONE:
                return SyncResult(replica=existing, sync_type=SyncType.NONE)

            logger.info(
                f"Performing delta sync for budget {budget_id} "
                f"since server_knowledge={existing.server_knowledge}"
            )
            return await self._delta_sync(budget_id, existing)

    async def mark_dirty(self, budget_id: str) -> None:
        """Flag a budget's replica for a delta sync on its next read.

        Call after any write to the budget through the API.
        """
        async with self.store.lock(budget_id):
            existing = self.store.get(budget_id)
            if existing is None:
                return
            self.store.put(existing.model_copy(update={"needs_sync": True}))

    async def clear(self, budget_id: str | None = None) -> list[str]:
        """Evict one replica (or all of them); returns the evicted budget ids.

        Each budget is evicted under its lock, so a sync in flight finishes
        publishing before its replica is dropped.
        """
        if budget_id is None:
            budget_ids = dict.fromkeys(
                [*self.store.budget_ids(), *self.store.locked_budget_ids()]
            )
        else:
            budget_ids = dict.fromkeys([budget_id])

        evicted: list[str] = []
        for held_id in budget_ids:
            async with self.store.lock(held_id):
                if self.store.pop(held_id) is not None:
                    evicted.append(held_id)
        self.scheduler.reset_state(budget_id)

        logger.info(f"Cleared local replicas: {evicted or 'none'}")
        return evicted

    def is_initialized(self, budget_id: str) -> bool:
        return budget_id in self.store

    async def wait_for_background_tasks(self) -> None:
        """Wait for outstanding history writes and drift snapshots."""
        while self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    async def _full_sync(
        self, budget_id: str, existing: LocalReplica | None
    ) -> SyncResult:
        start = time.perf_counter()

        response = await self.provider.full_sync(budget_id)
        api_ms = _elapsed_ms(start)

        merge_start = time.perf_counter()
        replica = build_replica(budget_id, response.budget, response.server_knowledge)
        merge_ms = _elapsed_ms(merge_start)

        self.store.put(replica)
        self._persist(budget_id, SyncType.FULL, response, None)

        previous = existing.server_knowledge if existing is not None else None
        logger.info(
            f"Full sync complete for budget {budget_id}: server_knowledge "
            f"{previous} -> {response.server_knowledge}"
        )
        return SyncResult(
            replica=replica,
            sync_type=SyncType.FULL,
            timing=SyncTiming(
                api_ms=api_ms, merge_ms=merge_ms, total_ms=_elapsed_ms(start)
            ),
        )

    async def _delta_sync(self, budget_id: str, existing: LocalReplica) -> SyncResult:
        start = time.perf_counter()
        previous_knowledge = existing.server_knowledge

        response = await self.provider.delta_sync(budget_id, previous_knowledge)
        api_ms = _elapsed_ms(start)

        if response.server_knowledge < previous_knowledge:
            logger.warning(
                f"Delta for budget {budget_id} went backwards "
                f"(server_knowledge {response.server_knowledge} < "
                f"{previous_knowledge}); discarding it and doing a full sync"
            )
            return await self._full_sync(budget_id, existing)

        merge_start = time.perf_counter()
        merge_result = merge_delta(existing, response.budget, response.server_knowledge)
        merge_ms = _elapsed_ms(merge_start)
        merged = merge_result.replica

        self.store.put(merged)
        self._persist(budget_id, SyncType.DELTA, response, previous_knowledge)

        logger.info(
            f"Delta sync complete for budget {budget_id}: server_knowledge "
            f"{previous_knowledge} -> {response.server_knowledge}, "
            f"changes={merge_result.changes_received}"
        )

        result = SyncResult(
            replica=merged,
            sync_type=SyncType.DELTA,
            changes_received=merge_result.changes_received,
            timing=SyncTiming(api_ms=api_ms, merge_ms=merge_ms),
        )

        if self.settings.drift_detection and self.scheduler.should_check_now(budget_id):
            drift_start = time.perf_counter()
            await self._check_drift(budget_id, response, previous_knowledge, result)
            result.timing.drift_check_ms = _elapsed_ms(drift_start)

        result.timing.total_ms = _elapsed_ms(start)
        return result

    async def _check_drift(
        self,
        budget_id: str,
        delta_response: SyncResponse,
        previous_knowledge: int,
        result: SyncResult,
    ) -> None:
        """Compare the merged replica against a full fetch, self-healing on drift.

        A failed full fetch is logged and the merged replica stays; the check
        is then due again on the next delta sync.
        """
        merged = result.replica

        try:
            truth_response = await self.provider.full_sync(budget_id)
        except Exception:
            logger.exception(
                f"Drift check for budget {budget_id} failed to fetch the full "
                "budget; keeping the delta-merged replica"
            )
            self.scheduler.record_check_failed(budget_id)
            return

        self.scheduler.record_check_performed(budget_id)
        truth = build_replica(
            budget_id, truth_response.budget, truth_response.server_knowledge
        )
        drift = compare_replicas(merged, truth)
        log_drift_result(drift, budget_id)
        result.drift = drift

        if not drift.has_drift:
            return

        logger.info(
            f"Self-healing budget {budget_id}: replacing local replica with the "
            "full fetch result"
        )
        self.store.put(truth)
        self._persist(budget_id, SyncType.FULL, truth_response, merged.server_knowledge)
        result.replica = truth
        result.self_healed = True

        if self.history is not None and self.drift_sampler.should_sample():
            snapshot = DriftSnapshot(
                budget_id=budget_id,
                previous_server_knowledge=previous_knowledge,
                delta_response=delta_response.budget,
                merged_replica=merged,
                full_response=truth_response.budget,
                truth_server_knowledge=truth_response.server_knowledge,
                drift_result=drift,
            )
            self._spawn(
                asyncio.to_thread(self.history.save_drift_snapshot, snapshot),
                f"drift snapshot for {budget_id}",
            )

    def _persist(
        self,
        budget_id: str,
        sync_type: SyncType,
        response: SyncResponse,
        previous_knowledge: int | None,
    ) -> None:
        if self.history is None:
            return
        self._spawn(
            asyncio.to_thread(
                self.history.persist,
                budget_id,
                sync_type,
                response.budget,
                response.server_knowledge,
                previous_knowledge,
            ),
            f"{sync_type} sync history for {budget_id}",
        )

    def _spawn(self, coroutine: Coroutine[Any, Any, Any], description: str) -> None:
        """Run a best-effort task without waiting for it."""
        task = asyncio.create_task(coroutine)
        self._background_tasks.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._background_tasks.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                logger.error(f"Background task failed ({description}): {error}")

        task.add_done_callback(_done)
