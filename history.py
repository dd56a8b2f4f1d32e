"""
Sync history and drift snapshot persistence.

Every sync response is written to disk, giving an incremental backup trail:

    <data_dir>/sync-history/<budget_id>/
        20260125T143022123456Z-full.json
        20260125T153022654321Z-delta.json

When drift is detected, the artifacts needed to reproduce it are saved under
<data_dir>/drift-snapshots/<timestamp>_<budget_id>/.
"""

import json
import logging
import re
import shutil
import time
from datetime import UTC, datetime
from pathlib import Path

import ynab
from pydantic import BaseModel, Field

from drift import DriftResult
from replica import ENTITY_COLLECTIONS, LocalReplica

logger = logging.getLogger(__name__)

_SAFE_BUDGET_ID = re.compile(r"^[A-Za-z0-9-]+$")

REPLICA_CONTENT_FIELDS = {
    "budget_id",
    "budget_name",
    "server_knowledge",
    "last_synced_at",
    "needs_sync",
    "currency_format",
    "months",
    *ENTITY_COLLECTIONS,
}


def is_valid_budget_id_for_path(budget_id: str) -> bool:
    """YNAB budget ids are UUIDs; anything else could escape the history dir."""
    return bool(_SAFE_BUDGET_ID.match(budget_id))


def _timestamp(now: datetime) -> str:
    return now.strftime("%Y%m%dT%H%M%S%fZ")


class SyncHistoryEntry(BaseModel):
    """One persisted sync response."""

    synced_at: datetime
    sync_type: str = Field(..., description="'full' or 'delta'")
    server_knowledge: int
    previous_server_knowledge: int | None = Field(
        None, description="Knowledge the delta was requested from (None for full)"
    )
    budget: ynab.BudgetDetail


class ClearSyncHistoryResult(BaseModel):
    budgets_cleared: list[str] = Field(default_factory=list)
    files_deleted: int = 0
    errors: list[str] = Field(default_factory=list)


class DriftSnapshot(BaseModel):
    """Everything needed to replay a drift occurrence offline."""

    budget_id: str
    previous_server_knowledge: int
    delta_response: ynab.BudgetDetail
    merged_replica: LocalReplica
    full_response: ynab.BudgetDetail
    truth_server_knowledge: int
    drift_result: DriftResult


class DriftSampler:
    """Keeps 1 in `rate` drift occurrences."""

    def __init__(self, rate: int = 1):
        self.rate = max(rate, 1)
        self.occurrences = 0

    def should_sample(self) -> bool:
        self.occurrences += 1
        return self.occurrences % self.rate == 0

    def reset(self) -> None:
        self.occurrences = 0


class SyncHistory:
    """Writes sync responses and drift snapshots below `base_dir`."""

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir

    @property
    def history_dir(self) -> Path:
        return self.base_dir / "sync-history"

    @property
    def snapshots_dir(self) -> Path:
        return self.base_dir / "drift-snapshots"

    def budget_dir(self, budget_id: str) -> Path:
        if not is_valid_budget_id_for_path(budget_id):
            raise ValueError(
                f"Invalid budget id for file path: {budget_id!r}. Budget ids must "
                "contain only alphanumeric characters and hyphens."
            )
        return self.history_dir / budget_id

    def persist(
        self,
        budget_id: str,
        sync_type: str,
        budget: ynab.BudgetDetail,
        server_knowledge: int,
        previous_server_knowledge: int | None,
    ) -> Path | None:
        """Write one sync response to disk.

        Never raises: history is a safety net, so a failed write is logged and
        the sync carries on. Returns the written path, or None on failure.
        """
        start = time.perf_counter()
        now = datetime.now(UTC)

        try:
            directory = self.budget_dir(budget_id)
            directory.mkdir(parents=True, exist_ok=True)

            entry = SyncHistoryEntry(
                synced_at=now,
                sync_type=str(sync_type),
                server_knowledge=server_knowledge,
                previous_server_knowledge=previous_server_knowledge,
                budget=budget,
            )
            file_path = directory / f"{_timestamp(now)}-{sync_type}.json"
            file_path.write_text(
                entry.model_dump_json(indent=2, by_alias=True), encoding="utf-8"
            )
        except Exception as e:
            duration_ms = round((time.perf_counter() - start) * 1000)
            logger.warning(
                f"Failed to persist {sync_type} sync history for {budget_id} "
                f"after {duration_ms}ms (continuing with sync): {e}"
            )
            return None

        duration_ms = round((time.perf_counter() - start) * 1000)
        logger.debug(
            f"Sync history persisted for {budget_id} to {file_path} "
            f"(server_knowledge={server_knowledge}, {duration_ms}ms)"
        )
        return file_path

    def clear(self, budget_id: str | None = None) -> ClearSyncHistoryResult:
        """Delete sync history for one budget, or for every budget."""
        result = ClearSyncHistoryResult()

        if budget_id is not None:
            budget_dirs = [self.budget_dir(budget_id)]
        elif self.history_dir.exists():
            budget_dirs = sorted(p for p in self.history_dir.iterdir() if p.is_dir())
        else:
            logger.info("No sync history directory exists")
            return result

        for directory in budget_dirs:
            if not directory.exists():
                logger.info(f"No sync history to clear for budget {directory.name}")
                continue
            try:
                file_count = sum(1 for p in directory.iterdir() if p.is_file())
                shutil.rmtree(directory)
            except OSError as e:
                result.errors.append(f"Failed to clear {directory.name}: {e}")
                continue
            result.files_deleted += file_count
            result.budgets_cleared.append(directory.name)

        logger.info(
            f"Cleared sync history for {len(result.budgets_cleared)} budget(s), "
            f"{result.files_deleted} file(s) deleted"
        )
        return result

    def save_drift_snapshot(self, snapshot: DriftSnapshot) -> Path:
        """Save drift artifacts into a new timestamped directory."""
        now = datetime.now(UTC)
        snapshot_dir = self.snapshots_dir / f"{_timestamp(now)}_{snapshot.budget_id}"

        try:
            snapshot_dir.mkdir(parents=True, exist_ok=True)

            summary = {
                "budget_id": snapshot.budget_id,
                "saved_at": now.isoformat(),
                "difference_count": snapshot.drift_result.difference_count,
                "difference_summary": snapshot.drift_result.difference_summary,
                "server_knowledge": {
                    "previous": snapshot.previous_server_knowledge,
                    "after_delta": snapshot.merged_replica.server_knowledge,
                    "after_full": snapshot.truth_server_knowledge,
                },
                "server_knowledge_mismatch": (
                    snapshot.drift_result.server_knowledge_mismatch
                ),
            }
            artifacts = {
                "summary.json": json.dumps(summary, indent=2),
                "delta-response.json": snapshot.delta_response.model_dump_json(
                    indent=2, by_alias=True
                ),
                "merged-replica.json": snapshot.merged_replica.model_dump_json(
                    indent=2, by_alias=True, include=REPLICA_CONTENT_FIELDS
                ),
                "full-response.json": snapshot.full_response.model_dump_json(
                    indent=2, by_alias=True
                ),
                "differences.json": snapshot.drift_result.model_dump_json(
                    indent=2, include={"differences"}
                ),
            }
            for filename, content in artifacts.items():
                (snapshot_dir / filename).write_text(content, encoding="utf-8")
        except Exception:
            logger.exception(f"Failed to save drift snapshot to {snapshot_dir}")
            raise

        logger.info(
            f"Drift snapshot saved for later analysis: {snapshot_dir} "
            f"({snapshot.drift_result.difference_count} differences)"
        )
        return snapshot_dir
