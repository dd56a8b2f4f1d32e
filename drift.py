"""
Drift detection for the local replica.

Compares a replica built from base + delta merges against a replica built
from an independent full fetch. Any structural difference means the merge
logic produced the wrong result; the repository then self-heals by replacing
the merged replica with the full fetch.
"""

import logging
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from config import SyncSettings
from replica import ENTITY_COLLECTIONS, LocalReplica

logger = logging.getLogger(__name__)

MAX_DIFFERENCES_TO_LOG = 5

# Fields that identify a record within its collection, in order of preference
NATURAL_KEYS = ("id", "month")

# Collections compared for drift; indices, sync metadata and server_knowledge
# are not part of a replica's content
COMPARED_COLLECTIONS = (*ENTITY_COLLECTIONS, "months")


class DifferenceKind(StrEnum):
    MISSING = "missing"  # present in truth only
    EXTRA = "extra"  # present in merged only
    CHANGED = "changed"  # value differs
    ARRAY = "array"  # positional list item added/removed


class Difference(BaseModel):
    """One structural difference between the merged and the truth replica."""

    kind: DifferenceKind
    path: list[str | int]
    merged: Any = None
    truth: Any = None
    index: int | None = Field(None, description="List position for ARRAY changes")

    def format_path(self) -> str:
        if not self.path:
            return "(root)"
        return ".".join(str(part) for part in self.path)


class DriftResult(BaseModel):
    """Result of comparing a merged replica against the truth."""

    has_drift: bool
    difference_count: int
    difference_summary: dict[str, int]
    differences: list[Difference]
    server_knowledge_mismatch: bool = Field(
        ...,
        description="Tokens differ; external writes between the two fetches "
        "can explain differences, so this is informational only",
    )
    merged_server_knowledge: int
    truth_server_knowledge: int


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    return value


def _sort_key(record: dict[str, Any]) -> str:
    for key in NATURAL_KEYS:
        if record.get(key) is not None:
            return str(record[key])
    return ""


def _normalize_collection(records: list[Any]) -> list[Any]:
    dumped = [_dump(record) for record in records]
    for record in dumped:
        if isinstance(record, dict) and isinstance(record.get("categories"), list):
            record["categories"] = sorted(record["categories"], key=_sort_key)
    return sorted(dumped, key=_sort_key)


def normalize_replica(replica: LocalReplica) -> dict[str, Any]:
    """Convert a replica into plain, order-independent data for comparison.

    Delta and full responses don't promise the same element order, so every
    collection (and each month's categories) is sorted by its natural key.
    """
    normalized: dict[str, Any] = {
        "budget_id": replica.budget_id,
        "budget_name": replica.budget_name,
        "currency_format": _dump(replica.currency_format),
    }
    for name in COMPARED_COLLECTIONS:
        normalized[name] = _normalize_collection(getattr(replica, name))
    return normalized


def _list_key(items: list[Any]) -> str | None:
    """The natural key shared by every item in `items`, if there is one."""
    if not items or not all(isinstance(item, dict) for item in items):
        return None
    for key in NATURAL_KEYS:
        values = [item.get(key) for item in items]
        if all(value is not None for value in values):
            return key
    return None


def _diff_keyed(
    merged: list[dict[str, Any]],
    truth: list[dict[str, Any]],
    key: str,
    path: list[str | int],
) -> list[Difference] | None:
    merged_by_key = {str(item[key]): item for item in merged}
    truth_by_key = {str(item[key]): item for item in truth}
    if len(merged_by_key) != len(merged) or len(truth_by_key) != len(truth):
        # Duplicate keys can't be compared by key
        return None

    differences: list[Difference] = []
    for item_key in sorted(merged_by_key.keys() | truth_by_key.keys()):
        item_path = [*path, item_key]
        if item_key not in truth_by_key:
            differences.append(
                Difference(
                    kind=DifferenceKind.EXTRA,
                    path=item_path,
                    merged=merged_by_key[item_key],
                )
            )
        elif item_key not in merged_by_key:
            differences.append(
                Difference(
                    kind=DifferenceKind.MISSING,
                    path=item_path,
                    truth=truth_by_key[item_key],
                )
            )
        else:
            differences.extend(
                diff_structures(
                    merged_by_key[item_key], truth_by_key[item_key], item_path
                )
            )
    return differences


def _diff_positional(
    merged: list[Any], truth: list[Any], path: list[str | int]
) -> list[Difference]:
    differences: list[Difference] = []
    for index in range(min(len(merged), len(truth))):
        differences.extend(diff_structures(merged[index], truth[index], [*path, index]))
    for index in range(len(truth), len(merged)):
        differences.append(
            Difference(
                kind=DifferenceKind.ARRAY, path=path, index=index, merged=merged[index]
            )
        )
    for index in range(len(merged), len(truth)):
        differences.append(
            Difference(
                kind=DifferenceKind.ARRAY, path=path, index=index, truth=truth[index]
            )
        )
    return differences


def diff_structures(
    merged: Any, truth: Any, path: list[str | int] | None = None
) -> list[Difference]:
    """Deep-compare two plain structures (dicts, lists, scalars).

    Lists of records that all carry a natural key are compared by that key;
    other lists are compared position by position.
    """
    path = path or []

    if isinstance(merged, dict) and isinstance(truth, dict):
        differences: list[Difference] = []
        for key in sorted(merged.keys() | truth.keys(), key=str):
            if key not in truth:
                differences.append(
                    Difference(
                        kind=DifferenceKind.EXTRA, path=[*path, key], merged=merged[key]
                    )
                )
            elif key not in merged:
                differences.append(
                    Difference(
                        kind=DifferenceKind.MISSING, path=[*path, key], truth=truth[key]
                    )
                )
            else:
                differences.extend(
                    diff_structures(merged[key], truth[key], [*path, key])
                )
        return differences

    if isinstance(merged, list) and isinstance(truth, list):
        key = _list_key(merged + truth)
        if key is not None:
            keyed = _diff_keyed(merged, truth, key, path)
            if keyed is not None:
                return keyed
        return _diff_positional(merged, truth, path)

    if type(merged) is not type(truth) or merged != truth:
        return [
            Difference(
                kind=DifferenceKind.CHANGED, path=path, merged=merged, truth=truth
            )
        ]
    return []


def summarize_differences(differences: list[Difference]) -> dict[str, int]:
    """Count differences per top-level replica field."""
    summary: dict[str, int] = {}
    for difference in differences:
        category = str(difference.path[0]) if difference.path else "unknown"
        summary[category] = summary.get(category, 0) + 1
    return summary


def compare_replicas(merged: LocalReplica, truth: LocalReplica) -> DriftResult:
    """Compare a merged replica against one built from a fresh full fetch."""
    differences = diff_structures(normalize_replica(merged), normalize_replica(truth))

    return DriftResult(
        has_drift=len(differences) > 0,
        difference_count=len(differences),
        difference_summary=summarize_differences(differences),
        differences=differences,
        server_knowledge_mismatch=merged.server_knowledge != truth.server_knowledge,
        merged_server_knowledge=merged.server_knowledge,
        truth_server_knowledge=truth.server_knowledge,
    )


def log_drift_result(result: DriftResult, budget_id: str) -> None:
    """Log a drift check outcome, detailing the first few differences."""
    if result.server_knowledge_mismatch:
        logger.warning(
            f"Server knowledge mismatch during drift check for {budget_id}: "
            f"merged={result.merged_server_knowledge}, "
            f"truth={result.truth_server_knowledge}. External changes likely "
            "occurred between queries; differences may be expected."
        )

    if not result.has_drift:
        logger.info(f"Drift check passed for {budget_id} - merge logic validated")
        return

    logger.error(
        f"DRIFT DETECTED for {budget_id}: {result.difference_count} differences "
        f"{result.difference_summary}"
    )

    for number, difference in enumerate(
        result.differences[:MAX_DIFFERENCES_TO_LOG], start=1
    ):
        path = difference.format_path()
        match difference.kind:
            case DifferenceKind.MISSING:
                logger.error(f"  [{number}] MISSING: {path} truth={difference.truth!r}")
            case DifferenceKind.EXTRA:
                logger.error(f"  [{number}] EXTRA: {path} merged={difference.merged!r}")
            case DifferenceKind.CHANGED:
                logger.error(
                    f"  [{number}] DIFFERS: {path} "
                    f"merged={difference.merged!r} truth={difference.truth!r}"
                )
            case DifferenceKind.ARRAY:
                item = (
                    difference.truth
                    if difference.truth is not None
                    else difference.merged
                )
                logger.error(
                    f"  [{number}] ARRAY CHANGE: {path}[{difference.index}] {item!r}"
                )

    remaining = result.difference_count - MAX_DIFFERENCES_TO_LOG
    if remaining > 0:
        logger.error(f"  ... and {remaining} more differences")


class SyncCheckState(BaseModel):
    """Drift-check bookkeeping for one budget."""

    evaluations: int = 0
    last_checked_at: datetime | None = None
    retry_pending: bool = False


class DriftCheckScheduler:
    """Decides how often drift checks run, independently per budget.

    A check is due on every Nth evaluation, or once `interval_minutes` have
    passed since the last recorded check (when that interval is enabled).
    A check whose full fetch failed is due again on the next evaluation.
    """

    def __init__(self, interval_syncs: int = 1, interval_minutes: int = 0):
        self.interval_syncs = max(interval_syncs, 1)
        self.interval_minutes = max(interval_minutes, 0)
        self._states: dict[str, SyncCheckState] = {}

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "DriftCheckScheduler":
        return cls(
            interval_syncs=settings.drift_check_interval_syncs,
            interval_minutes=settings.drift_check_interval_minutes,
        )

    def state(self, budget_id: str) -> SyncCheckState | None:
        return self._states.get(budget_id)

    def should_check_now(self, budget_id: str, now: datetime | None = None) -> bool:
        """Count one evaluation for `budget_id` and report whether a check is due."""
        state = self._states.setdefault(budget_id, SyncCheckState())
        state.evaluations += 1

        if state.retry_pending or state.evaluations % self.interval_syncs == 0:
            return True

        if self.interval_minutes > 0 and state.last_checked_at is not None:
            elapsed = (now or datetime.now(UTC)) - state.last_checked_at
            if elapsed.total_seconds() / 60 >= self.interval_minutes:
                return True

        return False

    def record_check_performed(
        self, budget_id: str, now: datetime | None = None
    ) -> None:
        state = self._states.setdefault(budget_id, SyncCheckState())
        state.last_checked_at = now or datetime.now(UTC)
        state.retry_pending = False

    def record_check_failed(self, budget_id: str) -> None:
        """Make the next evaluation due, whatever the intervals say."""
        self._states.setdefault(budget_id, SyncCheckState()).retry_pending = True

    def reset_state(self, budget_id: str | None = None) -> None:
        """Forget drift-check state for one budget, or for all of them."""
        if budget_id is None:
            self._states.clear()
        else:
            self._states.pop(budget_id, None)
