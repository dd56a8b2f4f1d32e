"""
Local replica of a YNAB budget.

A LocalReplica is not a cache of individual API responses; it is a local copy
of the whole budget kept in step with the server through server_knowledge.
The lookup indices are derived views: they are only ever produced by
rebuild_indices and never edited in place.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from typing import Any, TypeVar

import ynab
from pydantic import BaseModel, Field

T = TypeVar("T")

logger = logging.getLogger(__name__)

# Id-keyed collections; names match both LocalReplica and ynab.BudgetDetail.
# `months` is handled separately since it's keyed by its month date.
ENTITY_COLLECTIONS = (
    "accounts",
    "categories",
    "category_groups",
    "payees",
    "payee_locations",
    "scheduled_transactions",
    "scheduled_subtransactions",
    "subtransactions",
    "transactions",
)


class LocalReplica(BaseModel):
    """Client-side snapshot of one budget as of `server_knowledge`."""

    budget_id: str
    budget_name: str
    server_knowledge: int
    last_synced_at: datetime
    needs_sync: bool = False
    currency_format: ynab.CurrencyFormat | None = None

    accounts: list[ynab.Account] = Field(default_factory=list)
    categories: list[ynab.Category] = Field(default_factory=list)
    category_groups: list[ynab.CategoryGroup] = Field(default_factory=list)
    months: list[ynab.MonthDetail] = Field(default_factory=list)
    payees: list[ynab.Payee] = Field(default_factory=list)
    payee_locations: list[ynab.PayeeLocation] = Field(default_factory=list)
    scheduled_transactions: list[ynab.ScheduledTransactionSummary] = Field(
        default_factory=list
    )
    scheduled_subtransactions: list[ynab.ScheduledSubTransaction] = Field(
        default_factory=list
    )
    subtransactions: list[ynab.SubTransaction] = Field(default_factory=list)
    transactions: list[ynab.TransactionSummary] = Field(default_factory=list)

    # Derived lookup indices (rebuilt after every collection change)
    account_by_id: dict[str, ynab.Account] = Field(default_factory=dict)
    account_by_name: dict[str, ynab.Account] = Field(default_factory=dict)
    category_by_id: dict[str, ynab.Category] = Field(default_factory=dict)
    category_by_name: dict[str, ynab.Category] = Field(default_factory=dict)
    category_group_by_id: dict[str, ynab.CategoryGroup] = Field(default_factory=dict)
    category_group_name_by_id: dict[str, str] = Field(default_factory=dict)
    payee_by_id: dict[str, ynab.Payee] = Field(default_factory=dict)
    payee_by_name: dict[str, ynab.Payee] = Field(default_factory=dict)
    transaction_by_id: dict[str, ynab.TransactionSummary] = Field(
        default_factory=dict
    )
    scheduled_transaction_by_id: dict[str, ynab.ScheduledTransactionSummary] = Field(
        default_factory=dict
    )
    month_by_key: dict[date, ynab.MonthDetail] = Field(default_factory=dict)
    subtransactions_by_transaction_id: dict[str, list[ynab.SubTransaction]] = Field(
        default_factory=dict
    )
    scheduled_subtransactions_by_scheduled_transaction_id: dict[
        str, list[ynab.ScheduledSubTransaction]
    ] = Field(default_factory=dict)


def _index_by_id(records: Iterable[T]) -> dict[str, T]:
    return {record.id: record for record in records}  # type: ignore[attr-defined]


def _index_by_name(kind: str, records: Iterable[T]) -> dict[str, T]:
    """Index by lowercased name; on collisions the last record wins."""
    index: dict[str, T] = {}
    for record in records:
        key = record.name.lower()  # type: ignore[attr-defined]
        if key in index:
            logger.debug(f"Duplicate {kind} name {key!r}; keeping the later record")
        index[key] = record
    return index


def _group_by_parent(records: Iterable[T], parent_attr: str) -> dict[str, list[T]]:
    grouped: dict[str, list[T]] = {}
    for record in records:
        parent_id = getattr(record, parent_attr, None)
        if parent_id is None:
            # Malformed upstream data - nothing to attach it to
            continue
        grouped.setdefault(parent_id, []).append(record)
    return grouped


def rebuild_indices(replica: LocalReplica) -> LocalReplica:
    """Return a copy of `replica` with every lookup index rebuilt from scratch."""
    indices: dict[str, Any] = {
        "account_by_id": _index_by_id(replica.accounts),
        "account_by_name": _index_by_name("account", replica.accounts),
        "category_by_id": _index_by_id(replica.categories),
        "category_by_name": _index_by_name("category", replica.categories),
        "category_group_by_id": _index_by_id(replica.category_groups),
        "category_group_name_by_id": {
            group.id: group.name for group in replica.category_groups
        },
        "payee_by_id": _index_by_id(replica.payees),
        "payee_by_name": _index_by_name("payee", replica.payees),
        "transaction_by_id": _index_by_id(replica.transactions),
        "scheduled_transaction_by_id": _index_by_id(replica.scheduled_transactions),
        "month_by_key": {month.month: month for month in replica.months},
        "subtransactions_by_transaction_id": _group_by_parent(
            replica.subtransactions, "transaction_id"
        ),
        "scheduled_subtransactions_by_scheduled_transaction_id": _group_by_parent(
            replica.scheduled_subtransactions, "scheduled_transaction_id"
        ),
    }
    return replica.model_copy(update=indices)


def build_replica(
    budget_id: str,
    budget: ynab.BudgetDetail,
    server_knowledge: int,
    *,
    now: datetime | None = None,
) -> LocalReplica:
    """Build a replica from a full budget response."""
    collections = {
        name: getattr(budget, name, None) or []
        for name in (*ENTITY_COLLECTIONS, "months")
    }
    replica = LocalReplica(
        budget_id=budget_id,
        budget_name=budget.name,
        server_knowledge=server_knowledge,
        last_synced_at=now or datetime.now(UTC),
        needs_sync=False,
        currency_format=budget.currency_format,
        **collections,
    )
    return rebuild_indices(replica)


class ReplicaStore:
    """Replicas keyed by budget id, with one lock per budget.

    Writers hold the budget's lock for the whole fetch/merge/publish cycle so
    two syncs of the same budget can't overwrite each other's result.
    """

    def __init__(self) -> None:
        self._replicas: dict[str, LocalReplica] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, budget_id: str) -> AsyncIterator[None]:
        """Hold the budget's lock for the duration of the block.

        A budget's lock exists only while some task holds or waits on it.
        """
        if budget_id not in self._locks:
            self._locks[budget_id] = asyncio.Lock()
            self._lock_users[budget_id] = 0
        budget_lock = self._locks[budget_id]
        self._lock_users[budget_id] += 1
        try:
            async with budget_lock:
                yield
        finally:
            self._lock_users[budget_id] -= 1
            if self._lock_users[budget_id] == 0:
                del self._locks[budget_id]
                del self._lock_users[budget_id]

    def is_locked(self, budget_id: str) -> bool:
        budget_lock = self._locks.get(budget_id)
        return budget_lock is not None and budget_lock.locked()

    def locked_budget_ids(self) -> list[str]:
        """Budgets some task currently holds or waits on the lock for."""
        return list(self._locks)

    def get(self, budget_id: str) -> LocalReplica | None:
        return self._replicas.get(budget_id)

    def put(self, replica: LocalReplica) -> None:
        """Publish a fully built replica, replacing any previous one."""
        self._replicas[replica.budget_id] = replica

    def pop(self, budget_id: str) -> LocalReplica | None:
        return self._replicas.pop(budget_id, None)

    def budget_ids(self) -> list[str]:
        return list(self._replicas)

    def __contains__(self, budget_id: object) -> bool:
        return budget_id in self._replicas

    def __len__(self) -> int:
        return len(self._replicas)
