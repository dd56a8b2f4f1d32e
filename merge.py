"""
Delta merging for the local replica.

YNAB delta responses report the full current state of every record that
changed since `last_knowledge_of_server`, with removed records flagged
`deleted`. Merging is therefore upsert-or-remove per key; there is no
field-level patching.
"""

from datetime import UTC, datetime
from typing import Any, TypeVar

import ynab
from pydantic import BaseModel

from replica import ENTITY_COLLECTIONS, LocalReplica, rebuild_indices

T = TypeVar("T")


def _is_deleted(entity: Any) -> bool:
    return bool(getattr(entity, "deleted", False))


def merge_entities(existing: list[T], delta: list[T]) -> list[T]:
    """Apply delta changes to an id-keyed entity list.

    Returns a new list; existing order is kept and new entities are appended.
    """
    entity_map = {
        entity.id: entity  # type: ignore[attr-defined]
        for entity in existing
    }

    for delta_entity in delta:
        if _is_deleted(delta_entity):
            # Remove deleted entity
            entity_map.pop(delta_entity.id, None)  # type: ignore[attr-defined]
        else:
            # Add new or update existing entity
            entity_map[delta_entity.id] = delta_entity  # type: ignore[attr-defined]

    return list(entity_map.values())


def merge_months(
    existing: list[ynab.MonthDetail], delta: list[ynab.MonthDetail]
) -> list[ynab.MonthDetail]:
    """Apply delta changes to months, which are keyed by their month date.

    A delta month only lists the categories that changed within it, so for a
    month we already have, its categories are merged rather than replaced.
    """
    month_map = {month.month: month for month in existing}

    for delta_month in delta:
        if _is_deleted(delta_month):
            month_map.pop(delta_month.month, None)
            continue

        current = month_map.get(delta_month.month)
        if current is None:
            month_map[delta_month.month] = delta_month
        else:
            month_map[delta_month.month] = delta_month.model_copy(
                update={
                    "categories": merge_entities(
                        current.categories, delta_month.categories or []
                    )
                }
            )

    return list(month_map.values())


class MergeResult(BaseModel):
    """A merged replica plus the number of records each collection received."""

    replica: LocalReplica
    changes_received: dict[str, int]


def merge_delta(
    existing: LocalReplica,
    delta_budget: ynab.BudgetDetail,
    server_knowledge: int,
    *,
    now: datetime | None = None,
) -> MergeResult:
    """Merge a delta budget response into a new replica at `server_knowledge`."""
    changes_received: dict[str, int] = {}
    merged: dict[str, Any] = {}

    for name in ENTITY_COLLECTIONS:
        delta_entities = getattr(delta_budget, name, None) or []
        changes_received[name] = len(delta_entities)
        merged[name] = merge_entities(getattr(existing, name), delta_entities)

    delta_months = delta_budget.months or []
    changes_received["months"] = len(delta_months)
    merged["months"] = merge_months(existing.months, delta_months)

    replica = LocalReplica(
        budget_id=existing.budget_id,
        budget_name=delta_budget.name or existing.budget_name,
        server_knowledge=server_knowledge,
        last_synced_at=now or datetime.now(UTC),
        needs_sync=False,
        currency_format=delta_budget.currency_format or existing.currency_format,
        **merged,
    )
    return MergeResult(
        replica=rebuild_indices(replica), changes_received=changes_received
    )
