"""
Sync policy: decide whether a request needs no sync, a delta sync or a full sync.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal

from config import SyncSettings
from replica import LocalReplica

ForceSync = Literal["full", "delta"]


class SyncType(StrEnum):
    NONE = "none"
    DELTA = "delta"
    FULL = "full"


def is_stale(
    replica: LocalReplica, interval_seconds: int, now: datetime | None = None
) -> bool:
    """Whether more than `interval_seconds` have passed since the last sync.

    An interval of 0 makes every replica stale.
    """
    if interval_seconds <= 0:
        return True
    age_seconds = ((now or datetime.now(UTC)) - replica.last_synced_at).total_seconds()
    return age_seconds > interval_seconds


def decide_sync_type(
    replica: LocalReplica | None,
    force_sync: ForceSync | None,
    settings: SyncSettings,
    now: datetime | None = None,
) -> SyncType:
    """Pick a sync type; the first matching rule wins.

    1. forced full          -> full
    2. no replica yet       -> full
    3. always-full mode     -> full
    4. forced delta         -> delta
    5. replica marked dirty -> delta
    6. replica is stale     -> delta
    7. otherwise            -> none
    """
    if force_sync == "full":
        return SyncType.FULL
    if replica is None:
        return SyncType.FULL
    if settings.always_full_sync:
        return SyncType.FULL
    if force_sync == "delta":
        return SyncType.DELTA
    if replica.needs_sync:
        return SyncType.DELTA
    if is_stale(replica, settings.sync_interval_seconds, now):
        return SyncType.DELTA
    return SyncType.NONE
