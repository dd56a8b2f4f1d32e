"""
Environment-driven settings for the local budget replica.

Defaults are conservative (drift check on every delta sync), which suits
early development. For production, relax YNAB_DRIFT_CHECK_INTERVAL_SYNCS or
switch to YNAB_DRIFT_CHECK_INTERVAL_MINUTES.
"""

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_SYNC_INTERVAL_SECONDS = 300
DEFAULT_DATA_DIR = Path.home() / ".config" / "ynab-mcp"


def _flag(value: str | None, *, default: bool) -> bool:
    if value is None or value == "":
        return default
    if default:
        return value not in ("false", "0")
    return value in ("true", "1")


def _int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


class SyncSettings(BaseModel):
    """Knobs consumed by the sync policy and the drift detector."""

    drift_detection: bool = Field(
        True, description="Compare delta-merged replicas against a full fetch"
    )
    always_full_sync: bool = Field(
        False, description="Skip delta sync entirely and always fetch everything"
    )
    read_only: bool = Field(
        False, description="Block every write tool; reads and syncs still work"
    )
    sync_interval_seconds: int = Field(
        DEFAULT_SYNC_INTERVAL_SECONDS,
        ge=0,
        description="Replica staleness threshold (0 = resync on every request)",
    )
    drift_check_interval_syncs: int = Field(
        1, ge=1, description="Run a drift check every N delta syncs"
    )
    drift_check_interval_minutes: int = Field(
        0, ge=0, description="Also run a drift check every M minutes (0 = off)"
    )
    drift_sample_rate: int = Field(
        1, ge=1, description="Save a drift snapshot for 1 in N drift occurrences"
    )
    data_dir: Path = Field(
        DEFAULT_DATA_DIR, description="Root for sync history and drift snapshots"
    )
    static_budget_file: Path | None = Field(
        None, description="Serve a budget JSON file instead of calling the API"
    )
    access_token: str | None = Field(None, description="YNAB personal access token")

    @classmethod
    def from_environment(
        cls, environ: Mapping[str, str] | None = None
    ) -> "SyncSettings":
        """Read settings from YNAB_* environment variables.

        Malformed numeric values fall back to their defaults rather than failing.
        """
        env = os.environ if environ is None else environ

        data_dir = env.get("YNAB_DATA_DIR")
        static_file = env.get("YNAB_STATIC_BUDGET_FILE")

        return cls(
            drift_detection=_flag(env.get("YNAB_DRIFT_DETECTION"), default=True),
            always_full_sync=_flag(env.get("YNAB_ALWAYS_FULL_SYNC"), default=False),
            read_only=_flag(env.get("YNAB_READ_ONLY"), default=False),
            sync_interval_seconds=_int(
                env.get("YNAB_SYNC_INTERVAL_SECONDS"),
                default=DEFAULT_SYNC_INTERVAL_SECONDS,
                minimum=0,
            ),
            drift_check_interval_syncs=_int(
                env.get("YNAB_DRIFT_CHECK_INTERVAL_SYNCS"), default=1, minimum=1
            ),
            drift_check_interval_minutes=_int(
                env.get("YNAB_DRIFT_CHECK_INTERVAL_MINUTES"), default=0, minimum=0
            ),
            drift_sample_rate=_int(
                env.get("YNAB_DRIFT_SAMPLE_RATE"), default=1, minimum=1
            ),
            data_dir=Path(data_dir).expanduser() if data_dir else DEFAULT_DATA_DIR,
            static_budget_file=Path(static_file).expanduser() if static_file else None,
            access_token=env.get("YNAB_ACCESS_TOKEN") or None,
        )
