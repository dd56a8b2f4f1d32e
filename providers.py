"""
Sync providers: where full and delta budget snapshots come from.

- ApiSyncProvider fetches from the YNAB API (production)
- StaticSyncProvider serves a fixed budget (offline runs and tests)
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

import ynab
from pydantic import BaseModel
from ynab.exceptions import ApiException

from config import SyncSettings

logger = logging.getLogger(__name__)


class SyncResponse(BaseModel):
    """A budget payload and the server_knowledge it reflects."""

    budget: ynab.BudgetDetail
    server_knowledge: int


class SyncProvider(Protocol):
    async def full_sync(self, budget_id: str) -> SyncResponse:
        """Fetch the complete budget."""
        ...

    async def delta_sync(self, budget_id: str, last_knowledge: int) -> SyncResponse:
        """Fetch only what changed since `last_knowledge`."""
        ...


class ApiSyncProvider:
    """Fetches budgets from the YNAB API's full budget endpoint."""

    def __init__(self, access_token: str, max_retries: int = 3):
        self.configuration = ynab.Configuration(access_token=access_token)
        self.max_retries = max_retries

    async def full_sync(self, budget_id: str) -> SyncResponse:
        return await asyncio.to_thread(self._fetch_budget, budget_id, None)

    async def delta_sync(self, budget_id: str, last_knowledge: int) -> SyncResponse:
        return await asyncio.to_thread(self._fetch_budget, budget_id, last_knowledge)

    def _fetch_budget(self, budget_id: str, last_knowledge: int | None) -> SyncResponse:
        with ynab.ApiClient(self.configuration) as api_client:
            budgets_api = ynab.BudgetsApi(api_client)

            if last_knowledge is None:
                response = self._handle_api_call_with_retry(
                    lambda: budgets_api.get_budget_by_id(budget_id)
                )
            else:
                response = self._handle_api_call_with_retry(
                    lambda: budgets_api.get_budget_by_id(
                        budget_id, last_knowledge_of_server=last_knowledge
                    )
                )

            return SyncResponse(
                budget=response.data.budget,
                server_knowledge=response.data.server_knowledge,
            )

    def _handle_api_call_with_retry(self, api_call: Callable[[], Any]) -> Any:
        """Handle API call with exponential backoff for rate limiting."""
        for attempt in range(self.max_retries):
            try:
                return api_call()
            except ApiException as e:
                if e.status == 429 and attempt < self.max_retries - 1:
                    # Rate limited - YNAB allows 200 requests/hour
                    wait_time = 2**attempt
                    logger.warning(
                        f"Rate limited - waiting {wait_time}s (retry {attempt + 1})"
                    )
                    time.sleep(wait_time)
                    continue
                logger.error(f"API error {e.status}: {e}")
                raise


class StaticSyncProvider:
    """Serves one fixed budget; delta syncs report no changes."""

    def __init__(self, budget: ynab.BudgetDetail, server_knowledge: int = 1):
        self.budget = budget
        self.server_knowledge = server_knowledge

    async def full_sync(self, budget_id: str) -> SyncResponse:
        return SyncResponse(budget=self.budget, server_knowledge=self.server_knowledge)

    async def delta_sync(self, budget_id: str, last_knowledge: int) -> SyncResponse:
        empty_delta = ynab.BudgetDetail(id=self.budget.id, name=self.budget.name)
        return SyncResponse(budget=empty_delta, server_knowledge=self.server_knowledge)


def load_static_budget(path: Path) -> tuple[ynab.BudgetDetail, int]:
    """Load a budget from a JSON file.

    Accepts a raw API response (`{"data": {"budget": ..., "server_knowledge": ...}}`),
    a sync history entry (`{"budget": ..., "server_knowledge": ...}`), or a bare
    budget object.
    """
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload = payload.get("data", payload)

    if "budget" in payload:
        budget = ynab.BudgetDetail.model_validate(payload["budget"])
        return budget, int(payload.get("server_knowledge") or 1)

    return ynab.BudgetDetail.model_validate(payload), 1


def create_sync_provider(settings: SyncSettings) -> SyncProvider:
    """Create the provider the settings call for."""
    if settings.static_budget_file is not None:
        budget, server_knowledge = load_static_budget(settings.static_budget_file)
        logger.info(f"Serving static budget from {settings.static_budget_file}")
        return StaticSyncProvider(budget, server_knowledge)

    if not settings.access_token:
        raise ValueError("YNAB_ACCESS_TOKEN environment variable is required")

    return ApiSyncProvider(settings.access_token)
