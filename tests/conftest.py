"""
Test fixtures for the YNAB local replica and MCP server tests.

This module contains pytest fixtures and record factories for testing without
calling the actual YNAB API.
"""

import sys
from collections.abc import AsyncGenerator, Generator
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import fastmcp
import pytest
import ynab
from fastmcp.client import Client, FastMCPTransport

# Add parent directory to path to import the project modules
sys.path.insert(0, str(Path(__file__).parent.parent))
import server
from providers import SyncResponse
from replica import LocalReplica, build_replica
from repository import YNABRepository

BUDGET_ID = "test-budget-id"
SYNCED_AT = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def mock_environment_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    """Mock environment variables for testing."""
    monkeypatch.setenv("YNAB_ACCESS_TOKEN", "test_token_123")
    monkeypatch.setenv("YNAB_BUDGET", BUDGET_ID)


@pytest.fixture
def mock_repository(
    mock_environment_variables: None,
) -> Generator[MagicMock, None, None]:
    """Mock the repository to prevent API calls during testing."""
    mock_repo = MagicMock(spec=YNABRepository)
    mock_repo.history = None
    with patch("server._repository", mock_repo):
        yield mock_repo


@pytest.fixture
def categories_api(
    mock_environment_variables: None,
) -> Generator[MagicMock, None, None]:
    mock_api = MagicMock(spec=ynab.CategoriesApi)
    with patch("ynab.CategoriesApi", return_value=mock_api):
        yield mock_api


@pytest.fixture
def transactions_api(
    mock_environment_variables: None,
) -> Generator[MagicMock, None, None]:
    mock_api = MagicMock(spec=ynab.TransactionsApi)
    with patch("ynab.TransactionsApi", return_value=mock_api):
        yield mock_api


@pytest.fixture
async def mcp_client() -> AsyncGenerator[Client[FastMCPTransport], None]:
    """MCP client connected to the server in-process."""
    async with fastmcp.Client(server.mcp) as client:
        yield client


class FakeSyncProvider:
    """A SyncProvider that serves queued responses and records its calls.

    Queued exceptions are raised instead of returned.
    """

    def __init__(self) -> None:
        self.full_responses: list[SyncResponse | Exception] = []
        self.delta_responses: list[SyncResponse | Exception] = []
        self.full_calls: list[str] = []
        self.delta_calls: list[tuple[str, int]] = []

    def queue_full(self, budget: ynab.BudgetDetail, server_knowledge: int) -> None:
        self.full_responses.append(
            SyncResponse(budget=budget, server_knowledge=server_knowledge)
        )

    def queue_delta(self, budget: ynab.BudgetDetail, server_knowledge: int) -> None:
        self.delta_responses.append(
            SyncResponse(budget=budget, server_knowledge=server_knowledge)
        )

    async def full_sync(self, budget_id: str) -> SyncResponse:
        self.full_calls.append(budget_id)
        return self._next(self.full_responses)

    async def delta_sync(self, budget_id: str, last_knowledge: int) -> SyncResponse:
        self.delta_calls.append((budget_id, last_knowledge))
        return self._next(self.delta_responses)

    @staticmethod
    def _next(responses: list[SyncResponse | Exception]) -> SyncResponse:
        assert responses, "no sync response queued"
        response = responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_provider() -> FakeSyncProvider:
    return FakeSyncProvider()


# Test data factories
def create_ynab_account(
    *,
    id: str = "acc-1",
    name: str = "Test Account",
    account_type: ynab.AccountType = ynab.AccountType.CHECKING,
    on_budget: bool = True,
    closed: bool = False,
    balance: int = 100_000,
    deleted: bool = False,
    **kwargs: Any,
) -> ynab.Account:
    """Create a YNAB Account for testing with sensible defaults."""
    return ynab.Account(
        id=id,
        name=name,
        type=account_type,
        on_budget=on_budget,
        closed=closed,
        note=kwargs.get("note"),
        balance=balance,
        cleared_balance=kwargs.get("cleared_balance", balance - 5_000),
        uncleared_balance=kwargs.get("uncleared_balance", 5_000),
        transfer_payee_id=kwargs.get("transfer_payee_id"),
        direct_import_linked=kwargs.get("direct_import_linked", False),
        direct_import_in_error=kwargs.get("direct_import_in_error", False),
        last_reconciled_at=kwargs.get("last_reconciled_at"),
        deleted=deleted,
    )


def create_ynab_payee(
    *,
    id: str = "payee-1",
    name: str = "Test Payee",
    deleted: bool = False,
    **kwargs: Any,
) -> ynab.Payee:
    """Create a YNAB Payee for testing with sensible defaults."""
    return ynab.Payee(
        id=id,
        name=name,
        transfer_account_id=kwargs.get("transfer_account_id"),
        deleted=deleted,
    )


def create_ynab_payee_location(
    *,
    id: str = "loc-1",
    payee_id: str = "payee-1",
    deleted: bool = False,
) -> ynab.PayeeLocation:
    return ynab.PayeeLocation(
        id=id,
        payee_id=payee_id,
        latitude="41.8781",
        longitude="-87.6298",
        deleted=deleted,
    )


def create_ynab_category(
    *,
    id: str = "cat-1",
    name: str = "Test Category",
    category_group_id: str = "group-1",
    hidden: bool = False,
    deleted: bool = False,
    budgeted: int = 50_000,
    activity: int = -30_000,
    balance: int = 20_000,
    **kwargs: Any,
) -> ynab.Category:
    """Create a YNAB Category for testing with sensible defaults."""
    return ynab.Category(
        id=id,
        category_group_id=category_group_id,
        category_group_name=kwargs.get("category_group_name"),
        name=name,
        hidden=hidden,
        note=kwargs.get("note"),
        budgeted=budgeted,
        activity=activity,
        balance=balance,
        goal_type=kwargs.get("goal_type"),
        goal_target=kwargs.get("goal_target"),
        goal_percentage_complete=kwargs.get("goal_percentage_complete"),
        goal_under_funded=kwargs.get("goal_under_funded"),
        deleted=deleted,
    )


def create_ynab_category_group(
    *,
    id: str = "group-1",
    name: str = "Test Group",
    hidden: bool = False,
    deleted: bool = False,
) -> ynab.CategoryGroup:
    """Create a YNAB CategoryGroup for testing with sensible defaults."""
    return ynab.CategoryGroup(id=id, name=name, hidden=hidden, deleted=deleted)


def create_ynab_month(
    *,
    month: date = date(2024, 1, 1),
    categories: list[ynab.Category] | None = None,
    deleted: bool = False,
    **kwargs: Any,
) -> ynab.MonthDetail:
    """Create a YNAB MonthDetail for testing with sensible defaults."""
    return ynab.MonthDetail(
        month=month,
        note=kwargs.get("note"),
        income=kwargs.get("income", 400_000),
        budgeted=kwargs.get("budgeted", 350_000),
        activity=kwargs.get("activity", -200_000),
        to_be_budgeted=kwargs.get("to_be_budgeted", 50_000),
        age_of_money=kwargs.get("age_of_money", 15),
        deleted=deleted,
        categories=categories if categories is not None else [],
    )


def create_ynab_transaction(
    *,
    id: str = "txn-1",
    transaction_date: date = date(2024, 1, 15),
    amount: int = -50_000,
    account_id: str = "acc-1",
    deleted: bool = False,
    **kwargs: Any,
) -> ynab.TransactionSummary:
    """Create a YNAB TransactionSummary for testing with sensible defaults."""
    return ynab.TransactionSummary(
        id=id,
        date=transaction_date,
        amount=amount,
        memo=kwargs.get("memo"),
        cleared=kwargs.get("cleared", ynab.TransactionClearedStatus.CLEARED),
        approved=kwargs.get("approved", True),
        flag_color=kwargs.get("flag_color"),
        account_id=account_id,
        payee_id=kwargs.get("payee_id"),
        category_id=kwargs.get("category_id"),
        transfer_account_id=kwargs.get("transfer_account_id"),
        deleted=deleted,
    )


def create_ynab_subtransaction(
    *,
    id: str = "sub-1",
    transaction_id: str | None = "txn-1",
    amount: int = -25_000,
    deleted: bool = False,
    **kwargs: Any,
) -> ynab.SubTransaction:
    """Create a YNAB SubTransaction for testing with sensible defaults."""
    return ynab.SubTransaction(
        id=id,
        transaction_id=transaction_id,
        amount=amount,
        memo=kwargs.get("memo"),
        payee_id=kwargs.get("payee_id"),
        payee_name=kwargs.get("payee_name"),
        category_id=kwargs.get("category_id"),
        category_name=kwargs.get("category_name"),
        transfer_account_id=None,
        transfer_transaction_id=None,
        deleted=deleted,
    )


def create_ynab_scheduled_transaction(
    *,
    id: str = "st-1",
    date_first: date = date(2024, 1, 1),
    date_next: date = date(2024, 2, 1),
    frequency: str = "monthly",
    amount: int = -120_000,
    account_id: str = "acc-1",
    deleted: bool = False,
    **kwargs: Any,
) -> ynab.ScheduledTransactionSummary:
    """Create a YNAB ScheduledTransactionSummary for testing."""
    return ynab.ScheduledTransactionSummary(
        id=id,
        date_first=date_first,
        date_next=date_next,
        frequency=frequency,
        amount=amount,
        memo=kwargs.get("memo"),
        flag_color=kwargs.get("flag_color"),
        account_id=account_id,
        payee_id=kwargs.get("payee_id"),
        category_id=kwargs.get("category_id"),
        transfer_account_id=None,
        deleted=deleted,
    )


def create_ynab_scheduled_subtransaction(
    *,
    id: str = "ssub-1",
    scheduled_transaction_id: str | None = "st-1",
    amount: int = -60_000,
    deleted: bool = False,
    **kwargs: Any,
) -> ynab.ScheduledSubTransaction:
    return ynab.ScheduledSubTransaction(
        id=id,
        scheduled_transaction_id=scheduled_transaction_id,
        amount=amount,
        memo=kwargs.get("memo"),
        payee_id=kwargs.get("payee_id"),
        payee_name=kwargs.get("payee_name"),
        category_id=kwargs.get("category_id"),
        category_name=kwargs.get("category_name"),
        transfer_account_id=None,
        deleted=deleted,
    )


def create_ynab_budget(
    *,
    id: str = BUDGET_ID,
    name: str = "Test Budget",
    **collections: Any,
) -> ynab.BudgetDetail:
    """Create a YNAB BudgetDetail holding the given collections.

    Collections that aren't passed are left unset, as in a delta response
    where nothing in them changed.
    """
    return ynab.BudgetDetail(id=id, name=name, **collections)


def create_replica(
    *,
    budget_id: str = BUDGET_ID,
    server_knowledge: int = 100,
    last_synced_at: datetime = SYNCED_AT,
    **collections: Any,
) -> LocalReplica:
    """Build a LocalReplica the same way a full sync does."""
    budget = create_ynab_budget(id=budget_id, **collections)
    return build_replica(budget_id, budget, server_knowledge, now=last_synced_at)
