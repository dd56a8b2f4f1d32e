import asyncio
import logging
import os
from datetime import date, datetime
from decimal import Decimal
from typing import Literal, TypeVar

import ynab
from fastmcp import FastMCP

from config import SyncSettings
from history import SyncHistory
from models import (
    Account,
    AccountsResponse,
    BudgetMonth,
    CategoriesResponse,
    Category,
    CategoryGroup,
    ClearLocalBudgetResponse,
    PaginationInfo,
    Payee,
    PayeesResponse,
    ScheduledTransaction,
    ScheduledTransactionsResponse,
    SyncBudgetResponse,
    Transaction,
    TransactionsResponse,
)
from policy import ForceSync
from providers import create_sync_provider
from replica import LocalReplica
from repository import YNABRepository

T = TypeVar("T")

logger = logging.getLogger(__name__)

mcp = FastMCP[None](
    name="YNAB",
    instructions="""
    Gives you access to a user's YNAB budget, including accounts, categories, and
    transactions. If a user is ever asking about budgeting, their personal finances,
    banking, saving, or investing, their YNAB budget is very relevant to them.
    When the user asks about budget categories and "how much is left", they are
    talking about the current month.

    Budget categories are grouped into category groups, which are important groupings
    to the user and should be displayed in a hierarchical manner. Categories will have
    the category_group_name and category_group_id available.

    The server operates on a single budget configured via the YNAB_BUDGET environment
    variable. All tools work with this budget automatically. Reads are served from a
    local copy of the budget that is kept up to date with delta syncs; use
    sync_budget if the user says their data looks out of date.
    """,
)

_repository: YNABRepository | None = None


def get_repository() -> YNABRepository:
    """Get the process-wide repository, creating it from the environment."""
    global _repository
    if _repository is None:
        settings = SyncSettings.from_environment()
        _repository = YNABRepository(
            create_sync_provider(settings),
            settings,
            history=SyncHistory(settings.data_dir),
        )
    return _repository


def get_budget_id() -> str:
    budget_id = os.getenv("YNAB_BUDGET")
    if not budget_id:
        raise ValueError("YNAB_BUDGET environment variable is required")
    return budget_id


def get_ynab_client() -> ynab.ApiClient:
    """Get authenticated YNAB API client."""
    access_token = os.getenv("YNAB_ACCESS_TOKEN")
    if not access_token:
        raise ValueError("YNAB_ACCESS_TOKEN environment variable is required")

    configuration = ynab.Configuration(access_token=access_token)
    return ynab.ApiClient(configuration)


def assert_write_allowed(operation: str) -> None:
    """Raise if YNAB_READ_ONLY is set; call before any API write."""
    if SyncSettings.from_environment().read_only:
        raise ValueError(
            f'Write operation "{operation}" blocked: Server is in read-only mode. '
            "Set YNAB_READ_ONLY=false to enable writes."
        )


async def _get_replica() -> LocalReplica:
    return await get_repository().get_replica(get_budget_id())


def _paginate_items(
    items: list[T], limit: int, offset: int
) -> tuple[list[T], PaginationInfo]:
    """Apply pagination to a list of items and return the page with pagination info."""
    pagination = PaginationInfo.for_page(len(items), limit, offset)
    return items[offset : offset + limit], pagination


def _filter_active_items(
    items: list[T],
    *,
    exclude_deleted: bool = True,
    exclude_hidden: bool = False,
    exclude_closed: bool = False,
) -> list[T]:
    """Filter items to exclude deleted/hidden/closed based on flags."""
    filtered = []
    for item in items:
        if exclude_deleted and getattr(item, "deleted", False):
            continue
        if exclude_hidden and getattr(item, "hidden", False):
            continue
        if exclude_closed and getattr(item, "closed", False):
            continue
        filtered.append(item)
    return filtered


def convert_month_to_date(
    month: date | Literal["current", "last", "next"],
) -> date:
    """Convert month parameter to appropriate date object for YNAB API.

    Args:
        month: Month in ISO format (date object), or "current", "last", "next" literals

    Returns:
        date object representing the first day of the specified month:
        - "current": first day of current month
        - "last": first day of previous month
        - "next": first day of next month
        - date object unchanged if already a date
    """
    if isinstance(month, date):
        return month

    today = datetime.now().date()
    year, month_num = today.year, today.month

    match month:
        case "current":
            return date(year, month_num, 1)
        case "last":
            return (
                date(year - 1, 12, 1)
                if month_num == 1
                else date(year, month_num - 1, 1)
            )
        case "next":
            return (
                date(year + 1, 1, 1)
                if month_num == 12
                else date(year, month_num + 1, 1)
            )
        case _:
            raise ValueError(f"Invalid month value: {month}")


@mcp.tool()
async def list_accounts(
    limit: int = 100,
    offset: int = 0,
) -> AccountsResponse:
    """List accounts with pagination.

    Only returns open/active accounts. Closed accounts are excluded automatically.

    Args:
        limit: Maximum number of accounts to return per page (default: 100)
        offset: Number of accounts to skip for pagination (default: 0)

    Returns:
        AccountsResponse with accounts list and pagination information
    """
    replica = await _get_replica()

    active_accounts = _filter_active_items(replica.accounts, exclude_closed=True)
    all_accounts = [Account.from_ynab(account) for account in active_accounts]

    accounts_page, pagination = _paginate_items(all_accounts, limit, offset)

    return AccountsResponse(accounts=accounts_page, pagination=pagination)


@mcp.tool()
async def list_categories(
    limit: int = 50,
    offset: int = 0,
) -> CategoriesResponse:
    """List categories with pagination.

    Only returns active/visible categories. Hidden and deleted categories are excluded
    automatically.

    Args:
        limit: Maximum number of categories to return per page (default: 50)
        offset: Number of categories to skip for pagination (default: 0)

    Returns:
        CategoriesResponse with categories list and pagination information
    """
    replica = await _get_replica()

    active_categories = _filter_active_items(replica.categories, exclude_hidden=True)
    all_categories = [
        Category.from_ynab(category, replica) for category in active_categories
    ]

    categories_page, pagination = _paginate_items(all_categories, limit, offset)

    return CategoriesResponse(categories=categories_page, pagination=pagination)


@mcp.tool()
async def list_category_groups() -> list[CategoryGroup]:
    """List category groups (lighter weight than full categories).

    Returns:
        List of category groups
    """
    replica = await _get_replica()

    active_groups = _filter_active_items(replica.category_groups)
    return [
        CategoryGroup.from_ynab(category_group, replica)
        for category_group in active_groups
    ]


@mcp.tool()
async def get_budget_month(
    month: date | Literal["current", "last", "next"] = "current",
    limit: int = 50,
    offset: int = 0,
) -> BudgetMonth:
    """Get budget data for a specific month including category budgets, activity, and
    balances with pagination.

    Only returns active/visible categories. Hidden and deleted categories are excluded
    automatically.

    Args:
        month: Specifies which budget month to retrieve:
              • "current": Current calendar month
              • "last": Previous calendar month
              • "next": Next calendar month
              • date object: Specific month (uses first day of month)
              Examples: "current", date(2024, 3, 1) for March 2024 (default: "current")
        limit: Maximum number of categories to return per page (default: 50)
        offset: Number of categories to skip for pagination (default: 0)

    Returns:
        BudgetMonth with month info, categories, and pagination
    """
    replica = await _get_replica()
    converted_month = convert_month_to_date(month)

    month_data = replica.month_by_key.get(converted_month)
    if month_data is None:
        raise ValueError(f"No budget month {converted_month.isoformat()} in budget")

    active_categories = _filter_active_items(month_data.categories, exclude_hidden=True)
    all_categories = [
        Category.from_ynab(category, replica) for category in active_categories
    ]

    categories_page, pagination = _paginate_items(all_categories, limit, offset)

    return BudgetMonth.from_ynab(month_data, categories_page, pagination)


@mcp.tool()
async def list_transactions(
    account_id: str | None = None,
    category_id: str | None = None,
    payee_id: str | None = None,
    since_date: date | None = None,
    min_amount: Decimal | None = None,
    max_amount: Decimal | None = None,
    limit: int = 25,
    offset: int = 0,
) -> TransactionsResponse:
    """List transactions with powerful filtering options for financial analysis.

    This tool supports various filters that can be combined:
    - Filter by account to see transactions for a specific account
    - Filter by category to analyze spending in a category (e.g., "Dining Out")
    - Filter by payee to see all transactions with a specific merchant (e.g., "Amazon")
    - Filter by date range using since_date
    - Filter by amount range using min_amount and/or max_amount

    Example queries this tool can answer:
    - "Show me all transactions over $50 in Dining Out this year"
      → Use: category_id="cat_dining_out_id", min_amount=50.00,
             since_date=date(2024, 1, 1)
    - "How much have I spent at Amazon this month"
      → Use: payee_id="payee_amazon_id", since_date=date(2024, 12, 1)
    - "List recent transactions in my checking account"
      → Use: account_id="acc_checking_id"

    Args:
        account_id: Filter by specific account (optional)
        category_id: Filter by specific category (optional)
        payee_id: Filter by specific payee (optional)
        since_date: Only show transactions on or after this date. Accepts date objects
                   in YYYY-MM-DD format (e.g., date(2024, 1, 1)) (optional)
        min_amount: Only show transactions with amount >= this value in currency units.
                   Use negative values for outflows/expenses
                   (e.g., -50.00 for $50+ expenses) (optional)
        max_amount: Only show transactions with amount <= this value in currency units.
                   Use negative values for outflows/expenses
                   (e.g., -10.00 for under $10 expenses) (optional)
        limit: Maximum number of transactions to return per page (default: 25)
        offset: Number of transactions to skip for pagination (default: 0)

    Returns:
        TransactionsResponse with filtered transactions and pagination info
    """
    replica = await _get_replica()

    all_transactions = []
    for txn in _filter_active_items(replica.transactions):
        if account_id and txn.account_id != account_id:
            continue
        if category_id and txn.category_id != category_id:
            # Split transactions match on any of their subtransactions
            subs = replica.subtransactions_by_transaction_id.get(txn.id, [])
            if not any(
                sub.category_id == category_id and not sub.deleted for sub in subs
            ):
                continue
        if payee_id and txn.payee_id != payee_id:
            continue
        if since_date is not None and txn.var_date < since_date:
            continue

        # Apply amount filters (check milliunits directly for efficiency)
        if min_amount is not None and txn.amount < (min_amount * 1000):
            continue
        if max_amount is not None and txn.amount > (max_amount * 1000):
            continue

        all_transactions.append(Transaction.from_ynab(txn, replica))

    # Sort by date descending (most recent first)
    all_transactions.sort(key=lambda t: t.date, reverse=True)

    transactions_page, pagination = _paginate_items(all_transactions, limit, offset)

    return TransactionsResponse(transactions=transactions_page, pagination=pagination)


@mcp.tool()
async def list_payees(
    limit: int = 50,
    offset: int = 0,
) -> PayeesResponse:
    """List payees for a specific budget with pagination.

    Payees are the entities you pay money to (merchants, people, companies, etc.).
    This tool helps you find payee IDs for filtering transactions or analyzing spending
    patterns. Only returns active payees. Deleted payees are excluded automatically.

    Args:
        limit: Maximum number of payees to return per page (default: 50)
        offset: Number of payees to skip for pagination (default: 0)

    Returns:
        PayeesResponse with payees list and pagination information
    """
    replica = await _get_replica()

    active_payees = _filter_active_items(replica.payees)
    all_payees = [Payee.from_ynab(payee, replica) for payee in active_payees]

    # Sort by name for easier browsing
    all_payees.sort(key=lambda p: p.name.lower())

    payees_page, pagination = _paginate_items(all_payees, limit, offset)

    return PayeesResponse(payees=payees_page, pagination=pagination)


@mcp.tool()
async def find_payee(
    name_search: str,
    limit: int = 10,
) -> PayeesResponse:
    """Find payees by searching for name substrings (case-insensitive).

    Much more efficient than paginating through all payees with list_payees.
    An exact (case-insensitive) name match is listed first. Only returns active
    payees. Deleted payees are excluded automatically.

    Args:
        name_search: Search term to match against payee names (case-insensitive
                     substring match). Examples: "amazon", "starbucks", "grocery"
        limit: Maximum number of matching payees to return (default: 10)

    Returns:
        PayeesResponse with matching payees and pagination information
    """
    replica = await _get_replica()

    search_term = name_search.lower().strip()
    exact = replica.payee_by_name.get(search_term)
    exact_id = exact.id if exact is not None and not exact.deleted else None

    matching_payees = [
        Payee.from_ynab(payee, replica)
        for payee in _filter_active_items(replica.payees)
        if search_term in payee.name.lower()
    ]
    matching_payees.sort(key=lambda p: (p.id != exact_id, p.name.lower()))

    # Apply limit (no offset since this is a search, not pagination)
    limited_payees = matching_payees[:limit]

    pagination = PaginationInfo.for_page(len(matching_payees), limit, 0)

    return PayeesResponse(payees=limited_payees, pagination=pagination)


@mcp.tool()
async def list_scheduled_transactions(
    account_id: str | None = None,
    category_id: str | None = None,
    payee_id: str | None = None,
    frequency: str | None = None,
    upcoming_days: int | None = None,
    min_amount: Decimal | None = None,
    max_amount: Decimal | None = None,
    limit: int = 25,
    offset: int = 0,
) -> ScheduledTransactionsResponse:
    """List scheduled transactions with powerful filtering options for analysis.

    This tool supports various filters that can be combined:
    - Filter by account to see scheduled transactions for a specific account
    - Filter by category to analyze recurring spending (e.g., "Monthly Bills")
    - Filter by payee to see scheduled transactions (e.g., "Netflix")
    - Filter by frequency to find daily, weekly, monthly, etc. recurring transactions
    - Filter by upcoming_days to see what's scheduled in the next N days
    - Filter by amount range using min_amount and/or max_amount

    Args:
        account_id: Filter by specific account (optional)
        category_id: Filter by specific category (optional)
        payee_id: Filter by specific payee (optional)
        frequency: Filter by recurrence frequency. Valid values:
                  • never, daily, weekly
                  • everyOtherWeek, twiceAMonth, every4Weeks
                  • monthly, everyOtherMonth, every3Months, every4Months
                  • twiceAYear, yearly, everyOtherYear
                  (optional)
        upcoming_days: Only show scheduled transactions with next occurrence
                       within this many days (optional)
        min_amount: Only show scheduled transactions with amount >= this value
                   in currency units. Use negative values for outflows/expenses
                   (optional)
        max_amount: Only show scheduled transactions with amount <= this value
                   in currency units. Use negative values for outflows/expenses
                   (optional)
        limit: Maximum number of scheduled transactions to return per page (default: 25)
        offset: Number of scheduled transactions to skip for pagination (default: 0)

    Returns:
        ScheduledTransactionsResponse with filtered scheduled transactions and
        pagination info
    """
    replica = await _get_replica()

    all_scheduled_transactions = []
    for st in _filter_active_items(replica.scheduled_transactions):
        if account_id and st.account_id != account_id:
            continue
        if category_id and st.category_id != category_id:
            continue
        if payee_id and st.payee_id != payee_id:
            continue
        if frequency and st.frequency != frequency:
            continue

        if upcoming_days is not None:
            days_until_next = (st.date_next - datetime.now().date()).days
            if days_until_next > upcoming_days:
                continue

        if min_amount is not None and st.amount < (min_amount * 1000):
            continue
        if max_amount is not None and st.amount > (max_amount * 1000):
            continue

        all_scheduled_transactions.append(ScheduledTransaction.from_ynab(st, replica))

    # Sort by next date ascending (earliest scheduled first)
    all_scheduled_transactions.sort(key=lambda st: st.date_next)

    scheduled_transactions_page, pagination = _paginate_items(
        all_scheduled_transactions, limit, offset
    )

    return ScheduledTransactionsResponse(
        scheduled_transactions=scheduled_transactions_page, pagination=pagination
    )


@mcp.tool()
async def sync_budget(force: ForceSync | None = None) -> SyncBudgetResponse:
    """Sync the local copy of the budget with YNAB.

    Normally not needed: reads sync automatically when the local copy is stale
    or after a write. Use this when the user reports missing or outdated data.

    Args:
        force: "full" to re-download the whole budget, "delta" to fetch only
               changes right now, or omit to sync only if the local copy is stale

    Returns:
        SyncBudgetResponse describing what the sync did
    """
    result = await get_repository().sync(get_budget_id(), force)
    return SyncBudgetResponse.from_sync_result(result)


@mcp.tool()
async def clear_local_budget(include_history: bool = False) -> ClearLocalBudgetResponse:
    """Discard the local copy of the budget; the next read does a full sync.

    Args:
        include_history: Also delete the saved sync history for this budget
                         (default: False)

    Returns:
        ClearLocalBudgetResponse listing what was cleared
    """
    repository = get_repository()
    budget_id = get_budget_id()

    evicted = await repository.clear(budget_id)

    history_files_deleted = 0
    if include_history and repository.history is not None:
        cleared = await asyncio.to_thread(repository.history.clear, budget_id)
        history_files_deleted = cleared.files_deleted

    return ClearLocalBudgetResponse(
        budgets_cleared=evicted, history_files_deleted=history_files_deleted
    )


def _update_month_category(
    budget_id: str, month: date, category_id: str, budgeted_milliunits: int
) -> ynab.Category:
    with get_ynab_client() as api_client:
        categories_api = ynab.CategoriesApi(api_client)
        save_month_category = ynab.SaveMonthCategory(budgeted=budgeted_milliunits)
        patch_wrapper = ynab.PatchMonthCategoryWrapper(category=save_month_category)
        response = categories_api.update_month_category(
            budget_id, month, category_id, patch_wrapper
        )
        return response.data.category


@mcp.tool()
async def update_category_budget(
    category_id: str,
    budgeted: Decimal,
    month: date | Literal["current", "last", "next"] = "current",
) -> Category:
    """Update the budgeted amount for a category in a specific month.

    This tool allows you to assign money to budget categories, which is essential
    for monthly budget maintenance and reallocation.

    IMPORTANT: For categories with NEED goals (refill up to X monthly), budget the
    full goal_target amount regardless of current balance. These goals expect the
    full target to be budgeted each month.

    Args:
        category_id: Unique identifier for the category to update (required)
        budgeted: Amount to budget for this category in currency units (required)
        month: Budget month to update:
              • "current": Current calendar month
              • "last": Previous calendar month
              • "next": Next calendar month
              • date object: Specific month (uses first day of month)
              (default: "current")

    Returns:
        Category with updated budget information
    """
    assert_write_allowed("update_category_budget")
    repository = get_repository()
    budget_id = get_budget_id()
    replica = await repository.get_replica(budget_id)

    category = await asyncio.to_thread(
        _update_month_category,
        budget_id,
        convert_month_to_date(month),
        category_id,
        int(budgeted * 1000),
    )
    await repository.mark_dirty(budget_id)

    return Category.from_ynab(category, replica)


def _put_transaction(
    budget_id: str, transaction_id: str, transaction: ynab.ExistingTransaction
) -> None:
    with get_ynab_client() as api_client:
        transactions_api = ynab.TransactionsApi(api_client)
        put_wrapper = ynab.PutTransactionWrapper(transaction=transaction)
        transactions_api.update_transaction(budget_id, transaction_id, put_wrapper)


@mcp.tool()
async def update_transaction(
    transaction_id: str,
    category_id: str | None = None,
    payee_id: str | None = None,
    memo: str | None = None,
) -> Transaction:
    """Update an existing transaction's details.

    This tool allows you to modify transaction properties, most commonly
    to assign the correct category to imported or uncategorized transactions.

    Args:
        transaction_id: Unique identifier for the transaction to update (required)
        category_id: Category ID to assign (optional)
        payee_id: Payee ID to assign (optional)
        memo: Transaction memo (optional)

    Returns:
        Transaction with updated information
    """
    assert_write_allowed("update_transaction")
    repository = get_repository()
    budget_id = get_budget_id()
    replica = await repository.get_replica(budget_id)

    existing_txn = replica.transaction_by_id.get(transaction_id)
    if existing_txn is None or existing_txn.deleted:
        raise ValueError(f"Transaction {transaction_id} not found")

    # Start from the replica's current values and apply only the requested changes
    existing_transaction = ynab.ExistingTransaction(
        account_id=existing_txn.account_id,
        date=existing_txn.var_date,
        amount=existing_txn.amount,
        payee_id=payee_id if payee_id is not None else existing_txn.payee_id,
        category_id=(
            category_id if category_id is not None else existing_txn.category_id
        ),
        memo=memo if memo is not None else existing_txn.memo,
        cleared=existing_txn.cleared,
        approved=existing_txn.approved,
        flag_color=existing_txn.flag_color,
    )

    await asyncio.to_thread(
        _put_transaction, budget_id, transaction_id, existing_transaction
    )
    await repository.mark_dirty(budget_id)

    updated = await repository.get_replica(budget_id)
    refreshed_txn = updated.transaction_by_id.get(transaction_id, existing_txn)
    return Transaction.from_ynab(refreshed_txn, updated)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    mcp.run()
