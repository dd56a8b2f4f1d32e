"""
Tool response models built from LocalReplica records.

Replica records are the flat summaries of the full budget endpoint: they carry
ids but no display names. Every `from_ynab` constructor that needs a name
takes the replica and resolves it through the replica's lookup indices.
Amounts leave the replica as milliunits and reach the client as Decimal
currency units.
"""

from __future__ import annotations

import datetime
from decimal import Decimal
from typing import Any

import ynab
from pydantic import BaseModel, Field

from replica import LocalReplica
from repository import SyncResult


def milliunits_to_currency(milliunits: int) -> Decimal:
    """1000 milliunits make one currency unit."""
    return Decimal(milliunits) / Decimal("1000")


def _currency(milliunits: int | None) -> Decimal | None:
    return None if milliunits is None else milliunits_to_currency(milliunits)


def _account_name(replica: LocalReplica, account_id: str | None) -> str | None:
    account = replica.account_by_id.get(account_id) if account_id else None
    return account.name if account else None


def _payee_name(replica: LocalReplica, payee_id: str | None) -> str | None:
    payee = replica.payee_by_id.get(payee_id) if payee_id else None
    return payee.name if payee else None


def _category_name(replica: LocalReplica, category_id: str | None) -> str | None:
    category = replica.category_by_id.get(category_id) if category_id else None
    return category.name if category else None


def format_flag(flag_color: str | None, flag_name: str | None) -> str | None:
    """'Name (Color)', or just the color when the flag is unnamed."""
    if not flag_color:
        return None
    if flag_name:
        return f"{flag_name} ({flag_color.title()})"
    return flag_color.title()


class PaginationInfo(BaseModel):
    total_count: int = Field(..., description="Items matching the request")
    limit: int = Field(..., description="Page size")
    offset: int = Field(..., description="Items skipped before this page")
    has_more: bool = Field(..., description="Whether a later page exists")

    @classmethod
    def for_page(cls, total_count: int, limit: int, offset: int) -> PaginationInfo:
        return cls(
            total_count=total_count,
            limit=limit,
            offset=offset,
            has_more=offset + limit < total_count,
        )


class Account(BaseModel):
    """An account from the local budget, with balances in currency units."""

    id: str
    name: str
    type: str = Field(
        ...,
        description="checking, savings, creditCard, cash, lineOfCredit, "
        "otherAsset, otherLiability, ...",
    )
    on_budget: bool = Field(..., description="Counts toward the budget")
    closed: bool
    note: str | None = None
    balance: Decimal | None = None
    cleared_balance: Decimal | None = None
    uncleared_balance: Decimal | None = None
    transfer_payee_id: str | None = Field(
        None, description="Payee to use when transferring into this account"
    )

    @classmethod
    def from_ynab(cls, account: ynab.Account) -> Account:
        return cls(
            id=account.id,
            name=account.name,
            type=account.type,
            on_budget=account.on_budget,
            closed=account.closed,
            note=account.note,
            balance=_currency(account.balance),
            cleared_balance=_currency(account.cleared_balance),
            uncleared_balance=_currency(account.uncleared_balance),
            transfer_payee_id=account.transfer_payee_id,
        )


class Category(BaseModel):
    """A category with its budgeted, activity and balance amounts.

    For month-specific reads the amounts are those of that month.
    """

    id: str
    name: str
    category_group_id: str
    category_group_name: str | None = Field(
        None, description="Resolved from the local category groups"
    )
    note: str | None = None
    budgeted: Decimal | None = None
    activity: Decimal | None = Field(None, description="Negative means spending")
    balance: Decimal | None = Field(None, description="Available to spend")
    goal_type: str | None = Field(
        None,
        description="NEED (refill up to the target every month; budget the full "
        "target), TB (target balance), TBD (target balance by date), "
        "MF (monthly funding)",
    )
    goal_target: Decimal | None = None
    goal_percentage_complete: int | None = None
    goal_under_funded: Decimal | None = None

    @classmethod
    def from_ynab(cls, category: ynab.Category, replica: LocalReplica) -> Category:
        return cls(
            id=category.id,
            name=category.name,
            category_group_id=category.category_group_id,
            category_group_name=replica.category_group_name_by_id.get(
                category.category_group_id
            ),
            note=category.note,
            budgeted=_currency(category.budgeted),
            activity=_currency(category.activity),
            balance=_currency(category.balance),
            goal_type=category.goal_type,
            goal_target=_currency(category.goal_target),
            goal_percentage_complete=category.goal_percentage_complete,
            goal_under_funded=_currency(category.goal_under_funded),
        )


class CategoryGroup(BaseModel):
    """A category group with totals over its visible categories."""

    id: str
    name: str
    hidden: bool
    category_count: int = Field(..., description="Visible categories in the group")
    total_budgeted: Decimal
    total_activity: Decimal
    total_balance: Decimal

    @classmethod
    def from_ynab(
        cls, category_group: ynab.CategoryGroup, replica: LocalReplica
    ) -> CategoryGroup:
        """Total the group's categories from the replica's category collection.

        Replica groups don't embed their categories, so membership comes from
        each category's `category_group_id`. Hidden and deleted categories are
        left out of both the count and the totals.
        """
        members = [
            category
            for category in replica.categories
            if category.category_group_id == category_group.id
            and not category.deleted
            and not category.hidden
        ]
        return cls(
            id=category_group.id,
            name=category_group.name,
            hidden=category_group.hidden,
            category_count=len(members),
            total_budgeted=milliunits_to_currency(
                sum(c.budgeted or 0 for c in members)
            ),
            total_activity=milliunits_to_currency(
                sum(c.activity or 0 for c in members)
            ),
            total_balance=milliunits_to_currency(sum(c.balance or 0 for c in members)),
        )


class BudgetMonth(BaseModel):
    """One budget month: totals plus a page of its categories."""

    month: datetime.date
    note: str | None = None
    income: Decimal | None = None
    budgeted: Decimal | None = None
    activity: Decimal | None = None
    to_be_budgeted: Decimal | None = Field(
        None, description="Ready to assign; negative when over-assigned"
    )
    age_of_money: int | None = Field(
        None, description="Days between money arriving and being spent"
    )
    categories: list[Category]
    pagination: PaginationInfo

    @classmethod
    def from_ynab(
        cls,
        month: ynab.MonthDetail,
        categories: list[Category],
        pagination: PaginationInfo,
    ) -> BudgetMonth:
        return cls(
            month=month.month,
            note=month.note,
            income=_currency(month.income),
            budgeted=_currency(month.budgeted),
            activity=_currency(month.activity),
            to_be_budgeted=_currency(month.to_be_budgeted),
            age_of_money=month.age_of_money,
            categories=categories,
            pagination=pagination,
        )


class Payee(BaseModel):
    """A payee; transfer payees name the account they transfer into."""

    id: str
    name: str
    transfer_account_id: str | None = None
    transfer_account_name: str | None = None

    @classmethod
    def from_ynab(cls, payee: ynab.Payee, replica: LocalReplica) -> Payee:
        return cls(
            id=payee.id,
            name=payee.name,
            transfer_account_id=payee.transfer_account_id,
            transfer_account_name=_account_name(replica, payee.transfer_account_id),
        )


class Subtransaction(BaseModel):
    """One line of a split, scheduled or not."""

    id: str
    amount: Decimal
    memo: str | None = None
    payee_id: str | None = None
    payee_name: str | None = None
    category_id: str | None = None
    category_name: str | None = None

    @classmethod
    def from_ynab(
        cls,
        sub: ynab.SubTransaction | ynab.ScheduledSubTransaction,
        replica: LocalReplica,
        *,
        parent_payee_id: str | None = None,
    ) -> Subtransaction:
        # Lines without their own payee belong to the parent's
        payee_id = sub.payee_id or parent_payee_id
        return cls(
            id=sub.id,
            amount=milliunits_to_currency(sub.amount),
            memo=sub.memo,
            payee_id=payee_id,
            payee_name=sub.payee_name or _payee_name(replica, payee_id),
            category_id=sub.category_id,
            category_name=sub.category_name
            or _category_name(replica, sub.category_id),
        )


class BaseTransaction(BaseModel):
    id: str
    amount: Decimal = Field(..., description="Negative for outflows")
    memo: str | None = None
    flag: str | None = Field(None, description="'Name (Color)'")
    account_id: str
    account_name: str | None = None
    payee_id: str | None = None
    payee_name: str | None = None
    category_id: str | None = None
    category_name: str | None = Field(
        None, description="Empty for splits; see subtransactions"
    )
    subtransactions: list[Subtransaction] | None = None


def _base_fields(
    txn: ynab.TransactionSummary | ynab.ScheduledTransactionSummary,
    replica: LocalReplica,
    subs: list[ynab.SubTransaction] | list[ynab.ScheduledSubTransaction],
) -> dict[str, Any]:
    """Fields shared by scheduled and regular transactions, names resolved."""
    active_subs = [sub for sub in subs if not sub.deleted]
    return dict(
        id=txn.id,
        amount=milliunits_to_currency(txn.amount),
        memo=txn.memo,
        flag=format_flag(txn.flag_color, getattr(txn, "flag_name", None)),
        account_id=txn.account_id,
        account_name=_account_name(replica, txn.account_id),
        payee_id=txn.payee_id,
        payee_name=_payee_name(replica, txn.payee_id),
        category_id=txn.category_id,
        category_name=_category_name(replica, txn.category_id),
        subtransactions=[
            Subtransaction.from_ynab(sub, replica, parent_payee_id=txn.payee_id)
            for sub in active_subs
        ]
        if active_subs
        else None,
    )


class Transaction(BaseTransaction):
    date: datetime.date
    cleared: str = Field(..., description="cleared, uncleared or reconciled")
    approved: bool

    @classmethod
    def from_ynab(
        cls, txn: ynab.TransactionSummary, replica: LocalReplica
    ) -> Transaction:
        subs = replica.subtransactions_by_transaction_id.get(txn.id, [])
        return cls(
            date=txn.var_date,
            cleared=txn.cleared,
            approved=txn.approved,
            **_base_fields(txn, replica, subs),
        )


class ScheduledTransaction(BaseTransaction):
    date_first: datetime.date
    date_next: datetime.date = Field(..., description="Next occurrence")
    frequency: str

    @classmethod
    def from_ynab(
        cls, st: ynab.ScheduledTransactionSummary, replica: LocalReplica
    ) -> ScheduledTransaction:
        subs = replica.scheduled_subtransactions_by_scheduled_transaction_id.get(
            st.id, []
        )
        return cls(
            date_first=st.date_first,
            date_next=st.date_next,
            frequency=st.frequency,
            **_base_fields(st, replica, subs),
        )


class AccountsResponse(BaseModel):
    accounts: list[Account]
    pagination: PaginationInfo


class CategoriesResponse(BaseModel):
    categories: list[Category]
    pagination: PaginationInfo


class PayeesResponse(BaseModel):
    payees: list[Payee]
    pagination: PaginationInfo


class TransactionsResponse(BaseModel):
    transactions: list[Transaction]
    pagination: PaginationInfo


class ScheduledTransactionsResponse(BaseModel):
    scheduled_transactions: list[ScheduledTransaction]
    pagination: PaginationInfo


class SyncBudgetResponse(BaseModel):
    """What a sync_budget call did to the local budget."""

    sync_type: str = Field(..., description="none, delta or full")
    server_knowledge: int = Field(
        ..., description="Server knowledge the local budget now reflects"
    )
    last_synced_at: datetime.datetime
    changes_received: dict[str, int] | None = Field(
        None, description="Records received per collection (delta syncs only)"
    )
    duration_ms: float
    drift_checked: bool = Field(
        False, description="Whether the delta result was checked against a full fetch"
    )
    drift_detected: bool = False
    self_healed: bool = Field(
        False, description="Whether the local budget was replaced by the full fetch"
    )

    @classmethod
    def from_sync_result(cls, result: SyncResult) -> SyncBudgetResponse:
        return cls(
            sync_type=str(result.sync_type),
            server_knowledge=result.replica.server_knowledge,
            last_synced_at=result.replica.last_synced_at,
            changes_received=result.changes_received,
            duration_ms=result.timing.total_ms,
            drift_checked=result.drift is not None,
            drift_detected=result.drift is not None and result.drift.has_drift,
            self_healed=result.self_healed,
        )


class ClearLocalBudgetResponse(BaseModel):
    budgets_cleared: list[str] = Field(
        ..., description="Budgets whose local copy was discarded"
    )
    history_files_deleted: int = 0
