"""
Tests for budget month functionality in YNAB MCP Server.
"""

from datetime import date
from typing import Literal
from unittest.mock import MagicMock, patch

import pytest
import server
from assertions import assert_pagination_info, extract_response_data
from conftest import (
    create_replica,
    create_ynab_category,
    create_ynab_category_group,
    create_ynab_month,
)
from fastmcp.client import Client, FastMCPTransport
from fastmcp.exceptions import ToolError


async def test_get_budget_month_success(
    mock_repository: MagicMock, mcp_client: Client[FastMCPTransport]
) -> None:
    """Test budget month lookup from the replica's months."""
    mock_repository.get_replica.return_value = create_replica(
        category_groups=[create_ynab_category_group(id="group-1", name="Everyday")],
        months=[
            create_ynab_month(
                month=date(2024, 1, 1),
                note="January",
                income=400_000,
                budgeted=350_000,
                activity=-200_000,
                to_be_budgeted=50_000,
                age_of_money=15,
                categories=[
                    create_ynab_category(id="cat-1", name="Groceries"),
                    create_ynab_category(id="cat-2", name="Hidden", hidden=True),
                    create_ynab_category(id="cat-3", name="Gone", deleted=True),
                ],
            ),
            create_ynab_month(month=date(2024, 2, 1)),
        ],
    )

    result = await mcp_client.call_tool("get_budget_month", {"month": "2024-01-01"})
    response_data = extract_response_data(result)

    assert response_data["month"] == "2024-01-01"
    assert response_data["note"] == "January"
    assert response_data["income"] == "400"
    assert response_data["budgeted"] == "350"
    assert response_data["activity"] == "-200"
    assert response_data["to_be_budgeted"] == "50"
    assert response_data["age_of_money"] == 15

    assert [c["id"] for c in response_data["categories"]] == ["cat-1"]
    groceries = response_data["categories"][0]
    assert groceries["category_group_name"] == "Everyday"
    assert groceries["budgeted"] == "50"

    assert_pagination_info(response_data["pagination"], total_count=1, limit=50)


async def test_get_budget_month_current(
    mock_repository: MagicMock, mcp_client: Client[FastMCPTransport]
) -> None:
    current_month = server.convert_month_to_date("current")
    mock_repository.get_replica.return_value = create_replica(
        months=[create_ynab_month(month=current_month)]
    )

    result = await mcp_client.call_tool("get_budget_month", {})
    response_data = extract_response_data(result)

    assert response_data["month"] == current_month.isoformat()


async def test_get_budget_month_missing(
    mock_repository: MagicMock, mcp_client: Client[FastMCPTransport]
) -> None:
    mock_repository.get_replica.return_value = create_replica(
        months=[create_ynab_month(month=date(2024, 1, 1))]
    )

    with pytest.raises(ToolError, match="No budget month 2024-03-01"):
        await mcp_client.call_tool("get_budget_month", {"month": "2024-03-01"})


def test_convert_month_to_date_with_date_object() -> None:
    test_date = date(2024, 3, 15)

    assert server.convert_month_to_date(test_date) == test_date


@pytest.mark.parametrize(
    "today,month,expected",
    [
        (date(2024, 6, 20), "current", date(2024, 6, 1)),
        (date(2024, 6, 20), "last", date(2024, 5, 1)),
        (date(2024, 6, 20), "next", date(2024, 7, 1)),
        (date(2024, 1, 10), "last", date(2023, 12, 1)),
        (date(2024, 12, 10), "next", date(2025, 1, 1)),
    ],
)
def test_convert_month_to_date_with_literals(
    today: date, month: Literal["current", "last", "next"], expected: date
) -> None:
    with patch.object(server, "datetime") as mock_datetime:
        mock_datetime.now.return_value.date.return_value = today

        assert server.convert_month_to_date(month) == expected


def test_convert_month_to_date_invalid_value() -> None:
    with pytest.raises(ValueError, match="Invalid month value: someday"):
        server.convert_month_to_date("someday")  # type: ignore[arg-type]
