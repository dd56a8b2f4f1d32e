"""
Tests for payee-related functionality in YNAB MCP Server.
"""

from unittest.mock import MagicMock

from assertions import assert_pagination_info, extract_response_data
from conftest import create_replica, create_ynab_account, create_ynab_payee
from fastmcp.client import Client, FastMCPTransport


async def test_list_payees_success(
    mock_repository: MagicMock, mcp_client: Client[FastMCPTransport]
) -> None:
    """Test payee listing sorted by name with deleted payees excluded."""
    mock_repository.get_replica.return_value = create_replica(
        payees=[
            create_ynab_payee(id="payee-2", name="Whole Foods"),
            create_ynab_payee(id="payee-1", name="amazon"),
            create_ynab_payee(id="payee-3", name="Closed Store", deleted=True),
        ]
    )

    result = await mcp_client.call_tool("list_payees", {})
    response_data = extract_response_data(result)

    assert response_data["payees"] == [
        {
            "id": "payee-1",
            "name": "amazon",
            "transfer_account_id": None,
            "transfer_account_name": None,
        },
        {
            "id": "payee-2",
            "name": "Whole Foods",
            "transfer_account_id": None,
            "transfer_account_name": None,
        },
    ]
    assert_pagination_info(response_data["pagination"], total_count=2, limit=50)


async def test_list_payees_pagination(
    mock_repository: MagicMock, mcp_client: Client[FastMCPTransport]
) -> None:
    mock_repository.get_replica.return_value = create_replica(
        payees=[
            create_ynab_payee(id=f"payee-{i}", name=f"Payee {i}") for i in range(5)
        ]
    )

    result = await mcp_client.call_tool("list_payees", {"limit": 2, "offset": 2})
    response_data = extract_response_data(result)

    assert [p["name"] for p in response_data["payees"]] == ["Payee 2", "Payee 3"]
    assert_pagination_info(
        response_data["pagination"], total_count=5, limit=2, offset=2, has_more=True
    )


async def test_find_payee_exact_match_first(
    mock_repository: MagicMock, mcp_client: Client[FastMCPTransport]
) -> None:
    """An exact (case-insensitive) name match sorts ahead of substring matches."""
    mock_repository.get_replica.return_value = create_replica(
        payees=[
            create_ynab_payee(id="payee-prime", name="Amazon Prime"),
            create_ynab_payee(id="payee-fresh", name="Amazon Fresh"),
            create_ynab_payee(id="payee-amazon", name="Amazon"),
            create_ynab_payee(id="payee-other", name="Starbucks"),
        ]
    )

    result = await mcp_client.call_tool("find_payee", {"name_search": "  AMAZON "})
    response_data = extract_response_data(result)

    assert [p["id"] for p in response_data["payees"]] == [
        "payee-amazon",
        "payee-fresh",
        "payee-prime",
    ]
    assert_pagination_info(response_data["pagination"], total_count=3, limit=10)


async def test_find_payee_limit_and_deleted(
    mock_repository: MagicMock, mcp_client: Client[FastMCPTransport]
) -> None:
    mock_repository.get_replica.return_value = create_replica(
        payees=[
            create_ynab_payee(id="payee-1", name="Grocery Outlet"),
            create_ynab_payee(id="payee-2", name="Grocery Store"),
            create_ynab_payee(id="payee-3", name="Grocery Mart", deleted=True),
        ]
    )

    result = await mcp_client.call_tool(
        "find_payee", {"name_search": "grocery", "limit": 1}
    )
    response_data = extract_response_data(result)

    assert [p["id"] for p in response_data["payees"]] == ["payee-1"]
    assert_pagination_info(
        response_data["pagination"], total_count=2, limit=1, has_more=True
    )


async def test_find_payee_no_matches(
    mock_repository: MagicMock, mcp_client: Client[FastMCPTransport]
) -> None:
    mock_repository.get_replica.return_value = create_replica(
        payees=[create_ynab_payee(id="payee-1", name="Starbucks")]
    )

    result = await mcp_client.call_tool("find_payee", {"name_search": "netflix"})
    response_data = extract_response_data(result)

    assert response_data["payees"] == []
    assert_pagination_info(response_data["pagination"], total_count=0, limit=10)


async def test_transfer_payee_names_its_account(
    mock_repository: MagicMock, mcp_client: Client[FastMCPTransport]
) -> None:
    mock_repository.get_replica.return_value = create_replica(
        accounts=[create_ynab_account(id="acc-savings", name="Savings")],
        payees=[
            create_ynab_payee(
                id="payee-transfer",
                name="Transfer : Savings",
                transfer_account_id="acc-savings",
            ),
            create_ynab_payee(id="payee-1", name="Grocer"),
        ],
    )

    result = await mcp_client.call_tool("find_payee", {"name_search": "transfer"})
    response_data = extract_response_data(result)

    [transfer] = response_data["payees"]
    assert transfer["transfer_account_id"] == "acc-savings"
    assert transfer["transfer_account_name"] == "Savings"
