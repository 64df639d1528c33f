"""Unit tests for the Shopify GraphQL client.

WHAT:
    Envelope parsing, auth headers and transport error mapping, using
    httpx.MockTransport instead of the network.

WHY:
    Callers rely on GraphQL errors being returned (not raised) and on
    transport failures always surfacing as ShopifyAPIError.
"""

import asyncio
import json

import httpx
import pytest

from shopsync.services.shopify_client import (
    GraphQLResponse,
    ShopifyAPIError,
    ShopifyClient,
)


def _client(handler) -> ShopifyClient:
    return ShopifyClient(
        shop_domain="test-shop.myshopify.com",
        access_token="shpat_test",
        api_version="2025-07",
        request_spacing=0,
        transport=httpx.MockTransport(handler),
    )


def test_execute_returns_envelope_and_sends_auth_header():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["token"] = request.headers.get("X-Shopify-Access-Token")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "data": {"shop": {"name": "Test"}},
            "extensions": {"cost": {"requestedQueryCost": 12}},
        })

    response = asyncio.run(_client(handler).execute("query { shop { name } }", {"first": 1}))

    assert response.data == {"shop": {"name": "Test"}}
    assert response.errors == []
    assert response.extensions["cost"]["requestedQueryCost"] == 12
    assert seen["url"] == "https://test-shop.myshopify.com/admin/api/2025-07/graphql.json"
    assert seen["token"] == "shpat_test"
    assert seen["body"]["variables"] == {"first": 1}


def test_graphql_errors_are_returned_not_raised():
    def handler(request):
        return httpx.Response(200, json={
            "data": None,
            "errors": [{"message": "Query cost exceeds limit", "extensions": {"code": "MAX_COST_EXCEEDED"}}],
        })

    response = asyncio.run(_client(handler).execute("query { x }"))

    assert response.has_errors
    assert response.data == {}
    assert response.error_codes() == ["MAX_COST_EXCEEDED"]


def test_string_errors_are_wrapped():
    def handler(request):
        return httpx.Response(200, json={"errors": "Invalid API key or access token"})

    response = asyncio.run(_client(handler).execute("query { x }"))
    assert response.errors == [{"message": "Invalid API key or access token"}]
    assert response.error_codes() == ["UNKNOWN"]


def test_http_error_raises_api_error_with_status():
    def handler(request):
        return httpx.Response(503, text="unavailable")

    with pytest.raises(ShopifyAPIError) as excinfo:
        asyncio.run(_client(handler).execute("query { x }"))
    assert excinfo.value.status_code == 503


def test_network_error_raises_api_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ShopifyAPIError):
        asyncio.run(_client(handler).execute("query { x }"))


def test_non_json_body_raises_api_error():
    def handler(request):
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(ShopifyAPIError):
        asyncio.run(_client(handler).execute("query { x }"))


def test_get_orders_sends_page_variables():
    seen = {}

    def handler(request):
        seen["variables"] = json.loads(request.content)["variables"]
        return httpx.Response(200, json={"data": {"orders": {"edges": [], "pageInfo": {"hasNextPage": False}}}})

    response = asyncio.run(_client(handler).get_orders(50, "cursor-1", "updated_at:>=2025-01-01T00:00:00.000Z"))

    assert seen["variables"] == {"first": 50, "after": "cursor-1", "query": "updated_at:>=2025-01-01T00:00:00.000Z"}
    assert response.connection("orders")["edges"] == []


def test_inventory_levels_for_no_ids_skips_request():
    def handler(request):
        raise AssertionError("no request expected")

    response = asyncio.run(_client(handler).get_inventory_levels([]))
    assert response.data == {"nodes": []}


def test_connection_of_missing_key_is_empty():
    assert GraphQLResponse(data={}).connection("products") == {}
