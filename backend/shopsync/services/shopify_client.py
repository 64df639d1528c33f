"""Shopify GraphQL Admin API client.

WHAT:
    Request/response wrapper for the Shopify Admin GraphQL API:
    - Authentication header handling
    - Request pacing (minimum spacing between calls)
    - Query documents for orders, products, customers, inventory levels,
      analytics sessions and shop info

WHY:
    The sync service needs the raw ``{data, errors, extensions}`` envelope:
    GraphQL errors mean different things per stream (the product stream
    fails, the order stream logs and continues, cost errors shrink the
    page size). So this client never interprets GraphQL errors and never
    retries; retries belong to the job queue.

REFERENCES:
    - Shopify GraphQL Admin API: https://shopify.dev/docs/api/admin-graphql
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
    - Pagination: https://shopify.dev/docs/api/usage/pagination-graphql
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2025-07"

# Shopify allows ~2 requests/second for regular apps
DEFAULT_REQUEST_SPACING = 0.5


class ShopifyAPIError(Exception):
    """Transport-level failure: network error, non-2xx status or non-JSON body."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class ShopifyGraphQLError(ShopifyAPIError):
    """A page came back with GraphQL errors where the caller cannot continue."""


@dataclass
class GraphQLResponse:
    """Raw GraphQL envelope. ``errors`` is empty when the query succeeded."""
    data: Dict[str, Any] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    extensions: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def connection(self, key: str) -> Dict[str, Any]:
        """Return ``data[key]`` (a connection object) or an empty dict."""
        return (self.data or {}).get(key) or {}

    def error_codes(self) -> List[str]:
        return [
            ((error.get("extensions") or {}).get("code") or "UNKNOWN")
            for error in self.errors
        ]


# =========================================================================
# QUERY DOCUMENTS
# =========================================================================

PRODUCTS_QUERY = """
query GetProducts($first: Int!, $after: String) {
    products(first: $first, after: $after) {
        edges {
            node {
                id
                handle
                title
                productType
                vendor
                status
                publishedAt
                tags
                totalInventory
                createdAt
                updatedAt
                featuredImage {
                    url
                }
                variants(first: 25) {
                    edges {
                        node {
                            id
                            title
                            sku
                            barcode
                            price
                            compareAtPrice
                            position
                            inventoryQuantity
                            availableForSale
                            taxable
                            createdAt
                            updatedAt
                            inventoryItem {
                                id
                                tracked
                                unitCost {
                                    amount
                                }
                                measurement {
                                    weight {
                                        value
                                        unit
                                    }
                                }
                            }
                            selectedOptions {
                                name
                                value
                            }
                        }
                    }
                }
            }
        }
        pageInfo {
            hasNextPage
            endCursor
        }
    }
}
"""

ORDERS_QUERY = """
query GetOrders($first: Int!, $after: String, $query: String) {
    orders(first: $first, after: $after, query: $query) {
        edges {
            node {
                id
                name
                email
                phone
                createdAt
                updatedAt
                processedAt
                closedAt
                cancelledAt
                cancelReason
                displayFinancialStatus
                displayFulfillmentStatus
                currentTotalPriceSet { shopMoney { amount currencyCode } }
                currentSubtotalPriceSet { shopMoney { amount } }
                currentTotalTaxSet { shopMoney { amount } }
                currentTotalDiscountsSet { shopMoney { amount } }
                totalShippingPriceSet { shopMoney { amount } }
                totalTipReceivedSet { shopMoney { amount } }
                totalWeight
                subtotalLineItemsQuantity
                tags
                note
                risks(first: 1) { level }
                shippingAddress {
                    country
                    provinceCode
                    city
                    zip
                }
                customerJourneySummary {
                    momentsCount { count }
                    firstVisit {
                        id
                        occurredAt
                        landingPage
                        referrerUrl
                        source
                        referrerInfo { source domain }
                        device { type }
                        utmParameters {
                            source
                            medium
                            campaign
                            content
                            term
                        }
                    }
                }
                customer {
                    id
                    email
                    firstName
                    lastName
                    phone
                    createdAt
                    updatedAt
                }
                lineItems(first: 25) {
                    edges {
                        node {
                            id
                            title
                            name
                            quantity
                            sku
                            variant {
                                id
                                sku
                                product { id }
                            }
                            originalUnitPriceSet { shopMoney { amount } }
                            discountedUnitPriceSet { shopMoney { amount } }
                            fulfillableQuantity
                            fulfillmentStatus
                        }
                    }
                }
                transactions(first: 10) {
                    id
                    kind
                    status
                    gateway
                    amountSet { shopMoney { amount currencyCode } }
                    fees {
                        amount { amount currencyCode }
                        type
                    }
                    paymentId
                    createdAt
                    processedAt
                }
                refunds(first: 5) {
                    id
                    note
                    createdAt
                    totalRefundedSet { shopMoney { amount } }
                    refundLineItems(first: 10) {
                        edges {
                            node {
                                lineItem { id }
                                quantity
                                subtotalSet { shopMoney { amount } }
                            }
                        }
                    }
                }
                fulfillments(first: 10) {
                    id
                    status
                    displayStatus
                    trackingInfo {
                        company
                        number
                        url
                    }
                    location { id }
                    service { serviceName }
                    createdAt
                    updatedAt
                    fulfillmentLineItems(first: 25) {
                        edges {
                            node {
                                id
                                quantity
                            }
                        }
                    }
                }
            }
        }
        pageInfo {
            hasNextPage
            endCursor
        }
    }
}
"""

CUSTOMERS_QUERY = """
query GetCustomers($first: Int!, $after: String) {
    customers(first: $first, after: $after) {
        edges {
            node {
                id
                email
                phone
                firstName
                lastName
                state
                verifiedEmail
                taxExempt
                tags
                note
                createdAt
                updatedAt
                numberOfOrders
                amountSpent {
                    amount
                    currencyCode
                }
                emailMarketingConsent { marketingState }
                smsMarketingConsent { marketingState }
                defaultAddress {
                    country
                    provinceCode
                    city
                    zip
                }
                addresses {
                    country
                    provinceCode
                    city
                    zip
                }
            }
        }
        pageInfo {
            hasNextPage
            endCursor
        }
    }
}
"""

INVENTORY_LEVELS_QUERY = """
query GetInventoryLevels($ids: [ID!]!) {
    nodes(ids: $ids) {
        ... on InventoryItem {
            id
            inventoryLevels(first: 10) {
                edges {
                    node {
                        available
                        incoming
                        committed
                        location {
                            id
                        }
                    }
                }
            }
        }
    }
}
"""

ANALYTICS_SESSIONS_QUERY = """
query GetAnalytics($startDate: DateTime!, $endDate: DateTime!) {
    shop {
        shopifyAnalytics {
            report(
                query: {
                    name: "sessions_over_time"
                    dimensions: ["date", "referrer_source"]
                    metrics: ["sessions", "visitors", "page_views", "bounce_rate", "conversion_rate"]
                    filters: [
                        { key: "date", operator: ">=", value: $startDate }
                        { key: "date", operator: "<=", value: $endDate }
                    ]
                }
            ) {
                tableData {
                    columns { name }
                    rows { cells { value } }
                }
            }
        }
    }
}
"""

SHOP_INFO_QUERY = """
query GetShopInfo {
    shop {
        id
        name
        email
        currencyCode
        ianaTimezone
        timezoneAbbreviation
        timezoneOffset
        timezoneOffsetMinutes
        primaryDomain {
            url
        }
    }
}
"""


class ShopifyClient:
    """GraphQL client for Shopify Admin API.

    WHAT: Posts query documents and hands back the raw response envelope
    WHY: One place for auth headers, pacing and transport error handling

    Usage:
        client = ShopifyClient(shop_domain="mystore.myshopify.com", access_token="shpat_xxx")
        response = await client.get_orders(100, None, "updated_at:>='2025-01-01T00:00:00.000Z'")
        if response.has_errors:
            ...
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        request_spacing: float = DEFAULT_REQUEST_SPACING,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Shopify client.

        Args:
            shop_domain: Shopify store domain (e.g., "mystore.myshopify.com")
            access_token: Shopify Admin API access token
            api_version: API version to use
            request_spacing: Minimum seconds between requests (0 disables pacing)
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version or DEFAULT_API_VERSION
        self.base_url = f"https://{shop_domain}/admin/api/{self.api_version}/graphql.json"
        self.request_spacing = request_spacing
        self.timeout = timeout
        self._transport = transport

        self._last_request_time: float = 0

        logger.info(f"[SHOPIFY_CLIENT] Initialized for {shop_domain} (API version: {self.api_version})")

    async def _rate_limit(self) -> None:
        """Wait if the previous request was less than ``request_spacing`` ago."""
        if self.request_spacing <= 0:
            return

        elapsed = time.monotonic() - self._last_request_time
        if elapsed < self.request_spacing:
            wait_time = self.request_spacing - elapsed
            logger.debug(f"[SHOPIFY_CLIENT] Pacing: waiting {wait_time:.3f}s")
            await asyncio.sleep(wait_time)

        self._last_request_time = time.monotonic()

    async def execute(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> GraphQLResponse:
        """Execute a GraphQL document against the Admin API.

        Returns:
            GraphQLResponse with data, errors and extensions. GraphQL errors
            are returned, not raised.

        Raises:
            ShopifyAPIError: On network failure, non-2xx status or a body
                that is not a JSON object.
        """
        await self._rate_limit()

        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }

        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.base_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning(f"[SHOPIFY_CLIENT] HTTP error {status} from {self.shop_domain}")
            raise ShopifyAPIError(f"Shopify API HTTP {status}", status_code=status) from e
        except httpx.RequestError as e:
            logger.warning(f"[SHOPIFY_CLIENT] Request error for {self.shop_domain}: {e}")
            raise ShopifyAPIError(f"Shopify API request failed: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise ShopifyAPIError(
                "Shopify API returned a non-JSON body",
                status_code=response.status_code,
            ) from e

        if not isinstance(body, dict):
            raise ShopifyAPIError("Shopify API returned an unexpected body", status_code=response.status_code)

        errors = body.get("errors") or []
        if isinstance(errors, (str, dict)):
            errors = [{"message": errors}] if isinstance(errors, str) else [errors]
        if errors:
            logger.debug(f"[SHOPIFY_CLIENT] GraphQL errors: {[e.get('message') for e in errors]}")

        return GraphQLResponse(
            data=body.get("data") or {},
            errors=errors,
            extensions=body.get("extensions") or {},
        )

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_shop_info(self) -> GraphQLResponse:
        """Shop metadata, including the UTC offset used for merchant-local windows."""
        return await self.execute(SHOP_INFO_QUERY)

    async def get_products(self, batch_size: int = 50, cursor: Optional[str] = None) -> GraphQLResponse:
        """One page of products with their variants (inventory levels excluded)."""
        return await self.execute(PRODUCTS_QUERY, {"first": batch_size, "after": cursor})

    async def get_orders(
        self,
        batch_size: int = 100,
        cursor: Optional[str] = None,
        query: Optional[str] = None,
    ) -> GraphQLResponse:
        """One page of fully detailed orders matching the search ``query``."""
        response = await self.execute(ORDERS_QUERY, {"first": batch_size, "after": cursor, "query": query})
        logger.info(
            f"[SHOPIFY_CLIENT] Orders page: {len(response.connection('orders').get('edges') or [])} orders "
            f"(has_next: {(response.connection('orders').get('pageInfo') or {}).get('hasNextPage')}, "
            f"errors: {len(response.errors)})"
        )
        return response

    async def get_customers(self, batch_size: int = 100, cursor: Optional[str] = None) -> GraphQLResponse:
        """One page of customers."""
        return await self.execute(CUSTOMERS_QUERY, {"first": batch_size, "after": cursor})

    async def get_inventory_levels(self, inventory_item_ids: List[str]) -> GraphQLResponse:
        """Inventory levels for a batch of InventoryItem GIDs.

        Kept out of the products query to keep its cost low.
        """
        if not inventory_item_ids:
            return GraphQLResponse(data={"nodes": []})
        return await self.execute(INVENTORY_LEVELS_QUERY, {"ids": list(inventory_item_ids)})

    async def get_analytics_sessions(self, start_date: str, end_date: str) -> GraphQLResponse:
        """Sessions report rows between two ``YYYY-MM-DD`` dates (inclusive)."""
        variables = {
            "startDate": f"{start_date}T00:00:00.000Z",
            "endDate": f"{end_date}T23:59:59.999Z",
        }
        return await self.execute(ANALYTICS_SESSIONS_QUERY, variables)
