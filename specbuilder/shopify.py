"""Shopify Admin GraphQL client.

Fetches products with their ``custom.brands`` metafield and normalizes
them into ``Product`` records. ``ShopifyClient`` also satisfies the
``ProductSource`` interface used by the product cache.
"""

import json
from typing import Any, Dict, Iterable, List, Optional

import requests  # type: ignore[import-untyped]

from specbuilder.config import (
    AVAILABLE_PRODUCTS_LIMIT,
    BATCH_SIZE,
    HEADERS,
    MAX_RETRIES,
    MAX_RETRY_BACKOFF,
    REQUEST_TIMEOUT,
    RETRY_BACKOFF_BASE,
    RETRY_STATUS_CODES,
    SHOPIFY_ACCESS_TOKEN,
    SHOPIFY_API_VERSION,
    SHOPIFY_QUERY_LIMIT,
    SHOPIFY_STORE_URL,
)
from specbuilder.errors import FetchError, MissingBrandError, ResponseFormatError
from specbuilder.logging_config import get_logger
from specbuilder.models import Product, ProductImage, ProductPage
from specbuilder.retry import RetryPolicy, call_with_retry

__all__ = [
    "ShopifyClient",
    "create_session",
    "parse_brand_metafield",
    "normalize_product_node",
    "handles_query",
]

logger = get_logger("shopify")

GID_PREFIX = "gid://shopify/Product/"

_PRODUCT_FIELDS = """
            id
            handle
            title
            vendor
            onlineStoreUrl
            featuredImage {
              url
            }
            metafield(namespace: "custom", key: "brands") {
              value
              type
            }
            publishedAt
            updatedAt
"""

PRODUCTS_BATCH_QUERY = """
query GetProductsBatch($limit: Int!, $cursor: String) {
  products(first: $limit, after: $cursor) {
    edges {
      node {%s}
      cursor
    }
    pageInfo {
      hasNextPage
      endCursor
    }
  }
}
""" % _PRODUCT_FIELDS

PRODUCTS_SEARCH_QUERY = """
query GetProductsByHandles($queryString: String!, $first: Int!) {
  products(first: $first, query: $queryString) {
    edges {
      node {%s}
    }
  }
}
""" % _PRODUCT_FIELDS

PRODUCT_TITLES_QUERY = """
query GetProductTitles($queryString: String!, $first: Int!) {
  products(first: $first, query: $queryString) {
    edges {
      node {
        handle
        title
      }
    }
  }
}
"""

ACTIVE_PRODUCTS_QUERY = """
query GetProducts($first: Int!) {
  products(first: $first, query: "status:active") {
    edges {
      node {%s}
    }
  }
}
""" % _PRODUCT_FIELDS


def create_session(access_token: str = SHOPIFY_ACCESS_TOKEN) -> requests.Session:
    """Create a requests Session carrying the Shopify access token."""
    session = requests.Session()
    session.headers.update(HEADERS)
    session.headers["X-Shopify-Access-Token"] = access_token or ""
    session.headers.setdefault("Accept-Encoding", "gzip, deflate")
    return session


def handles_query(handles: Iterable[str]) -> str:
    """Build a Shopify search string matching any of the given handles."""
    return " OR ".join(f"handle:{h}" for h in handles)


def parse_brand_metafield(metafield: Optional[Dict[str, Any]], title: str = "") -> str:
    """Extract the brand from a ``custom.brands`` metafield.

    List metafields yield their first element, JSON objects their
    ``name``/``value``/``brand`` key, anything else the raw string.

    Raises:
        MissingBrandError: If the metafield is absent, empty or malformed
    """
    if not metafield or not metafield.get("value"):
        raise MissingBrandError(f"Product '{title}' is missing required custom.brands metafield")

    value = str(metafield["value"])
    field_type = metafield.get("type")
    brand: Any = None

    try:
        if field_type == "list.single_line_text_field":
            parsed = json.loads(value)
            if not isinstance(parsed, list) or not parsed:
                raise MissingBrandError(f"Product '{title}' has empty brands list")
            brand = parsed[0]
        elif field_type == "json_string" or value.startswith("[") or value.startswith("{"):
            parsed = json.loads(value)
            if isinstance(parsed, list):
                brand = parsed[0] if parsed else ""
            elif isinstance(parsed, dict):
                brand = parsed.get("name") or parsed.get("value") or parsed.get("brand") or ""
            else:
                brand = str(parsed)
        else:
            brand = value
    except json.JSONDecodeError as e:
        raise MissingBrandError(
            f"Product '{title}' has malformed custom.brands metafield (parsing error)"
        ) from e

    if not brand:
        raise MissingBrandError(f"Product '{title}' has invalid custom.brands metafield format")
    return str(brand)


def normalize_product_node(node: Dict[str, Any]) -> Product:
    """Turn a GraphQL product node into a ``Product``.

    Raises:
        MissingBrandError: If the node has no usable brand
        ResponseFormatError: If required fields are missing
    """
    if not isinstance(node, dict) or not node.get("handle") or not node.get("id"):
        raise ResponseFormatError("Shopify product node is missing id or handle")

    title = node.get("title") or ""
    brand = parse_brand_metafield(node.get("metafield"), title)
    image = node.get("featuredImage")

    return Product(
        id=str(node["id"]).replace(GID_PREFIX, ""),
        handle=node["handle"],
        title=title,
        vendor=node.get("vendor") or "",
        brand=brand,
        featured_image=ProductImage(url=image["url"]) if image and image.get("url") else None,
        online_store_url=node.get("onlineStoreUrl"),
    )


def _edges(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    products = data.get("products")
    if not isinstance(products, dict) or not isinstance(products.get("edges"), list):
        raise ResponseFormatError("Shopify response is missing products.edges")
    return products["edges"]


class ShopifyClient:
    """Thin client over the Shopify Admin GraphQL endpoint."""

    def __init__(
        self,
        store_url: str = SHOPIFY_STORE_URL,
        access_token: str = SHOPIFY_ACCESS_TOKEN,
        api_version: str = SHOPIFY_API_VERSION,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.endpoint = f"{store_url.rstrip('/')}/admin/api/{api_version}/graphql.json"
        self.session = session or create_session(access_token)
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=MAX_RETRIES,
            base_delay=RETRY_BACKOFF_BASE / 2,
            max_delay=MAX_RETRY_BACKOFF,
            jitter=1.0,
        )
        self.timeout = timeout

    def _post_once(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self.session.post(
                self.endpoint,
                json={"query": query, "variables": variables},
                timeout=self.timeout,
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise FetchError(f"Failed to reach Shopify: {e}") from e
        except requests.exceptions.RequestException as e:
            raise FetchError(f"Shopify request error: {e}") from e

        if resp.status_code >= 400:
            raise FetchError(
                f"Shopify returned HTTP {resp.status_code}: {resp.reason}",
                status_code=resp.status_code,
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise ResponseFormatError("Shopify response is not valid JSON") from e

        if not isinstance(payload, dict):
            raise ResponseFormatError("Shopify response is not a JSON object")
        if payload.get("errors"):
            raise FetchError(f"Shopify GraphQL errors: {payload['errors']}")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise ResponseFormatError("Shopify response has no data")
        return data

    def execute(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        """Run a GraphQL query, retrying throttling, 5xx and connection errors."""

        def retryable(e: BaseException) -> bool:
            if isinstance(e, ResponseFormatError):
                return False
            status = getattr(e, "status_code", None)
            return status is None or status in RETRY_STATUS_CODES

        return call_with_retry(
            lambda: self._post_once(query, variables),
            self.retry_policy,
            retry_on=(FetchError,),
            should_retry=retryable,
            description="Shopify GraphQL request",
        )

    def _normalize_all(self, edges: List[Dict[str, Any]]) -> List[Product]:
        """Normalize nodes, skipping products without a usable brand."""
        products: List[Product] = []
        for edge in edges:
            node = edge.get("node") if isinstance(edge, dict) else None
            try:
                products.append(normalize_product_node(node))
            except MissingBrandError as e:
                logger.warning(str(e))
        return products

    def fetch_products_batch(self, cursor: Optional[str] = None, limit: int = BATCH_SIZE) -> ProductPage:
        """Fetch one page of products using cursor pagination."""
        data = self.execute(PRODUCTS_BATCH_QUERY, {"limit": limit, "cursor": cursor})
        products = self._normalize_all(_edges(data))
        page_info = data["products"].get("pageInfo") or {}
        has_next_page = bool(page_info.get("hasNextPage"))
        return ProductPage(
            products=tuple(products),
            next_cursor=page_info.get("endCursor") if has_next_page else None,
            has_next_page=has_next_page,
        )

    def fetch_products_by_handles(self, handles: List[str]) -> List[Product]:
        """Fetch the products matching ``handles``; unknown handles are simply absent."""
        if not handles:
            return []
        data = self.execute(
            PRODUCTS_SEARCH_QUERY,
            {"queryString": handles_query(handles), "first": SHOPIFY_QUERY_LIMIT},
        )
        wanted = set(handles)
        # Shopify search is fuzzy; keep exact handle matches only
        return [p for p in self._normalize_all(_edges(data)) if p.handle in wanted]

    def fetch_product_titles(self, handles: List[str]) -> Dict[str, str]:
        """Map handle -> title for the given handles."""
        if not handles:
            return {}
        data = self.execute(
            PRODUCT_TITLES_QUERY,
            {"queryString": handles_query(handles), "first": SHOPIFY_QUERY_LIMIT},
        )
        titles: Dict[str, str] = {}
        for edge in _edges(data):
            node = edge.get("node") or {}
            if node.get("handle"):
                titles[node["handle"]] = node.get("title") or ""
        return titles

    def fetch_available_products(
        self,
        exclude_handles: Iterable[str] = (),
        limit: int = AVAILABLE_PRODUCTS_LIMIT,
    ) -> List[Product]:
        """Fetch active products, minus the excluded handles.

        Unlike the other listings, a product without a brand is an error here.

        Raises:
            MissingBrandError: If any remaining product lacks custom.brands
        """
        excluded = set(exclude_handles)
        data = self.execute(ACTIVE_PRODUCTS_QUERY, {"first": limit})
        products: List[Product] = []
        for edge in _edges(data):
            node = edge.get("node") or {}
            if node.get("handle") in excluded:
                continue
            products.append(normalize_product_node(node))
        return products

    # ProductSource interface

    def fetch_page(self, cursor: Optional[str], limit: int) -> ProductPage:
        return self.fetch_products_batch(cursor, limit)

    def fetch_by_handles(self, handles: List[str]) -> List[Product]:
        return self.fetch_products_by_handles(handles)

    def fetch_product(self, handle: str) -> Optional[Product]:
        matches = self.fetch_products_by_handles([handle])
        return matches[0] if matches else None
