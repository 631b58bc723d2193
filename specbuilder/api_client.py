"""HTTP client for the Spec Builder JSON API (the ``/api`` blueprint).

``SpecBuilderAPIClient`` implements both the product source and the
specification source interfaces, so a session can run entirely against a
remote Spec Builder server instead of talking to Shopify and SQLite
directly.
"""

from typing import Any, Dict, List, Optional

import requests  # type: ignore[import-untyped]

from specbuilder.config import (
    BATCH_SIZE,
    HEADERS,
    MAX_HANDLES_PER_REQUEST,
    MAX_RETRIES,
    MAX_RETRY_BACKOFF,
    REQUEST_TIMEOUT,
    RETRY_BACKOFF_BASE,
    RETRY_STATUS_CODES,
    SPEC_BUILDER_API_URL,
)
from specbuilder.errors import FetchError, ResponseFormatError
from specbuilder.logging_config import get_logger
from specbuilder.models import Product, ProductPage, Specification, User, parse_products
from specbuilder.retry import RetryPolicy, call_with_retry

__all__ = ["SpecBuilderAPIClient"]

logger = get_logger("api_client")


class SpecBuilderAPIClient:
    """Talks to a running Spec Builder server."""

    def __init__(
        self,
        base_url: str = SPEC_BUILDER_API_URL,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        if session is None:
            session = requests.Session()
            session.headers.update(HEADERS)
        self.session = session
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=MAX_RETRIES,
            base_delay=RETRY_BACKOFF_BASE / 2,
            max_delay=MAX_RETRY_BACKOFF,
        )
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/{path.lstrip('/')}"

    def _request_once(self, method: str, path: str, **kwargs) -> Any:
        url = self._url(path)
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise FetchError(f"Request to {url} failed: {e}") from e

        if resp.status_code >= 400:
            message = f"HTTP {resp.status_code} from {path}"
            try:
                body = resp.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("error"):
                message = f"{message}: {body['error']}"
            raise FetchError(message, status_code=resp.status_code)

        try:
            return resp.json()
        except ValueError as e:
            raise ResponseFormatError(f"Response from {path} is not valid JSON") from e

    def request(self, method: str, path: str, **kwargs) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            FetchError: On network errors or non-2xx responses (after retries)
            ResponseFormatError: If the body is not JSON
        """

        def retryable(e: BaseException) -> bool:
            if isinstance(e, ResponseFormatError):
                return False
            status = getattr(e, "status_code", None)
            return status is None or status in RETRY_STATUS_CODES

        return call_with_retry(
            lambda: self._request_once(method, path, **kwargs),
            self.retry_policy,
            retry_on=(FetchError,),
            should_retry=retryable,
            description=f"{method} {path}",
        )

    # ---------- products ----------

    def fetch_page(self, cursor: Optional[str], limit: int = BATCH_SIZE) -> ProductPage:
        params: Dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        return ProductPage.from_dict(self.request("GET", "products/batch", params=params))

    def fetch_by_handles(self, handles: List[str]) -> List[Product]:
        if not handles:
            return []
        if len(handles) > MAX_HANDLES_PER_REQUEST:
            logger.warning(
                f"Requested {len(handles)} handles, server only returns the first {MAX_HANDLES_PER_REQUEST}"
            )
        data = self.request("POST", "products/byHandles", json={"handles": list(handles)})
        return parse_products(data)

    def fetch_product(self, handle: str) -> Optional[Product]:
        for product in self.fetch_by_handles([handle]):
            if product.handle == handle:
                return product
        return None

    def fetch_product_titles(self, handles: List[str]) -> Dict[str, str]:
        data = self.request("POST", "products/titles", json={"handles": list(handles)})
        if not isinstance(data, dict):
            raise ResponseFormatError("Invalid response format from product titles API")
        return {str(k): str(v) for k, v in data.items()}

    # ---------- specifications ----------

    def fetch_specifications(self, user_id: str, limit: Optional[int] = None) -> List[Specification]:
        params: Dict[str, Any] = {"userId": user_id}
        if limit:
            params["limit"] = limit
        data = self.request("GET", "specifications", params=params)
        if not isinstance(data, list):
            raise ResponseFormatError("Invalid response format from specifications API")
        return [Specification.from_dict(item) for item in data]

    def create_specification(self, user_id: str, data: Dict[str, Any]) -> str:
        """Submit a new specification. Returns its id."""
        body = dict(data)
        body["userId"] = user_id
        result = self.request("POST", "specifications", json=body)
        if not isinstance(result, dict) or not result.get("id"):
            raise ResponseFormatError("Invalid response format from specification submit API")
        return str(result["id"])

    # ---------- users & lookups ----------

    def fetch_users(self) -> List[User]:
        data = self.request("GET", "auth/users")
        if not isinstance(data, list):
            raise ResponseFormatError("Invalid response format from users API")
        return [User.from_dict(item) for item in data]

    def fetch_user(self, user_id: str) -> Optional[User]:
        try:
            data = self.request("GET", f"auth/user/{user_id}")
        except FetchError as e:
            if e.status_code == 404:
                return None
            raise
        return User.from_dict(data)

    def fetch_brands(self) -> List[Dict[str, str]]:
        data = self.request("GET", "brands")
        if not isinstance(data, list):
            raise ResponseFormatError("Invalid response format from brands API")
        return data
