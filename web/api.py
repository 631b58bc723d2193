"""JSON API endpoints for Spec Builder.

Routes (all under ``/api``):
    GET  /auth/users              users for the dev-mode login picker
    GET  /auth/user/<id>          one user
    GET  /brands                  product brands
    GET  /lookups                 every lookup table
    GET  /products/batch          one page of Shopify products (cursor pagination)
    GET  /products/byHandles      products for a JSON array of handles
    POST /products/byHandles      same, handles in the body
    POST /products/titles         handle -> title map
    GET  /products/available      active products the user has not specified yet
    GET  /specifications          a user's specifications, newest first
    POST /specifications          submit a specification
    GET  /health                  database check and connection counters
"""

import json
from typing import Any, List, Optional, Tuple, Union

from flask import Blueprint, Response, current_app, jsonify, request

from specbuilder.config import (
    AVAILABLE_PRODUCTS_LIMIT,
    BATCH_SIZE,
    LOOKUP_TABLES,
    MAX_HANDLES_PER_REQUEST,
)
from specbuilder import db
from specbuilder.errors import FetchError, MissingBrandError
from specbuilder.logging_config import get_logger
from specbuilder.shopify import ShopifyClient

from .config import MAX_PRODUCT_BATCH_LIMIT, PLACEHOLDER_IMAGE

__all__ = ["api"]

logger = get_logger("web.api")

# Create blueprint for API
api = Blueprint("api", __name__, url_prefix="/api")

ApiResponse = Union[Response, Tuple[Response, int]]


def _db_path() -> str:
    return current_app.config["DB_PATH"]


def _tracker() -> db.ConnectionTracker:
    return current_app.extensions["connection_tracker"]


def _shopify() -> ShopifyClient:
    client = current_app.config.get("SHOPIFY_CLIENT")
    if client is None:
        client = ShopifyClient()
        current_app.config["SHOPIFY_CLIENT"] = client
    return client


def _error(message: str, status: int, details: Optional[str] = None) -> Tuple[Response, int]:
    body = {"error": message}
    if details:
        body["details"] = details
    return jsonify(body), status


def _int_arg(name: str, default: Optional[int] = None) -> Optional[int]:
    """Parse an integer query parameter.

    Raises:
        ValueError: If the parameter is present but not a positive integer
    """
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    value = int(raw)
    if value < 1:
        raise ValueError(f"{name} must be a positive integer")
    return value


def _handles_from(value: Any) -> Optional[List[str]]:
    if not isinstance(value, list) or not value:
        return None
    return [str(h) for h in value if h][:MAX_HANDLES_PER_REQUEST]


# ---------- USERS ----------


@api.route("/auth/users", methods=["GET"])
def list_users() -> ApiResponse:
    """All users, for dev-mode login."""
    try:
        return jsonify(db.get_users(_db_path(), tracker=_tracker()))
    except Exception as e:
        logger.error(f"Error fetching users: {e}")
        return _error("Failed to fetch users", 500)


@api.route("/auth/user/<user_id>", methods=["GET"])
def get_user(user_id: str) -> ApiResponse:
    try:
        user = db.get_user(_db_path(), user_id, tracker=_tracker())
    except Exception as e:
        logger.error(f"Error fetching user {user_id}: {e}")
        return _error("Failed to fetch user", 500)
    if user is None:
        return _error("User not found", 404)
    return jsonify(user)


# ---------- LOOKUPS ----------


@api.route("/brands", methods=["GET"])
def list_brands() -> ApiResponse:
    try:
        return jsonify(db.get_brands(_db_path(), tracker=_tracker()))
    except Exception as e:
        logger.error(f"Error fetching brands: {e}")
        return _error("Failed to fetch brands", 500)


@api.route("/lookups", methods=["GET"])
def list_lookups() -> ApiResponse:
    """Every lookup table keyed by table name, e.g. ``{"grinds": [{id, name}, ...]}``."""
    tables = list(LOOKUP_TABLES.values()) + [lookup for lookup, _, _ in db.MULTI_TABLES.values()]
    try:
        return jsonify({
            table: db.get_lookup_values(_db_path(), table, tracker=_tracker())
            for table in tables
        })
    except Exception as e:
        logger.error(f"Error fetching lookups: {e}")
        return _error("Failed to fetch lookups", 500)


# ---------- PRODUCTS ----------


@api.route("/products/batch", methods=["GET"])
def products_batch() -> ApiResponse:
    """One page of products.

    Query params:
        limit: Page size (default 25, max 250)
        cursor: ``nextCursor`` from the previous page

    Response JSON:
        {"products": [...], "nextCursor": "...", "hasNextPage": true}
    """
    try:
        limit = min(_int_arg("limit", BATCH_SIZE), MAX_PRODUCT_BATCH_LIMIT)
    except ValueError:
        return _error("limit must be a positive integer", 400)
    cursor = request.args.get("cursor") or None

    try:
        page = _shopify().fetch_products_batch(cursor, limit)
    except FetchError as e:
        logger.error(f"Error fetching products batch: {e}")
        return _error("Failed to fetch products batch", 500, str(e))
    return jsonify(page.to_dict())


@api.route("/products/byHandles", methods=["GET", "POST"])
def products_by_handles() -> ApiResponse:
    """Products for up to 25 handles. Unknown handles are simply absent."""
    if request.method == "GET":
        raw = request.args.get("handles")
        if not raw:
            return _error("handles parameter is required", 400)
        try:
            value = json.loads(raw)
        except ValueError:
            return _error("Invalid handles JSON format", 400)
    else:
        body = request.get_json(silent=True) or {}
        value = body.get("handles") if isinstance(body, dict) else None

    handles = _handles_from(value)
    if not handles:
        return _error("Valid product handles array is required", 400)

    try:
        products = _shopify().fetch_products_by_handles(handles)
    except FetchError as e:
        logger.error(f"Error fetching products by handles: {e}")
        return _error("Failed to fetch products by handles", 500, str(e))
    return jsonify([p.to_dict() for p in products])


@api.route("/products/titles", methods=["POST"])
def product_titles() -> ApiResponse:
    body = request.get_json(silent=True) or {}
    handles = body.get("handles") if isinstance(body, dict) else None
    if not isinstance(handles, list):
        return _error("Valid handles array is required", 400)

    try:
        return jsonify(_shopify().fetch_product_titles([str(h) for h in handles if h]))
    except FetchError as e:
        logger.error(f"Error fetching product titles: {e}")
        return _error("Failed to fetch product titles", 500, str(e))


@api.route("/products/available", methods=["GET"])
def available_products() -> ApiResponse:
    """Active products the user has not written a specification for."""
    user_id = request.args.get("userId")
    if not user_id:
        return _error("User ID is required", 400)
    try:
        limit = _int_arg("limit", AVAILABLE_PRODUCTS_LIMIT)
    except ValueError:
        return _error("limit must be a positive integer", 400)

    try:
        existing = db.get_specified_handles(_db_path(), user_id, tracker=_tracker())
        products = _shopify().fetch_available_products(existing, limit)
    except MissingBrandError as e:
        logger.error(f"Shopify product without brand: {e}")
        return _error(
            "One or more products are missing required custom.brands metafields in Shopify",
            400,
            str(e),
        )
    except FetchError as e:
        logger.error(f"Shopify GraphQL API error: {e}")
        return _error("Failed to fetch products from Shopify", 500, str(e))
    except Exception as e:
        logger.error(f"Error fetching available products: {e}")
        return _error("Failed to fetch available products", 500)

    return jsonify([
        {
            "id": p.id,
            "handle": p.handle,
            "title": p.title,
            "brand": p.brand,
            "imageUrl": p.featured_image.url if p.featured_image else PLACEHOLDER_IMAGE,
            "productUrl": p.online_store_url,
        }
        for p in products
    ])


# ---------- SPECIFICATIONS ----------


@api.route("/specifications", methods=["GET"])
def list_specifications() -> ApiResponse:
    """A user's specifications, newest first, with nested lookups."""
    user_id = request.args.get("userId")
    if not user_id:
        return _error("User ID is required", 400)
    try:
        limit = _int_arg("limit")
    except ValueError:
        return _error("limit must be a positive integer", 400)

    try:
        return jsonify(db.get_specifications(_db_path(), user_id, limit=limit, tracker=_tracker()))
    except Exception as e:
        logger.error(f"Error fetching specifications: {e}")
        return _error("Failed to fetch specifications", 500)


@api.route("/specifications", methods=["POST"])
def create_specification() -> ApiResponse:
    """Submit a specification.

    Request JSON:
        {
            "userId": "...",
            "shopify_handle": "...",
            "review": "...",
            "star_rating": 4,
            "grind": "Fine",            // lookup id or name
            "tasting_notes": ["Citrus"] // list of ids or names
        }

    Response JSON (201):
        {"id": "..."}
    """
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return _error("Request body must be a JSON object", 400)
    user_id = body.get("userId") or body.get("user_id")
    if not user_id:
        return _error("User ID is required", 400)
    if not body.get("shopify_handle"):
        return _error("shopify_handle is required", 400)

    try:
        if db.get_user(_db_path(), user_id, tracker=_tracker()) is None:
            return _error("User not found", 404)
        spec_id = db.create_specification(_db_path(), user_id, body)
    except ValueError as e:
        return _error(str(e), 400)
    except Exception as e:
        logger.error(f"Error creating specification: {e}")
        return _error("Failed to create specification", 500)
    return jsonify({"id": spec_id}), 201


# ---------- HEALTH ----------


@api.route("/health", methods=["GET"])
def health() -> ApiResponse:
    ok = db.test_connection(_db_path(), tracker=_tracker())
    body = {"status": "ok" if ok else "error", "database": _tracker().status()}
    return jsonify(body), 200 if ok else 500
