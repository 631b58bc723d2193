"""Configuration and constants for Spec Builder."""

import os
from pathlib import Path

from dotenv import load_dotenv

__all__ = [
    "SHOPIFY_STORE_URL",
    "SHOPIFY_ACCESS_TOKEN",
    "SHOPIFY_API_VERSION",
    "SPEC_BUILDER_API_URL",
    "HEADERS",
    "REQUEST_TIMEOUT",
    "MAX_RETRIES",
    "RETRY_BACKOFF_BASE",
    "MAX_RETRY_BACKOFF",
    "RETRY_STATUS_CODES",
    "BATCH_SIZE",
    "MAX_HANDLES_PER_REQUEST",
    "SHOPIFY_QUERY_LIMIT",
    "AVAILABLE_PRODUCTS_LIMIT",
    "MAX_BATCH_RETRIES",
    "MAX_HANDLE_RETRIES",
    "BACKGROUND_START_DELAY",
    "VISIBLE_SPECIFICATION_COUNT",
    "DB_PATH",
    "USER_ROLES",
    "LOOKUP_TABLES",
]

_PROJECT_ROOT = Path(__file__).parent.parent

# Load environment variables from .env before reading any of them
load_dotenv(dotenv_path=_PROJECT_ROOT / ".env")

# Shopify Admin API
SHOPIFY_STORE_URL = os.getenv("SHOPIFY_STORE_URL", "")
SHOPIFY_ACCESS_TOKEN = os.getenv("SHOPIFY_ACCESS_TOKEN", "")
SHOPIFY_API_VERSION = os.getenv("SHOPIFY_API_VERSION", "2025-01")

# Base URL of the Spec Builder JSON API (used by the session client)
SPEC_BUILDER_API_URL = os.getenv("SPEC_BUILDER_API_URL", "http://127.0.0.1:5000")

HEADERS = {
    "User-Agent": "spec-builder/0.1",
    "Content-Type": "application/json",
}

# Request timeouts
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "15"))

# HTTP retry settings with exponential backoff
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 2.0  # 2^attempt seconds
MAX_RETRY_BACKOFF = 30.0
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# Product pagination
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "25"))
MAX_HANDLES_PER_REQUEST = 25
SHOPIFY_QUERY_LIMIT = 250  # Shopify's max page size for search queries
AVAILABLE_PRODUCTS_LIMIT = 50

# Product cache retry ceilings
MAX_BATCH_RETRIES = int(os.getenv("MAX_BATCH_RETRIES", "3"))
MAX_HANDLE_RETRIES = 3

# Delay before the background fill starts after the first page (seconds)
BACKGROUND_START_DELAY = 0.5

# Number of specifications considered above the fold
VISIBLE_SPECIFICATION_COUNT = 8

# Storage
DB_PATH = os.getenv("DB_PATH", str(_PROJECT_ROOT / "data" / "spec_builder.db"))

USER_ROLES = ("admin", "reviewer")

# Lookup tables backing the single-valued specification attributes.
# Maps the specification field name -> table name.
LOOKUP_TABLES = {
    "product_type": "product_types",
    "product_brand": "product_brands",
    "grind": "grinds",
    "moisture_level": "moisture_levels",
    "nicotine_level": "nicotine_levels",
    "experience_level": "experience_levels",
}
