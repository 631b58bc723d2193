"""Spec Builder: product cache and specification enrichment for a Shopify store."""

__version__ = "0.1.0"

# Re-export main components for convenient imports
from specbuilder.config import BATCH_SIZE, DB_PATH, MAX_BATCH_RETRIES
from specbuilder.errors import FetchCancelled, FetchError, ResponseFormatError, SpecBuilderError
from specbuilder.models import Product, ProductPage, Specification, SpecificationWithProduct, User
from specbuilder.product_cache import CacheChange, ProductCache, ProductCacheState
from specbuilder.retry import RetryPolicy
from specbuilder.session import DatabaseSpecificationSource, SpecBuilderSession
from specbuilder.shopify import ShopifyClient
from specbuilder.specification_cache import SpecificationCache, SpecificationCacheState

__all__ = [
    # Version
    "__version__",
    # Config
    "BATCH_SIZE",
    "DB_PATH",
    "MAX_BATCH_RETRIES",
    # Errors
    "SpecBuilderError",
    "FetchError",
    "ResponseFormatError",
    "FetchCancelled",
    # Models
    "Product",
    "ProductPage",
    "Specification",
    "SpecificationWithProduct",
    "User",
    # Caches
    "ProductCache",
    "ProductCacheState",
    "CacheChange",
    "SpecificationCache",
    "SpecificationCacheState",
    "RetryPolicy",
    # Sources & session
    "ShopifyClient",
    "DatabaseSpecificationSource",
    "SpecBuilderSession",
]
