"""Centralized configuration for the Spec Builder web app."""

import os

from specbuilder.config import DB_PATH

__all__ = [
    "DB_PATH",
    "FLASK_HOST",
    "FLASK_PORT",
    "FLASK_DEBUG",
    "PLACEHOLDER_IMAGE",
    "MAX_PRODUCT_BATCH_LIMIT",
]

# Flask app settings (allow env overrides; default debug off for safety)
FLASK_HOST = os.getenv("FLASK_HOST", "0.0.0.0")
FLASK_PORT = int(os.getenv("FLASK_PORT", os.getenv("PORT", "5000")))
FLASK_DEBUG = os.getenv("FLASK_DEBUG", "False").lower() == "true"

# Shown for available products without a featured image
PLACEHOLDER_IMAGE = "/images/placeholder-product.png"

# Upper bound for ?limit= on the product batch endpoint (Shopify's page maximum)
MAX_PRODUCT_BATCH_LIMIT = 250
