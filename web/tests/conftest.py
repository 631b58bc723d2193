"""Shared test fixtures for the web test suite."""

from unittest.mock import MagicMock

import pytest

from specbuilder.db import init_db, seed_demo_data
from specbuilder.models import Product, ProductImage, ProductPage
from specbuilder.shopify import ShopifyClient


@pytest.fixture
def sample_products():
    return [
        Product(
            id="101",
            handle="toque-menthol",
            title="Toque Menthol",
            vendor="Toque",
            brand="Toque",
            featured_image=ProductImage(url="https://cdn.example.com/menthol.jpg"),
            online_store_url="https://shop.example.com/products/toque-menthol",
        ),
        Product(id="102", handle="wilsons-sp", title="Wilsons SP", brand="Wilsons of Sharrow"),
    ]


@pytest.fixture
def mock_shopify(sample_products):
    """ShopifyClient stand-in returning the sample products."""
    client = MagicMock(spec=ShopifyClient)
    client.fetch_products_batch.return_value = ProductPage(
        products=tuple(sample_products), next_cursor="cursor-2", has_next_page=True
    )
    client.fetch_products_by_handles.side_effect = lambda handles: [
        p for p in sample_products if p.handle in handles
    ]
    client.fetch_product_titles.side_effect = lambda handles: {
        p.handle: p.title for p in sample_products if p.handle in handles
    }
    client.fetch_available_products.side_effect = lambda exclude, limit: [
        p for p in sample_products if p.handle not in exclude
    ][:limit]
    return client


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "web_test.db")
    init_db(path)
    return path


@pytest.fixture
def user_ids(db_path):
    """IDs of the seeded (admin, reviewer) users."""
    return seed_demo_data(db_path)


@pytest.fixture
def app(db_path, mock_shopify):
    from web.app import create_app

    return create_app({"TESTING": True, "DB_PATH": db_path, "SHOPIFY_CLIENT": mock_shopify})


@pytest.fixture
def client(app):
    """Create Flask test client."""
    with app.test_client() as test_client:
        yield test_client
