"""Test API endpoints."""

import json

import pytest

from specbuilder.errors import FetchError, MissingBrandError


class TestAuthEndpoints:
    """Test the dev-mode user endpoints."""

    def test_list_users(self, client, user_ids):
        response = client.get("/api/auth/users")
        assert response.status_code == 200
        emails = {u["email"] for u in response.json}
        assert emails == {"admin@example.com", "reviewer@example.com"}

    def test_get_user(self, client, user_ids):
        response = client.get(f"/api/auth/user/{user_ids[0]}")
        assert response.status_code == 200
        assert response.json["role"] == "admin"

    def test_unknown_user_returns_404(self, client, user_ids):
        response = client.get("/api/auth/user/nobody")
        assert response.status_code == 404
        assert response.json == {"error": "User not found"}


class TestLookupEndpoints:
    def test_brands(self, client, user_ids):
        response = client.get("/api/brands")
        assert response.status_code == 200
        assert "Toque" in [b["name"] for b in response.json]

    def test_lookups_cover_all_tables(self, client, user_ids):
        response = client.get("/api/lookups")
        assert response.status_code == 200
        for table in ("product_types", "grinds", "tasting_notes", "tobacco_types", "cures"):
            assert response.json[table], f"Lookup table {table} is empty"


class TestProductEndpoints:
    """Test the Shopify-backed product endpoints."""

    def test_batch(self, client, mock_shopify):
        response = client.get("/api/products/batch?limit=10&cursor=abc")
        assert response.status_code == 200
        assert response.json["hasNextPage"] is True
        assert response.json["nextCursor"] == "cursor-2"
        assert response.json["products"][0]["handle"] == "toque-menthol"
        mock_shopify.fetch_products_batch.assert_called_once_with("abc", 10)

    def test_batch_default_and_max_limit(self, client, mock_shopify):
        client.get("/api/products/batch")
        mock_shopify.fetch_products_batch.assert_called_with(None, 25)

        client.get("/api/products/batch?limit=1000")
        mock_shopify.fetch_products_batch.assert_called_with(None, 250)

    @pytest.mark.parametrize("limit", ["abc", "0", "-5"])
    def test_batch_invalid_limit(self, client, limit):
        response = client.get(f"/api/products/batch?limit={limit}")
        assert response.status_code == 400

    def test_batch_shopify_failure(self, client, mock_shopify):
        mock_shopify.fetch_products_batch.side_effect = FetchError("Shopify returned HTTP 503", 503)

        response = client.get("/api/products/batch")

        assert response.status_code == 500
        assert response.json["error"] == "Failed to fetch products batch"

    def test_by_handles_post(self, client):
        response = client.post("/api/products/byHandles", json={"handles": ["wilsons-sp", "ghost"]})
        assert response.status_code == 200
        assert [p["handle"] for p in response.json] == ["wilsons-sp"]

    def test_by_handles_get(self, client):
        handles = json.dumps(["toque-menthol"])
        response = client.get("/api/products/byHandles", query_string={"handles": handles})
        assert response.status_code == 200
        assert response.json[0]["featuredImage"]["url"] == "https://cdn.example.com/menthol.jpg"

    def test_by_handles_limited_to_25(self, client, mock_shopify):
        client.post("/api/products/byHandles", json={"handles": [f"h{i}" for i in range(40)]})

        handles = mock_shopify.fetch_products_by_handles.call_args.args[0]
        assert len(handles) == 25

    @pytest.mark.parametrize(
        "query",
        ["", "?handles=", "?handles=not-json", "?handles=[]"],
    )
    def test_by_handles_get_invalid(self, client, query):
        response = client.get(f"/api/products/byHandles{query}")
        assert response.status_code == 400
        assert "error" in response.json

    def test_by_handles_post_invalid(self, client):
        response = client.post("/api/products/byHandles", json={"handles": "toque-menthol"})
        assert response.status_code == 400

    def test_titles(self, client):
        response = client.post("/api/products/titles", json={"handles": ["toque-menthol"]})
        assert response.status_code == 200
        assert response.json == {"toque-menthol": "Toque Menthol"}

    def test_titles_requires_list(self, client):
        response = client.post("/api/products/titles", json={})
        assert response.status_code == 400

    def test_available_excludes_specified(self, client, db_path, user_ids):
        from specbuilder.db import create_specification

        create_specification(db_path, user_ids[1], {"shopify_handle": "toque-menthol"})

        response = client.get(f"/api/products/available?userId={user_ids[1]}")

        assert response.status_code == 200
        assert [p["handle"] for p in response.json] == ["wilsons-sp"]
        assert response.json[0]["imageUrl"] == "/images/placeholder-product.png"

    def test_available_requires_user(self, client):
        response = client.get("/api/products/available")
        assert response.status_code == 400

    def test_available_missing_brand(self, client, mock_shopify, user_ids):
        mock_shopify.fetch_available_products.side_effect = MissingBrandError(
            "Product 'X' is missing required custom.brands metafield"
        )

        response = client.get(f"/api/products/available?userId={user_ids[1]}")

        assert response.status_code == 400
        assert "custom.brands" in response.json["error"]
        assert "details" in response.json


class TestSpecificationEndpoints:
    """Test GET/POST /api/specifications."""

    def test_requires_user_id(self, client):
        response = client.get("/api/specifications")
        assert response.status_code == 400
        assert response.json == {"error": "User ID is required"}

    def test_create_then_list(self, client, user_ids):
        reviewer = user_ids[1]
        response = client.post("/api/specifications", json={
            "userId": reviewer,
            "shopify_handle": "toque-menthol",
            "star_rating": 5,
            "grind": "Fine",
            "tasting_notes": ["Menthol"],
        })
        assert response.status_code == 201
        spec_id = response.json["id"]

        response = client.get(f"/api/specifications?userId={reviewer}")

        assert response.status_code == 200
        assert len(response.json) == 1
        spec = response.json[0]
        assert spec["id"] == spec_id
        assert spec["grind"]["name"] == "Fine"
        assert spec["tasting_notes"][0]["tasting_note"]["name"] == "Menthol"

    def test_limit(self, client, user_ids):
        for handle in ("a", "b", "c"):
            client.post("/api/specifications", json={"userId": user_ids[1], "shopify_handle": handle})

        response = client.get(f"/api/specifications?userId={user_ids[1]}&limit=2")

        assert len(response.json) == 2

    def test_create_invalid_rating(self, client, user_ids):
        response = client.post("/api/specifications", json={
            "userId": user_ids[1],
            "shopify_handle": "toque-menthol",
            "star_rating": 9,
        })
        assert response.status_code == 400

    def test_create_unknown_user(self, client, user_ids):
        response = client.post("/api/specifications", json={"userId": "nobody", "shopify_handle": "x"})
        assert response.status_code == 404

    def test_create_requires_body(self, client):
        response = client.post("/api/specifications", data="nope", content_type="text/plain")
        assert response.status_code == 400


class TestHealth:
    def test_health_reports_counters(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json["status"] == "ok"
        assert response.json["database"]["totalQueriesExecuted"] >= 1

    def test_index(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json["api"] == "/api"
