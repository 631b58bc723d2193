"""Tests for SpecBuilderSession and the database-backed source."""

import pytest

from specbuilder import db
from specbuilder.product_cache import ProductCache
from specbuilder.session import DatabaseSpecificationSource, SpecBuilderSession


@pytest.fixture
def db_source(seeded_db):
    db_path, (_, reviewer_id) = seeded_db
    db.create_specification(db_path, reviewer_id, {"shopify_handle": "snuff-03", "review": "Good"})
    db.create_specification(db_path, reviewer_id, {"shopify_handle": "snuff-28", "star_rating": 5})
    return DatabaseSpecificationSource(db_path)


@pytest.fixture
def session(product_source, fast_policy, db_source):
    product_cache = ProductCache(product_source, retry_policy=fast_policy, background_start_delay=0)
    session = SpecBuilderSession(product_source, db_source, db_source, product_cache=product_cache)
    yield session
    session.close()


class TestDatabaseSource:
    def test_fetch_specifications(self, db_source, seeded_db):
        _, (_, reviewer_id) = seeded_db

        specs = db_source.fetch_specifications(reviewer_id)

        assert {s.shopify_handle for s in specs} == {"snuff-03", "snuff-28"}

    def test_fetch_user(self, db_source, seeded_db):
        _, (admin_id, _) = seeded_db

        assert db_source.fetch_user(admin_id).is_admin
        assert db_source.fetch_user("missing") is None
        assert len(db_source.fetch_users()) == 2


class TestSession:
    def test_login_loads_products_and_specifications(self, session, seeded_db):
        _, (_, reviewer_id) = seeded_db

        user = session.login(reviewer_id, wait=True, background=False)

        assert user is not None
        assert session.is_authenticated
        assert session.is_reviewer
        assert not session.is_admin
        assert session.product_cache.state.total_products_loaded >= 25
        specs = session.specification_cache.get_specifications_sorted_by_completeness()
        assert {s.shopify_handle for s in specs} == {"snuff-03", "snuff-28"}
        assert all(s.product is not None for s in specs)

    def test_login_unknown_user(self, session):
        assert session.login("nobody") is None
        assert session.error == "User not found"
        assert not session.is_authenticated

    def test_logout_resets_caches(self, session, seeded_db):
        _, (_, reviewer_id) = seeded_db
        session.login(reviewer_id, wait=True, background=False)

        session.logout()

        assert session.user is None
        assert session.product_cache.state.total_products_loaded == 0
        assert session.specification_cache.specifications == ()

    def test_switching_user_resets_first(self, session, seeded_db):
        _, (admin_id, reviewer_id) = seeded_db
        session.login(reviewer_id, wait=True, background=False)

        session.login(admin_id, wait=True, background=False)

        assert session.is_admin
        assert session.specification_cache.state.user_id == admin_id
        assert session.specification_cache.specifications == ()
