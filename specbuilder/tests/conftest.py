"""Shared fixtures for the specbuilder test suite."""

import pytest

from specbuilder.db import init_db, seed_demo_data
from specbuilder.models import Relation
from specbuilder.retry import RetryPolicy

from fakes import FakeProductSource, make_product, make_spec


@pytest.fixture
def catalog():
    """30 products: one full page of 25 plus a partial page of 5."""
    return [make_product(f"snuff-{i:02d}") for i in range(30)]


@pytest.fixture
def product_source(catalog):
    return FakeProductSource(catalog)


@pytest.fixture
def fast_policy():
    """Retry policy without waiting."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def temp_db(tmp_path):
    """Empty database with the schema created."""
    db_path = str(tmp_path / "spec_builder.db")
    init_db(db_path)
    return db_path


@pytest.fixture
def seeded_db(temp_db):
    """Database with demo lookups and users. Returns (db_path, [admin_id, reviewer_id])."""
    user_ids = seed_demo_data(temp_db)
    return temp_db, user_ids


@pytest.fixture
def full_spec():
    """A specification with every optional attribute filled in."""
    rel = Relation(id="1", name="x")
    return make_spec(
        "full",
        "snuff-00",
        review="Lovely",
        star_rating=5,
        product_type=rel,
        product_brand=rel,
        grind=rel,
        moisture_level=rel,
        nicotine_level=rel,
        experience_level=rel,
        tasting_notes=(rel,),
        tobacco_types=(rel,),
        cures=(rel,),
    )
