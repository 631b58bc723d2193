"""Tests for the specification cache and its join with the product cache."""

import threading

import pytest

from specbuilder.errors import FetchError
from specbuilder.product_cache import ProductCache
from specbuilder.specification_cache import SpecificationCache

from fakes import FakeSpecificationSource, make_spec


@pytest.fixture
def product_cache(product_source, fast_policy):
    cache = ProductCache(product_source, retry_policy=fast_policy, background_start_delay=0)
    yield cache
    cache.reset()


def build_cache(product_cache, specs, **kwargs):
    return SpecificationCache(FakeSpecificationSource(specs), product_cache, **kwargs)


class TestFetchSpecifications:
    """Test loading specifications and joining products."""

    def test_joins_cached_and_fetched_products(self, product_cache):
        product_cache.preload(start_background=False)
        cache = build_cache(product_cache, [
            make_spec("s1", "snuff-01"),
            make_spec("s2", "snuff-27"),
            make_spec("s3", "ghost"),
        ])

        cache.fetch_specifications("u1", wait=True)

        specs = {s.id: s for s in cache.specifications}
        assert specs["s1"].product.handle == "snuff-01"
        assert specs["s2"].product.handle == "snuff-27"
        assert specs["s3"].product is None
        assert not specs["s3"].is_product_loading
        assert cache.state.user_id == "u1"
        assert not cache.state.is_loading

    def test_specification_without_handle(self, product_cache, product_source):
        cache = build_cache(product_cache, [make_spec("s1", None)])

        cache.fetch_specifications("u1", wait=True)

        spec = cache.specifications[0]
        assert spec.product is None
        assert not spec.is_product_loading
        assert product_source.handle_calls == []

    def test_completion_percent_filled_in(self, product_cache, full_spec):
        cache = build_cache(product_cache, [full_spec, make_spec("empty", "snuff-02")])

        cache.fetch_specifications("u1", wait=True)

        assert cache.get_specification("full").completion_percent == 100.0
        assert cache.get_specification("empty").completion_percent == 0.0

    def test_visible_handles_fetched_separately(self, product_cache, product_source):
        specs = [make_spec(f"s{i}", f"snuff-{20 + i}") for i in range(10)]
        cache = build_cache(product_cache, specs, visible_count=8)

        cache.fetch_specifications("u1", wait=True)

        assert sorted(len(c) for c in product_source.handle_calls) == [2, 8]
        assert all(s.product is not None for s in cache.specifications)

    def test_missing_products_read_as_loading_before_fetch_runs(self, product_cache):
        """Specs waiting on a product stay flagged while the fetch is still queued."""
        gate = threading.Event()
        cache = build_cache(product_cache, [make_spec("s1", "snuff-27")], max_workers=1)
        cache._executor.submit(gate.wait, 5)

        cache.fetch_specifications("u1")

        spec = cache.specifications[0]
        assert spec.product is None
        assert spec.is_product_loading
        assert product_cache.is_product_loading("snuff-27")

        gate.set()
        cache.wait_for_products(timeout=5)

        spec = cache.specifications[0]
        assert spec.product.handle == "snuff-27"
        assert not spec.is_product_loading
        cache.close()

    def test_in_flight_fetch_keeps_loading_flag(self, product_cache, product_source):
        product_source.handle_gate = threading.Event()
        cache = build_cache(product_cache, [make_spec("s1", "snuff-27")])

        cache.fetch_specifications("u1")
        assert product_source.handle_entered.wait(5)

        assert cache.specifications[0].is_product_loading

        product_source.handle_gate.set()
        cache.wait_for_products(timeout=5)
        assert cache.specifications[0].product is not None

    def test_fetch_error_is_stored(self, product_cache):
        source = FakeSpecificationSource(error=FetchError("HTTP 500 from specifications"))
        cache = SpecificationCache(source, product_cache)

        cache.fetch_specifications("u1")

        state = cache.state
        assert state.error == "HTTP 500 from specifications"
        assert state.specifications == ()
        assert not state.is_loading

    def test_late_product_from_background_fill(self, product_cache, product_source):
        """A product that arrives through pagination is patched in."""
        product_source.handle_error = FetchError("lookup down")
        cache = build_cache(product_cache, [make_spec("s1", "snuff-27")])
        cache.fetch_specifications("u1", wait=True)
        assert cache.specifications[0].product is None

        product_cache.preload(start_background=False)
        product_cache.run_background_loading()

        assert cache.specifications[0].product.handle == "snuff-27"
        assert not cache.specifications[0].is_product_loading


class TestSorting:
    """Test completeness ordering and its memoization."""

    def test_more_complete_first(self, product_cache):
        product_cache.preload(start_background=False)
        cache = build_cache(product_cache, [
            make_spec("a", "snuff-01", completion_percent=40.0),
            make_spec("b", "snuff-02", completion_percent=80.0),
        ])
        cache.fetch_specifications("u1", wait=True)

        assert [s.id for s in cache.get_specifications_sorted_by_completeness()] == ["b", "a"]

    def test_specs_without_product_last(self, product_cache):
        product_cache.preload(start_background=False)
        cache = build_cache(product_cache, [
            make_spec("orphan", "ghost", completion_percent=100.0),
            make_spec("a", "snuff-01", completion_percent=10.0),
        ])
        cache.fetch_specifications("u1", wait=True)

        assert [s.id for s in cache.get_specifications_sorted_by_completeness()] == ["a", "orphan"]

    def test_sorted_result_is_reused_until_state_changes(self, product_cache):
        product_cache.preload(start_background=False)
        cache = build_cache(product_cache, [make_spec("a", "snuff-01"), make_spec("b", "snuff-28")])
        cache.fetch_specifications("u1", wait=True)

        first = cache.get_specifications_sorted_by_completeness()
        assert cache.get_specifications_sorted_by_completeness() is first

        cache.reset_cache()
        assert cache.get_specifications_sorted_by_completeness() == ()

    def test_filter_by_completion(self, product_cache):
        cache = build_cache(product_cache, [
            make_spec("a", "snuff-01", completion_percent=30.0),
            make_spec("b", "snuff-02", completion_percent=70.0),
        ])
        cache.fetch_specifications("u1", wait=True)

        assert [s.id for s in cache.filter_by_completion(50)] == ["b"]


class TestReconciliation:
    """Test that unrelated product changes leave the list untouched."""

    def test_unrelated_change_keeps_identity(self, product_cache):
        product_cache.preload(start_background=False)
        cache = build_cache(product_cache, [make_spec("a", "snuff-01")])
        cache.fetch_specifications("u1", wait=True)
        before = cache.specifications

        product_cache.fetch_by_handles(["snuff-29"])

        assert cache.specifications is before

    def test_reset_cache(self, product_cache):
        cache = build_cache(product_cache, [make_spec("a", "snuff-01")])
        cache.fetch_specifications("u1", wait=True)

        cache.reset_cache()

        state = cache.state
        assert state.specifications == ()
        assert state.user_id is None
        assert state.error is None
        assert cache.get_specification("a") is None

    def test_close_unsubscribes(self, product_cache, product_source):
        product_source.handle_error = FetchError("lookup down")
        cache = build_cache(product_cache, [make_spec("a", "snuff-27")])
        cache.fetch_specifications("u1", wait=True)
        cache.close()

        product_source.handle_error = None
        product_cache.fetch_by_handles(["snuff-27"])

        assert product_cache.get_product("snuff-27") is not None
        assert cache.specifications[0].product is None
