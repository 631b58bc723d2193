"""Tests for the specification/product join helpers."""

from specbuilder.enrichment import (
    compute_completion_percent,
    enrich_specifications_with_products,
    extract_product_handles_to_fetch,
    has_relevant_product_changes,
    reconcile_specifications,
    sort_specifications_by_completeness,
    split_product_handles_for_loading,
)
from specbuilder.models import Relation, SpecificationWithProduct

from fakes import make_product, make_spec


def lookup(*handles):
    products = {h: make_product(h) for h in handles}
    return products.get


class TestCompletionPercent:
    def test_empty_specification(self):
        assert compute_completion_percent(make_spec("s", "h")) == 0.0

    def test_full_specification(self, full_spec):
        assert compute_completion_percent(full_spec) == 100.0

    def test_partial_specification(self):
        spec = make_spec("s", "h", review="ok", star_rating=3, grind=Relation("1", "Fine"))
        assert compute_completion_percent(spec) == round(300 / 11, 1)

    def test_blank_review_does_not_count(self):
        assert compute_completion_percent(make_spec("s", "h", review="   ")) == 0.0


class TestEnrich:
    def test_attaches_cached_products(self):
        specs = [make_spec("a", "h1"), make_spec("b", "h2"), make_spec("c", None)]

        enriched = enrich_specifications_with_products(specs, lookup("h1"))

        assert enriched[0].product.handle == "h1"
        assert not enriched[0].is_product_loading
        assert enriched[1].product is None
        assert enriched[1].is_product_loading
        assert not enriched[2].is_product_loading

    def test_keeps_completion_from_source(self):
        spec = make_spec("a", "h1", completion_percent=55.5)
        assert enrich_specifications_with_products([spec], lookup())[0].completion_percent == 55.5


class TestHandles:
    def test_extract_deduplicates_in_order(self):
        specs = enrich_specifications_with_products(
            [make_spec("a", "h2"), make_spec("b", "h1"), make_spec("c", "h2"), make_spec("d", "h3")],
            lookup("h3"),
        )
        assert extract_product_handles_to_fetch(specs) == ["h2", "h1"]

    def test_split_visible_and_remaining(self):
        specs = enrich_specifications_with_products(
            [make_spec(str(i), f"h{i % 4}") for i in range(6)],
            lookup(),
        )

        visible, remaining = split_product_handles_for_loading(specs, visible_count=2)

        assert visible == ["h0", "h1"]
        assert remaining == ["h2", "h3"]

    def test_split_with_fewer_specs_than_visible(self):
        specs = enrich_specifications_with_products([make_spec("a", "h1")], lookup())
        assert split_product_handles_for_loading(specs, visible_count=8) == (["h1"], [])


class TestSort:
    def test_orders_by_product_then_completion_then_id(self):
        product = make_product("h")
        specs = [
            SpecificationWithProduct(make_spec("z", "x"), None, False, 100.0),
            SpecificationWithProduct(make_spec("b", "h"), product, False, 50.0),
            SpecificationWithProduct(make_spec("a", "h"), product, False, 50.0),
            SpecificationWithProduct(make_spec("c", "h"), product, False, 90.0),
            SpecificationWithProduct(make_spec("d", "h"), product, False, None),
        ]

        assert [s.id for s in sort_specifications_by_completeness(specs)] == ["c", "a", "b", "d", "z"]


class TestReconcile:
    def test_relevant_changes(self):
        specs = enrich_specifications_with_products([make_spec("a", "h1")], lookup())
        assert has_relevant_product_changes(specs, {"h1"})
        assert not has_relevant_product_changes(specs, {"other"})
        assert not has_relevant_product_changes(specs, set())

    def test_patches_new_products(self):
        specs = enrich_specifications_with_products([make_spec("a", "h1"), make_spec("b", "h2")], lookup())

        updated, changed = reconcile_specifications(specs, lookup("h1"), lambda h: True)

        assert changed
        assert updated[0].product.handle == "h1"
        assert not updated[0].is_product_loading
        assert updated[1] is specs[1]

    def test_clears_loading_flag_for_unmatched_handle(self):
        specs = enrich_specifications_with_products([make_spec("a", "gone")], lookup())

        updated, changed = reconcile_specifications(specs, lookup(), lambda h: False)

        assert changed
        assert updated[0].product is None
        assert not updated[0].is_product_loading

    def test_returns_same_tuple_when_unchanged(self):
        specs = enrich_specifications_with_products([make_spec("a", "h1")], lookup("h1"))

        updated, changed = reconcile_specifications(specs, lookup("h1"), lambda h: False)

        assert not changed
        assert updated is specs

    def test_limited_to_given_handles(self):
        specs = enrich_specifications_with_products([make_spec("a", "h1"), make_spec("b", "h2")], lookup())

        updated, changed = reconcile_specifications(specs, lookup("h1", "h2"), lambda h: True, {"h2"})

        assert changed
        assert updated[0].product is None
        assert updated[1].product.handle == "h2"
