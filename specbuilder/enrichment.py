"""Helpers that join specifications to cached products.

All functions are pure: they take tuples and return new tuples, leaving
their inputs untouched.
"""

from dataclasses import replace
from typing import AbstractSet, Callable, Iterable, List, Optional, Sequence, Tuple

from specbuilder.config import VISIBLE_SPECIFICATION_COUNT
from specbuilder.models import (
    SINGLE_RELATIONS,
    WRAPPED_RELATIONS,
    Product,
    Specification,
    SpecificationWithProduct,
)

__all__ = [
    "compute_completion_percent",
    "enrich_specifications_with_products",
    "extract_product_handles_to_fetch",
    "split_product_handles_for_loading",
    "sort_specifications_by_completeness",
    "has_relevant_product_changes",
    "reconcile_specifications",
]

ProductLookup = Callable[[str], Optional[Product]]

# Optional attributes that count toward completeness
COMPLETENESS_FIELDS = ("review", "star_rating") + SINGLE_RELATIONS + tuple(WRAPPED_RELATIONS)


def compute_completion_percent(spec: Specification) -> float:
    """Percentage (0-100) of optional attributes that are filled in."""
    filled = 0
    for name in COMPLETENESS_FIELDS:
        value = getattr(spec, name)
        if isinstance(value, str):
            filled += bool(value.strip())
        elif isinstance(value, tuple):
            filled += bool(value)
        else:
            filled += value is not None
    return round(100.0 * filled / len(COMPLETENESS_FIELDS), 1)


def enrich_specifications_with_products(
    specifications: Iterable[Specification],
    get_product: ProductLookup,
) -> Tuple[SpecificationWithProduct, ...]:
    """Attach cached products; mark the rest as loading when they have a handle."""
    enriched = []
    for spec in specifications:
        product = get_product(spec.shopify_handle) if spec.shopify_handle else None
        completion = spec.completion_percent
        if completion is None:
            completion = compute_completion_percent(spec)
        enriched.append(
            SpecificationWithProduct(
                specification=spec,
                product=product,
                is_product_loading=product is None and bool(spec.shopify_handle),
                completion_percent=completion,
            )
        )
    return tuple(enriched)


def extract_product_handles_to_fetch(specifications: Iterable[SpecificationWithProduct]) -> List[str]:
    """Handles of specifications still missing their product, first occurrence order."""
    handles: List[str] = []
    seen = set()
    for spec in specifications:
        handle = spec.shopify_handle
        if spec.product is None and handle and handle not in seen:
            seen.add(handle)
            handles.append(handle)
    return handles


def split_product_handles_for_loading(
    specifications: Sequence[SpecificationWithProduct],
    visible_count: int = VISIBLE_SPECIFICATION_COUNT,
) -> Tuple[List[str], List[str]]:
    """Split missing handles into (visible, remaining).

    Visible handles come from the first ``visible_count`` specifications.
    """
    visible = extract_product_handles_to_fetch(specifications[:visible_count])
    visible_set = set(visible)
    remaining = [
        h for h in extract_product_handles_to_fetch(specifications) if h not in visible_set
    ]
    return visible, remaining


def _sort_key(spec: SpecificationWithProduct):
    completion = spec.completion_percent
    return (
        spec.product is None,
        completion is None,
        -(completion or 0.0),
        spec.id,
    )


def sort_specifications_by_completeness(
    specifications: Iterable[SpecificationWithProduct],
) -> Tuple[SpecificationWithProduct, ...]:
    """Joined products first, then highest completion, then by id."""
    return tuple(sorted(specifications, key=_sort_key))


def has_relevant_product_changes(
    specifications: Iterable[SpecificationWithProduct],
    changed_handles: AbstractSet[str],
) -> bool:
    """True if any specification waiting on a product is touched by the change."""
    if not changed_handles:
        return False
    for spec in specifications:
        if spec.product is None and spec.shopify_handle in changed_handles:
            return True
    return False


def reconcile_specifications(
    specifications: Tuple[SpecificationWithProduct, ...],
    get_product: ProductLookup,
    is_loading: Callable[[str], bool],
    handles: Optional[AbstractSet[str]] = None,
) -> Tuple[Tuple[SpecificationWithProduct, ...], bool]:
    """Patch in newly cached products and refresh loading flags.

    When ``handles`` is given only specifications for those handles are
    looked at; the rest are carried over untouched.

    Returns:
        (specifications, changed). When nothing changed the original tuple
        is returned as-is.
    """
    changed = False
    updated = []
    for spec in specifications:
        if spec.product is not None or not spec.shopify_handle or (
            handles is not None and spec.shopify_handle not in handles
        ):
            updated.append(spec)
            continue

        product = get_product(spec.shopify_handle)
        if product is not None:
            updated.append(replace(spec, product=product, is_product_loading=False))
            changed = True
            continue

        loading = is_loading(spec.shopify_handle)
        if loading != spec.is_product_loading:
            updated.append(replace(spec, is_product_loading=loading))
            changed = True
            continue

        updated.append(spec)

    if not changed:
        return specifications, False
    return tuple(updated), True
