"""Per-user specification list joined to the product cache.

``SpecificationCache`` loads a user's specifications, attaches whatever
products are already cached and asks the ``ProductCache`` for the rest:
handles of the first few (visible) specifications first, the remainder
right behind them. It subscribes to product cache changes and patches
products into its list as they arrive.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import AbstractSet, List, Optional, Protocol, Tuple

from specbuilder.config import VISIBLE_SPECIFICATION_COUNT
from specbuilder.enrichment import (
    enrich_specifications_with_products,
    has_relevant_product_changes,
    reconcile_specifications,
    sort_specifications_by_completeness,
    split_product_handles_for_loading,
)
from specbuilder.logging_config import get_logger, log_cache_event
from specbuilder.models import Specification, SpecificationWithProduct
from specbuilder.product_cache import CacheChange, ProductCache

__all__ = ["SpecificationSource", "SpecificationCacheState", "SpecificationCache"]

logger = get_logger("specification_cache")


class SpecificationSource(Protocol):
    def fetch_specifications(self, user_id: str, limit: Optional[int] = None) -> List[Specification]:
        ...


@dataclass(frozen=True)
class SpecificationCacheState:
    specifications: Tuple[SpecificationWithProduct, ...] = ()
    is_loading: bool = False
    error: Optional[str] = None
    user_id: Optional[str] = None


class SpecificationCache:
    """Holds one user's specifications at a time."""

    def __init__(
        self,
        source: SpecificationSource,
        product_cache: ProductCache,
        visible_count: int = VISIBLE_SPECIFICATION_COUNT,
        max_workers: int = 2,
    ):
        self.source = source
        self.product_cache = product_cache
        self.visible_count = visible_count

        self._lock = threading.RLock()
        self._state = SpecificationCacheState()
        self._generation = 0
        self._sorted: Tuple[SpecificationWithProduct, ...] = ()
        self._sorted_from: Optional[Tuple[SpecificationWithProduct, ...]] = None
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="spec-products")
        self._pending: List[Future] = []

        product_cache.subscribe(self._on_product_change)

    @property
    def state(self) -> SpecificationCacheState:
        with self._lock:
            return self._state

    @property
    def specifications(self) -> Tuple[SpecificationWithProduct, ...]:
        return self.state.specifications

    def fetch_specifications(self, user_id: str, wait: bool = False) -> None:
        """Load ``user_id``'s specifications and start fetching their products.

        Errors end up in ``state.error`` with an empty list; nothing is raised.

        Args:
            user_id: Whose specifications to load
            wait: Block until the product fetches started here have finished
        """
        with self._lock:
            self._generation += 1
            generation = self._generation
            self._state = replace(self._state, is_loading=True, error=None, user_id=user_id)

        try:
            raw = self.source.fetch_specifications(user_id)
        except Exception as e:
            logger.error(f"Error fetching specifications for user {user_id}: {e}")
            with self._lock:
                if generation == self._generation:
                    self._state = SpecificationCacheState(error=str(e), user_id=user_id)
            return

        enriched = enrich_specifications_with_products(raw, self.product_cache.get_product)

        with self._lock:
            if generation != self._generation:
                logger.debug(f"Dropping stale specifications for user {user_id}")
                return
            self._state = SpecificationCacheState(specifications=enriched, user_id=user_id)

        # Claim the handles before reconciling so they read as loading until fetched
        visible, remaining = split_product_handles_for_loading(enriched, self.visible_count)
        claims = [self.product_cache.claim_handles(handles) for handles in (visible, remaining) if handles]

        # Products may have landed between the join above and the store
        self._reconcile()

        log_cache_event("specifications_loaded", {
            "message": f"Loaded {len(enriched)} specifications for user {user_id}",
            "user_id": user_id,
            "count": len(enriched),
            "visible_handles": len(visible),
            "remaining_handles": len(remaining),
        }, logger_name="specification_cache")

        futures = []
        for claim in claims:
            try:
                futures.append(self._executor.submit(self.product_cache.complete_claim, claim))
            except RuntimeError:
                logger.warning("Specification cache is closed; dropping product fetch")
                self.product_cache.release_claim(claim)
                self._reconcile(frozenset(claim.to_fetch))
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()] + futures

        if wait:
            for future in futures:
                future.result()

    def wait_for_products(self, timeout: Optional[float] = None) -> None:
        """Block until outstanding product fetches have finished."""
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            future.result(timeout)

    def _on_product_change(self, change: CacheChange) -> None:
        if change.reset:
            return
        self._reconcile(change.handles)

    def _reconcile(self, handles: Optional[AbstractSet[str]] = None) -> None:
        with self._lock:
            specs = self._state.specifications
            if not specs:
                return
            if handles is not None and not has_relevant_product_changes(specs, handles):
                return
            updated, changed = reconcile_specifications(
                specs,
                self.product_cache.get_product,
                self.product_cache.is_product_loading,
                handles,
            )
            if changed:
                self._state = replace(self._state, specifications=updated)

    def get_specifications_sorted_by_completeness(self) -> Tuple[SpecificationWithProduct, ...]:
        """Joined first, then most complete. Recomputed only when the list changes."""
        with self._lock:
            specs = self._state.specifications
            if self._sorted_from is not specs:
                self._sorted = sort_specifications_by_completeness(specs)
                self._sorted_from = specs
            return self._sorted

    def get_specification(self, spec_id: str) -> Optional[SpecificationWithProduct]:
        for spec in self.specifications:
            if spec.id == spec_id:
                return spec
        return None

    def filter_by_completion(self, min_percent: float) -> Tuple[SpecificationWithProduct, ...]:
        return tuple(
            s for s in self.get_specifications_sorted_by_completeness()
            if (s.completion_percent or 0.0) >= min_percent
        )

    def reset_cache(self) -> None:
        with self._lock:
            self._generation += 1
            self._state = SpecificationCacheState()
            self._sorted = ()
            self._sorted_from = None
            self._pending = []
        logger.info("Specification cache reset")

    def close(self) -> None:
        self.product_cache.unsubscribe(self._on_product_change)
        self._executor.shutdown(wait=False)
