"""Progressive in-memory product cache.

The cache fills itself two ways: on demand for specific handles, and in
the background by walking the paginated product listing. State lives in
an immutable ``ProductCacheState`` snapshot that is replaced on every
change, so readers never see a half-updated collection. Listeners get a
``CacheChange`` delta after each replacement.

Background fill phases::

    idle -> initial_load -> background_filling -> complete

``complete`` is sticky until ``reset()``. It is reached either when the
listing runs out of pages (``CompletionReason.EXHAUSTED``) or when
``RetryPolicy.max_attempts`` consecutive page fetches fail
(``CompletionReason.RETRY_CEILING``).
"""

import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from specbuilder.config import (
    BACKGROUND_START_DELAY,
    BATCH_SIZE,
    MAX_HANDLE_RETRIES,
    MAX_HANDLES_PER_REQUEST,
)
from specbuilder.errors import FetchCancelled
from specbuilder.logging_config import get_logger, log_cache_event
from specbuilder.models import Product, ProductPage
from specbuilder.retry import RetryPolicy

__all__ = [
    "ProductSource",
    "LoadPhase",
    "CompletionReason",
    "ProductCacheState",
    "CacheChange",
    "HandleClaim",
    "ProductCache",
]

logger = get_logger("product_cache")


class ProductSource(Protocol):
    """Where products come from (Shopify directly, or the Spec Builder API)."""

    def fetch_page(self, cursor: Optional[str], limit: int) -> ProductPage:
        ...

    def fetch_by_handles(self, handles: List[str]) -> List[Product]:
        ...

    def fetch_product(self, handle: str) -> Optional[Product]:
        ...


class LoadPhase(str, Enum):
    IDLE = "idle"
    INITIAL_LOAD = "initial_load"
    BACKGROUND_FILLING = "background_filling"
    COMPLETE = "complete"


class CompletionReason(str, Enum):
    EXHAUSTED = "exhausted"
    RETRY_CEILING = "retry_ceiling"


@dataclass(frozen=True)
class ProductCacheState:
    products: Mapping[str, Product] = field(default_factory=dict)
    loading_handles: FrozenSet[str] = frozenset()
    # handle -> number of fetches that came back without it
    failed_handles: Mapping[str, int] = field(default_factory=dict)
    current_cursor: Optional[str] = None
    is_loading_batch: bool = False
    is_background_loading: bool = False
    is_loading_complete: bool = False
    failed_batches: int = 0
    batches_loaded: int = 0
    completion_reason: Optional[CompletionReason] = None
    error: Optional[str] = None
    started: bool = False

    @property
    def phase(self) -> LoadPhase:
        if self.is_loading_complete:
            return LoadPhase.COMPLETE
        if self.is_background_loading:
            return LoadPhase.BACKGROUND_FILLING
        if self.started:
            return LoadPhase.INITIAL_LOAD
        return LoadPhase.IDLE

    @property
    def total_products_loaded(self) -> int:
        return len(self.products)


@dataclass(frozen=True)
class CacheChange:
    """What a single state replacement changed."""

    added: FrozenSet[str] = frozenset()
    loading_started: FrozenSet[str] = frozenset()
    loading_finished: FrozenSet[str] = frozenset()
    reset: bool = False

    @property
    def handles(self) -> FrozenSet[str]:
        return self.added | self.loading_started | self.loading_finished

    @property
    def is_empty(self) -> bool:
        return not self.reset and not self.handles


@dataclass(frozen=True)
class HandleClaim:
    """Handles one caller has marked as loading and must fetch or release."""

    requested: Tuple[str, ...]
    to_fetch: Tuple[str, ...]
    # Other callers' fetches covering the rest of ``requested``
    waiting: FrozenSet[threading.Event]
    event: threading.Event
    generation: int


Listener = Callable[[CacheChange], None]
StateUpdate = Callable[[ProductCacheState], Tuple[ProductCacheState, Optional[CacheChange]]]


def _merge_products(
    state: ProductCacheState,
    products: Iterable[Product],
    **changes,
) -> Tuple[ProductCacheState, CacheChange]:
    """Last write wins per handle; merged handles stop loading and stop failing."""
    updated = dict(state.products)
    failed = dict(state.failed_handles)
    added = set()
    for product in products:
        updated[product.handle] = product
        failed.pop(product.handle, None)
        added.add(product.handle)

    new_state = replace(
        state,
        products=updated,
        loading_handles=state.loading_handles - added,
        failed_handles=failed,
        **changes,
    )
    change = CacheChange(
        added=frozenset(added),
        loading_finished=frozenset(state.loading_handles & added),
    )
    return new_state, change


def _chunks(items: Sequence[str], size: int) -> Iterable[List[str]]:
    for i in range(0, len(items), size):
        yield list(items[i:i + size])


class ProductCache:
    """Session-local mirror of the product catalog."""

    def __init__(
        self,
        source: ProductSource,
        page_size: int = BATCH_SIZE,
        retry_policy: Optional[RetryPolicy] = None,
        max_handle_retries: int = MAX_HANDLE_RETRIES,
        handles_per_request: int = MAX_HANDLES_PER_REQUEST,
        background_start_delay: float = BACKGROUND_START_DELAY,
    ):
        self.source = source
        self.page_size = page_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_handle_retries = max_handle_retries
        self.handles_per_request = handles_per_request
        self.background_start_delay = background_start_delay

        self._lock = threading.RLock()
        self._state = ProductCacheState()
        # Bumped by reset(); responses tagged with an older value are dropped
        self._generation = 0
        self._inflight: Dict[str, threading.Event] = {}
        self._listeners: List[Listener] = []
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._thread_generation = 0

    # ---------- state & notifications ----------

    @property
    def state(self) -> ProductCacheState:
        with self._lock:
            return self._state

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, change: Optional[CacheChange]) -> None:
        if change is None or change.is_empty:
            return
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception:
                logger.exception("Product cache listener failed")

    def _apply(self, generation: int, update: StateUpdate) -> ProductCacheState:
        """Replace the state via ``update`` unless a reset happened since ``generation``.

        Raises:
            FetchCancelled: If the cache was reset while the request was in flight
        """
        with self._lock:
            if generation != self._generation:
                raise FetchCancelled("Product cache was reset while the request was in flight")
            self._state, change = update(self._state)
            state = self._state
        self._notify(change)
        return state

    # ---------- lookups ----------

    def get_product(self, handle: Optional[str]) -> Optional[Product]:
        if not handle:
            return None
        return self.state.products.get(handle)

    def is_product_loading(self, handle: Optional[str]) -> bool:
        return bool(handle) and handle in self.state.loading_handles

    def did_product_fail(self, handle: str) -> bool:
        return handle in self.state.failed_handles

    def get_failed_retry_count(self, handle: str) -> int:
        return self.state.failed_handles.get(handle, 0)

    # ---------- initial load ----------

    def preload(self, start_background: bool = True) -> Optional[ProductPage]:
        """Load the first page of products once per session.

        Products fetched on demand by handle do not count as loaded here.

        Returns:
            The first page, or None if nothing was fetched (already loaded,
            already loading, failed, or cancelled)
        """
        with self._lock:
            state = self._state
            if state.is_loading_batch or state.batches_loaded:
                logger.debug("Preload skipped: listing already loaded or loading")
                return None
            generation = self._generation
            self._state = replace(state, is_loading_batch=True, error=None, started=True)

        try:
            page = self.source.fetch_page(None, self.page_size)
        except Exception as e:
            logger.error(f"Error preloading products: {e}")
            try:
                self._apply(generation, lambda s: (replace(s, is_loading_batch=False, error=str(e)), None))
            except FetchCancelled:
                pass
            return None

        try:
            self._apply(
                generation,
                lambda s: _merge_products(
                    s,
                    page.products,
                    is_loading_batch=False,
                    current_cursor=page.next_cursor,
                    is_loading_complete=not page.has_next_page,
                    completion_reason=None if page.has_next_page else CompletionReason.EXHAUSTED,
                    failed_batches=0,
                    batches_loaded=s.batches_loaded + 1,
                ),
            )
        except FetchCancelled:
            logger.debug("Preload response dropped after reset")
            return None

        log_cache_event("batch_loaded", {
            "message": f"Preloaded {len(page.products)} products",
            "batch": 1,
            "products": len(page.products),
            "has_next_page": page.has_next_page,
        }, logger_name="product_cache")

        if page.has_next_page and start_background:
            self.start_background_loading(initial_delay=self.background_start_delay)
        return page

    # ---------- on-demand fetches ----------

    def fetch_by_handles(self, handles: Iterable[str]) -> List[Product]:
        """Fetch products for specific handles, skipping cached and in-flight ones.

        Handles already being fetched by another caller are waited on rather
        than requested again. Handles the source does not return are counted
        in ``failed_handles`` and not retried by this call.

        Returns:
            The cached products for the requested handles once done
        """
        return self.complete_claim(self.claim_handles(handles))

    def claim_handles(self, handles: Iterable[str]) -> HandleClaim:
        """Mark the uncached handles as loading without fetching them yet.

        The returned claim must be passed to ``complete_claim`` (which does
        the fetch) or ``release_claim``.
        """
        requested = list(dict.fromkeys(h for h in handles if h))
        event = threading.Event()
        with self._lock:
            state = self._state
            waiting = frozenset(self._inflight[h] for h in requested if h in self._inflight)
            to_fetch = [
                h for h in requested
                if h not in state.products
                and h not in self._inflight
                and state.failed_handles.get(h, 0) < self.max_handle_retries
            ]
            for h in to_fetch:
                self._inflight[h] = event
            if to_fetch:
                self._state = replace(state, loading_handles=state.loading_handles | set(to_fetch))
            claim = HandleClaim(tuple(requested), tuple(to_fetch), waiting, event, self._generation)

        if to_fetch:
            self._notify(CacheChange(loading_started=frozenset(to_fetch)))
        return claim

    def complete_claim(self, claim: HandleClaim) -> List[Product]:
        """Fetch the claimed handles and wait for any other callers' fetches.

        Returns:
            The cached products for the requested handles
        """
        if not claim.requested:
            return []
        if claim.to_fetch:
            try:
                for chunk in _chunks(claim.to_fetch, self.handles_per_request):
                    self._fetch_handle_chunk(claim.generation, chunk)
            finally:
                self.release_claim(claim)

        for other in claim.waiting:
            other.wait()

        products = self.state.products
        return [products[h] for h in claim.requested if h in products]

    def release_claim(self, claim: HandleClaim) -> None:
        """Give up a claim; handles it still holds stop loading."""
        with self._lock:
            released = set()
            for h in claim.to_fetch:
                if self._inflight.get(h) is claim.event:
                    del self._inflight[h]
                    released.add(h)
            stuck = frozenset(self._state.loading_handles & released)
            if stuck and claim.generation == self._generation:
                self._state = replace(self._state, loading_handles=self._state.loading_handles - stuck)
            else:
                stuck = frozenset()
        claim.event.set()
        if stuck:
            self._notify(CacheChange(loading_finished=stuck))

    def _request_handles(self, chunk: List[str]) -> List[Product]:
        if len(chunk) == 1:
            product = self.source.fetch_product(chunk[0])
            return [product] if product is not None else []
        return self.source.fetch_by_handles(chunk)

    def _fetch_handle_chunk(self, generation: int, chunk: List[str]) -> None:
        wanted = set(chunk)
        try:
            fetched = self._request_handles(chunk)
        except Exception as e:
            logger.error(f"Error fetching products by handles: {e}")

            def record_failure(state: ProductCacheState):
                failed = dict(state.failed_handles)
                for h in chunk:
                    failed[h] = failed.get(h, 0) + 1
                new_state = replace(
                    state,
                    loading_handles=state.loading_handles - wanted,
                    failed_handles=failed,
                    error=str(e),
                )
                return new_state, CacheChange(loading_finished=frozenset(state.loading_handles & wanted))

            try:
                self._apply(generation, record_failure)
            except FetchCancelled:
                logger.debug("Handle fetch failure dropped after reset")
            return

        products = [p for p in fetched if p.handle in wanted]
        found = {p.handle for p in products}
        missing = wanted - found

        def record_success(state: ProductCacheState):
            new_state, change = _merge_products(state, products)
            failed = dict(new_state.failed_handles)
            for h in missing:
                failed[h] = failed.get(h, 0) + 1
            new_state = replace(
                new_state,
                loading_handles=new_state.loading_handles - wanted,
                failed_handles=failed,
            )
            return new_state, replace(
                change, loading_finished=frozenset(state.loading_handles & wanted)
            )

        try:
            self._apply(generation, record_success)
        except FetchCancelled:
            logger.debug("Handle fetch response dropped after reset")
            return

        log_cache_event("handles_fetched", {
            "message": f"Fetched {len(found)}/{len(chunk)} products by handle",
            "requested": len(chunk),
            "found": len(found),
            "missing": sorted(missing),
        }, logger_name="product_cache")

    def get_or_fetch_product(self, handle: str) -> Optional[Product]:
        """Cached product for ``handle``, fetching it first if needed."""
        product = self.get_product(handle)
        if product is None:
            self.fetch_by_handles([handle])
            product = self.get_product(handle)
        return product

    def retry_failed_products(self) -> List[Product]:
        """Request failed handles again, up to the per-handle ceiling."""
        with self._lock:
            state = self._state
            handles = [
                h for h, count in state.failed_handles.items()
                if count < self.max_handle_retries and h not in state.products
            ]
        if not handles:
            return []
        logger.info(f"Retrying {len(handles)} failed product handles")
        return self.fetch_by_handles(handles)

    # ---------- background fill ----------

    def load_next_batch(self, page_size: Optional[int] = None) -> bool:
        """Fetch the next page of the listing.

        Returns:
            True if another page should be requested (more pages remain, or
            the failure is still below the retry ceiling), False otherwise
        """
        with self._lock:
            state = self._state
            if state.is_loading_complete or state.is_loading_batch:
                return False
            generation = self._generation
            cursor = state.current_cursor
            self._state = replace(state, is_loading_batch=True, started=True)

        try:
            page = self.source.fetch_page(cursor, page_size or self.page_size)
        except Exception as e:
            return self._record_batch_failure(generation, e)

        try:
            new_state = self._apply(
                generation,
                lambda s: _merge_products(
                    s,
                    page.products,
                    is_loading_batch=False,
                    current_cursor=page.next_cursor,
                    is_loading_complete=not page.has_next_page,
                    completion_reason=None if page.has_next_page else CompletionReason.EXHAUSTED,
                    failed_batches=0,
                    batches_loaded=s.batches_loaded + 1,
                    error=None,
                ),
            )
        except FetchCancelled:
            logger.debug("Batch response dropped after reset")
            return False

        log_cache_event("batch_loaded", {
            "message": f"Loaded batch {new_state.batches_loaded} ({len(page.products)} products, "
                       f"{new_state.total_products_loaded} total)",
            "batch": new_state.batches_loaded,
            "products": len(page.products),
            "total_products": new_state.total_products_loaded,
            "has_next_page": page.has_next_page,
        }, logger_name="product_cache")
        return page.has_next_page

    def _record_batch_failure(self, generation: int, error: Exception) -> bool:
        def update(state: ProductCacheState):
            failures = state.failed_batches + 1
            changes = {
                "is_loading_batch": False,
                "failed_batches": failures,
                "error": f"Failed to fetch product batch: {error}",
            }
            if self.retry_policy.exhausted(failures):
                changes.update(
                    is_loading_complete=True,
                    is_background_loading=False,
                    completion_reason=CompletionReason.RETRY_CEILING,
                )
            return replace(state, **changes), None

        try:
            state = self._apply(generation, update)
        except FetchCancelled:
            return False

        if state.completion_reason == CompletionReason.RETRY_CEILING:
            logger.error(
                f"Giving up on background product loading after {state.failed_batches} failed batches: {error}"
            )
            log_cache_event("background_disabled", {
                "failed_batches": state.failed_batches,
                "error": str(error),
            }, logger_name="product_cache")
            self._stop_event.set()
            return False

        logger.warning(
            f"Product batch failed ({error}), attempt {state.failed_batches}/{self.retry_policy.max_attempts}"
        )
        log_cache_event("batch_failed", {
            "failed_batches": state.failed_batches,
            "cursor": state.current_cursor,
            "error": str(error),
        }, logger_name="product_cache")
        return True

    def _background_running(self) -> bool:
        """True while a background thread started since the last reset is alive."""
        return (
            self._thread is not None
            and self._thread.is_alive()
            and self._thread_generation == self._generation
        )

    def start_background_loading(self, initial_delay: float = 0.0) -> bool:
        """Start the background fill on a daemon thread.

        Returns:
            False if it is already running or the cache is complete
        """
        with self._lock:
            state = self._state
            if state.is_background_loading or state.is_loading_complete or self._background_running():
                return False
            generation = self._generation
            stop_event = self._arm_stop_event()
            self._state = replace(state, is_background_loading=True, started=True)
            self._thread_generation = generation
            self._thread = threading.Thread(
                target=self._background_worker,
                args=(generation, stop_event, initial_delay),
                name="product-cache-background",
                daemon=True,
            )
            self._thread.start()
        return True

    def _arm_stop_event(self) -> threading.Event:
        """Stop event for a new run. A stop requested for an earlier run is cleared."""
        if self._stop_event.is_set():
            self._stop_event = threading.Event()
        return self._stop_event

    def _background_worker(self, generation: int, stop_event: threading.Event, initial_delay: float) -> None:
        if initial_delay and stop_event.wait(initial_delay):
            self._clear_background_flag(generation)
            return
        self._run_loop(generation, stop_event)

    def run_background_loading(self) -> None:
        """Run the background fill in the calling thread until it finishes."""
        with self._lock:
            state = self._state
            if state.is_loading_complete or self._background_running():
                return
            generation = self._generation
            stop_event = self._arm_stop_event()
            self._state = replace(state, is_background_loading=True, started=True)
        self._run_loop(generation, stop_event)

    def _run_loop(self, generation: int, stop_event: threading.Event) -> None:
        logger.info("Background product loading started")
        try:
            while not stop_event.is_set():
                if not self.load_next_batch():
                    break
                delay = self.retry_policy.delay_for(self.state.failed_batches)
                if stop_event.wait(delay):
                    break
        finally:
            self._clear_background_flag(generation)

        state = self.state
        log_cache_event("background_complete", {
            "message": f"Background product loading stopped ({state.total_products_loaded} products)",
            "total_products": state.total_products_loaded,
            "batches": state.batches_loaded,
            "complete": state.is_loading_complete,
            "reason": state.completion_reason.value if state.completion_reason else None,
        }, logger_name="product_cache")

    def _clear_background_flag(self, generation: int) -> None:
        with self._lock:
            if generation == self._generation:
                self._state = replace(self._state, is_background_loading=False)

    def stop_background_loading(self) -> None:
        """Ask the background fill to stop before its next page."""
        self._stop_event.set()

    def wait_for_background(self, timeout: Optional[float] = None) -> bool:
        """Block until the background thread exits. Returns False on timeout."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # ---------- reset ----------

    def reset(self) -> None:
        """Drop everything and cancel outstanding requests."""
        with self._lock:
            self._generation += 1
            self._stop_event.set()
            self._stop_event = threading.Event()
            waiters = set(self._inflight.values())
            self._inflight.clear()
            self._state = ProductCacheState()
        for event in waiters:
            event.set()
        logger.info("Product cache reset")
        self._notify(CacheChange(reset=True))
