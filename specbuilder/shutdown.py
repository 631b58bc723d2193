"""Ctrl+C handling for product cache warm-ups.

While a ``WarmupInterrupt`` is active, the first SIGINT/SIGTERM asks the
product cache to stop after the page it is fetching and logs how far the
fill got. A second signal raises ``KeyboardInterrupt``.
"""

import signal
from typing import Any, Dict, Iterable, Optional

from specbuilder.logging_config import get_logger, log_cache_event
from specbuilder.product_cache import ProductCache

__all__ = ["WarmupInterrupt"]

logger = get_logger("shutdown")


class WarmupInterrupt:
    """Stops a ``ProductCache`` background fill on a termination signal.

    Usage:
        with WarmupInterrupt(cache) as interrupt:
            cache.run_background_loading()
        if interrupt.interrupted:
            ...

    Handlers are installed on enter and the previous ones restored on exit.
    Must be entered from the main thread.
    """

    def __init__(
        self,
        cache: ProductCache,
        signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM),
    ):
        self.cache = cache
        self.signals = tuple(signals)
        self.signal_name: Optional[str] = None
        self._previous: Dict[int, Any] = {}

    @property
    def interrupted(self) -> bool:
        return self.signal_name is not None

    def __enter__(self) -> "WarmupInterrupt":
        for signum in self.signals:
            self._previous[signum] = signal.signal(signum, self._on_signal)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        for signum, handler in self._previous.items():
            # None means the handler was not installed from Python
            if handler is not None:
                signal.signal(signum, handler)
        self._previous.clear()
        return False

    def _on_signal(self, signum: int, frame) -> None:
        name = signal.Signals(signum).name
        if self.interrupted:
            logger.warning(f"Received {name} again, aborting product warm-up")
            raise KeyboardInterrupt

        self.signal_name = name
        state = self.cache.state
        logger.warning(
            f"Received {name} after {state.batches_loaded} pages "
            f"({state.total_products_loaded} products); stopping after the current page"
        )
        log_cache_event("warmup_interrupted", {
            "signal": name,
            "batches": state.batches_loaded,
            "total_products": state.total_products_loaded,
        }, logger_name="shutdown")
        self.cache.stop_background_loading()
