"""Per-user session wiring the product and specification caches.

Login is dev-mode only: pick a user id, no credentials. Logging in
preloads products and fetches the user's specifications side by side;
logging out resets both caches.
"""

import threading
from typing import List, Optional, Protocol

from specbuilder.config import DB_PATH
from specbuilder.db import ConnectionTracker, get_specifications, get_user, get_users
from specbuilder.logging_config import get_logger, log_cache_event
from specbuilder.models import Specification, User
from specbuilder.product_cache import ProductCache, ProductSource
from specbuilder.specification_cache import SpecificationCache, SpecificationSource

__all__ = ["UserSource", "DatabaseSpecificationSource", "SpecBuilderSession"]

logger = get_logger("session")


class UserSource(Protocol):
    def fetch_user(self, user_id: str) -> Optional[User]:
        ...


class DatabaseSpecificationSource:
    """Reads specifications and users straight from the SQLite database."""

    def __init__(self, db_path: str = DB_PATH, tracker: Optional[ConnectionTracker] = None):
        self.db_path = db_path
        self.tracker = tracker

    def fetch_specifications(self, user_id: str, limit: Optional[int] = None) -> List[Specification]:
        rows = get_specifications(self.db_path, user_id, limit=limit, tracker=self.tracker)
        return [Specification.from_dict(row) for row in rows]

    def fetch_users(self) -> List[User]:
        return [User.from_dict(row) for row in get_users(self.db_path, tracker=self.tracker)]

    def fetch_user(self, user_id: str) -> Optional[User]:
        row = get_user(self.db_path, user_id, tracker=self.tracker)
        return User.from_dict(row) if row else None


class SpecBuilderSession:
    """One logged-in user and their caches."""

    def __init__(
        self,
        products: ProductSource,
        specifications: SpecificationSource,
        users: UserSource,
        product_cache: Optional[ProductCache] = None,
        specification_cache: Optional[SpecificationCache] = None,
    ):
        self.users = users
        self.product_cache = product_cache or ProductCache(products)
        self.specification_cache = specification_cache or SpecificationCache(
            specifications, self.product_cache
        )
        self.user: Optional[User] = None
        self.error: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def is_admin(self) -> bool:
        return self.user is not None and self.user.is_admin

    @property
    def is_reviewer(self) -> bool:
        return self.user is not None and self.user.is_reviewer

    def login(self, user_id: str, wait: bool = False, background: bool = True) -> Optional[User]:
        """Log in as ``user_id`` and start loading their data.

        Args:
            user_id: User to log in as
            wait: Block until the first product page and the specifications
                (with their products) are loaded. Background fill keeps going.
            background: Start the background product fill after the first page

        Returns:
            The user, or None if the lookup failed (see ``error``)
        """
        try:
            user = self.users.fetch_user(user_id)
        except Exception as e:
            logger.error(f"Login failed for user {user_id}: {e}")
            self.error = str(e)
            return None
        if user is None:
            logger.warning(f"Login failed: user {user_id} not found")
            self.error = "User not found"
            return None

        if self.user is not None and self.user.id != user.id:
            self.logout()

        self.user = user
        self.error = None
        log_cache_event("login", {
            "message": f"Logged in as {user.email} ({user.role})",
            "user_id": user.id,
            "role": user.role,
        }, logger_name="session")

        workers = [
            threading.Thread(
                target=self.product_cache.preload,
                kwargs={"start_background": background},
                name="preload-products",
                daemon=True,
            ),
            threading.Thread(
                target=self.specification_cache.fetch_specifications,
                args=(user.id,),
                name="fetch-specifications",
                daemon=True,
            ),
        ]
        for worker in workers:
            worker.start()
        if wait:
            for worker in workers:
                worker.join()
            self.specification_cache.wait_for_products()
        return user

    def logout(self) -> None:
        if self.user is not None:
            logger.info(f"Logging out {self.user.email}")
        self.product_cache.reset()
        self.specification_cache.reset_cache()
        self.user = None
        self.error = None

    def close(self) -> None:
        self.logout()
        self.specification_cache.close()
