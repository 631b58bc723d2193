"""SQLite schema and helpers for users, lookups and specifications."""

import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional, Set

from specbuilder.config import DB_PATH, LOOKUP_TABLES, USER_ROLES
from specbuilder.logging_config import get_logger

__all__ = [
    "ConnectionTracker",
    "get_connection",
    "test_connection",
    "init_db",
    "upsert_user",
    "get_users",
    "get_user",
    "upsert_lookup",
    "get_lookup_values",
    "get_brands",
    "create_specification",
    "get_specifications",
    "get_specified_handles",
    "get_specification_count",
    "seed_demo_data",
]

logger = get_logger("db")

# Many-to-many tables: specification field -> (lookup table, junction table, junction column)
MULTI_TABLES = {
    "tasting_notes": ("tasting_notes", "specification_tasting_notes", "tasting_note"),
    "tobacco_types": ("tobacco_types", "specification_tobacco_types", "tobacco_type"),
    "cures": ("cures", "specification_cures", "cure"),
}


def _valid_lookup_tables() -> frozenset:
    """Whitelist of lookup tables that may be interpolated into SQL."""
    tables = set(LOOKUP_TABLES.values())
    tables.update(lookup for lookup, _, _ in MULTI_TABLES.values())
    return frozenset(tables)


def _check_table(table: str) -> None:
    valid = _valid_lookup_tables()
    if table not in valid:
        raise ValueError(f"Invalid table name: {table}. Must be one of {sorted(valid)}")


class ConnectionTracker:
    """Counts connections and queries for one database.

    Passed explicitly to ``get_connection``; there is no module-level state.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.active_connections = 0
        self.total_connections_created = 0
        self.total_connections_released = 0
        self.active_queries = 0
        self.total_queries_executed = 0
        self.failed_queries = 0

    def connection_opened(self) -> None:
        with self._lock:
            self.active_connections += 1
            self.total_connections_created += 1

    def connection_closed(self) -> None:
        with self._lock:
            self.active_connections -= 1
            self.total_connections_released += 1
            if self.active_connections < 0:
                logger.error(
                    f"Connection tracking error: active connections is negative ({self.active_connections})"
                )

    def query_started(self) -> None:
        with self._lock:
            self.active_queries += 1
            self.total_queries_executed += 1

    def query_finished(self, failed: bool = False) -> None:
        with self._lock:
            self.active_queries -= 1
            if failed:
                self.failed_queries += 1

    def status(self) -> Dict[str, int]:
        with self._lock:
            return {
                "activeConnections": self.active_connections,
                "totalConnectionsCreated": self.total_connections_created,
                "totalConnectionsReleased": self.total_connections_released,
                "activeQueries": self.active_queries,
                "totalQueriesExecuted": self.total_queries_executed,
                "failedQueries": self.failed_queries,
            }


class _TrackedConnection:
    """Wraps a sqlite3 connection so every ``execute`` is counted."""

    def __init__(self, conn: sqlite3.Connection, tracker: ConnectionTracker):
        self._conn = conn
        self._tracker = tracker

    def execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        self._tracker.query_started()
        start = time.monotonic()
        try:
            cursor = self._conn.execute(sql, tuple(params))
        except sqlite3.Error as e:
            self._tracker.query_finished(failed=True)
            short_sql = " ".join(sql.split())[:100]
            logger.error(
                f"Database query error: {e} (query: {short_sql}, "
                f"duration: {(time.monotonic() - start) * 1000:.0f}ms)"
            )
            raise
        self._tracker.query_finished()
        return cursor

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)


@contextmanager
def get_connection(
    db_path: str = DB_PATH,
    tracker: Optional[ConnectionTracker] = None,
) -> Generator[Any, None, None]:
    """Context manager for database connections."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    if tracker is None:
        try:
            yield conn
        finally:
            conn.close()
        return

    tracker.connection_opened()
    try:
        yield _TrackedConnection(conn, tracker)
    finally:
        conn.close()
        tracker.connection_closed()


def test_connection(db_path: str = DB_PATH, tracker: Optional[ConnectionTracker] = None) -> bool:
    """Return True if a trivial query succeeds."""
    try:
        with get_connection(db_path, tracker) as conn:
            conn.execute("SELECT 1")
        return True
    except sqlite3.Error as e:
        logger.error(f"Error connecting to database {db_path}: {e}")
        return False


def init_db(db_path: str = DB_PATH) -> None:
    """Initialize the database schema."""
    with get_connection(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                name TEXT,
                role TEXT NOT NULL DEFAULT 'reviewer',
                slack_userid TEXT,
                jotform_name TEXT
            )
        """)

        for table in sorted(_valid_lookup_tables()):
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT UNIQUE NOT NULL
                )
            """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS specifications (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                shopify_handle TEXT,
                review TEXT,
                star_rating INTEGER,
                product_type_id INTEGER REFERENCES product_types(id),
                product_brand_id INTEGER REFERENCES product_brands(id),
                grind_id INTEGER REFERENCES grinds(id),
                moisture_level_id INTEGER REFERENCES moisture_levels(id),
                nicotine_level_id INTEGER REFERENCES nicotine_levels(id),
                experience_level_id INTEGER REFERENCES experience_levels(id),
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                UNIQUE (user_id, shopify_handle),
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
        """)

        for lookup, junction, column in MULTI_TABLES.values():
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {junction} (
                    specification_id TEXT NOT NULL,
                    {column}_id INTEGER NOT NULL,
                    PRIMARY KEY (specification_id, {column}_id),
                    FOREIGN KEY (specification_id) REFERENCES specifications(id) ON DELETE CASCADE,
                    FOREIGN KEY ({column}_id) REFERENCES {lookup}(id)
                )
            """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_specifications_user ON specifications(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_specifications_handle ON specifications(shopify_handle)")

        conn.commit()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------- USERS ----------


def upsert_user(
    db_path: str,
    email: str,
    name: Optional[str] = None,
    role: str = "reviewer",
    user_id: Optional[str] = None,
) -> str:
    """Insert or update a user by email, returning its ID."""
    if role not in USER_ROLES:
        raise ValueError(f"Invalid role: {role}. Must be one of {USER_ROLES}")

    with get_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT id FROM users WHERE email = ?", (email,))
        existing = cursor.fetchone()
        if existing:
            cursor.execute(
                "UPDATE users SET name = ?, role = ? WHERE email = ?",
                (name, role, email),
            )
            result = existing["id"]
        else:
            result = user_id or str(uuid.uuid4())
            cursor.execute(
                "INSERT INTO users (id, email, name, role) VALUES (?, ?, ?, ?)",
                (result, email, name, role),
            )
        conn.commit()
        return result


def get_users(db_path: str = DB_PATH, tracker: Optional[ConnectionTracker] = None) -> List[Dict[str, Any]]:
    """All users ordered by name, for the dev-mode login picker."""
    with get_connection(db_path, tracker) as conn:
        rows = conn.execute("SELECT id, email, name, role FROM users ORDER BY name").fetchall()
        return [dict(row) for row in rows]


def get_user(
    db_path: str,
    user_id: str,
    tracker: Optional[ConnectionTracker] = None,
) -> Optional[Dict[str, Any]]:
    with get_connection(db_path, tracker) as conn:
        row = conn.execute(
            "SELECT id, email, name, role, slack_userid, jotform_name FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
        return dict(row) if row else None


# ---------- LOOKUPS ----------


def upsert_lookup(db_path: str, table: str, name: str) -> int:
    """Insert a lookup value if missing, returning its ID."""
    _check_table(table)
    with get_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(f"INSERT OR IGNORE INTO {table} (name) VALUES (?)", (name,))
        cursor.execute(f"SELECT id FROM {table} WHERE name = ?", (name,))
        lookup_id = cursor.fetchone()["id"]
        conn.commit()
        return lookup_id


def get_lookup_values(
    db_path: str,
    table: str,
    tracker: Optional[ConnectionTracker] = None,
) -> List[Dict[str, Any]]:
    """All ``{id, name}`` rows of a lookup table, ordered by name."""
    _check_table(table)
    with get_connection(db_path, tracker) as conn:
        rows = conn.execute(f"SELECT id, name FROM {table} ORDER BY name").fetchall()
        return [{"id": str(row["id"]), "name": row["name"]} for row in rows]


def get_brands(db_path: str = DB_PATH, tracker: Optional[ConnectionTracker] = None) -> List[Dict[str, Any]]:
    return get_lookup_values(db_path, "product_brands", tracker)


# ---------- SPECIFICATIONS ----------


def _resolve_lookup_id(cursor: sqlite3.Cursor, table: str, value: Any) -> Optional[int]:
    """Accept a lookup id or a name and return the row id, or None."""
    if value in (None, ""):
        return None
    if isinstance(value, dict):
        value = value.get("id") or value.get("name")
    if isinstance(value, int) or (isinstance(value, str) and value.isdigit()):
        cursor.execute(f"SELECT id FROM {table} WHERE id = ?", (int(value),))
    else:
        cursor.execute(f"SELECT id FROM {table} WHERE name = ?", (str(value),))
    row = cursor.fetchone()
    if row is None:
        raise ValueError(f"Unknown value {value!r} for {table}")
    return row["id"]


def create_specification(db_path: str, user_id: str, data: Dict[str, Any]) -> str:
    """Insert a specification for a user, returning its ID.

    ``data`` holds ``shopify_handle``, ``review``, ``star_rating``, the
    single-valued lookups (id or name) and lists of ids or names for
    ``tasting_notes``, ``tobacco_types`` and ``cures``.

    Raises:
        ValueError: On unknown lookup values, a bad rating, or a duplicate
            specification for the same user and product
    """
    star_rating = data.get("star_rating")
    if star_rating is not None:
        star_rating = int(star_rating)
        if not 1 <= star_rating <= 5:
            raise ValueError("star_rating must be between 1 and 5")

    spec_id = str(uuid.uuid4())
    now = _now()

    with get_connection(db_path) as conn:
        cursor = conn.cursor()
        lookup_ids = {
            field: _resolve_lookup_id(cursor, table, data.get(field))
            for field, table in LOOKUP_TABLES.items()
        }
        try:
            cursor.execute(
                """
                INSERT INTO specifications (
                    id, user_id, shopify_handle, review, star_rating,
                    product_type_id, product_brand_id, grind_id, moisture_level_id,
                    nicotine_level_id, experience_level_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    spec_id, user_id, data.get("shopify_handle"), data.get("review"), star_rating,
                    lookup_ids["product_type"], lookup_ids["product_brand"], lookup_ids["grind"],
                    lookup_ids["moisture_level"], lookup_ids["nicotine_level"],
                    lookup_ids["experience_level"], now, now,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Could not create specification: {e}") from e

        for field, (lookup, junction, column) in MULTI_TABLES.items():
            for value in data.get(field) or []:
                lookup_id = _resolve_lookup_id(cursor, lookup, value)
                cursor.execute(
                    f"INSERT OR IGNORE INTO {junction} (specification_id, {column}_id) VALUES (?, ?)",
                    (spec_id, lookup_id),
                )

        conn.commit()
    logger.info(f"Created specification {spec_id} for user {user_id} ({data.get('shopify_handle')})")
    return spec_id


def _relation(row: sqlite3.Row, prefix: str) -> Optional[Dict[str, str]]:
    if row[f"{prefix}_id"] is None:
        return None
    return {"id": str(row[f"{prefix}_id"]), "name": row[f"{prefix}_name"]}


def get_specifications(
    db_path: str,
    user_id: str,
    limit: Optional[int] = None,
    tracker: Optional[ConnectionTracker] = None,
) -> List[Dict[str, Any]]:
    """A user's specifications, newest first, in the nested API shape."""
    joins = []
    columns = []
    for field, table in LOOKUP_TABLES.items():
        joins.append(f"LEFT JOIN {table} AS {field}_t ON s.{field}_id = {field}_t.id")
        columns.append(f"{field}_t.id AS {field}_id, {field}_t.name AS {field}_name")

    sql = f"""
        SELECT s.id, s.shopify_handle, s.review, s.star_rating, s.created_at, s.updated_at,
               {', '.join(columns)}
        FROM specifications s
        {' '.join(joins)}
        WHERE s.user_id = ?
        ORDER BY s.created_at DESC
    """
    params: List[Any] = [user_id]
    if limit:
        sql += " LIMIT ?"
        params.append(limit)

    with get_connection(db_path, tracker) as conn:
        rows = conn.execute(sql, params).fetchall()
        specifications = []
        for row in rows:
            spec: Dict[str, Any] = {
                "id": row["id"],
                "shopify_handle": row["shopify_handle"],
                "review": row["review"],
                "star_rating": row["star_rating"],
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
            }
            for field in LOOKUP_TABLES:
                spec[field] = _relation(row, field)

            for field, (lookup, junction, column) in MULTI_TABLES.items():
                related = conn.execute(
                    f"""
                    SELECT l.id, l.name FROM {junction} j
                    JOIN {lookup} l ON j.{column}_id = l.id
                    WHERE j.specification_id = ?
                    ORDER BY l.name
                    """,
                    (row["id"],),
                ).fetchall()
                spec[field] = [{column: {"id": str(r["id"]), "name": r["name"]}} for r in related]

            specifications.append(spec)
        return specifications


def get_specified_handles(
    db_path: str,
    user_id: str,
    tracker: Optional[ConnectionTracker] = None,
) -> Set[str]:
    """Handles the user has already written a specification for."""
    with get_connection(db_path, tracker) as conn:
        rows = conn.execute(
            "SELECT shopify_handle FROM specifications WHERE user_id = ? AND shopify_handle IS NOT NULL",
            (user_id,),
        ).fetchall()
        return {row["shopify_handle"] for row in rows}


def get_specification_count(db_path: str = DB_PATH, user_id: Optional[str] = None) -> int:
    with get_connection(db_path) as conn:
        if user_id:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM specifications WHERE user_id = ?", (user_id,)
            ).fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) AS count FROM specifications").fetchone()
        return row["count"]


DEMO_LOOKUPS = {
    "product_types": ["Nasal Snuff", "Moist Snuff", "Snus"],
    "product_brands": ["Gawith Hoggarth", "Wilsons of Sharrow", "Toque", "Poschl"],
    "grinds": ["Fine", "Medium", "Coarse"],
    "moisture_levels": ["Dry", "Medium", "Moist"],
    "nicotine_levels": ["Low", "Medium", "High"],
    "experience_levels": ["Beginner", "Intermediate", "Experienced"],
    "tasting_notes": ["Citrus", "Menthol", "Smoky", "Floral", "Spice", "Fruit"],
    "tobacco_types": ["Virginia", "Burley", "Dark Fired", "Oriental"],
    "cures": ["Air Cured", "Fire Cured", "Flue Cured", "Sun Cured"],
}

DEMO_USERS = [
    ("admin@example.com", "Admin User", "admin"),
    ("reviewer@example.com", "Reviewer User", "reviewer"),
]


def seed_demo_data(db_path: str = DB_PATH) -> List[str]:
    """Create the demo users and lookup values. Idempotent.

    Returns:
        IDs of the demo users
    """
    init_db(db_path)
    for table, names in DEMO_LOOKUPS.items():
        for name in names:
            upsert_lookup(db_path, table, name)
    return [upsert_user(db_path, email, name, role) for email, name, role in DEMO_USERS]
