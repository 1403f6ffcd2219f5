import sqlite3
import logging
import random
import threading
import time
from collections import Counter, defaultdict
from contextlib import contextmanager
from datetime import datetime
from .config import DB_PATH, QUIZ_MIN_POPULARITY, QUIZ_MIN_RATING, QUIZ_SIZE
from .errors import MissingEntityError

logger = logging.getLogger(__name__)

# Stay well under SQLite's bound-parameter limit
_IN_CHUNK = 500


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    SQLite connections must not be shared between threads, so each thread gets
    its own connection. Connections are health-checked periodically and the
    transaction nesting depth is tracked per thread so only the outermost
    `get_db()` context commits.
    """

    def __init__(self, db_path, health_check_interval: int = 300):
        self._db_path = db_path
        self._health_check_interval = health_check_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_health_check: dict[int, float] = {}
        self._transaction_depth: dict[int, int] = {}

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _drop_dead_threads(self):
        alive = {t.ident for t in threading.enumerate()}
        for thread_id in set(self._connections) - alive:
            conn = self._connections.pop(thread_id)
            self._last_health_check.pop(thread_id, None)
            self._transaction_depth.pop(thread_id, None)
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing connection for dead thread {thread_id}: {e}")

    def get_connection(self) -> sqlite3.Connection:
        """Get the connection for the current thread, creating it if necessary."""
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            conn = self._connections.get(thread_id)
            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._healthy(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    conn = None

            if conn is None:
                self._drop_dead_threads()
                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._last_health_check[thread_id] = now
                self._transaction_depth[thread_id] = 0
                logger.debug(f"Created connection for thread {thread_id} (pool size: {len(self._connections)})")

            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = max(0, self._transaction_depth.get(thread_id, 1) - 1)

    def close_all(self):
        """Close all connections (call on application shutdown)."""
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")
            self._connections.clear()
            self._last_health_check.clear()
            self._transaction_depth.clear()
            logger.debug("Connection pool closed")


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit

    Only the outermost context commits or rolls back; nested contexts share
    the enclosing transaction.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn
        if is_outermost and not read_only:
            conn.commit()
    except Exception:
        if is_outermost:
            conn.rollback()
        raise
    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY,
                external_id INTEGER,
                name TEXT NOT NULL,
                image TEXT,
                synopsis TEXT,
                kind TEXT DEFAULT 'movie',   -- movie | series
                rating REAL DEFAULT 0,       -- 0..10
                popularity REAL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS item_genres (
                item_id TEXT,
                genre_id TEXT,
                PRIMARY KEY (item_id, genre_id)
            );

            CREATE TABLE IF NOT EXISTS cast_members (
                id TEXT PRIMARY KEY,
                external_id INTEGER,
                name TEXT NOT NULL,
                photo TEXT,
                role TEXT NOT NULL,          -- actor | director
                popularity REAL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS item_cast (
                item_id TEXT,
                cast_id TEXT,
                PRIMARY KEY (item_id, cast_id)
            );

            -- A library entry marks either an item or a cast member for a user
            CREATE TABLE IF NOT EXISTS library (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                item_id TEXT,
                cast_id TEXT,
                deleted INTEGER DEFAULT 0,
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS job_cursors (
                job TEXT PRIMARY KEY,
                position TEXT,
                fingerprint TEXT,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS rerank_rows (
                user_id TEXT,
                item_id TEXT,
                label INTEGER,
                cf_score REAL,
                content_similarity REAL,
                genre_jaccard REAL,
                cast_jaccard REAL,
                rating REAL,
                popularity REAL,
                PRIMARY KEY (user_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS quiz_completions (
                user_id TEXT PRIMARY KEY,
                completed_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_item_cast_cast ON item_cast(cast_id);
            CREATE INDEX IF NOT EXISTS idx_cast_role ON cast_members(role, popularity);
            CREATE INDEX IF NOT EXISTS idx_library_user ON library(user_id, deleted);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_library_user_item ON library(user_id, item_id) WHERE item_id IS NOT NULL;
            CREATE UNIQUE INDEX IF NOT EXISTS idx_library_user_cast ON library(user_id, cast_id) WHERE cast_id IS NOT NULL;
        """)


def _chunked(values: list, size: int = _IN_CHUNK):
    for i in range(0, len(values), size):
        yield values[i:i + size]


def _placeholders(values) -> str:
    return ",".join("?" * len(values))


# --- Writers ---------------------------------------------------------------

def upsert_items(items: list[dict]) -> int:
    """
    Insert or replace catalog items together with their genre and cast links.

    Each dict needs `id` and `name`; `genres` and `cast` are lists of ids.
    """
    if not items:
        return 0
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO items (id, external_id, name, image, synopsis, kind, rating, popularity)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, [(
            str(item["id"]), item.get("external_id"), item["name"], item.get("image"),
            item.get("synopsis"), item.get("kind") or "movie",
            float(item.get("rating") or 0), float(item.get("popularity") or 0),
        ) for item in items])

        ids = [str(item["id"]) for item in items]
        for chunk in _chunked(ids):
            conn.execute(f"DELETE FROM item_genres WHERE item_id IN ({_placeholders(chunk)})", chunk)
            conn.execute(f"DELETE FROM item_cast WHERE item_id IN ({_placeholders(chunk)})", chunk)

        conn.executemany(
            "INSERT OR IGNORE INTO item_genres (item_id, genre_id) VALUES (?, ?)",
            [(str(item["id"]), str(g)) for item in items for g in item.get("genres") or []],
        )
        conn.executemany(
            "INSERT OR IGNORE INTO item_cast (item_id, cast_id) VALUES (?, ?)",
            [(str(item["id"]), str(c)) for item in items for c in item.get("cast") or []],
        )
    return len(items)


def upsert_cast_members(members: list[dict]) -> int:
    if not members:
        return 0
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO cast_members (id, external_id, name, photo, role, popularity)
            VALUES (?, ?, ?, ?, ?, ?)
        """, [(
            str(m["id"]), m.get("external_id"), m["name"], m.get("photo"),
            m["role"], float(m.get("popularity") or 0),
        ) for m in members])
    return len(members)


def add_library_item(user_id: str, item_id: str) -> None:
    _add_library_entry(user_id, "item_id", item_id)


def add_library_cast(user_id: str, cast_id: str) -> None:
    _add_library_entry(user_id, "cast_id", cast_id)


def _add_library_entry(user_id: str, column: str, value: str) -> None:
    now = datetime.now().isoformat()
    with get_db() as conn:
        updated = conn.execute(
            f"UPDATE library SET deleted = 0 WHERE user_id = ? AND {column} = ?",
            (user_id, value),
        ).rowcount
        if not updated:
            conn.execute(
                f"INSERT INTO library (user_id, {column}, deleted, created_at) VALUES (?, ?, 0, ?)",
                (user_id, value, now),
            )


def remove_library_entry(user_id: str, item_id: str | None = None, cast_id: str | None = None) -> int:
    """Soft-delete a library entry. Returns the number of rows flagged."""
    if (item_id is None) == (cast_id is None):
        raise ValueError("Pass exactly one of item_id or cast_id")
    column, value = ("item_id", item_id) if item_id is not None else ("cast_id", cast_id)
    with get_db() as conn:
        return conn.execute(
            f"UPDATE library SET deleted = 1 WHERE user_id = ? AND {column} = ? AND deleted = 0",
            (user_id, value),
        ).rowcount


# --- Catalog reads ---------------------------------------------------------

def _links_for(conn, table: str, column: str, item_ids: list[str] | None = None) -> dict[str, list[str]]:
    links: dict[str, list[str]] = defaultdict(list)
    if item_ids is None:
        rows = conn.execute(f"SELECT item_id, {column} FROM {table} ORDER BY item_id, {column}")
        for row in rows:
            links[row[0]].append(row[1])
        return links
    for chunk in _chunked(item_ids):
        rows = conn.execute(
            f"SELECT item_id, {column} FROM {table} WHERE item_id IN ({_placeholders(chunk)}) "
            f"ORDER BY item_id, {column}",
            chunk,
        )
        for row in rows:
            links[row[0]].append(row[1])
    return links


def load_catalog_items() -> list[dict]:
    """
    Load every item eligible for the feature cache: positive rating and a
    non-empty synopsis. Each dict carries `genres` and `cast` id lists.
    """
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT id, external_id, name, image, synopsis, kind, rating, popularity
            FROM items
            WHERE rating > 0 AND synopsis IS NOT NULL AND TRIM(synopsis) != ''
            ORDER BY id
        """).fetchall()
        genres = _links_for(conn, "item_genres", "genre_id")
        cast = _links_for(conn, "item_cast", "cast_id")

    items = []
    for row in rows:
        item = dict(row)
        item["genres"] = genres.get(row["id"], [])
        item["cast"] = cast.get(row["id"], [])
        items.append(item)
    return items


def load_item_ids() -> list[str]:
    with get_db(read_only=True) as conn:
        return [row[0] for row in conn.execute("SELECT id FROM items ORDER BY id")]


def load_synopses(item_ids: list[str]) -> dict[str, str]:
    result: dict[str, str] = {}
    with get_db(read_only=True) as conn:
        for chunk in _chunked(list(item_ids)):
            rows = conn.execute(
                f"SELECT id, synopsis FROM items WHERE id IN ({_placeholders(chunk)})", chunk
            )
            result.update({row[0]: row[1] or "" for row in rows})
    return result


def load_items_metadata(item_ids: list[str]) -> dict[str, dict]:
    """Display metadata (with genre ids) keyed by item id."""
    ids = list(dict.fromkeys(item_ids))
    result: dict[str, dict] = {}
    with get_db(read_only=True) as conn:
        for chunk in _chunked(ids):
            rows = conn.execute(f"""
                SELECT id, external_id, name, image, kind, rating, popularity
                FROM items WHERE id IN ({_placeholders(chunk)})
            """, chunk)
            result.update({row["id"]: dict(row) for row in rows})
        genres = _links_for(conn, "item_genres", "genre_id", ids)
    for item_id, meta in result.items():
        meta["genres"] = genres.get(item_id, [])
    return result


# --- Library reads ---------------------------------------------------------

def load_library(user_id: str) -> tuple[set[str], set[str]]:
    """Return (item ids, marked cast ids) from a user's non-deleted library entries."""
    items: set[str] = set()
    cast: set[str] = set()
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT item_id, cast_id FROM library WHERE user_id = ? AND deleted = 0",
            (user_id,),
        )
        for row in rows:
            if row["item_id"] is not None:
                items.add(row["item_id"])
            if row["cast_id"] is not None:
                cast.add(row["cast_id"])
    return items, cast


def load_library_item_edges() -> dict[str, list[str]]:
    """All non-deleted (user, item) edges grouped by user, users sorted."""
    edges: dict[str, list[str]] = defaultdict(list)
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT user_id, item_id FROM library
            WHERE deleted = 0 AND item_id IS NOT NULL
            ORDER BY user_id, item_id
        """)
        for row in rows:
            edges[row[0]].append(row[1])
    return dict(edges)


# --- Cast reads ------------------------------------------------------------

def load_cast_member(cast_id: str) -> dict | None:
    """Resolve a cast id to its record plus the ids of the items featuring it."""
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT id, external_id, name, photo, role, popularity FROM cast_members WHERE id = ?",
            (cast_id,),
        ).fetchone()
        if row is None:
            return None
        member = dict(row)
        member["items"] = [
            r[0] for r in conn.execute(
                "SELECT item_id FROM item_cast WHERE cast_id = ? ORDER BY item_id", (cast_id,)
            )
        ]
    return member


def load_cast_members(cast_ids) -> dict[str, dict]:
    ids = list(dict.fromkeys(cast_ids))
    result: dict[str, dict] = {}
    with get_db(read_only=True) as conn:
        for chunk in _chunked(ids):
            rows = conn.execute(f"""
                SELECT id, external_id, name, photo, role, popularity
                FROM cast_members WHERE id IN ({_placeholders(chunk)})
            """, chunk)
            result.update({row["id"]: dict(row) for row in rows})
    return result


def load_popular_cast(role: str, limit: int) -> list[dict]:
    # SQLite treats a negative LIMIT as no limit
    if limit <= 0:
        return []
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT id, external_id, name, photo, role, popularity
            FROM cast_members WHERE role = ?
            ORDER BY popularity DESC, id
            LIMIT ?
        """, (role, limit))
        return [dict(row) for row in rows]


def load_costar_counts(cast_id: str, role: str) -> Counter:
    """Count shared items between `cast_id` and every other member of `role`."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT other.cast_id, COUNT(*) AS shared
            FROM item_cast AS mine
            JOIN item_cast AS other ON other.item_id = mine.item_id
            JOIN cast_members AS cm ON cm.id = other.cast_id
            WHERE mine.cast_id = ? AND other.cast_id != ? AND cm.role = ?
            GROUP BY other.cast_id
        """, (cast_id, cast_id, role))
        return Counter({row[0]: row[1] for row in rows})


def load_top_items_for_cast(cast_ids: list[str], limit: int) -> list[dict]:
    """Highest-rated items featuring any of `cast_ids`, best first."""
    if not cast_ids or limit <= 0:
        return []
    items: dict[str, dict] = {}
    with get_db(read_only=True) as conn:
        for chunk in _chunked(list(cast_ids)):
            rows = conn.execute(f"""
                SELECT DISTINCT i.id, i.external_id, i.name, i.image, i.kind, i.rating, i.popularity
                FROM items AS i JOIN item_cast AS ic ON ic.item_id = i.id
                WHERE ic.cast_id IN ({_placeholders(chunk)})
                ORDER BY i.rating DESC, i.popularity DESC, i.id
                LIMIT ?
            """, [*chunk, limit])
            for row in rows:
                items[row["id"]] = dict(row)
    ranked = sorted(items.values(), key=lambda i: (-(i["rating"] or 0), -(i["popularity"] or 0), i["id"]))
    return ranked[:limit]


# --- Onboarding quiz -------------------------------------------------------

def load_quiz_candidates(kind: str | None = None, limit: int = QUIZ_SIZE, seed: int | None = None) -> list[dict]:
    """
    Random items for a new user to pick from: popular, decently rated, with a
    synopsis and a poster. `kind` restricts the draw to movies or series.
    Each dict carries its `genres`.
    """
    if limit <= 0:
        return []
    query = """
        SELECT id, external_id, name, image, kind, rating, popularity
        FROM items
        WHERE popularity > ? AND rating >= ?
          AND synopsis IS NOT NULL AND TRIM(synopsis) != ''
          AND image IS NOT NULL AND TRIM(image) != ''
    """
    params: list = [QUIZ_MIN_POPULARITY, QUIZ_MIN_RATING]
    if kind is not None:
        query += " AND kind = ?"
        params.append(kind)

    with get_db(read_only=True) as conn:
        rows = [dict(row) for row in conn.execute(query + " ORDER BY id", params)]
        picks = random.Random(seed).sample(rows, min(limit, len(rows)))
        genres = _links_for(conn, "item_genres", "genre_id", [p["id"] for p in picks])
    for pick in picks:
        pick["genres"] = genres.get(pick["id"], [])
    return picks


def save_quiz_picks(user_id: str, item_ids: list[str]) -> int:
    """
    Add the items a user picked in the quiz to their library and record the
    quiz as done. All or nothing: an unknown item id rolls the whole save back.
    """
    ids = list(dict.fromkeys(str(i) for i in item_ids))
    if not ids:
        raise ValueError("No quiz picks were given")

    with get_db() as conn:
        known: set[str] = set()
        for chunk in _chunked(ids):
            rows = conn.execute(f"SELECT id FROM items WHERE id IN ({_placeholders(chunk)})", chunk)
            known.update(row[0] for row in rows)
        missing = [item_id for item_id in ids if item_id not in known]
        if missing:
            raise MissingEntityError("item", missing[0])

        for item_id in ids:
            _add_library_entry(user_id, "item_id", item_id)
        conn.execute(
            "INSERT OR REPLACE INTO quiz_completions (user_id, completed_at) VALUES (?, ?)",
            (user_id, datetime.now().isoformat()),
        )
    logger.info(f"Saved {len(ids)} quiz picks for {user_id}")
    return len(ids)


def has_completed_quiz(user_id: str) -> bool:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT 1 FROM quiz_completions WHERE user_id = ?", (user_id,)).fetchone()
        return row is not None


# --- Job cursors and staged training rows -----------------------------------

def get_job_cursor(job: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT job, position, fingerprint, updated_at FROM job_cursors WHERE job = ?", (job,)
        ).fetchone()
        return dict(row) if row else None


def save_job_cursor(job: str, position: str, fingerprint: str) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO job_cursors (job, position, fingerprint, updated_at)
            VALUES (?, ?, ?, ?)
        """, (job, position, fingerprint, datetime.now().isoformat()))


def clear_job_cursor(job: str) -> None:
    with get_db() as conn:
        conn.execute("DELETE FROM job_cursors WHERE job = ?", (job,))


RERANK_COLUMNS = (
    "cf_score", "content_similarity", "genre_jaccard", "cast_jaccard", "rating", "popularity",
)


def stage_rerank_rows(rows: list[dict]) -> None:
    columns = ("user_id", "item_id", "label", *RERANK_COLUMNS)
    with get_db() as conn:
        conn.executemany(
            f"INSERT OR REPLACE INTO rerank_rows ({', '.join(columns)}) VALUES ({_placeholders(columns)})",
            [tuple(row[c] for c in columns) for row in rows],
        )


def load_rerank_rows() -> list[dict]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("SELECT * FROM rerank_rows ORDER BY user_id, item_id")
        return [dict(row) for row in rows]


def clear_rerank_rows() -> None:
    with get_db() as conn:
        conn.execute("DELETE FROM rerank_rows")


def catalog_stats() -> dict[str, int]:
    with get_db(read_only=True) as conn:
        def _count(query: str) -> int:
            return conn.execute(query).fetchone()[0]

        return {
            "items": _count("SELECT COUNT(*) FROM items"),
            "eligible_items": _count(
                "SELECT COUNT(*) FROM items WHERE rating > 0 AND synopsis IS NOT NULL AND TRIM(synopsis) != ''"
            ),
            "actors": _count("SELECT COUNT(*) FROM cast_members WHERE role = 'actor'"),
            "directors": _count("SELECT COUNT(*) FROM cast_members WHERE role = 'director'"),
            "users": _count("SELECT COUNT(DISTINCT user_id) FROM library WHERE deleted = 0"),
            "library_items": _count("SELECT COUNT(*) FROM library WHERE deleted = 0 AND item_id IS NOT NULL"),
            "library_cast": _count("SELECT COUNT(*) FROM library WHERE deleted = 0 AND cast_id IS NOT NULL"),
        }
