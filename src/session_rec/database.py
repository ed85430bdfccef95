import sqlite3
import json
import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from .config import DB_PATH

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
    CREATE TABLE IF NOT EXISTS sessions (
        session_id TEXT PRIMARY KEY,
        started_at INTEGER NOT NULL,
        last_seen_at INTEGER NOT NULL,
        device_type TEXT,
        referrer TEXT,
        user_agent TEXT
    );

    -- One table per event kind so each kind can be evicted on its own schedule
    CREATE TABLE IF NOT EXISTS page_views (
        event_id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        page_type TEXT NOT NULL,
        entity_id TEXT,
        url TEXT,
        title TEXT,
        dwell_time INTEGER DEFAULT 0,
        scroll_depth REAL DEFAULT 0,
        click_count INTEGER DEFAULT 0,
        exit_type TEXT
    );

    CREATE TABLE IF NOT EXISTS search_events (
        event_id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        query TEXT NOT NULL,
        results_count INTEGER DEFAULT 0,
        category TEXT
    );

    CREATE TABLE IF NOT EXISTS search_clicks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        search_id TEXT NOT NULL,
        result_id TEXT NOT NULL,
        result_type TEXT NOT NULL,
        position INTEGER NOT NULL,
        timestamp INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS content_interactions (
        event_id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        content_type TEXT NOT NULL,
        content_id TEXT NOT NULL,
        interaction_type TEXT NOT NULL,
        metadata TEXT  -- JSON object
    );

    CREATE TABLE IF NOT EXISTS recommendation_feedback (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        recommendation_id TEXT NOT NULL,
        session_id TEXT,
        content_id TEXT NOT NULL,
        content_type TEXT NOT NULL,
        position INTEGER NOT NULL,
        action TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        dwell_time INTEGER
    );

    CREATE TABLE IF NOT EXISTS served_recommendations (
        recommendation_id TEXT PRIMARY KEY,
        session_id TEXT,
        content_id TEXT NOT NULL,
        content_type TEXT NOT NULL,
        position INTEGER NOT NULL,
        score REAL NOT NULL,
        algorithm TEXT NOT NULL,
        strategies TEXT,  -- JSON list
        served_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS metrics_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        recorded_at INTEGER NOT NULL,
        metrics TEXT NOT NULL  -- JSON object
    );

    -- Anonymized per-session aggregates; no raw events
    CREATE TABLE IF NOT EXISTS session_aggregates (
        session_key TEXT PRIMARY KEY,  -- salted hash of the session id
        liked_items TEXT NOT NULL,  -- JSON object {type:id -> score}
        keywords TEXT NOT NULL,     -- JSON list
        hours TEXT NOT NULL,        -- JSON list
        interaction_count INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        schema_version INTEGER DEFAULT 1
    );

    CREATE TABLE IF NOT EXISTS catalog_items (
        content_type TEXT NOT NULL,
        content_id TEXT NOT NULL,
        title TEXT NOT NULL,
        subtitle TEXT,
        description TEXT,
        image_url TEXT,
        url TEXT,
        director TEXT,
        year INTEGER,
        duration INTEGER,
        vote_average REAL,
        view_count INTEGER DEFAULT 0,
        favorite_count INTEGER DEFAULT 0,
        published_at INTEGER,
        updated_at INTEGER,
        tags TEXT,      -- JSON list of {name, category}
        metadata TEXT,  -- JSON object
        PRIMARY KEY (content_type, content_id)
    );

    CREATE INDEX IF NOT EXISTS idx_page_views_session ON page_views(session_id, timestamp);
    CREATE INDEX IF NOT EXISTS idx_page_views_ts ON page_views(timestamp);
    CREATE INDEX IF NOT EXISTS idx_search_session ON search_events(session_id, timestamp);
    CREATE INDEX IF NOT EXISTS idx_search_ts ON search_events(timestamp);
    CREATE INDEX IF NOT EXISTS idx_search_clicks_search ON search_clicks(search_id);
    CREATE INDEX IF NOT EXISTS idx_interactions_session ON content_interactions(session_id, timestamp);
    CREATE INDEX IF NOT EXISTS idx_interactions_ts ON content_interactions(timestamp);
    CREATE INDEX IF NOT EXISTS idx_feedback_ts ON recommendation_feedback(timestamp);
    CREATE INDEX IF NOT EXISTS idx_feedback_rec ON recommendation_feedback(recommendation_id);
    CREATE INDEX IF NOT EXISTS idx_aggregates_updated ON session_aggregates(updated_at);
    CREATE INDEX IF NOT EXISTS idx_catalog_views ON catalog_items(view_count DESC);
    CREATE INDEX IF NOT EXISTS idx_catalog_updated ON catalog_items(updated_at DESC);
"""


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    SQLite connections must not be shared between threads, so each thread
    gets its own connection. Connections of threads that have exited are
    closed lazily, and idle connections are health-checked before reuse.
    """

    def __init__(self, db_path, max_size: int = 32, health_check_interval: int = 300):
        self._db_path = db_path
        self._max_size = max_size
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
        return conn

    def _is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _drop_dead_threads(self) -> None:
        alive = {t.ident for t in threading.enumerate()}
        for thread_id in set(self._connections) - alive:
            conn = self._connections.pop(thread_id)
            self._last_health_check.pop(thread_id, None)
            self._transaction_depth.pop(thread_id, None)
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing connection for thread {thread_id}: {e}")
            logger.debug(f"Closed connection for exited thread {thread_id}")

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating it if necessary."""
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            conn = self._connections.get(thread_id)
            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._is_healthy(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    try:
                        conn.close()
                    except sqlite3.Error as e:
                        logger.warning(f"Error closing connection for thread {thread_id}: {e}")
                    del self._connections[thread_id]
                    conn = None

            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._drop_dead_threads()
                    if len(self._connections) >= self._max_size:
                        raise RuntimeError(
                            f"Connection pool exhausted ({self._max_size} connections). "
                            f"Possible connection leak or too many threads."
                        )
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


class Database:
    """
    Persistence boundary for session-scoped event logs and catalog data.

    Constructed explicitly and passed to the components that need it; there is
    no module-level connection state.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else DB_PATH
        self._pool: ConnectionPool | None = None
        self._pool_lock = threading.Lock()

    def _get_pool(self) -> ConnectionPool:
        if self._pool is None:
            with self._pool_lock:
                if self._pool is None:
                    self.path.parent.mkdir(exist_ok=True, parents=True)
                    self._pool = ConnectionPool(self.path)
        return self._pool

    @contextmanager
    def connect(self, read_only: bool = False):
        """
        Get a connection with transaction handling.

        Args:
            read_only: If True, skip commit on exit

        Nested calls on the same thread share the connection; only the
        outermost context commits or rolls back.
        """
        pool = self._get_pool()
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

    def init_schema(self) -> None:
        with self.connect() as conn:
            conn.executescript(SCHEMA)
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        logger.debug("Schema ready at %s", self.path)

    def table_counts(self) -> dict[str, int]:
        tables = [
            "sessions", "page_views", "search_events", "search_clicks", "content_interactions",
            "recommendation_feedback", "served_recommendations", "metrics_snapshots",
            "session_aggregates", "catalog_items",
        ]
        with self.connect(read_only=True) as conn:
            return {t: conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0] for t in tables}

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close_all()
            self._pool = None
            logger.info("Connection pool closed")


def load_json(val, default=None):
    """Safely load JSON from db field."""
    if default is None:
        default = []
    if not val:
        return default
    if isinstance(val, (list, dict)):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return default
