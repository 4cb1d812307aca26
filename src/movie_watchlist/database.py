import sqlite3
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from .config import DB_PATH, MIN_RATING, MAX_RATING
from .errors import DuplicateEntryError, InvalidRatingError
from .models import Movie, Rating, WatchlistEntry

logger = logging.getLogger(__name__)

MOVIE_COLUMNS = (
    "id, external_id, title, year, genre, director, plot, poster, runtime, rating, "
    "cached_at, created_at, updated_at"
)


def parse_timestamp_naive(timestamp_str: str | None) -> datetime | None:
    """
    Parse ISO format timestamp string to naive datetime.

    Stored timestamps are written naive; anything carrying tzinfo is stripped
    so comparisons never mix naive and aware values.
    """
    if not timestamp_str:
        return None
    dt = datetime.fromisoformat(timestamp_str)
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    - One connection per thread (SQLite threading requirement)
    - Periodic health checks via SELECT 1
    - Cleanup of connections owned by threads that have exited
    - Transaction nesting depth per thread
    """

    def __init__(self, db_path, health_check_interval: int = 300):
        self._db_path = db_path
        self._health_check_interval = health_check_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_health_check: dict[int, float] = {}
        self._transaction_depth: dict[int, int] = {}
        self._last_cleanup = time.time()
        self._cleanup_interval = 60

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        # Writers from the pre-cache pool wait on each other instead of failing
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")

        return conn

    def _health_check(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _maybe_cleanup(self):
        """Close connections whose owning thread is gone."""
        now = time.time()
        if now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        alive_threads = {t.ident for t in threading.enumerate()}
        dead_threads = set(self._connections) - alive_threads

        for thread_id in dead_threads:
            conn = self._connections.pop(thread_id, None)
            self._last_health_check.pop(thread_id, None)
            self._transaction_depth.pop(thread_id, None)
            if conn:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

        if dead_threads:
            logger.debug(f"Connection pool cleanup: removed {len(dead_threads)} dead connections")

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating if necessary."""
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            self._maybe_cleanup()

            conn = self._connections.get(thread_id)
            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._health_check(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    conn = None

            if conn is None:
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


# Global pool instance
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

    Only the outermost context commits or rolls back; nested contexts on the
    same thread share its transaction.
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
        conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS movies (
                id TEXT PRIMARY KEY,
                external_id TEXT NOT NULL UNIQUE COLLATE NOCASE,  -- IMDb ID; get-or-create relies on this
                title TEXT NOT NULL,
                year TEXT,
                genre TEXT,                         -- comma-delimited free text
                director TEXT,
                plot TEXT,
                poster TEXT,
                runtime TEXT,
                rating TEXT,                        -- text-encoded decimal or 'N/A'
                cached_at TEXT,
                created_at TEXT,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS ratings (
                user_id TEXT NOT NULL,
                movie_id TEXT NOT NULL REFERENCES movies(id),
                rating INTEGER NOT NULL CHECK (rating BETWEEN {MIN_RATING} AND {MAX_RATING}),
                created_at TEXT,
                updated_at TEXT,
                PRIMARY KEY (user_id, movie_id)
            );

            CREATE TABLE IF NOT EXISTS watchlist (
                user_id TEXT NOT NULL,
                movie_id TEXT NOT NULL REFERENCES movies(id),
                added_at TEXT,
                PRIMARY KEY (user_id, movie_id)
            );

            CREATE INDEX IF NOT EXISTS idx_movies_genre ON movies(genre);
            CREATE INDEX IF NOT EXISTS idx_movies_cached_at ON movies(cached_at);
            CREATE INDEX IF NOT EXISTS idx_ratings_user ON ratings(user_id);
            CREATE INDEX IF NOT EXISTS idx_ratings_user_rating ON ratings(user_id, rating);
            CREATE INDEX IF NOT EXISTS idx_watchlist_user ON watchlist(user_id);
        """)


def new_movie_id() -> str:
    return uuid.uuid4().hex


def _movie_from_row(row) -> Movie:
    return Movie(
        id=row['id'],
        external_id=row['external_id'],
        title=row['title'],
        year=row['year'] or "",
        genre=row['genre'] or "",
        director=row['director'] or "",
        plot=row['plot'] or "",
        poster=row['poster'] or "",
        runtime=row['runtime'] or "",
        rating=row['rating'] or "",
        cached_at=parse_timestamp_naive(row['cached_at']),
        created_at=parse_timestamp_naive(row['created_at']),
        updated_at=parse_timestamp_naive(row['updated_at']),
    )


def _rating_from_row(row) -> Rating:
    return Rating(
        user_id=row['user_id'],
        movie_id=row['movie_id'],
        rating=row['rating'],
        created_at=parse_timestamp_naive(row['created_at']),
        updated_at=parse_timestamp_naive(row['updated_at']),
    )


# --- movies ---------------------------------------------------------------

def insert_movie(movie: Movie) -> None:
    """
    Persist a new movie record.

    Raises sqlite3.IntegrityError if the external ID is already stored; the
    caller decides whether that is a lost race or a real error.
    """
    with get_db() as conn:
        conn.execute(f"""
            INSERT INTO movies ({MOVIE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            movie.id, movie.external_id, movie.title, movie.year, movie.genre,
            movie.director, movie.plot, movie.poster, movie.runtime, movie.rating,
            movie.cached_at.isoformat() if movie.cached_at else None,
            movie.created_at.isoformat() if movie.created_at else None,
            movie.updated_at.isoformat() if movie.updated_at else None,
        ))


def find_movie_by_external_id(external_id: str) -> Movie | None:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            f"SELECT {MOVIE_COLUMNS} FROM movies WHERE external_id = ?", (external_id,)
        ).fetchone()
    return _movie_from_row(row) if row else None


def find_movie_by_id(movie_id: str) -> Movie | None:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            f"SELECT {MOVIE_COLUMNS} FROM movies WHERE id = ?", (movie_id,)
        ).fetchone()
    return _movie_from_row(row) if row else None


def find_movies_by_ids(movie_ids: list[str]) -> dict[str, Movie]:
    """Load many movies by local ID in as few queries as SQLite's parameter limit allows."""
    if not movie_ids:
        return {}

    result = {}
    CHUNK_SIZE = 900
    with get_db(read_only=True) as conn:
        for i in range(0, len(movie_ids), CHUNK_SIZE):
            chunk = movie_ids[i:i + CHUNK_SIZE]
            placeholders = ','.join('?' * len(chunk))
            rows = conn.execute(
                f"SELECT {MOVIE_COLUMNS} FROM movies WHERE id IN ({placeholders})", chunk
            ).fetchall()
            for row in rows:
                result[row['id']] = _movie_from_row(row)
    return result


def load_movies_matching_genre(genre: str) -> list[Movie]:
    """
    Movies whose genre field contains `genre`, case-insensitively.

    Plain substring match on the raw delimited field; rows come back in
    insertion order.
    """
    with get_db(read_only=True) as conn:
        rows = conn.execute(f"""
            SELECT {MOVIE_COLUMNS} FROM movies
            WHERE instr(lower(genre), lower(?)) > 0
            ORDER BY rowid
        """, (genre,)).fetchall()
    return [_movie_from_row(r) for r in rows]


def load_all_movies() -> list[Movie]:
    with get_db(read_only=True) as conn:
        rows = conn.execute(f"SELECT {MOVIE_COLUMNS} FROM movies ORDER BY rowid").fetchall()
    return [_movie_from_row(r) for r in rows]


def count_movies() -> int:
    with get_db(read_only=True) as conn:
        return conn.execute("SELECT COUNT(*) FROM movies").fetchone()[0]


# --- ratings --------------------------------------------------------------

def _check_rating_value(rating: int) -> None:
    if isinstance(rating, bool) or not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
        raise InvalidRatingError(f"rating must be between {MIN_RATING} and {MAX_RATING} stars, got {rating!r}")


def add_rating(user_id: str, movie_id: str, rating: int) -> Rating:
    """Rate a movie. A user may rate each movie once; use update_rating afterwards."""
    _check_rating_value(rating)
    now = datetime.now()
    try:
        with get_db() as conn:
            conn.execute("""
                INSERT INTO ratings (user_id, movie_id, rating, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (user_id, movie_id, rating, now.isoformat(), now.isoformat()))
    except sqlite3.IntegrityError as e:
        if "UNIQUE" in str(e) or "PRIMARY KEY" in str(e):
            raise DuplicateEntryError(f"user {user_id} has already rated movie {movie_id}") from e
        raise
    return Rating(user_id=user_id, movie_id=movie_id, rating=rating, created_at=now, updated_at=now)


def update_rating(user_id: str, movie_id: str, rating: int) -> bool:
    """Change an existing rating. Returns False if the user never rated the movie."""
    _check_rating_value(rating)
    with get_db() as conn:
        cursor = conn.execute("""
            UPDATE ratings SET rating = ?, updated_at = ?
            WHERE user_id = ? AND movie_id = ?
        """, (rating, datetime.now().isoformat(), user_id, movie_id))
        return cursor.rowcount > 0


def load_user_ratings(user_id: str, min_rating: int | None = None) -> list[Rating]:
    """Ratings for a user in the order they were made, optionally filtered by threshold."""
    query = """
        SELECT user_id, movie_id, rating, created_at, updated_at
        FROM ratings
        WHERE user_id = ?
    """
    params: list = [user_id]
    if min_rating is not None:
        query += " AND rating >= ?"
        params.append(min_rating)
    query += " ORDER BY created_at, rowid"

    with get_db(read_only=True) as conn:
        rows = conn.execute(query, params).fetchall()
    return [_rating_from_row(r) for r in rows]


def load_rated_movie_ids(user_id: str) -> set[str]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("SELECT movie_id FROM ratings WHERE user_id = ?", (user_id,)).fetchall()
    return {r['movie_id'] for r in rows}


# --- watchlist ------------------------------------------------------------

def add_to_watchlist(user_id: str, movie_id: str) -> WatchlistEntry:
    now = datetime.now()
    try:
        with get_db() as conn:
            conn.execute(
                "INSERT INTO watchlist (user_id, movie_id, added_at) VALUES (?, ?, ?)",
                (user_id, movie_id, now.isoformat()),
            )
    except sqlite3.IntegrityError as e:
        if "UNIQUE" in str(e) or "PRIMARY KEY" in str(e):
            raise DuplicateEntryError(f"movie {movie_id} is already in {user_id}'s watchlist") from e
        raise
    return WatchlistEntry(user_id=user_id, movie_id=movie_id, added_at=now)


def remove_from_watchlist(user_id: str, movie_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM watchlist WHERE user_id = ? AND movie_id = ?", (user_id, movie_id)
        )
        return cursor.rowcount > 0


def load_watchlist(user_id: str) -> list[WatchlistEntry]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT user_id, movie_id, added_at FROM watchlist
            WHERE user_id = ?
            ORDER BY added_at, rowid
        """, (user_id,)).fetchall()
    return [
        WatchlistEntry(user_id=r['user_id'], movie_id=r['movie_id'], added_at=parse_timestamp_naive(r['added_at']))
        for r in rows
    ]


def load_watchlist_movie_ids(user_id: str) -> set[str]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("SELECT movie_id FROM watchlist WHERE user_id = ?", (user_id,)).fetchall()
    return {r['movie_id'] for r in rows}
