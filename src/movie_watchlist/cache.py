"""
Local movie metadata cache in front of the external catalog.

Movie metadata is treated as immutable, so records never expire and are
never refreshed: the first successful fetch for an external ID is the one
that is kept. Concurrent misses for the same ID may both call the catalog;
the UNIQUE constraint on movies.external_id decides which insert wins and
the loser re-reads the winner's row.
"""
import asyncio
import logging
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from functools import partial

from . import database
from .config import PRECACHE_MAX_WORKERS
from .errors import (
    ConfigurationError,
    InvalidQueryError,
    InvalidUpstreamDataError,
    StorageError,
)
from .models import Movie, MovieDetail, SearchResult

logger = logging.getLogger(__name__)


def validate_detail(detail: MovieDetail) -> None:
    """Reject catalog records missing an external ID, title or genre."""
    missing = [
        name for name, value in (
            ("external ID", detail.external_id),
            ("title", detail.title),
            ("genre", detail.genre),
        )
        if not (value or "").strip()
    ]
    if missing:
        raise InvalidUpstreamDataError(f"invalid movie data: missing {', '.join(missing)}")


def build_movie(detail: MovieDetail, now: datetime | None = None) -> Movie:
    now = now or datetime.now()
    return Movie(
        id=database.new_movie_id(),
        external_id=detail.external_id.strip(),
        title=detail.title.strip(),
        year=detail.year.strip(),
        genre=detail.genre.strip(),
        director=detail.director.strip(),
        plot=detail.plot.strip(),
        poster=detail.poster.strip(),
        runtime=detail.runtime.strip(),
        rating=detail.rating.strip(),
        cached_at=now,
        created_at=now,
        updated_at=now,
    )


class MovieCache:
    """
    Cache-aside access to movie metadata.

    Args:
        client: catalog client exposing ``search(title)`` and
            ``fetch_detail(external_id)``. ``None`` means no API key is
            configured: local reads still work, anything needing the catalog
            raises ConfigurationError.
        max_workers: size of the background pre-cache pool used by search().
    """

    def __init__(self, client=None, max_workers: int = PRECACHE_MAX_WORKERS):
        self.client = client
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="precache")
        self._lock = threading.RLock()
        self._pending: set[Future] = set()
        self._inflight: set[str] = set()
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _require_client(self):
        if self.client is None:
            raise ConfigurationError("OMDb API key not configured")
        return self.client

    # --- local reads ------------------------------------------------------

    def find_by_external_id(self, external_id: str) -> Movie | None:
        """Local lookup only; never calls the catalog."""
        try:
            return database.find_movie_by_external_id(external_id.strip())
        except sqlite3.Error as e:
            raise StorageError(f"lookup of {external_id} failed: {e}") from e

    def find_by_id(self, movie_id: str) -> Movie | None:
        try:
            return database.find_movie_by_id(movie_id)
        except sqlite3.Error as e:
            raise StorageError(f"lookup of movie {movie_id} failed: {e}") from e

    def find_many_by_id(self, movie_ids: list[str]) -> dict[str, Movie]:
        try:
            return database.find_movies_by_ids(list(movie_ids))
        except sqlite3.Error as e:
            raise StorageError(f"lookup of {len(movie_ids)} movies failed: {e}") from e

    # --- get-or-create ----------------------------------------------------

    def get_or_create_by_external_id(self, external_id: str) -> Movie:
        """
        Return the cached movie for `external_id`, fetching and storing it on a miss.

        Raises:
            InvalidQueryError: blank external ID
            ConfigurationError: cache miss without a catalog client
            NotFoundError, UpstreamUnavailableError, UpstreamError: from the catalog
            InvalidUpstreamDataError: catalog record lacks ID, title or genre, or
                carries a different external ID than the one requested
            StorageError: the local store failed
        """
        external_id = (external_id or "").strip()
        if not external_id:
            raise InvalidQueryError("IMDb ID cannot be empty")

        movie = self.find_by_external_id(external_id)
        if movie is not None:
            logger.debug(f"Cache hit for {external_id}")
            return movie

        client = self._require_client()
        logger.debug(f"Cache miss for {external_id}, fetching from catalog")
        detail = client.fetch_detail(external_id)
        returned_id = (detail.external_id or "").strip()
        if returned_id and returned_id.lower() != external_id.lower():
            # a record stored under another ID would miss on every later lookup
            raise InvalidUpstreamDataError(
                f"catalog answered {external_id} with a record for {returned_id}"
            )
        return self.admit(detail)

    def admit(self, detail: MovieDetail) -> Movie:
        """
        Validate a fetched record and persist it, resolving a lost insert race.

        If another writer stored the same external ID first, the stored row
        is returned instead of raising.
        """
        validate_detail(detail)
        movie = build_movie(detail)

        try:
            database.insert_movie(movie)
        except sqlite3.IntegrityError as e:
            existing = self.find_by_external_id(movie.external_id)
            if existing is None:
                raise StorageError(f"failed to cache movie {movie.external_id}: {e}") from e
            logger.debug(f"{movie.external_id} was cached concurrently, using stored record")
            return existing
        except sqlite3.Error as e:
            raise StorageError(f"failed to cache movie {movie.external_id}: {e}") from e

        logger.info(f"Cached {movie.external_id} ({movie.title})")
        return movie

    # --- search -----------------------------------------------------------

    def search(self, query: str) -> list[SearchResult]:
        """
        Search the catalog by title.

        Results are returned as delivered by the catalog. Every hit that is not
        yet cached is fetched in the background; those fetches are not awaited
        and their failures are only logged.
        """
        if not query or not query.strip():
            raise InvalidQueryError("search query cannot be empty")

        results = self._require_client().search(query.strip())
        self._schedule_precache(r.external_id for r in results)
        return results

    def _schedule_precache(self, external_ids) -> None:
        scheduled = 0
        with self._lock:
            if self._closed:
                logger.debug("Cache is closed, skipping background pre-cache")
                return
            for external_id in external_ids:
                if not external_id or external_id in self._inflight:
                    continue
                self._inflight.add(external_id)
                future = self._executor.submit(self._precache_one, external_id)
                self._pending.add(future)
                future.add_done_callback(partial(self._forget, external_id))
                scheduled += 1
        if scheduled:
            logger.debug(f"Scheduled {scheduled} background pre-cache fetches")

    def _forget(self, external_id: str, future: Future) -> None:
        # also runs for fetches cancelled by close(), which never reach _precache_one
        with self._lock:
            self._pending.discard(future)
            self._inflight.discard(external_id)

    def _precache_one(self, external_id: str) -> None:
        try:
            self.get_or_create_by_external_id(external_id)
        except Exception as e:
            # per-item failures are logged, never raised to the search caller
            logger.warning(f"Background pre-cache failed for {external_id}: {type(e).__name__}: {e}")

    def wait_for_precache(self, timeout: float | None = None) -> bool:
        """Block until scheduled background fetches finish. Returns False on timeout."""
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    # --- batch warm-up ----------------------------------------------------

    async def prefetch_many(self, external_ids: list[str], async_client) -> list[Movie]:
        """
        Cache many titles using an AsyncOMDbClient (already entered).

        IDs already cached are skipped. Returns the movies stored by this call
        or found stored by a concurrent writer; invalid records are logged
        and skipped.
        """
        wanted = list(dict.fromkeys(i.strip() for i in external_ids if i and i.strip()))

        def _missing() -> list[str]:
            return [i for i in wanted if self.find_by_external_id(i) is None]

        to_fetch = await asyncio.to_thread(_missing)
        if not to_fetch:
            logger.info("All requested titles are already cached")
            return []

        details = await async_client.fetch_details_batch(to_fetch)

        def _persist() -> list[Movie]:
            stored = []
            for detail in details:
                try:
                    stored.append(self.admit(detail))
                except InvalidUpstreamDataError as e:
                    logger.warning(f"Skipping {detail.external_id or '<no id>'}: {e}")
            return stored

        stored = await asyncio.to_thread(_persist)
        logger.info(f"Cached {len(stored)}/{len(to_fetch)} new titles")
        return stored

    def close(self, wait_for_pending: bool = True) -> None:
        """
        Stop the background pre-cache pool.

        With wait_for_pending=False, queued fetches are cancelled and the call
        returns at once; fetches already running finish within the client timeout.
        Searches after close() still return results but schedule nothing.
        """
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait_for_pending, cancel_futures=not wait_for_pending)
