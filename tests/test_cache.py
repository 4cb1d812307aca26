import sqlite3
import threading

import pytest

from conftest import FakeCatalog, make_detail
from movie_watchlist.cache import MovieCache, validate_detail
from movie_watchlist.errors import (
    ConfigurationError,
    InvalidQueryError,
    InvalidUpstreamDataError,
    NotFoundError,
    StorageError,
    UpstreamUnavailableError,
)
from movie_watchlist.models import SearchResult


def test_get_or_create_fetches_once(fresh_db):
    fake = FakeCatalog(details={"tt1": make_detail("tt1", title="  Heat ", genre="Crime, Drama")})

    with MovieCache(fake) as cache:
        first = cache.get_or_create_by_external_id("tt1")
        second = cache.get_or_create_by_external_id(" tt1 ")

    assert fake.fetch_calls == ["tt1"]
    assert first.id == second.id
    assert first.title == "Heat"
    assert first.cached_at == first.created_at == first.updated_at
    assert fresh_db.count_movies() == 1


@pytest.mark.parametrize("field", ["external_id", "title", "genre"])
def test_invalid_detail_is_rejected_and_not_stored(fresh_db, field):
    detail = make_detail("tt1")
    setattr(detail, field, "   ")
    fake = FakeCatalog(details={"tt1": detail})

    with MovieCache(fake) as cache:
        with pytest.raises(InvalidUpstreamDataError):
            cache.get_or_create_by_external_id("tt1")

    assert fresh_db.count_movies() == 0


def test_catalog_answering_with_another_id_is_rejected(fresh_db):
    fake = FakeCatalog(details={"tt0000001": make_detail("tt0000002", title="Redirected")})

    with MovieCache(fake) as cache:
        with pytest.raises(InvalidUpstreamDataError):
            cache.get_or_create_by_external_id("tt0000001")

    assert fresh_db.count_movies() == 0
    assert fresh_db.find_movie_by_external_id("tt0000002") is None


def test_external_id_case_difference_is_same_movie(fresh_db):
    fake = FakeCatalog(details={"TT0000001": make_detail("tt0000001", title="Heat")})

    with MovieCache(fake) as cache:
        first = cache.get_or_create_by_external_id("TT0000001")
        second = cache.get_or_create_by_external_id("TT0000001")
        third = cache.get_or_create_by_external_id("tt0000001")

    assert fake.fetch_calls == ["TT0000001"]
    assert first.id == second.id == third.id
    assert first.external_id == "tt0000001"


def test_na_values_are_accepted():
    validate_detail(make_detail("tt1", title="N/A", genre="N/A", rating="N/A"))


def test_blank_external_id_is_invalid_query(fresh_db):
    with MovieCache(FakeCatalog()) as cache:
        with pytest.raises(InvalidQueryError):
            cache.get_or_create_by_external_id("  ")


def test_catalog_errors_propagate_and_store_nothing(fresh_db):
    fake = FakeCatalog(errors={
        "tt-missing": NotFoundError("movie tt-missing: Incorrect IMDb ID."),
        "tt-down": UpstreamUnavailableError("timeout"),
    })

    with MovieCache(fake) as cache:
        with pytest.raises(NotFoundError):
            cache.get_or_create_by_external_id("tt-missing")
        with pytest.raises(UpstreamUnavailableError):
            cache.get_or_create_by_external_id("tt-down")

    assert fresh_db.count_movies() == 0


def test_without_client_only_local_reads_work(fresh_db, seed_movies):
    (stored,) = seed_movies(("tt1", "Alien", "Horror, Sci-Fi", "8.5"))

    with MovieCache(None) as cache:
        assert cache.get_or_create_by_external_id("tt1").id == stored.id
        with pytest.raises(ConfigurationError):
            cache.get_or_create_by_external_id("tt2")
        with pytest.raises(ConfigurationError):
            cache.search("alien")


def test_concurrent_misses_resolve_to_one_record(fresh_db):
    barrier = threading.Barrier(2, timeout=5)

    class RacingCatalog(FakeCatalog):
        def fetch_detail(self, external_id):
            detail = super().fetch_detail(external_id)
            # both callers have missed the cache before either inserts
            barrier.wait()
            return detail

    fake = RacingCatalog(details={"tt1": make_detail("tt1", title="Heat")})
    results = [None, None]
    errors = []

    with MovieCache(fake) as cache:
        def worker(i):
            try:
                results[i] = cache.get_or_create_by_external_id("tt1")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    assert errors == []
    assert len(fake.fetch_calls) == 2
    assert results[0].id == results[1].id
    assert fresh_db.count_movies() == 1


def test_integrity_error_without_stored_row_is_storage_error(fresh_db, monkeypatch):
    def failing_insert(movie):
        raise sqlite3.IntegrityError("NOT NULL constraint failed: movies.title")

    monkeypatch.setattr(fresh_db, "insert_movie", failing_insert)
    fake = FakeCatalog(details={"tt1": make_detail("tt1")})

    with MovieCache(fake) as cache:
        with pytest.raises(StorageError):
            cache.get_or_create_by_external_id("tt1")


def test_store_failure_is_storage_error(fresh_db, monkeypatch):
    def broken_lookup(external_id):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(fresh_db, "find_movie_by_external_id", broken_lookup)

    with MovieCache(FakeCatalog()) as cache:
        with pytest.raises(StorageError):
            cache.get_or_create_by_external_id("tt1")


def test_search_rejects_blank_query(fresh_db):
    fake = FakeCatalog()
    with MovieCache(fake) as cache:
        for query in ("", "   ", None):
            with pytest.raises(InvalidQueryError):
                cache.search(query)
    assert fake.search_calls == []


def test_search_returns_results_and_precaches_in_background(fresh_db, seed_movies):
    (already,) = seed_movies(("tt0", "Cached", "Drama", "6.0"))
    fake = FakeCatalog(
        search_results=[
            SearchResult(external_id="tt0", title="Cached"),
            SearchResult(external_id="tt1", title="One"),
            SearchResult(external_id="tt2", title="Two"),
            SearchResult(external_id="tt3", title="Broken"),
        ],
        details={
            "tt1": make_detail("tt1", title="One"),
            "tt2": make_detail("tt2", title="Two"),
        },
        errors={"tt3": NotFoundError("movie tt3: not found")},
    )

    with MovieCache(fake, max_workers=2) as cache:
        results = cache.search("  some title ")
        assert cache.wait_for_precache(timeout=5)

    assert fake.search_calls == ["some title"]
    assert [r.external_id for r in results] == ["tt0", "tt1", "tt2", "tt3"]
    assert sorted(fake.fetch_calls) == ["tt1", "tt2", "tt3"]
    assert fresh_db.find_movie_by_external_id("tt0").id == already.id
    assert fresh_db.find_movie_by_external_id("tt1") is not None
    assert fresh_db.find_movie_by_external_id("tt2") is not None
    assert fresh_db.find_movie_by_external_id("tt3") is None


def test_search_failure_propagates(fresh_db):
    class DownCatalog(FakeCatalog):
        def search(self, title):
            raise UpstreamUnavailableError("timeout")

    with MovieCache(DownCatalog()) as cache:
        with pytest.raises(UpstreamUnavailableError):
            cache.search("matrix")


def test_wait_for_precache_with_nothing_pending(fresh_db):
    with MovieCache(FakeCatalog()) as cache:
        assert cache.wait_for_precache(timeout=0) is True


@pytest.mark.asyncio
async def test_prefetch_many_skips_cached_and_invalid(fresh_db, seed_movies):
    seed_movies(("tt0", "Cached", "Drama", "6.0"))

    class FakeAsyncCatalog:
        def __init__(self):
            self.requested = []

        async def fetch_details_batch(self, ids):
            self.requested.extend(ids)
            return [
                make_detail("tt1", title="One"),
                make_detail("tt2", title="No genre", genre=""),
            ]

    fake = FakeAsyncCatalog()
    cache = MovieCache(None)
    try:
        stored = await cache.prefetch_many(["tt0", "tt1", "tt1", " ", "tt2"], fake)
    finally:
        cache.close()

    assert fake.requested == ["tt1", "tt2"]
    assert [m.external_id for m in stored] == ["tt1"]
    assert fresh_db.count_movies() == 2


class BlockingCatalog(FakeCatalog):
    """fetch_detail signals when it starts and waits until released."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.started = threading.Event()
        self.release = threading.Event()

    def fetch_detail(self, external_id):
        detail = super().fetch_detail(external_id)
        self.started.set()
        self.release.wait(timeout=5)
        return detail


def test_search_does_not_wait_for_background_fetches(fresh_db):
    fake = BlockingCatalog(
        search_results=[SearchResult(external_id="tt1", title="One")],
        details={"tt1": make_detail("tt1", title="One")},
    )
    cache = MovieCache(fake, max_workers=1)
    try:
        results = cache.search("one")

        assert [r.external_id for r in results] == ["tt1"]
        assert fake.started.wait(timeout=5)
        assert cache.wait_for_precache(timeout=0) is False
        assert fresh_db.find_movie_by_external_id("tt1") is None

        fake.release.set()
        assert cache.wait_for_precache(timeout=5) is True
    finally:
        fake.release.set()
        cache.close()

    assert fresh_db.find_movie_by_external_id("tt1") is not None


def test_close_without_waiting_cancels_queued_fetches(fresh_db):
    fake = BlockingCatalog(
        search_results=[
            SearchResult(external_id="tt1", title="One"),
            SearchResult(external_id="tt2", title="Two"),
        ],
        details={
            "tt1": make_detail("tt1", title="One"),
            "tt2": make_detail("tt2", title="Two"),
        },
    )
    cache = MovieCache(fake, max_workers=1)
    try:
        cache.search("film")
        assert fake.started.wait(timeout=5)

        cache.close(wait_for_pending=False)

        assert fake.fetch_calls == ["tt1"]
        assert cache._inflight == {"tt1"}
    finally:
        fake.release.set()

    assert cache.wait_for_precache(timeout=5) is True
    assert fake.fetch_calls == ["tt1"]
    assert fresh_db.find_movie_by_external_id("tt2") is None


def test_search_after_close_schedules_nothing(fresh_db):
    fake = FakeCatalog(
        search_results=[SearchResult(external_id="tt1", title="One")],
        details={"tt1": make_detail("tt1", title="One")},
    )
    cache = MovieCache(fake)
    cache.close()

    results = cache.search("one")

    assert [r.external_id for r in results] == ["tt1"]
    assert cache.wait_for_precache(timeout=0) is True
    assert fake.fetch_calls == []
    assert cache._inflight == set()
