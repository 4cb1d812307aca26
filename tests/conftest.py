import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from movie_watchlist.models import MovieDetail  # noqa: E402


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("MOVIE_WATCHLIST_DB", str(db_path))
    import movie_watchlist.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("MOVIE_WATCHLIST_DB", str(db_path))

    import movie_watchlist.config as config
    import movie_watchlist.database as database

    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()


def make_detail(external_id, title="Some Film", genre="Drama", rating="7.0", **kwargs):
    return MovieDetail(external_id=external_id, title=title, genre=genre, rating=rating, **kwargs)


class FakeCatalog:
    """In-memory stand-in for OMDbClient; counts calls per external ID."""

    def __init__(self, details=None, search_results=None, errors=None):
        self.details = dict(details or {})
        self.search_results = list(search_results or [])
        self.errors = dict(errors or {})
        self.fetch_calls: list[str] = []
        self.search_calls: list[str] = []

    def search(self, title):
        self.search_calls.append(title)
        return list(self.search_results)

    def fetch_detail(self, external_id):
        self.fetch_calls.append(external_id)
        if external_id in self.errors:
            raise self.errors[external_id]
        return self.details[external_id]


@pytest.fixture
def seed_movies(fresh_db):
    """
    Insert movies directly into the store, in the given order.

    Takes (external_id, title, genre, rating) tuples and returns Movie records.
    """
    from movie_watchlist.cache import build_movie

    def _seed(*rows):
        movies = []
        for external_id, title, genre, rating in rows:
            movie = build_movie(make_detail(external_id, title=title, genre=genre, rating=rating))
            fresh_db.insert_movie(movie)
            movies.append(movie)
        return movies

    return _seed
