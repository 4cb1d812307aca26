import logging
import sqlite3
from collections import Counter

from . import database
from .cache import MovieCache
from .config import LIKED_RATING_THRESHOLD
from .errors import StorageError

logger = logging.getLogger(__name__)


def parse_genres(genre_field: str | None) -> list[str]:
    """
    Split a catalog genre field into genre names.

    "  Action ,Sci-Fi ," -> ["Action", "Sci-Fi"]. Splits on commas, trims
    whitespace and drops empty tokens; case and duplicates are preserved.
    """
    if not genre_field:
        return []
    return [token.strip() for token in genre_field.split(",") if token.strip()]


class PreferenceAnalyzer:
    """Derives a ranked genre list from the movies a user rated highly."""

    def __init__(self, cache: MovieCache):
        self.cache = cache

    def compute_preferred_genres(self, user_id: str, min_rating: int = LIKED_RATING_THRESHOLD) -> list[str]:
        """
        Genres of the user's ratings >= `min_rating`, most frequent first.

        Ties keep the order in which genres were first seen while walking the
        ratings oldest first. No qualifying ratings gives an empty list.
        """
        try:
            ratings = database.load_user_ratings(user_id, min_rating=min_rating)
        except sqlite3.Error as e:
            raise StorageError(f"loading ratings for {user_id} failed: {e}") from e

        if not ratings:
            return []

        movies = self.cache.find_many_by_id([r.movie_id for r in ratings])

        counts: Counter[str] = Counter()
        for rating in ratings:
            movie = movies.get(rating.movie_id)
            if movie is None:
                logger.debug(f"Rating by {user_id} points at unknown movie {rating.movie_id}, skipping")
                continue
            counts.update(parse_genres(movie.genre))

        # Counter keeps first-insertion order and sorted() is stable
        preferred = sorted(counts, key=lambda genre: -counts[genre])
        logger.debug(f"Preferred genres for {user_id}: {preferred}")
        return preferred


class ExclusionSetBuilder:
    """Movies a user already rated or watchlisted; never suggested as new."""

    def compute_exclusions(self, user_id: str) -> set[str]:
        try:
            rated = database.load_rated_movie_ids(user_id)
            watchlisted = database.load_watchlist_movie_ids(user_id)
        except sqlite3.Error as e:
            raise StorageError(f"loading exclusions for {user_id} failed: {e}") from e
        return rated | watchlisted
