"""
Rule-based recommendations.

For each genre the user likes (most liked first) take the best externally
rated movies they have not rated or watchlisted; top up from the whole
catalog by rating when that is not enough. The order in which movies are
appended is the final ranking.
"""
import logging
import sqlite3
from dataclasses import dataclass

from . import database
from .cache import MovieCache
from .config import DEFAULT_RECOMMENDATION_LIMIT, LIKED_RATING_THRESHOLD
from .errors import InvalidLimitError, StorageError
from .models import Movie
from .preferences import ExclusionSetBuilder, PreferenceAnalyzer

logger = logging.getLogger(__name__)

FALLBACK_SOURCE = "fallback"


@dataclass
class Recommendation:
    movie: Movie
    source: str  # "genre:<name>" or "fallback"


def rating_sort_key(movie: Movie) -> tuple[int, float]:
    """Highest external rating first; missing or non-numeric ratings last."""
    value = movie.numeric_rating
    if value is None:
        return (1, 0.0)
    return (0, -value)


def rank_by_rating(movies: list[Movie]) -> list[Movie]:
    # sorted() is stable, so equal ratings keep storage (insertion) order
    return sorted(movies, key=rating_sort_key)


def _validate_limit(limit) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise InvalidLimitError(f"limit must be a positive integer, got {limit!r}")
    return limit


class RecommendationEngine:
    def __init__(
        self,
        cache: MovieCache,
        analyzer: PreferenceAnalyzer | None = None,
        exclusions: ExclusionSetBuilder | None = None,
    ):
        self.cache = cache
        self.analyzer = analyzer or PreferenceAnalyzer(cache)
        self.exclusions = exclusions or ExclusionSetBuilder()

    def recommend(self, user_id: str, limit: int = DEFAULT_RECOMMENDATION_LIMIT) -> list[Recommendation]:
        """
        Up to `limit` recommendations, each tagged with what produced it.

        Never fails for lack of data: a user with no liked genres gets the
        fallback ranking, and a small catalog just yields fewer results.

        Raises:
            InvalidLimitError: `limit` is not a positive integer
            StorageError: the local store failed; nothing partial is returned
        """
        limit = _validate_limit(limit)

        preferred_genres = self.analyzer.compute_preferred_genres(user_id, LIKED_RATING_THRESHOLD)
        exclude = self.exclusions.compute_exclusions(user_id)

        results: list[Recommendation] = []
        selected: set[str] = set()

        def take(candidates: list[Movie], source: str) -> None:
            for movie in rank_by_rating(candidates):
                if len(results) >= limit:
                    return
                if movie.id in exclude or movie.id in selected:
                    continue
                results.append(Recommendation(movie=movie, source=source))
                selected.add(movie.id)

        try:
            for genre in preferred_genres:
                if len(results) >= limit:
                    break
                take(database.load_movies_matching_genre(genre), f"genre:{genre}")

            if len(results) < limit:
                logger.debug(
                    f"{len(results)}/{limit} genre matches for {user_id}, filling from fallback"
                )
                take(database.load_all_movies(), FALLBACK_SOURCE)
        except sqlite3.Error as e:
            raise StorageError(f"candidate query for {user_id} failed: {e}") from e

        logger.info(
            f"Recommended {len(results)} movies for {user_id} "
            f"({len(preferred_genres)} preferred genres, {len(exclude)} excluded)"
        )
        return results[:limit]

    def get_recommendations(self, user_id: str, limit: int = DEFAULT_RECOMMENDATION_LIMIT) -> list[Movie]:
        return [rec.movie for rec in self.recommend(user_id, limit)]
