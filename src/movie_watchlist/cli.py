import argparse
import asyncio
import atexit
import json
import logging
import sys

from tqdm import tqdm

from .cache import MovieCache
from .catalog import AsyncOMDbClient, OMDbClient
from .config import DEFAULT_MAX_CONCURRENT, DEFAULT_RECOMMENDATION_LIMIT
from .database import (
    init_db, close_pool, count_movies, add_rating, update_rating, load_user_ratings,
    add_to_watchlist, remove_from_watchlist, load_watchlist, find_movies_by_ids,
)
from .errors import (
    CatalogError,
    ConfigurationError,
    MovieWatchlistError,
    NotFoundError,
)
from .recommender import RecommendationEngine

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


def _validate_user(user: str) -> str:
    user = (user or "").strip()
    if not user:
        raise ValueError("user cannot be empty")
    return user


def _open_cache(require_catalog: bool = False) -> MovieCache:
    """
    Build a MovieCache, with an OMDb client when an API key is configured.

    With require_catalog the missing key is reported before any work starts.
    """
    init_db()
    try:
        client = OMDbClient.from_config()
    except ConfigurationError:
        if require_catalog:
            raise
        logger.debug("OMDB_API_KEY not set; running with local cache only")
        client = None
    return MovieCache(client)


def _close_cache(cache: MovieCache, wait_for_pending: bool = True) -> None:
    cache.close(wait_for_pending=wait_for_pending)
    if cache.client is not None:
        cache.client.close()


def _format_movie(movie) -> str:
    rating = movie.rating or "N/A"
    return f"{movie.title} ({movie.year}) [{movie.external_id}] {movie.genre} - IMDb {rating}"


def cmd_search(args: argparse.Namespace) -> None:
    """Search the catalog; uncached hits are cached in the background."""
    cache = _open_cache(require_catalog=True)
    finished = True
    try:
        results = cache.search(args.query)
        if args.format == 'json':
            logger.info(json.dumps([r.__dict__ for r in results], indent=2))
        elif not results:
            logger.info(f"No results for '{args.query}'")
        else:
            for r in results:
                logger.info(f"  {r.title} ({r.year}) [{r.external_id}]")
        finished = cache.wait_for_precache(timeout=args.wait)
        if not finished:
            logger.warning("Background caching timed out; some results may not be cached yet")
    finally:
        _close_cache(cache, wait_for_pending=finished)


def cmd_movie(args: argparse.Namespace) -> None:
    """Show a movie by IMDb ID, fetching and caching it on first use."""
    cache = _open_cache()
    try:
        movie = cache.get_or_create_by_external_id(args.imdb_id)
        if args.format == 'json':
            logger.info(json.dumps(movie.to_dict(), indent=2))
        else:
            logger.info(_format_movie(movie))
            if movie.director:
                logger.info(f"  Director: {movie.director}")
            if movie.runtime:
                logger.info(f"  Runtime: {movie.runtime}")
            if movie.plot:
                logger.info(f"  {movie.plot}")
    finally:
        _close_cache(cache)


def cmd_rate(args: argparse.Namespace) -> None:
    user = _validate_user(args.user)
    cache = _open_cache()
    try:
        movie = cache.get_or_create_by_external_id(args.imdb_id)
        add_rating(user, movie.id, args.stars)
        logger.info(f"Rated {movie.title} {args.stars} stars")
    finally:
        _close_cache(cache)


def cmd_update_rating(args: argparse.Namespace) -> None:
    user = _validate_user(args.user)
    cache = _open_cache()
    try:
        movie = cache.find_by_external_id(args.imdb_id)
        if movie is None or not update_rating(user, movie.id, args.stars):
            logger.error(f"{user} has not rated {args.imdb_id} yet")
            sys.exit(1)
        logger.info(f"Updated rating of {movie.title} to {args.stars} stars")
    finally:
        _close_cache(cache)


def cmd_ratings(args: argparse.Namespace) -> None:
    user = _validate_user(args.user)
    init_db()
    ratings = load_user_ratings(user)
    if not ratings:
        logger.info(f"{user} has not rated any movies")
        return
    movies = find_movies_by_ids([r.movie_id for r in ratings])
    for r in ratings:
        movie = movies.get(r.movie_id)
        title = movie.title if movie else r.movie_id
        logger.info(f"  {'*' * r.rating:<5} {title}")


def cmd_watchlist_add(args: argparse.Namespace) -> None:
    user = _validate_user(args.user)
    cache = _open_cache()
    try:
        movie = cache.get_or_create_by_external_id(args.imdb_id)
        add_to_watchlist(user, movie.id)
        logger.info(f"Added {movie.title} to {user}'s watchlist")
    finally:
        _close_cache(cache)


def cmd_watchlist_remove(args: argparse.Namespace) -> None:
    user = _validate_user(args.user)
    cache = _open_cache()
    try:
        movie = cache.find_by_external_id(args.imdb_id)
        if movie is None or not remove_from_watchlist(user, movie.id):
            logger.warning(f"{args.imdb_id} is not in {user}'s watchlist")
            return
        logger.info(f"Removed {movie.title} from {user}'s watchlist")
    finally:
        _close_cache(cache)


def cmd_watchlist(args: argparse.Namespace) -> None:
    user = _validate_user(args.user)
    init_db()
    entries = load_watchlist(user)
    if not entries:
        logger.info(f"{user}'s watchlist is empty")
        return
    movies = find_movies_by_ids([e.movie_id for e in entries])
    for entry in entries:
        movie = movies.get(entry.movie_id)
        logger.info(f"  {_format_movie(movie) if movie else entry.movie_id}")


def cmd_recommend(args: argparse.Namespace) -> None:
    """Generate rule-based recommendations."""
    user = _validate_user(args.user)
    cache = _open_cache()
    try:
        recs = RecommendationEngine(cache).recommend(user, args.limit)
    finally:
        _close_cache(cache)

    if args.format == 'json':
        logger.info(json.dumps({
            "recommendations": [dict(r.movie.to_dict(), source=r.source) for r in recs],
            "count": len(recs),
            "limit": args.limit,
            "algorithm": "rule-based",
            "criteria": "Genres rated 4+ stars, excluding rated and watchlist movies",
        }, indent=2))
        return

    if not recs:
        logger.info("No movies cached yet. Run 'search' or 'warm' first.")
        return

    logger.info(f"\nTop {len(recs)} recommendations for {user}:\n")
    for i, rec in enumerate(recs, 1):
        logger.info(f"{i:2}. {_format_movie(rec.movie)}")
        logger.info(f"    via {rec.source}")
    logger.info("\nalgorithm: rule-based")


def cmd_warm(args: argparse.Namespace) -> None:
    """Cache many IMDb IDs up front."""
    ids = list(args.imdb_ids)
    if args.file:
        with open(args.file) as f:
            ids.extend(line.strip() for line in f if line.strip())
    if not ids:
        logger.error("No IMDb IDs given")
        sys.exit(2)

    init_db()
    if args.sequential:
        cache = _open_cache(require_catalog=True)
        try:
            stored = 0
            for imdb_id in tqdm(ids, desc="Caching"):
                try:
                    cache.get_or_create_by_external_id(imdb_id)
                    stored += 1
                except CatalogError as e:
                    logger.warning(f"Skipping {imdb_id}: {e}")
            logger.info(f"{stored}/{len(ids)} titles cached")
        finally:
            _close_cache(cache)
        return

    cache = MovieCache(None)

    async def _warm():
        async with AsyncOMDbClient.from_config(max_concurrent=args.max_concurrent) as client:
            return await cache.prefetch_many(ids, client)

    try:
        asyncio.run(_warm())
    finally:
        cache.close()
    logger.info(f"{count_movies()} titles in cache")


def main():
    parser = argparse.ArgumentParser(description="Movie watchlist tracker")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    search_parser = subparsers.add_parser("search", help="Search the catalog by title")
    search_parser.add_argument("query", help="Title to search for")
    search_parser.add_argument("--format", choices=['text', 'json'], default='text')
    search_parser.add_argument("--wait", type=float, default=60.0,
                               help="Seconds to wait for background caching before exiting (default: 60)")
    search_parser.set_defaults(func=cmd_search)

    movie_parser = subparsers.add_parser("movie", help="Show a movie by IMDb ID")
    movie_parser.add_argument("imdb_id", help="IMDb ID, e.g. tt0133093")
    movie_parser.add_argument("--format", choices=['text', 'json'], default='text')
    movie_parser.set_defaults(func=cmd_movie)

    rate_parser = subparsers.add_parser("rate", help="Rate a movie 1-5 stars")
    rate_parser.add_argument("imdb_id")
    rate_parser.add_argument("stars", type=int)
    rate_parser.add_argument("--user", "-u", required=True)
    rate_parser.set_defaults(func=cmd_rate)

    update_parser = subparsers.add_parser("update-rating", help="Change an existing rating")
    update_parser.add_argument("imdb_id")
    update_parser.add_argument("stars", type=int)
    update_parser.add_argument("--user", "-u", required=True)
    update_parser.set_defaults(func=cmd_update_rating)

    ratings_parser = subparsers.add_parser("ratings", help="List a user's ratings")
    ratings_parser.add_argument("--user", "-u", required=True)
    ratings_parser.set_defaults(func=cmd_ratings)

    wl_add_parser = subparsers.add_parser("watchlist-add", help="Add a movie to the watchlist")
    wl_add_parser.add_argument("imdb_id")
    wl_add_parser.add_argument("--user", "-u", required=True)
    wl_add_parser.set_defaults(func=cmd_watchlist_add)

    wl_remove_parser = subparsers.add_parser("watchlist-remove", help="Remove a movie from the watchlist")
    wl_remove_parser.add_argument("imdb_id")
    wl_remove_parser.add_argument("--user", "-u", required=True)
    wl_remove_parser.set_defaults(func=cmd_watchlist_remove)

    wl_parser = subparsers.add_parser("watchlist", help="Show a user's watchlist")
    wl_parser.add_argument("--user", "-u", required=True)
    wl_parser.set_defaults(func=cmd_watchlist)

    rec_parser = subparsers.add_parser("recommend", help="Recommend movies for a user")
    rec_parser.add_argument("--user", "-u", required=True)
    rec_parser.add_argument("--limit", "-n", type=int, default=DEFAULT_RECOMMENDATION_LIMIT)
    rec_parser.add_argument("--format", choices=['text', 'json'], default='text')
    rec_parser.set_defaults(func=cmd_recommend)

    warm_parser = subparsers.add_parser("warm", help="Cache many IMDb IDs up front")
    warm_parser.add_argument("imdb_ids", nargs="*", help="IMDb IDs to cache")
    warm_parser.add_argument("--file", "-f", help="File with IMDb IDs (one per line)")
    warm_parser.add_argument("--max-concurrent", type=int, default=DEFAULT_MAX_CONCURRENT,
                             help="Max concurrent catalog requests")
    warm_parser.add_argument("--sequential", action="store_true",
                             help="Fetch one at a time with a progress bar")
    warm_parser.set_defaults(func=cmd_warm)

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(2)
    except NotFoundError as e:
        logger.error(f"Not found: {e}")
        sys.exit(1)
    except (MovieWatchlistError, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
