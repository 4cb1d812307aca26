"""
Configuration constants for the movie watchlist tracker.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("MOVIE_WATCHLIST_DB", "data/movie_watchlist.db"))

# External catalog (OMDb)
OMDB_API_KEY = os.environ.get("OMDB_API_KEY", "").strip()
OMDB_BASE_URL = os.environ.get("OMDB_BASE_URL", "http://www.omdbapi.com/")
HTTP_TIMEOUT = _get_float_env("MOVIE_WATCHLIST_HTTP_TIMEOUT", 30.0, min_val=1.0)  # seconds, per catalog call

# Concurrency
PRECACHE_MAX_WORKERS = _get_int_env("MOVIE_WATCHLIST_PRECACHE_WORKERS", 4, min_val=1)
DEFAULT_MAX_CONCURRENT = _get_int_env("MOVIE_WATCHLIST_MAX_CONCURRENT", 5, min_val=1)

# Ratings
MIN_RATING = 1
MAX_RATING = 5
LIKED_RATING_THRESHOLD = 4  # Ratings at or above this count as "liked"

# Recommendations
DEFAULT_RECOMMENDATION_LIMIT = 10
