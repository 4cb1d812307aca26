"""Exception hierarchy shared by the cache, catalog client and recommender."""


class MovieWatchlistError(Exception):
    """Base class for all errors raised by movie_watchlist."""
    pass


class CatalogError(MovieWatchlistError):
    """Raised when the external movie catalog cannot satisfy a request."""
    pass


class NotFoundError(CatalogError):
    """Raised when the catalog explicitly reports no such title or ID."""
    pass


class UpstreamUnavailableError(CatalogError):
    """Raised on network failure, timeout or a non-success HTTP status."""
    pass


class UpstreamError(CatalogError):
    """Raised when the provider reports a structured failure (bad key, quota, ...)."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidUpstreamDataError(CatalogError):
    """Raised when a provider response is malformed or misses required fields."""
    pass


class ConfigurationError(MovieWatchlistError):
    """Raised when a required setting (e.g. the OMDb API key) is missing."""
    pass


class InvalidQueryError(MovieWatchlistError, ValueError):
    """Raised for an empty or whitespace-only search query."""
    pass


class InvalidLimitError(MovieWatchlistError, ValueError):
    """Raised when a recommendation limit is not a positive integer."""
    pass


class InvalidRatingError(MovieWatchlistError, ValueError):
    """Raised when a star rating is outside the allowed range."""
    pass


class DuplicateEntryError(MovieWatchlistError):
    """Raised when a (user, movie) rating or watchlist entry already exists."""
    pass


class StorageError(MovieWatchlistError):
    """Raised when the local store fails."""
    pass
