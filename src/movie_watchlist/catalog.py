"""
OMDb catalog clients.

Both clients expose the two lookups the cache needs: fuzzy title search and
exact-ID detail fetch. Transport problems surface as UpstreamUnavailableError;
nothing is retried here, retry policy belongs to the caller.
"""
import httpx
import asyncio
import logging
from .config import (
    OMDB_API_KEY,
    OMDB_BASE_URL,
    HTTP_TIMEOUT,
    DEFAULT_MAX_CONCURRENT,
)
from .errors import (
    ConfigurationError,
    InvalidUpstreamDataError,
    NotFoundError,
    UpstreamError,
    UpstreamUnavailableError,
)
from .models import MovieDetail, SearchResult

logger = logging.getLogger(__name__)

USER_AGENT = "movie-watchlist/0.1"

# Error strings OMDb uses when a title or ID simply does not exist
_NOT_FOUND_MARKERS = ("not found", "incorrect imdb id")


def _require_api_key(api_key: str | None) -> str:
    if not api_key or not api_key.strip():
        raise ConfigurationError(
            "OMDb API key not configured. Set OMDB_API_KEY in the environment."
        )
    return api_key.strip()


def _text(payload: dict, key: str) -> str:
    value = payload.get(key)
    return value.strip() if isinstance(value, str) else ""


def _decode_response(resp: httpx.Response, what: str) -> dict:
    """
    Turn an HTTP response into the OMDb JSON object, or raise.

    Shared by the sync and async clients.
    """
    if resp.status_code != 200:
        logger.error(f"OMDb returned HTTP {resp.status_code} for {what}")
        raise UpstreamUnavailableError(f"OMDb API returned status code: {resp.status_code}")

    try:
        payload = resp.json()
    except ValueError as exc:
        raise InvalidUpstreamDataError(f"failed to decode OMDb response for {what}: {exc}") from exc

    if not isinstance(payload, dict):
        raise InvalidUpstreamDataError(f"unexpected OMDb payload type for {what}: {type(payload).__name__}")

    return payload


def _raise_for_api_error(payload: dict, what: str) -> None:
    """OMDb signals failures in-band with Response=False and an Error string."""
    if str(payload.get("Response", "")).lower() != "false":
        return

    message = _text(payload, "Error") or "OMDb API returned an error response"
    if any(marker in message.lower() for marker in _NOT_FOUND_MARKERS):
        raise NotFoundError(f"{what}: {message}")
    raise UpstreamError(message)


def parse_search_payload(payload: dict, query: str) -> list[SearchResult]:
    """Parse a search response; an explicit 'not found' is an empty result."""
    try:
        _raise_for_api_error(payload, f"search '{query}'")
    except NotFoundError:
        return []

    items = payload.get("Search") or []
    if not isinstance(items, list):
        raise InvalidUpstreamDataError(f"search '{query}': 'Search' is not a list")

    results = []
    for item in items:
        if not isinstance(item, dict):
            logger.debug(f"Skipping malformed search item for '{query}': {item!r}")
            continue
        results.append(SearchResult(
            external_id=_text(item, "imdbID"),
            title=_text(item, "Title"),
            year=_text(item, "Year"),
            poster=_text(item, "Poster"),
        ))
    return results


def parse_detail_payload(payload: dict, external_id: str) -> MovieDetail:
    _raise_for_api_error(payload, f"movie {external_id}")
    return MovieDetail(
        external_id=_text(payload, "imdbID"),
        title=_text(payload, "Title"),
        year=_text(payload, "Year"),
        genre=_text(payload, "Genre"),
        director=_text(payload, "Director"),
        plot=_text(payload, "Plot"),
        poster=_text(payload, "Poster"),
        runtime=_text(payload, "Runtime"),
        rating=_text(payload, "imdbRating"),
    )


class OMDbClient:
    """Blocking OMDb client with a bounded per-call timeout."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = OMDB_BASE_URL,
        timeout: float = HTTP_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_key = _require_api_key(api_key)
        self.base_url = base_url
        self.client = httpx.Client(
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls) -> "OMDbClient":
        """Build a client from OMDB_API_KEY; raises ConfigurationError when it is unset."""
        return cls(OMDB_API_KEY)

    def _get(self, params: dict, what: str) -> dict:
        try:
            resp = self.client.get(self.base_url, params={"apikey": self.api_key, **params})
        except httpx.TimeoutException as e:
            logger.error(f"Timeout calling OMDb for {what}: {e}")
            raise UpstreamUnavailableError(f"OMDb request timed out for {what}") from e
        except httpx.HTTPError as e:
            logger.error(f"Request error calling OMDb for {what}: {type(e).__name__}: {e}")
            raise UpstreamUnavailableError(f"failed to make request to OMDb API: {e}") from e
        return _decode_response(resp, what)

    def search(self, title: str) -> list[SearchResult]:
        payload = self._get({"s": title}, f"search '{title}'")
        return parse_search_payload(payload, title)

    def fetch_detail(self, external_id: str) -> MovieDetail:
        payload = self._get({"i": external_id, "plot": "short"}, f"movie {external_id}")
        return parse_detail_payload(payload, external_id)

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class AsyncOMDbClient:
    """Async OMDb client for fetching many titles at once with bounded concurrency."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = OMDB_BASE_URL,
        timeout: float = HTTP_TIMEOUT,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = _require_api_key(api_key)
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(cls, max_concurrent: int = DEFAULT_MAX_CONCURRENT) -> "AsyncOMDbClient":
        return cls(OMDB_API_KEY, max_concurrent=max_concurrent)

    async def __aenter__(self):
        self.client = httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            timeout=self.timeout,
            transport=self.transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client:
            await self.client.aclose()
            self.client = None
        return False

    async def _get(self, params: dict, what: str) -> dict:
        if not self.client:
            raise RuntimeError("AsyncOMDbClient must be used as an async context manager")

        async with self.semaphore:
            try:
                resp = await self.client.get(self.base_url, params={"apikey": self.api_key, **params})
            except httpx.TimeoutException as e:
                logger.error(f"Timeout calling OMDb for {what}: {e}")
                raise UpstreamUnavailableError(f"OMDb request timed out for {what}") from e
            except httpx.HTTPError as e:
                logger.error(f"Request error calling OMDb for {what}: {type(e).__name__}: {e}")
                raise UpstreamUnavailableError(f"failed to make request to OMDb API: {e}") from e
        return _decode_response(resp, what)

    async def search(self, title: str) -> list[SearchResult]:
        payload = await self._get({"s": title}, f"search '{title}'")
        return parse_search_payload(payload, title)

    async def fetch_detail(self, external_id: str) -> MovieDetail:
        payload = await self._get({"i": external_id, "plot": "short"}, f"movie {external_id}")
        return parse_detail_payload(payload, external_id)

    async def fetch_details_batch(self, external_ids: list[str]) -> list[MovieDetail]:
        """
        Fetch many titles concurrently.

        Returns the successfully fetched details in input order. Individual
        failures are logged and left out so one bad ID does not sink the batch.
        """
        tasks = [self.fetch_detail(external_id) for external_id in external_ids]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        successful = []
        error_summary: dict[str, int] = {}
        for external_id, result in zip(external_ids, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                error_type = type(result).__name__
                logger.warning(f"Failed to fetch {external_id}: {error_type}: {result}")
                error_summary[error_type] = error_summary.get(error_type, 0) + 1
            else:
                successful.append(result)

        if error_summary:
            logger.warning(
                f"Batch complete: {len(successful)}/{len(external_ids)} successful, "
                f"errors: {error_summary}"
            )
        else:
            logger.info(f"Batch complete: {len(successful)}/{len(external_ids)} successful")

        return successful
