import math
from dataclasses import dataclass, asdict
from datetime import datetime


@dataclass
class Movie:
    """A cached catalog record. Metadata is immutable once admitted."""
    id: str
    external_id: str
    title: str
    year: str = ""
    genre: str = ""        # comma-delimited, free text, as delivered by the catalog
    director: str = ""
    plot: str = ""
    poster: str = ""
    runtime: str = ""
    rating: str = ""       # text-encoded decimal, e.g. "8.8" or "N/A"
    cached_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def numeric_rating(self) -> float | None:
        """External rating parsed as a decimal, or None when missing/non-numeric."""
        try:
            value = float(self.rating)
        except (TypeError, ValueError):
            return None
        return value if math.isfinite(value) else None

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("cached_at", "created_at", "updated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class Rating:
    user_id: str
    movie_id: str
    rating: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class WatchlistEntry:
    user_id: str
    movie_id: str
    added_at: datetime | None = None


@dataclass
class SearchResult:
    """Lightweight catalog search hit (no genre)."""
    external_id: str
    title: str
    year: str = ""
    poster: str = ""


@dataclass
class MovieDetail:
    """Full catalog record for a single external ID, prior to validation."""
    external_id: str
    title: str
    year: str = ""
    genre: str = ""
    director: str = ""
    plot: str = ""
    poster: str = ""
    runtime: str = ""
    rating: str = ""
