"""Search query construction for the metadata API query language."""

import calendar
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from romshelf.api.name_normalizer import normalize


class QueryKind(Enum):
    """Query variants, in the order they are tried."""
    EXACT = "exact"
    SERIES = "series"
    YEAR = "year"
    FUZZY = "fuzzy"


GAMES_ENDPOINT = "games"

GAME_FIELDS = ",".join([
    "id",
    "name",
    "alternative_names.name",
    "genres.name",
    "first_release_date",
    "summary",
    "storyline",
    "platforms",
    "involved_companies.company.name",
    "involved_companies.developer",
    "involved_companies.publisher",
    "rating",
    "category",
    "status",
    "game_modes.name",
    "keywords.name",
    "age_ratings.category",
    "age_ratings.rating",
    "collection.name",
    "franchise.name",
    "screenshots.image_id",
    "cover.image_id",
])

DEFAULT_LIMIT = 50


@dataclass(frozen=True)
class SearchQuery:
    """A single query variant for one title."""
    kind: QueryKind
    text: str
    platform_filter: Optional[int] = None
    endpoint: str = GAMES_ENDPOINT
    term: str = ""

    def describe(self) -> str:
        return f"{self.kind.value}:{self.term}"


def escape_query_text(text: str) -> str:
    """Escape backslashes and double quotes for use inside a quoted literal."""
    return text.replace('\\', '\\\\').replace('"', '\\"')


def year_bounds(year: int) -> tuple[int, int]:
    """Unix-second bounds (inclusive) of a UTC calendar year."""
    start = calendar.timegm((year, 1, 1, 0, 0, 0))
    end = calendar.timegm((year + 1, 1, 1, 0, 0, 0)) - 1
    return start, end


def _platform_clause(platform_id: Optional[int]) -> str:
    return f" & platforms = ({platform_id})" if platform_id else ""


def _body(where: str, platform_id: Optional[int], limit: int, search: Optional[str] = None) -> str:
    parts = [f"fields {GAME_FIELDS};"]
    if search is not None:
        parts.append(f'search "{search}";')
    parts.append(f"where {where}{_platform_clause(platform_id)};")
    parts.append(f"limit {limit};")
    return " ".join(parts)


def build_queries(
    title: str,
    platform_id: Optional[int] = None,
    limit: int = DEFAULT_LIMIT
) -> List[SearchQuery]:
    """
    Build the ordered list of query variants for a title.

    Order is always exact, series (only when the title has a colon
    prefix), year (only when a 19xx/20xx year is present in the title or
    its date annotations), then the free-text fuzzy query. Each variant
    escapes its own literals.

    Args:
        title: Raw ROM title; normalized here
        platform_id: Platform id to scope queries to, if known
        limit: Result limit per query

    Returns:
        List of SearchQuery; empty when the title normalizes to ""
    """
    normalized = normalize(title)
    clean = normalized.clean
    if not clean:
        return []

    escaped = escape_query_text(clean)
    queries = [
        SearchQuery(
            kind=QueryKind.EXACT,
            text=_body(f'name = "{escaped}"', platform_id, limit),
            platform_filter=platform_id,
            term=clean,
        )
    ]

    if ':' in clean:
        series = clean.split(':', 1)[0].strip()
        if series:
            queries.append(SearchQuery(
                kind=QueryKind.SERIES,
                text=_body(
                    f'collection.name ~ *"{escape_query_text(series)}"*',
                    platform_id,
                    limit,
                ),
                platform_filter=platform_id,
                term=series,
            ))

    year = normalized.year
    if year is not None:
        start, end = year_bounds(year)
        queries.append(SearchQuery(
            kind=QueryKind.YEAR,
            text=_body(
                f'first_release_date >= {start} & first_release_date <= {end}'
                f' & name ~ *"{escaped}"*',
                platform_id,
                limit,
            ),
            platform_filter=platform_id,
            term=f"{clean} ({year})",
        ))

    queries.append(SearchQuery(
        kind=QueryKind.FUZZY,
        text=_body(f'name ~ *"{escaped}"*', platform_id, limit, search=escaped),
        platform_filter=platform_id,
        term=clean,
    ))

    return queries


def platforms_page_query(offset: int, page_size: int = 500) -> str:
    """Query body for one page of the platforms listing."""
    return f"fields id,name,alternative_name; limit {page_size}; offset {offset};"
