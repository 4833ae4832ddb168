"""
Typed view over metadata API game records.

Raw API records are loose JSON objects whose optional fields may be missing,
null, bare ids or expanded sub-objects. CandidateResult gives every optional
attribute an explicit absent state (None or an empty list) so scoring and
record building never probe raw dictionaries directly.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class ResponseError(Exception):
    """Raised when an API payload has an unexpected shape."""
    pass


@dataclass(frozen=True)
class Company:
    """Company involved in a game and its role."""
    name: str
    developer: bool = False
    publisher: bool = False


@dataclass(frozen=True)
class AgeRating:
    """Rating board (category) and rating code, both as API integers."""
    category: Optional[int] = None
    rating: Optional[int] = None


@dataclass
class CandidateResult:
    """
    A game record returned by a search query.

    Optional attributes are None (scalars) or empty lists when the API did
    not supply them. ``raw`` keeps the original record for caching.
    """
    id: int
    name: str
    alternative_names: List[str] = field(default_factory=list)
    platform_ids: List[int] = field(default_factory=list)
    release_timestamp: Optional[int] = None
    genres: List[str] = field(default_factory=list)
    companies: List[Company] = field(default_factory=list)
    cover_ref: Optional[str] = None
    screenshot_refs: List[str] = field(default_factory=list)
    summary: Optional[str] = None
    storyline: Optional[str] = None
    rating: Optional[float] = None
    category: Optional[int] = None
    status: Optional[int] = None
    game_modes: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    age_ratings: List[AgeRating] = field(default_factory=list)
    collection: Optional[str] = None
    franchise: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def release_year(self) -> Optional[int]:
        if self.release_timestamp is None:
            return None
        return datetime.fromtimestamp(self.release_timestamp, tz=timezone.utc).year

    @property
    def release_date(self) -> Optional[str]:
        """ISO date (UTC) of first release."""
        if self.release_timestamp is None:
            return None
        return datetime.fromtimestamp(self.release_timestamp, tz=timezone.utc).date().isoformat()

    @property
    def all_names(self) -> List[str]:
        return [self.name] + [n for n in self.alternative_names if n]

    def company_names(self, role: str = 'all') -> List[str]:
        """
        Names of involved companies filtered by role.

        Args:
            role: 'developer', 'publisher' or 'all'
        """
        if role == 'developer':
            return [c.name for c in self.companies if c.developer]
        if role == 'publisher':
            return [c.name for c in self.companies if c.publisher]
        return [c.name for c in self.companies]


def _names(values: Any, key: str = 'name') -> List[str]:
    """Pull a list of names out of a list of strings or expanded objects."""
    result = []
    for value in values or []:
        if isinstance(value, dict):
            name = value.get(key)
        else:
            name = value
        if isinstance(name, str) and name.strip():
            result.append(name.strip())
    return result


def _ids(values: Any) -> List[int]:
    result = []
    for value in values or []:
        if isinstance(value, dict):
            value = value.get('id')
        if isinstance(value, int) and not isinstance(value, bool):
            result.append(value)
    return result


def _nested_name(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get('name')
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _image_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get('image_id')
    if isinstance(value, str) and value:
        return value
    return None


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _companies(values: Any) -> List[Company]:
    companies = []
    for entry in values or []:
        if not isinstance(entry, dict):
            continue
        name = _nested_name(entry.get('company'))
        if not name:
            continue
        companies.append(Company(
            name=name,
            developer=bool(entry.get('developer')),
            publisher=bool(entry.get('publisher')),
        ))
    return companies


def _age_ratings(values: Any) -> List[AgeRating]:
    ratings = []
    for entry in values or []:
        if isinstance(entry, dict):
            ratings.append(AgeRating(
                category=_optional_int(entry.get('category')),
                rating=_optional_int(entry.get('rating')),
            ))
    return ratings


def parse_candidate(record: Any) -> Optional[CandidateResult]:
    """
    Convert one raw API game record to a CandidateResult.

    Args:
        record: Raw JSON object from the API

    Returns:
        CandidateResult, or None when the record lacks an integer id or a name
    """
    if not isinstance(record, dict):
        logger.debug(f"Skipping non-object game record: {record!r}")
        return None

    game_id = _optional_int(record.get('id'))
    name = record.get('name')
    if game_id is None or not isinstance(name, str) or not name.strip():
        logger.debug(f"Skipping game record without id/name: {record.get('id')!r}")
        return None

    rating = record.get('rating')
    summary = record.get('summary')
    storyline = record.get('storyline')

    return CandidateResult(
        id=game_id,
        name=name.strip(),
        alternative_names=_names(record.get('alternative_names')),
        platform_ids=_ids(record.get('platforms')),
        release_timestamp=_optional_int(record.get('first_release_date')),
        genres=_names(record.get('genres')),
        companies=_companies(record.get('involved_companies')),
        cover_ref=_image_id(record.get('cover')),
        screenshot_refs=[
            ref for ref in (_image_id(s) for s in record.get('screenshots') or []) if ref
        ],
        summary=summary if isinstance(summary, str) and summary else None,
        storyline=storyline if isinstance(storyline, str) and storyline else None,
        rating=float(rating) if isinstance(rating, (int, float)) and not isinstance(rating, bool) else None,
        category=_optional_int(record.get('category')),
        status=_optional_int(record.get('status')),
        game_modes=_names(record.get('game_modes')),
        keywords=_names(record.get('keywords')),
        age_ratings=_age_ratings(record.get('age_ratings')),
        collection=_nested_name(record.get('collection')),
        franchise=_nested_name(record.get('franchise')),
        raw=record,
    )


def parse_candidates(records: Iterable[Any]) -> List[CandidateResult]:
    """Parse a list of raw records, dropping the ones without id or name."""
    if records is None:
        return []
    if not isinstance(records, list):
        raise ResponseError(f"Expected a list of game records, got {type(records).__name__}")
    parsed = (parse_candidate(record) for record in records)
    return [candidate for candidate in parsed if candidate is not None]
