"""
Library data structures.

Defines the persisted game record, the rejection record, and the
conversion from a matched API candidate to a library record.
"""

import logging
import re
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from romshelf.api.name_normalizer import normalize
from romshelf.api.response_parser import CandidateResult
from romshelf.scanner.rom_types import RomEntry

logger = logging.getLogger(__name__)

MULTIPLAYER_MODES = ('multiplayer', 'co-operative', 'co-op', 'split screen')
TAG_MIN_LENGTH = 4
UNKNOWN_GENRE = 'Unknown'

# Only words of TAG_MIN_LENGTH or more reach this check
TAG_STOP_WORDS = frozenset([
    'from', 'with', 'without', 'were', 'will', 'this', 'that', 'these', 'those',
    'they', 'their', 'them', 'there', 'have', 'what', 'when', 'where', 'which',
    'some', 'such', 'only', 'same', 'than', 'very', 'just', 'should', 'again',
    'once', 'under', 'further', 'before', 'after', 'above', 'below', 'around',
    'over', 'your', 'well', 'each', 'both', 'most', 'more', 'much', 'many',
    'must', 'lots', 'back', 'come', 'best', 'about', 'into', 'other', 'find',
    'based', 'like', 'full', 'huge', 'long', 'lost', 'make', 'take', 'also',
    'game', 'games', 'player', 'players',
])

TAG_PHRASES = (
    (re.compile(r"\bhack\s*(?:and|&|n|'n'|/)\s*slash\b"), 'hackandslash'),
    (re.compile(r"\bbeat[\s'-]*em[\s'-]*up\b"), 'beatemup'),
    (re.compile(r"\bshoot[\s'-]*em[\s'-]*up\b"), 'shootemup'),
    (re.compile(r"\brun\s*(?:and|&|n|'n'|/)\s*gun\b"), 'runandgun'),
    (re.compile(r'\b(?:two|2|multiple)[\s-]*players?\b'), 'multiplayer'),
    (re.compile(r'\b(?:high|top)\s*scores?\b'), 'highscore'),
    (re.compile(r'\b(?:power|bonus)[\s-]*ups?\b'), 'powerups'),
    (re.compile(r'\b(?:save|load|continue)\s*game\b'), 'savegame'),
)

TAG_ALIASES = {
    'multiplay': 'multiplayer',
    'platformer': 'platform',
    'simulator': 'simulation',
    'sports': 'sport',
    'strategic': 'strategy',
    'versus': 'competitive',
    'quests': 'missions',
    'objectives': 'missions',
    'difficult': 'hardcore',
    'challenging': 'hardcore',
    'graphic': 'graphics',
    'graphical': 'graphics',
    'animated': 'animation',
    'animate': 'animation',
    'musical': 'music',
    'soundtrack': 'music',
}


def record_key(platform_key: str, title: str) -> str:
    """
    Deduplication key for a console + title pair.

    Example:
        >>> record_key('NES ', 'Super Mario Bros. (USA) [!].nes')
        'nes:super mario bros'
    """
    clean = normalize(title).clean or str(title or '').strip()
    return f"{platform_key.lower().strip()}:{clean.lower()}"


@dataclass
class LibraryRecord:
    """
    One catalog entry per console + title.

    Duplicate ROM files for the same game merge into ``rom_paths`` and add
    to ``file_size``. Records are created on a successful match and also
    on a declined lookup in offline mode, where ``metadata_fetched`` is
    False.
    """
    title: str
    platform_key: str
    platform_id: Optional[int] = None
    game_id: Optional[int] = None
    genre: str = UNKNOWN_GENRE
    rom_paths: List[str] = field(default_factory=list)
    description: str = ''
    players: int = 1
    rating: Optional[float] = None  # 0-10, one decimal
    release_date: Optional[str] = None  # ISO date
    release_year: Optional[int] = None
    developer: str = ''
    publisher: str = ''
    keywords: List[str] = field(default_factory=list)
    age_ratings: List[str] = field(default_factory=list)
    collection: str = ''
    franchise: str = ''
    screenshots: List[str] = field(default_factory=list)
    cover_image: str = ''
    file_size: int = 0
    metadata_fetched: bool = False
    storyline: str = ''
    category: Optional[int] = None
    status: Optional[int] = None
    nested_genres: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return record_key(self.platform_key, self.title)

    def add_rom(self, file_path: str, file_size: int = 0) -> bool:
        """
        Merge another ROM file into this record.

        Returns:
            True if the path was new
        """
        if file_path in self.rom_paths:
            return False
        self.rom_paths.append(file_path)
        self.file_size += file_size
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, attr) for attr, name in RECORD_FIELDS.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional['LibraryRecord']:
        """
        Build a record from its persisted form.

        Values coming from tabular or markup files arrive as strings and
        are coerced back; missing fields take their defaults.

        Returns:
            LibraryRecord, or None when title or console is missing
        """
        title = data.get(RECORD_FIELDS['title'])
        platform_key = data.get(RECORD_FIELDS['platform_key'])
        if not title or not platform_key:
            return None

        values: Dict[str, Any] = {}
        for f in fields(cls):
            name = RECORD_FIELDS[f.name]
            if name not in data or data[name] is None:
                continue
            values[f.name] = _coerce(f.name, data[name])
        return cls(**values)


RECORD_FIELDS: Dict[str, str] = {
    'title': 'Title',
    'platform_key': 'Console',
    'platform_id': 'PlatformID',
    'game_id': 'GameID',
    'genre': 'Genre',
    'rom_paths': 'RomPaths',
    'description': 'Description',
    'players': 'Players',
    'rating': 'Rating',
    'release_date': 'ReleaseDate',
    'release_year': 'ReleaseYear',
    'developer': 'Developer',
    'publisher': 'Publisher',
    'keywords': 'Keywords',
    'age_ratings': 'AgeRatings',
    'collection': 'Collection',
    'franchise': 'Franchise',
    'screenshots': 'Screenshots',
    'cover_image': 'CoverImage',
    'file_size': 'FileSize',
    'metadata_fetched': 'MetadataFetched',
    'storyline': 'Storyline',
    'category': 'Category',
    'status': 'Status',
    'nested_genres': 'NestedGenres',
    'tags': 'Tags',
}

LIST_FIELDS = {'rom_paths', 'keywords', 'age_ratings', 'screenshots', 'nested_genres', 'tags'}
INT_FIELDS = {'platform_id', 'game_id', 'players', 'release_year', 'file_size', 'category', 'status'}
FLOAT_FIELDS = {'rating'}
BOOL_FIELDS = {'metadata_fetched'}
OPTIONAL_STR_FIELDS = {'release_date'}


def _coerce(attr: str, value: Any) -> Any:
    if attr in LIST_FIELDS:
        if isinstance(value, list):
            return [str(v) for v in value if v is not None]
        if isinstance(value, str) and value:
            return [value]
        return []
    if attr in BOOL_FIELDS:
        if isinstance(value, str):
            return value.strip().lower() in ('true', '1', 'yes')
        return bool(value)
    if attr in INT_FIELDS or attr in FLOAT_FIELDS:
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None if attr not in ('players', 'file_size') else 0
        try:
            return float(value) if attr in FLOAT_FIELDS else int(float(value))
        except (TypeError, ValueError):
            logger.debug(f"Ignoring non-numeric {attr} value: {value!r}")
            return None if attr not in ('players', 'file_size') else 0
    if attr in OPTIONAL_STR_FIELDS and value == '':
        return None
    return str(value)


@dataclass
class UnmatchedRecord:
    """A ROM that could not be matched above the confidence threshold."""
    title: str
    platform_key: str
    file_path: str
    reason: str
    attempted_variations: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return record_key(self.platform_key, self.title)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'console': self.platform_key,
            'file_path': self.file_path,
            'reason': self.reason,
            'attempted_variations': list(self.attempted_variations),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional['UnmatchedRecord']:
        if not isinstance(data, dict) or not data.get('title') or not data.get('console'):
            return None
        return cls(
            title=str(data['title']),
            platform_key=str(data['console']),
            file_path=str(data.get('file_path', '')),
            reason=str(data.get('reason', '')),
            attempted_variations=[str(v) for v in data.get('attempted_variations') or []],
        )


def player_count(game_modes: List[str]) -> int:
    """2 when any game mode allows more than one player, else 1."""
    for mode in game_modes:
        lowered = mode.lower()
        if any(marker in lowered for marker in MULTIPLAYER_MODES):
            return 2
    return 1


def generate_tags(
    summary: Optional[str],
    storyline: Optional[str],
    genres: List[str],
    developer: Optional[str]
) -> List[str]:
    """
    Sorted unique lower-case tags of at least four characters.

    Summary, storyline and developer are split into words after folding
    genre phrases ("run and gun") and feature phrases ("two players")
    into single tags. Stop words and bare numbers are dropped and word
    variants collapse onto one spelling. Genre names are kept whole.
    """
    tokens: List[str] = []
    for text in (summary, storyline, developer):
        if not text:
            continue
        lowered = text.lower()
        for pattern, tag in TAG_PHRASES:
            lowered = pattern.sub(f' {tag} ', lowered)
        tokens.extend(re.split(r'\W+', lowered))

    tags = set()
    for token in tokens:
        if len(token) < TAG_MIN_LENGTH or token in TAG_STOP_WORDS or token.isdigit():
            continue
        tags.add(TAG_ALIASES.get(token, token))
    tags.update(g.lower() for g in genres if g)
    return sorted(tags)


def format_age_ratings(candidate: CandidateResult) -> List[str]:
    return [
        f"{r.category}: {r.rating}"
        for r in candidate.age_ratings
        if r.category and r.rating
    ]


def scale_rating(rating: Optional[float]) -> Optional[float]:
    """API ratings are 0-100; the library stores 0-10 with one decimal."""
    if rating is None:
        return None
    return round(rating / 10.0, 1)


def build_record(
    entry: RomEntry,
    candidate: CandidateResult,
    platform_id: Optional[int] = None
) -> LibraryRecord:
    """
    Create a library record for a matched ROM.

    Args:
        entry: ROM the lookup was for
        candidate: Accepted metadata candidate
        platform_id: Platform id of the console folder, if known

    Returns:
        LibraryRecord with metadata_fetched=True. Media fields are left
        empty for the media resolver to fill in.
    """
    developer = ', '.join(candidate.company_names('developer'))
    publisher = ', '.join(candidate.company_names('publisher'))

    return LibraryRecord(
        title=_record_title(entry.title),
        platform_key=entry.platform_key,
        platform_id=platform_id,
        game_id=candidate.id,
        genre=', '.join(candidate.genres) if candidate.genres else UNKNOWN_GENRE,
        rom_paths=[entry.file_path],
        description=candidate.summary or '',
        players=player_count(candidate.game_modes),
        rating=scale_rating(candidate.rating),
        release_date=candidate.release_date,
        release_year=candidate.release_year,
        developer=developer,
        publisher=publisher,
        keywords=list(candidate.keywords),
        age_ratings=format_age_ratings(candidate),
        collection=candidate.collection or '',
        franchise=candidate.franchise or '',
        file_size=entry.file_size,
        metadata_fetched=True,
        storyline=candidate.storyline or '',
        category=candidate.category,
        status=candidate.status,
        nested_genres=sorted(set(candidate.genres)),
        tags=generate_tags(candidate.summary, candidate.storyline, candidate.genres, developer),
    )


def build_declined_record(entry: RomEntry, platform_id: Optional[int] = None) -> LibraryRecord:
    """Record for a ROM catalogued without metadata."""
    return LibraryRecord(
        title=_record_title(entry.title),
        platform_key=entry.platform_key,
        platform_id=platform_id,
        rom_paths=[entry.file_path],
        file_size=entry.file_size,
        metadata_fetched=False,
    )


def _record_title(raw_title: str) -> str:
    return normalize(raw_title).clean or raw_title
