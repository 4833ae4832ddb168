"""
Title normalization for ROM filenames.

Turns a raw ROM filename such as ``Super Mario Bros. (USA) [!].nes`` into a
clean search string plus the dump annotations that were stripped from it.
Annotations are kept in a structured side-channel because the scorer uses
them later (region overlap, release year).
"""

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


ROM_EXTENSIONS = frozenset([
    '.nes', '.sfc', '.smc', '.gba', '.gb', '.gbc', '.n64', '.z64', '.v64',
    '.a26', '.lnx', '.c64', '.col', '.int', '.sms', '.gg', '.pce', '.cue',
    '.iso', '.bin', '.adf', '.rom', '.img', '.chd', '.cso', '.gdi', '.cdi',
    '.zip',
])

TAG_CATEGORIES = (
    'regions',
    'languages',
    'versions',
    'modifiers',
    'fixes',
    'translations',
    'dumps',
    'media',
    'dates',
)

REGION_TAGS = frozenset([
    'usa', 'us', 'u', 'america', 'europe', 'eur', 'eu', 'e', 'japan', 'jpn',
    'jap', 'jp', 'j', 'world', 'w', 'asia', 'korea', 'k', 'brazil', 'br',
    'australia', 'au', 'a', 'france', 'germany', 'spain', 'italy', 'uk',
    'canada', 'china', 'taiwan', 'hong kong', 'netherlands', 'sweden',
    'scandinavia', 'ntsc', 'pal', 'ntsc-u', 'ntsc-j', 'pal-e', 'ue', 'ju',
    'jue',
])

LANGUAGE_TAGS = frozenset([
    'en', 'fr', 'de', 'es', 'it', 'ja', 'nl', 'sv', 'no', 'da', 'fi', 'pt',
    'zh', 'ko', 'ru', 'pl',
])

ROMAN_NUMERALS = {
    'I': 1, 'II': 2, 'III': 3, 'IV': 4, 'V': 5,
    'VI': 6, 'VII': 7, 'VIII': 8, 'IX': 9, 'X': 10,
}
ARABIC_TO_ROMAN = {value: numeral for numeral, value in ROMAN_NUMERALS.items()}

NUMBER_WORDS = [
    'zero', 'one', 'two', 'three', 'four', 'five',
    'six', 'seven', 'eight', 'nine', 'ten',
]

_BRACKET_RE = re.compile(r"\(([^()]*)\)|\[([^\[\]]*)\]|\{([^{}]*)\}")
_INLINE_VERSION_RE = re.compile(r"\b(?:v|ver|rev) ?\d+(?:\.\d+)*[a-z]?\b", re.IGNORECASE)
_SEPARATOR_RE = re.compile(r"[_.\-]")
_STRAY_BRACKET_RE = re.compile(r"[()\[\]{}]")
_WHITESPACE_RE = re.compile(r"\s+")
_YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")

_VERSION_TAG_RE = re.compile(r"^(?:v|ver|version|rev|revision)\s*(?:\d[\w.]*|[a-z])$")
_TRANSLATION_TAG_RE = re.compile(r"^(?:t[+-]\w+|.*\btrans(?:lat\w*)?\b.*)$")
_FIX_TAG_RE = re.compile(r"^(?:fix\w*|patch\w*|f\d*)$")
_MODIFIER_TAG_RE = re.compile(
    r"^(?:beta|alpha|proto(?:type)?|sample|demo|promo|final|retail|"
    r"unl|unlicensed|pirate|hack|kiosk)\b"
)
_MEDIA_TAG_RE = re.compile(r"^(?:disk|disc|tape|side|cart|cd)\s*[a-z\d]*(?:\s+of\s+\d+)?$")
_DATE_TAG_RE = re.compile(r"^(?:19|20)\d{2}(?:-\d{2}(?:-\d{2})?)?$")

_ROMAN_WORD_RE = re.compile(r"\b(VIII|VII|III|IX|IV|VI|II|X|V|I)\b", re.IGNORECASE)
_ARABIC_WORD_RE = re.compile(r"\b(10|[0-9])\b")
_NUMBER_WORD_RE = re.compile(r"\b(" + "|".join(NUMBER_WORDS) + r")\b", re.IGNORECASE)
_LEADING_ARTICLE_RE = re.compile(r"^the\s+", re.IGNORECASE)


def _empty_tags() -> Dict[str, List[str]]:
    return {category: [] for category in TAG_CATEGORIES}


@dataclass
class NormalizedTitle:
    """Clean search title plus the annotations stripped from the raw name."""
    clean: str
    extracted_tags: Dict[str, List[str]] = field(default_factory=_empty_tags)
    original: str = ''

    @property
    def regions(self) -> List[str]:
        return self.extracted_tags.get('regions', [])

    @property
    def year(self) -> Optional[int]:
        """Release year hinted by the title or a date annotation, if any."""
        year = extract_year(self.clean)
        if year is not None:
            return year
        for tag in self.extracted_tags.get('dates', []):
            year = extract_year(tag)
            if year is not None:
                return year
        return None

    @property
    def alternates(self) -> List[str]:
        return alternate_titles(self.clean)


def extract_year(text: str) -> Optional[int]:
    """Return the first 19xx/20xx token in text."""
    match = _YEAR_RE.search(text or '')
    return int(match.group(0)) if match else None


def strip_extension(name: str) -> str:
    """Drop a trailing ROM file extension, leaving other dotted text alone."""
    dot = name.rfind('.')
    if dot > 0 and name[dot:].lower() in ROM_EXTENSIONS:
        return name[:dot]
    return name


def classify_tag(tag: str, square: bool = False) -> str:
    """
    Decide which annotation category a single bracketed token belongs to.

    Args:
        tag: Lower-cased token from inside a bracket group
        square: True when the token came from ``[...]``; single letters
            there are GoodTools dump flags, not region codes

    Returns:
        One of TAG_CATEGORIES
    """
    if _DATE_TAG_RE.match(tag):
        return 'dates'
    if _VERSION_TAG_RE.match(tag):
        return 'versions'
    if _TRANSLATION_TAG_RE.match(tag):
        return 'translations'
    if _FIX_TAG_RE.match(tag) and (square or not tag.startswith('f') or len(tag) > 2):
        return 'fixes'
    if _MODIFIER_TAG_RE.match(tag):
        return 'modifiers'
    if _MEDIA_TAG_RE.match(tag):
        return 'media'
    if tag in REGION_TAGS and not (square and len(tag) == 1):
        return 'regions'
    if tag in LANGUAGE_TAGS:
        return 'languages'
    return 'dumps'


def _extract_brackets(text: str, tags: Dict[str, List[str]]) -> str:
    def collect(match: re.Match) -> str:
        body = next(group for group in match.groups() if group is not None)
        square = match.group(0).startswith('[')
        for part in body.split(','):
            tag = part.strip().lower()
            if tag:
                tags[classify_tag(tag, square=square)].append(tag)
        return ' '

    # Nested groups come off innermost first
    while True:
        stripped = _BRACKET_RE.sub(collect, text)
        if stripped == text:
            return stripped
        text = stripped


def _extract_inline_versions(text: str, tags: Dict[str, List[str]]) -> str:
    def collect(match: re.Match) -> str:
        tags['versions'].append(match.group(0).lower().replace(' ', ''))
        return ' '

    return _INLINE_VERSION_RE.sub(collect, text)


def normalize(raw: Any) -> NormalizedTitle:
    """
    Normalize a raw ROM filename into a clean search title.

    Bracketed and parenthetical groups are removed and classified into
    ``extracted_tags``; inline version tokens (``v1.1``, ``Rev 2``) are
    removed; ``_``, ``-`` and ``.`` become spaces and whitespace is
    collapsed. Colons are kept since they mark series prefixes.

    The result is idempotent: normalizing ``clean`` again returns the same
    ``clean`` with empty tags.

    Args:
        raw: Filename or title. Non-string input is logged and treated as
            an empty string.

    Returns:
        NormalizedTitle; never raises

    Example:
        >>> result = normalize("Super Mario Bros. (USA) [!].nes")
        >>> result.clean
        'Super Mario Bros'
        >>> result.extracted_tags['regions']
        ['usa']
    """
    if not isinstance(raw, str):
        logger.warning(f"Invalid title passed to normalizer: {raw!r}")
        return NormalizedTitle(clean='', original='')

    tags = _empty_tags()
    text = unicodedata.normalize('NFKC', raw).strip()
    text = strip_extension(text)
    text = _extract_brackets(text, tags)
    text = _extract_inline_versions(text, tags)
    text = _SEPARATOR_RE.sub(' ', text)
    text = _STRAY_BRACKET_RE.sub(' ', text)
    text = _WHITESPACE_RE.sub(' ', text)
    text = _extract_inline_versions(text, tags)
    text = _WHITESPACE_RE.sub(' ', text).strip(' ,;:')

    return NormalizedTitle(clean=text, extracted_tags=tags, original=raw)


def _roman_to_arabic(text: str) -> str:
    return _ROMAN_WORD_RE.sub(lambda m: str(ROMAN_NUMERALS[m.group(1).upper()]), text)


def _arabic_to_roman(text: str) -> str:
    def swap(match: re.Match) -> str:
        value = int(match.group(1))
        return ARABIC_TO_ROMAN.get(value, match.group(1))

    return _ARABIC_WORD_RE.sub(swap, text)


def _digits_to_words(text: str) -> str:
    return _ARABIC_WORD_RE.sub(lambda m: NUMBER_WORDS[int(m.group(1))], text)


def _words_to_digits(text: str) -> str:
    return _NUMBER_WORD_RE.sub(lambda m: str(NUMBER_WORDS.index(m.group(1).lower())), text)


def alternate_titles(title: str) -> List[str]:
    """
    Build alternate spellings of a title for fuzzy matching.

    The clean title always comes first, followed by Roman/Arabic numeral
    swaps (I..X), numeral/English word swaps (0..10) and the title without
    a leading article. Duplicates are dropped, order is stable.

    Args:
        title: Raw or already-normalized title

    Returns:
        Non-empty list of variants unless the title normalizes to ""
    """
    clean = normalize(title).clean
    if not clean:
        return []

    variants = [
        clean,
        _roman_to_arabic(clean),
        _arabic_to_roman(clean),
        _digits_to_words(clean),
        _words_to_digits(clean),
        _digits_to_words(_roman_to_arabic(clean)),
        _LEADING_ARTICLE_RE.sub('', clean),
    ]

    seen = set()
    result = []
    for variant in variants:
        variant = _WHITESPACE_RE.sub(' ', variant).strip()
        if variant and variant not in seen:
            seen.add(variant)
            result.append(variant)
    return result
