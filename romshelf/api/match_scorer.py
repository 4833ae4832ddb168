"""Match confidence scoring for search candidates."""

import logging
import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Iterable, List, Optional, Set

from rapidfuzz.distance import Levenshtein

from romshelf.api.name_normalizer import NormalizedTitle, alternate_titles, normalize
from romshelf.api.query_builder import QueryKind
from romshelf.api.response_parser import CandidateResult

logger = logging.getLogger(__name__)


# Composite scorer weights. A candidate whose normalized name equals the
# base title scores at least EXACT + OVERLAP + LEXICAL (170); any other
# candidate tops out at 125, so identical titles always rank first.
EXACT_MATCH_BONUS = 100.0
PLATFORM_BONUS = 20.0
TOKEN_OVERLAP_WEIGHT = 50.0
YEAR_BONUS = 15.0
REGION_BONUS = 10.0
COMPANY_BONUS = 10.0
LEXICAL_WEIGHT = 20.0

# Standalone fuzzy matcher (0-1 scale)
FUZZY_MATCH_THRESHOLD = 0.4
SUBSTRING_BONUS = 0.1
WORD_COUNT_BONUS = 0.05

NGRAM_SIZE = 3

_TOKEN_RE = re.compile(r"[a-z0-9']+")

# Words too generic to count as a developer/publisher hit
_COMPANY_STOPWORDS = frozenset([
    'the', 'and', 'of', 'inc', 'ltd', 'co', 'corp', 'corporation', 'company',
    'games', 'game', 'entertainment', 'software', 'studio', 'studios',
    'interactive', 'digital', 'media', 'limited', 'llc', 'gmbh',
])


@dataclass
class ScoredCandidate:
    """A candidate with its composite score and the query kind that found it."""
    candidate: CandidateResult
    score: float
    match_type: QueryKind


def tokenize(text: str) -> Set[str]:
    return set(_TOKEN_RE.findall((text or '').lower()))


def ngrams(text: str, size: int = NGRAM_SIZE) -> Set[str]:
    padded = f"  {(text or '').lower()} "
    if len(padded) < size:
        return {padded}
    return {padded[i:i + size] for i in range(len(padded) - size + 1)}


def ngram_similarity(a: str, b: str, size: int = NGRAM_SIZE) -> float:
    """Dice coefficient over character n-grams."""
    grams_a = ngrams(a, size)
    grams_b = ngrams(b, size)
    if not grams_a or not grams_b:
        return 0.0
    return 2.0 * len(grams_a & grams_b) / (len(grams_a) + len(grams_b))


def lexical_similarity(a: str, b: str) -> float:
    """
    Blend of n-gram overlap, edit distance and sequence similarity.

    Args:
        a: First string
        b: Second string

    Returns:
        Similarity between 0.0 and 1.0; 1.0 only for equal strings
    """
    a = (a or '').lower()
    b = (b or '').lower()
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0

    return (
        ngram_similarity(a, b)
        + Levenshtein.normalized_similarity(a, b)
        + SequenceMatcher(None, a, b).ratio()
    ) / 3.0


def token_overlap(a: str, b: str) -> float:
    """Shared words divided by the larger word-set size."""
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / max(len(tokens_a), len(tokens_b))


def _region_match(base: NormalizedTitle, candidate: CandidateResult, candidate_name: NormalizedTitle) -> bool:
    regions = set(base.regions)
    if not regions:
        return False
    if regions & set(candidate_name.regions):
        return True

    for alt in candidate.alternative_names:
        alt_regions = set(normalize(alt).regions)
        alt_tokens = tokenize(alt)
        if regions & alt_regions:
            return True
        if any(len(region) > 1 and region in alt_tokens for region in regions):
            return True
    return False


def _company_match(base_tokens: Set[str], candidate: CandidateResult) -> bool:
    for company in candidate.company_names():
        words = tokenize(company) - _COMPANY_STOPWORDS
        if any(len(word) >= 3 and word in base_tokens for word in words):
            return True
    return False


def score(base_title: str, candidate: CandidateResult, platform_id: Optional[int] = None) -> float:
    """
    Composite confidence score for a candidate.

    Each factor adds independently:
    - Exact normalized-title equality (case-insensitive): +100
    - Candidate lists the platform: +20
    - Token overlap ratio: up to +50
    - Release year equals the year in the title: +15
    - Title region tag found in candidate names: +10
    - Developer/publisher word appears in the title: +10
    - Lexical similarity of the names: up to +20

    Args:
        base_title: Raw ROM title
        candidate: Candidate from the API
        platform_id: Platform id of the ROM's console, if known

    Returns:
        Score on a 0-225 scale; 0.0 for an empty title
    """
    base = normalize(base_title)
    if not base.clean:
        return 0.0

    candidate_name = normalize(candidate.name)
    base_lower = base.clean.lower()
    candidate_lower = candidate_name.clean.lower()

    total = 0.0
    if base_lower == candidate_lower:
        total += EXACT_MATCH_BONUS

    if platform_id and platform_id in candidate.platform_ids:
        total += PLATFORM_BONUS

    total += token_overlap(base_lower, candidate_lower) * TOKEN_OVERLAP_WEIGHT

    base_year = base.year
    if base_year is not None and base_year == candidate.release_year:
        total += YEAR_BONUS

    if _region_match(base, candidate, candidate_name):
        total += REGION_BONUS

    if _company_match(tokenize(base_lower), candidate):
        total += COMPANY_BONUS

    total += lexical_similarity(base_lower, candidate_lower) * LEXICAL_WEIGHT

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"Score '{base.clean}' vs '{candidate.name}' (id={candidate.id}): {total:.1f}")

    return total


def rank_candidates(
    base_title: str,
    candidates: Iterable[CandidateResult],
    platform_id: Optional[int] = None,
    match_type: QueryKind = QueryKind.FUZZY
) -> List[ScoredCandidate]:
    """Score candidates and sort them best first."""
    scored = [
        ScoredCandidate(candidate=c, score=score(base_title, c, platform_id), match_type=match_type)
        for c in candidates
    ]
    scored.sort(key=lambda s: s.score, reverse=True)
    return scored


def fuzzy_score(base_variant: str, candidate_name: str) -> float:
    """
    Similarity of two names on a 0-1.15 scale.

    SequenceMatcher ratio, plus 0.1 when one contains the other, plus 0.05
    when both have the same number of words.
    """
    a = base_variant.lower()
    b = candidate_name.lower()
    if not a or not b:
        return 0.0

    value = SequenceMatcher(None, a, b).ratio()
    if a in b or b in a:
        value += SUBSTRING_BONUS
    if len(a.split()) == len(b.split()):
        value += WORD_COUNT_BONUS
    return value


def fuzzy_match(
    base_title: str,
    candidates: List[CandidateResult],
    threshold: float = FUZZY_MATCH_THRESHOLD
) -> Optional[CandidateResult]:
    """
    Pick a candidate by plain string similarity, without composite scoring.

    Every variant of the base title is compared with every name of every
    candidate (primary and alternative names); the best pair wins. An exact
    case-insensitive match between any pair returns that candidate at once.

    Args:
        base_title: Raw ROM title
        candidates: Candidates to choose from
        threshold: Minimum score; a match must strictly exceed it

    Returns:
        Best candidate, or None when nothing beats the threshold
    """
    if not candidates:
        return None

    base_variants = alternate_titles(base_title)
    if not base_variants:
        return None

    best_match = None
    best_score = threshold

    for candidate in candidates:
        candidate_names = [normalize(name).clean for name in candidate.all_names]
        for base_variant in base_variants:
            for candidate_name in candidate_names:
                if not candidate_name:
                    continue
                if base_variant.lower() == candidate_name.lower():
                    return candidate

                value = fuzzy_score(base_variant, candidate_name)
                if value > best_score:
                    best_score = value
                    best_match = candidate

    if best_match is not None:
        logger.debug(f"Fuzzy match for '{base_title}': {best_match.name} ({best_score:.2f})")
    return best_match
