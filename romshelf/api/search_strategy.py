"""
Search strategy execution: multiple query variants per title, scored
and ranked, with an early exit on a high-confidence hit.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from romshelf.api.client import MetadataClient
from romshelf.api.match_scorer import (
    FUZZY_MATCH_THRESHOLD,
    ScoredCandidate,
    fuzzy_match,
    rank_candidates,
)
from romshelf.api.name_normalizer import alternate_titles
from romshelf.api.query_builder import DEFAULT_LIMIT, SearchQuery, build_queries
from romshelf.api.response_parser import ResponseError, parse_candidates

logger = logging.getLogger(__name__)

DEFAULT_SCORE_THRESHOLD = 50.0
DEFAULT_HIGH_CONFIDENCE = 90.0


@dataclass
class SearchOutcome:
    """Result of matching one title."""
    title: str
    match: Optional[ScoredCandidate]
    candidates: List[ScoredCandidate] = field(default_factory=list)
    attempted_variations: List[str] = field(default_factory=list)
    method: Optional[str] = None  # 'composite' or 'fuzzy'

    @property
    def matched(self) -> bool:
        return self.match is not None


class SearchStrategyEngine:
    """
    Runs query variants for a title and picks the best candidate.

    Queries are tried in order (exact, series, year, fuzzy). Every
    non-empty result set joins a candidate pool deduplicated by id, keeping
    the highest score per id. If any candidate reaches ``high_confidence``
    the remaining queries are skipped.

    Selection accepts the top candidate when its composite score strictly
    exceeds ``score_threshold``; otherwise the plain fuzzy matcher gets a
    chance over the same pool with ``fuzzy_threshold``.
    """

    def __init__(
        self,
        client: MetadataClient,
        score_threshold: float = DEFAULT_SCORE_THRESHOLD,
        high_confidence: float = DEFAULT_HIGH_CONFIDENCE,
        fuzzy_threshold: float = FUZZY_MATCH_THRESHOLD,
        limit: int = DEFAULT_LIMIT
    ):
        self.client = client
        self.score_threshold = score_threshold
        self.high_confidence = high_confidence
        self.fuzzy_threshold = fuzzy_threshold
        self.limit = limit

    @classmethod
    def from_config(cls, config: Dict[str, Any], client: MetadataClient) -> 'SearchStrategyEngine':
        matching = config.get('matching', {})
        return cls(
            client,
            score_threshold=matching.get('score_threshold', DEFAULT_SCORE_THRESHOLD),
            high_confidence=matching.get('high_confidence', DEFAULT_HIGH_CONFIDENCE),
            fuzzy_threshold=matching.get('fuzzy_threshold', FUZZY_MATCH_THRESHOLD),
        )

    def build_queries(self, title: str, platform_id: Optional[int] = None) -> List[SearchQuery]:
        return build_queries(title, platform_id, limit=self.limit)

    async def search(
        self,
        title: str,
        platform_id: Optional[int] = None,
        attempted: Optional[List[str]] = None
    ) -> List[ScoredCandidate]:
        """
        Run query variants and return the deduplicated, ranked pool.

        Args:
            title: Raw ROM title
            platform_id: Platform id if known
            attempted: Optional list that receives a description of every
                query that was run

        Returns:
            Scored candidates, best first
        """
        pool: Dict[int, ScoredCandidate] = {}

        for query in self.build_queries(title, platform_id):
            if attempted is not None:
                attempted.append(query.describe())

            raw = await self.client.query(query.endpoint, query.text)
            try:
                candidates = parse_candidates(raw)
            except ResponseError as e:
                logger.warning(f"Unexpected {query.kind.value} results for '{title}': {e}")
                continue
            if not candidates:
                continue

            scored = rank_candidates(title, candidates, platform_id, match_type=query.kind)
            for item in scored:
                existing = pool.get(item.candidate.id)
                if existing is None or item.score > existing.score:
                    pool[item.candidate.id] = item

            if scored[0].score >= self.high_confidence:
                logger.debug(
                    f"High-confidence {query.kind.value} match for '{title}': "
                    f"{scored[0].candidate.name} ({scored[0].score:.1f})"
                )
                break

        ranked = sorted(pool.values(), key=lambda s: s.score, reverse=True)
        if logger.isEnabledFor(logging.DEBUG):
            for item in ranked[:3]:
                logger.debug(
                    f"  candidate {item.candidate.name} "
                    f"(score={item.score:.1f}, via={item.match_type.value})"
                )
        return ranked

    def select(self, title: str, ranked: List[ScoredCandidate]) -> Optional[ScoredCandidate]:
        """
        Choose the accepted candidate from a ranked pool.

        Returns:
            The accepted ScoredCandidate, or None to decline
        """
        if not ranked:
            return None

        best = ranked[0]
        if best.score > self.score_threshold:
            return best

        fallback = fuzzy_match(title, [item.candidate for item in ranked], self.fuzzy_threshold)
        if fallback is None:
            return None
        return next(item for item in ranked if item.candidate.id == fallback.id)

    async def find_match(self, title: str, platform_id: Optional[int] = None) -> SearchOutcome:
        """
        Search for a title and decide on a match.

        Args:
            title: Raw ROM title
            platform_id: Platform id if known

        Returns:
            SearchOutcome; ``match`` is None when the title was declined
        """
        attempted: List[str] = []
        ranked = await self.search(title, platform_id, attempted=attempted)
        match = self.select(title, ranked)

        method = None
        if match is not None:
            method = 'composite' if match.score > self.score_threshold else 'fuzzy'
        else:
            attempted.extend(f"variant:{v}" for v in alternate_titles(title)[1:])

        return SearchOutcome(
            title=title,
            match=match,
            candidates=ranked,
            attempted_variations=attempted,
            method=method,
        )
