"""
Console folder to platform mapping.

Folder names are resolved against the platform registry; when no direct
match exists, ranked suggestions are handed to a pluggable ``resolve``
function. The default resolver auto-selects a confident top suggestion;
an interactive prompt can be passed in instead.
"""

import json
import logging
from dataclasses import dataclass
from difflib import SequenceMatcher
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from romshelf.api.platforms import PLATFORM_ALIASES, PlatformRegistry, canonical_platform_name

logger = logging.getLogger(__name__)

MAPPINGS_FILENAME = "folderconsolemappings.json"
MAX_SUGGESTIONS = 5
SUGGESTION_CUTOFF = 0.4
AUTO_SELECT_CONFIDENCE = 0.8


@dataclass(frozen=True)
class PlatformSuggestion:
    """Candidate platform name for a folder"""
    name: str
    confidence: float


Resolver = Callable[[List[PlatformSuggestion]], Optional[str]]


def suggest_platforms(
    folder: str,
    known_names: Iterable[str],
    limit: int = MAX_SUGGESTIONS,
    cutoff: float = SUGGESTION_CUTOFF
) -> List[PlatformSuggestion]:
    """
    Rank known platform names by similarity to a folder name.

    Args:
        folder: Console folder name
        known_names: Platform names and aliases to choose from
        limit: Maximum suggestions
        cutoff: Minimum similarity (exclusive)

    Returns:
        Suggestions, most similar first
    """
    target = canonical_platform_name(folder)
    scored = []
    for name in set(known_names):
        ratio = SequenceMatcher(None, target, name.lower()).ratio()
        if ratio > cutoff:
            scored.append(PlatformSuggestion(name=name, confidence=ratio))
    scored.sort(key=lambda s: (-s.confidence, s.name))
    return scored[:limit]


def auto_select(min_confidence: float = AUTO_SELECT_CONFIDENCE) -> Resolver:
    """Resolver that picks the top suggestion when it is confident enough."""

    def resolve(candidates: List[PlatformSuggestion]) -> Optional[str]:
        if candidates and candidates[0].confidence >= min_confidence:
            return candidates[0].name
        return None

    return resolve


class FolderMapper:
    """
    Resolves console folder names to platform ids, remembering decisions.

    Decisions made by the resolver are persisted to
    ``folderconsolemappings.json`` in the output directory so later runs
    do not ask again.
    """

    def __init__(
        self,
        registry: PlatformRegistry,
        resolve: Optional[Resolver] = None,
        mappings_path: Optional[Path] = None,
        auto_select_confidence: float = AUTO_SELECT_CONFIDENCE
    ):
        self.registry = registry
        self.resolve = resolve or auto_select(auto_select_confidence)
        self.mappings_path = Path(mappings_path) if mappings_path else None
        self.mappings: Dict[str, str] = self._load_mappings()
        self._resolved: Dict[str, Optional[int]] = {}

    def _load_mappings(self) -> Dict[str, str]:
        if self.mappings_path is None or not self.mappings_path.exists():
            return {}
        try:
            with open(self.mappings_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Folder mapping file unreadable, starting fresh: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _save_mappings(self) -> None:
        if self.mappings_path is None:
            return
        try:
            self.mappings_path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.mappings_path.with_suffix('.tmp')
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(self.mappings, f, indent=2, sort_keys=True)
            temp_path.replace(self.mappings_path)
        except OSError as e:
            logger.warning(f"Failed to save folder mappings: {e}")

    def platform_id(self, folder: str) -> Optional[int]:
        """
        Platform id for a console folder, or None if it cannot be resolved.

        Resolution order: registry lookup, remembered mapping, then the
        resolver over ranked suggestions. Results are memoized per folder.
        """
        key = folder.lower().strip()
        if key in self._resolved:
            return self._resolved[key]

        platform_id = self.registry.lookup(folder)
        if platform_id is None and key in self.mappings:
            platform_id = self.registry.lookup(self.mappings[key])

        if platform_id is None and len(self.registry):
            known = list(self.registry.names) + list(PLATFORM_ALIASES)
            suggestions = suggest_platforms(folder, known)
            selection = self.resolve(suggestions) if suggestions else None
            if selection:
                platform_id = self.registry.lookup(selection)
                if platform_id is not None:
                    logger.info(f"Mapped folder '{folder}' to platform '{selection}'")
                    self.mappings[key] = selection
                    self._save_mappings()
            else:
                logger.warning(f"No platform match for folder '{folder}'; searching without platform filter")

        self._resolved[key] = platform_id
        return platform_id


def resolve_folder(
    folder: str,
    registry: PlatformRegistry,
    resolve: Optional[Resolver] = None
) -> Optional[int]:
    """
    One-off resolution of a folder name without remembering the decision.

    Args:
        folder: Console folder name
        registry: Known platforms
        resolve: Selection function over ranked suggestions; defaults to
            auto_select()

    Returns:
        Platform id, or None
    """
    return FolderMapper(registry, resolve=resolve).platform_id(folder)
