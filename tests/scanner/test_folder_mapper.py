import json

import pytest

from romshelf.api.platforms import PlatformRegistry
from romshelf.scanner.folder_mapper import (
    FolderMapper,
    PlatformSuggestion,
    auto_select,
    resolve_folder,
    suggest_platforms,
)


def _registry():
    return PlatformRegistry({
        "Nintendo Entertainment System": 18,
        "Super Nintendo Entertainment System": 19,
        "Sega Saturn": 32,
    })


class _CountingResolver:
    def __init__(self, answer):
        self.answer = answer
        self.calls = []

    def __call__(self, suggestions):
        self.calls.append(suggestions)
        return self.answer


@pytest.mark.unit
def test_direct_lookup_does_not_consult_resolver():
    resolver = _CountingResolver(None)
    mapper = FolderMapper(_registry(), resolve=resolver)
    assert mapper.platform_id("snes") == 19
    assert mapper.platform_id("Sega_Saturn") == 32
    assert resolver.calls == []


@pytest.mark.unit
def test_suggestions_ranked_by_similarity():
    suggestions = suggest_platforms("Nintendo Entertainmnt System", _registry().names)
    assert suggestions[0].name == "nintendo entertainment system"
    assert suggestions[0].confidence > 0.9
    assert all(a.confidence >= b.confidence for a, b in zip(suggestions, suggestions[1:]))


@pytest.mark.unit
def test_auto_select_threshold():
    pick = auto_select(0.8)
    assert pick([PlatformSuggestion("sega saturn", 0.85)]) == "sega saturn"
    assert pick([PlatformSuggestion("sega saturn", 0.5)]) is None
    assert pick([]) is None


@pytest.mark.unit
def test_resolved_folder_is_remembered(tmp_path):
    mappings_path = tmp_path / "folderconsolemappings.json"
    mapper = FolderMapper(_registry(), mappings_path=mappings_path)

    assert mapper.platform_id("Nintendo Entertainmnt System") == 18
    saved = json.loads(mappings_path.read_text())
    assert saved == {"nintendo entertainmnt system": "nintendo entertainment system"}

    resolver = _CountingResolver(None)
    again = FolderMapper(_registry(), resolve=resolver, mappings_path=mappings_path)
    assert again.platform_id("Nintendo Entertainmnt System") == 18
    assert resolver.calls == []


@pytest.mark.unit
def test_unresolved_folder_is_memoized():
    resolver = _CountingResolver(None)
    mapper = FolderMapper(_registry(), resolve=resolver)

    assert mapper.platform_id("Sega Satrun") is None
    assert mapper.platform_id("sega satrun") is None
    assert len(resolver.calls) == 1


@pytest.mark.unit
def test_empty_registry_resolves_nothing():
    resolver = _CountingResolver("anything")
    assert resolve_folder("snes", PlatformRegistry(), resolve=resolver) is None
    assert resolver.calls == []


@pytest.mark.unit
def test_corrupt_mappings_file_starts_fresh(tmp_path):
    mappings_path = tmp_path / "folderconsolemappings.json"
    mappings_path.write_text("{not json")
    mapper = FolderMapper(_registry(), mappings_path=mappings_path)
    assert mapper.mappings == {}
