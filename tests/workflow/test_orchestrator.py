"""
- Conservation of entries across outcomes
- Re-runs over an unchanged collection
- Offline runs, unmatched retries and the match cache
- Interruption and fatal errors with a final checkpoint
"""

import asyncio
import json
from io import BytesIO

import httpx
import pytest
import respx
from PIL import Image

from romshelf.api.cache import ResponseCache
from romshelf.api.error_handler import AuthenticationError, PayloadTooLargeError
from romshelf.api.match_scorer import ScoredCandidate
from romshelf.api.name_normalizer import normalize
from romshelf.api.query_builder import QueryKind
from romshelf.api.response_parser import parse_candidate
from romshelf.api.search_strategy import SearchOutcome
from romshelf.library.store import LibraryStore
from romshelf.media.downloader import ImageDownloader
from romshelf.media.media_resolver import MediaResolver
from romshelf.scanner.rom_types import RomEntry
from romshelf.workflow.orchestrator import BatchOrchestrator, RunState

GAMES = {
    "Contra": {"id": 1, "name": "Contra", "genres": [{"name": "Shooter"}]},
    "Metroid": {"id": 2, "name": "Metroid"},
    "Tetris": {"id": 3, "name": "Tetris"},
}


class _Counter:
    def __init__(self):
        self.api_calls = 0


class _FakeEngine:
    """Answers lookups from a title table; unknown titles are declined."""

    def __init__(self, games=None, errors=None, hang=None, on_hang=None):
        self.client = _Counter()
        self.games = GAMES if games is None else games
        self.errors = errors or {}
        self.hang = hang
        self.on_hang = on_hang
        self.titles = []

    async def find_match(self, title, platform_id=None):
        clean = normalize(title).clean
        self.titles.append(clean)
        self.client.api_calls += 1

        if clean in self.errors:
            raise self.errors[clean]
        if clean == self.hang:
            self.on_hang()
            await asyncio.Event().wait()

        raw = self.games.get(clean)
        if raw is None:
            return SearchOutcome(title=title, match=None, attempted_variations=[f"exact:{clean}"])
        scored = ScoredCandidate(candidate=parse_candidate(raw), score=180.0, match_type=QueryKind.EXACT)
        return SearchOutcome(
            title=title,
            match=scored,
            candidates=[scored],
            attempted_variations=[f"exact:{clean}"],
            method="composite",
        )


def _config(**runtime):
    settings = {"batch_size": 2, "checkpoint_every": 10}
    settings.update(runtime)
    return {"runtime": settings, "paths": {"roms": []}}


def _entry(title, console="nes"):
    return RomEntry(
        title=title,
        platform_key=console,
        file_path=f"/roms/{console}/{title}.{console}",
        file_size=16,
    )


def _entries():
    return [
        _entry("Contra (USA)"),
        _entry("Contra (Europe)"),
        _entry("Metroid (USA)"),
        _entry("Zzyzx (USA)"),
        _entry("Tetris", console="gb"),
    ]


def _assert_conserved(summary):
    assert summary.created + summary.merged + summary.unmatched == summary.total


@pytest.mark.integration
@pytest.mark.asyncio
async def test_every_entry_gets_exactly_one_outcome(tmp_path):
    store = LibraryStore(tmp_path)
    engine = _FakeEngine()
    orchestrator = BatchOrchestrator(_config(), store, engine=engine)

    summary = await orchestrator.run(_entries())

    assert summary.total == 5
    assert summary.created == 3
    assert summary.merged == 1
    assert summary.unmatched == 1
    _assert_conserved(summary)
    assert summary.batches == 3
    assert summary.api_calls == 4
    assert summary.unmatched_titles == ["nes/Zzyzx (USA)"]
    assert orchestrator.state == RunState.DONE

    contra = orchestrator.records["nes:contra"]
    assert contra.rom_paths == ["/roms/nes/Contra (USA).nes", "/roms/nes/Contra (Europe).nes"]
    assert contra.file_size == 32

    games = json.loads((tmp_path / "nes.json").read_text())["Games"]
    assert [g["Title"] for g in games] == ["Contra", "Metroid"]
    unmatched = json.loads((tmp_path / "unmatched.json").read_text())
    assert unmatched[0]["reason"] == "no candidates found"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_duplicate_key_within_batch_is_looked_up_once(tmp_path):
    engine = _FakeEngine()
    orchestrator = BatchOrchestrator(_config(batch_size=10), LibraryStore(tmp_path), engine=engine)

    summary = await orchestrator.run(_entries()[:2])

    assert engine.titles == ["Contra"]
    assert summary.created == 1
    assert summary.merged == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_rerun_over_unchanged_collection_makes_no_calls(tmp_path):
    await BatchOrchestrator(_config(), LibraryStore(tmp_path), engine=_FakeEngine()).run(_entries())

    engine = _FakeEngine()
    orchestrator = BatchOrchestrator(_config(), LibraryStore(tmp_path), engine=engine)
    summary = await orchestrator.run(_entries())

    assert engine.titles == []
    assert summary.api_calls == 0
    assert summary.created == 0
    assert summary.merged == 4
    assert summary.skipped_existing == 4
    assert summary.unmatched == 1
    _assert_conserved(summary)
    assert len(orchestrator.unmatched) == 1
    assert len(orchestrator.records["nes:contra"].rom_paths) == 2


@pytest.mark.integration
@pytest.mark.asyncio
async def test_retry_unmatched_replaces_rejection(tmp_path):
    await BatchOrchestrator(_config(), LibraryStore(tmp_path), engine=_FakeEngine()).run(_entries())

    games = dict(GAMES, Zzyzx={"id": 9, "name": "Zzyzx"})
    engine = _FakeEngine(games=games)
    orchestrator = BatchOrchestrator(_config(retry_unmatched=True), LibraryStore(tmp_path), engine=engine)
    summary = await orchestrator.run(_entries())

    assert engine.titles == ["Zzyzx"]
    assert summary.created == 1
    assert orchestrator.unmatched == []
    assert json.loads((tmp_path / "unmatched.json").read_text()) == []


@pytest.mark.integration
@pytest.mark.asyncio
async def test_offline_run_creates_records_without_metadata(tmp_path):
    orchestrator = BatchOrchestrator(_config(offline_mode=True), LibraryStore(tmp_path), engine=None)

    summary = await orchestrator.run(_entries())

    assert summary.created == 4
    assert summary.merged == 1
    assert summary.unmatched == 0
    assert summary.api_calls == 0
    assert all(not r.metadata_fetched for r in orchestrator.records.values())


@pytest.mark.integration
@pytest.mark.asyncio
async def test_scans_configured_roots(tmp_path, rom_tree):
    root = rom_tree({"nes": ["Contra (USA).nes", "Metroid (USA).nes"]})
    config = _config()
    config["paths"]["roms"] = [str(root)]

    summary = await BatchOrchestrator(config, LibraryStore(tmp_path / "data"), engine=_FakeEngine()).run()

    assert summary.discovered == 2
    assert summary.created == 2


@pytest.mark.integration
@pytest.mark.asyncio
async def test_match_cache_answers_repeat_lookups(tmp_path):
    cache = ResponseCache(durable=None)
    await BatchOrchestrator(
        _config(), LibraryStore(tmp_path / "one"), engine=_FakeEngine(), match_cache=cache
    ).run(_entries()[:1])

    engine = _FakeEngine()
    orchestrator = BatchOrchestrator(_config(), LibraryStore(tmp_path / "two"), engine=engine, match_cache=cache)
    summary = await orchestrator.run(_entries()[:1])

    assert engine.titles == []
    assert summary.created == 1
    assert orchestrator.records["nes:contra"].genre == "Shooter"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_caller_errors_become_unmatched(tmp_path):
    engine = _FakeEngine(errors={"Metroid": PayloadTooLargeError("too large", 413)})
    orchestrator = BatchOrchestrator(_config(), LibraryStore(tmp_path), engine=engine)

    summary = await orchestrator.run(_entries())

    assert summary.unmatched == 2
    reasons = {u.title: u.reason for u in orchestrator.unmatched}
    assert reasons["Metroid (USA)"].startswith("lookup error:")
    _assert_conserved(summary)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_image_failures_do_not_stop_the_run(tmp_path):
    games = {"Contra": {"id": 1, "name": "Contra", "cover": {"image_id": "co1"}}}
    blocker = tmp_path / "images"
    blocker.write_text("not a directory")
    buffer = BytesIO()
    Image.new("RGB", (8, 8)).save(buffer, format="JPEG")

    async with httpx.AsyncClient() as http_client:
        media = MediaResolver(blocker, downloader=ImageDownloader(http_client, max_retries=1))
        orchestrator = BatchOrchestrator(
            _config(),
            LibraryStore(tmp_path / "library"),
            engine=_FakeEngine(games=games),
            media=media,
        )
        with respx.mock:
            respx.get(url__startswith="https://images.igdb.com/").respond(200, content=buffer.getvalue())
            summary = await orchestrator.run([_entry("Contra (USA)"), _entry("Metroid (USA)")])

    assert summary.created == 1
    assert summary.unmatched == 1
    assert orchestrator.records["nes:contra"].cover_image == ""
    assert orchestrator.state == RunState.DONE
    _assert_conserved(summary)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_checkpoints_written_during_run(tmp_path):
    store = LibraryStore(tmp_path)
    orchestrator = BatchOrchestrator(_config(checkpoint_every=2), store, engine=_FakeEngine())

    summary = await orchestrator.run(_entries())

    # Two interval checkpoints plus the closing save
    assert summary.checkpoints == 3
    assert store.saves == 3


@pytest.mark.integration
@pytest.mark.asyncio
async def test_fatal_error_saves_then_propagates(tmp_path):
    engine = _FakeEngine(errors={"Metroid": AuthenticationError("rejected", 403)})
    orchestrator = BatchOrchestrator(_config(batch_size=1), LibraryStore(tmp_path), engine=engine)

    with pytest.raises(AuthenticationError):
        await orchestrator.run(_entries())

    assert orchestrator.state == RunState.INTERRUPTED
    records, _ = LibraryStore(tmp_path).load()
    assert set(records) == {"nes:contra"}
    assert len(records["nes:contra"].rom_paths) == 2


@pytest.mark.integration
@pytest.mark.asyncio
async def test_shutdown_abandons_in_flight_lookups(tmp_path):
    store = LibraryStore(tmp_path)
    stop = asyncio.Event()
    engine = _FakeEngine(hang="Metroid", on_hang=stop.set)
    orchestrator = BatchOrchestrator(_config(), store, engine=engine, shutdown_event=stop)

    entries = [_entry("Metroid (USA)"), _entry("Contra (USA)"), _entry("Tetris", console="gb")]
    summary = await asyncio.wait_for(orchestrator.run(entries), timeout=5)

    assert summary.interrupted
    assert summary.discovered == 3
    assert summary.total <= 1
    _assert_conserved(summary)
    assert "nes:metroid" not in orchestrator.records
    assert "Tetris" not in engine.titles
    assert orchestrator.state == RunState.INTERRUPTED
    assert (tmp_path / "consoles_index.json").exists()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_shutdown_before_start_processes_nothing(tmp_path):
    orchestrator = BatchOrchestrator(_config(), LibraryStore(tmp_path), engine=_FakeEngine())
    orchestrator.request_shutdown()

    summary = await orchestrator.run(_entries())

    assert summary.interrupted
    assert summary.total == 0
    assert summary.checkpoints == 1
