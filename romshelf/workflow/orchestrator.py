"""
Batch orchestrator for romshelf catalog runs.

Coordinates the complete run:
1. Load the existing library and scan ROM folders
2. Look up metadata for new entries, batch by batch
3. Download media for matches
4. Checkpoint periodically and once more at the end
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from romshelf.api.cache import ResponseCache
from romshelf.api.error_handler import CallerError
from romshelf.api.name_normalizer import alternate_titles
from romshelf.api.response_parser import CandidateResult, parse_candidate
from romshelf.api.search_strategy import SearchStrategyEngine
from romshelf.library.records import (
    LibraryRecord,
    UnmatchedRecord,
    build_declined_record,
    build_record,
    record_key,
)
from romshelf.library.store import LibraryStore
from romshelf.media.media_resolver import MediaResolver
from romshelf.scanner.folder_mapper import FolderMapper
from romshelf.scanner.rom_scanner import scan_roms
from romshelf.scanner.rom_types import RomEntry
from romshelf.workflow.checkpoint import DEFAULT_CHECKPOINT_EVERY, CheckpointManager

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10


class RunState(Enum):
    """Orchestrator lifecycle states."""
    IDLE = "idle"
    SCANNING = "scanning"
    BATCH_PROCESSING = "batch_processing"
    SAVING = "saving"
    DONE = "done"
    INTERRUPTED = "interrupted"


class OutcomeKind(Enum):
    """What happens to one ROM entry."""
    CREATED = "created"
    MERGE = "merge"
    UNMATCHED = "unmatched"
    KNOWN_UNMATCHED = "known_unmatched"


@dataclass(frozen=True)
class EntryOutcome:
    """Result for one entry, produced by a lookup and applied in order."""
    entry: RomEntry
    key: str
    kind: OutcomeKind
    record: Optional[LibraryRecord] = None
    unmatched: Optional[UnmatchedRecord] = None


@dataclass
class RunSummary:
    """Counts for a finished (or interrupted) run."""
    total: int = 0
    created: int = 0
    merged: int = 0
    unmatched: int = 0
    skipped_existing: int = 0
    api_calls: int = 0
    checkpoints: int = 0
    interrupted: bool = False
    discovered: int = 0
    batches: int = 0
    unmatched_titles: List[str] = field(default_factory=list)


class BatchOrchestrator:
    """
    Runs the catalog pipeline over a list of ROM entries.

    Entries are split into fixed-size batches. Within a batch, lookups for
    distinct keys run concurrently (the request gate bounds real
    concurrency) and each yields an immutable EntryOutcome; outcomes are
    then applied one by one to the in-memory library, which only this task
    mutates. Every entry gets exactly one outcome: a new record, a merge
    into an existing record, or an unmatched entry.

    Entries whose key is already in the library are never looked up again,
    so re-running over an unchanged collection makes no API calls.

    A shutdown request stops admission of further batches, cancels
    in-flight lookups, and triggers a final checkpoint.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        store: LibraryStore,
        engine: Optional[SearchStrategyEngine] = None,
        folder_mapper: Optional[FolderMapper] = None,
        media: Optional[MediaResolver] = None,
        match_cache: Optional[ResponseCache] = None,
        shutdown_event: Optional[asyncio.Event] = None
    ):
        """
        Initialize batch orchestrator.

        Args:
            config: Configuration dictionary
            store: LibraryStore for loading and checkpointing
            engine: Search engine; may be None in offline mode
            folder_mapper: Resolves console folders to platform ids
            media: MediaResolver for covers and screenshots
            match_cache: Cache for accepted matches (batch lookup path)
            shutdown_event: Event that requests a graceful stop
        """
        runtime = config.get('runtime', {})
        self.config = config
        self.batch_size = runtime.get('batch_size', DEFAULT_BATCH_SIZE)
        self.checkpoint_every = runtime.get('checkpoint_every', DEFAULT_CHECKPOINT_EVERY)
        self.offline = bool(runtime.get('offline_mode', False)) or engine is None
        self.retry_unmatched = bool(runtime.get('retry_unmatched', False))

        self.store = store
        self.engine = engine
        self.folder_mapper = folder_mapper
        self.media = media
        self.match_cache = match_cache
        self.shutdown_event = shutdown_event or asyncio.Event()

        self.state = RunState.IDLE
        self.records: Dict[str, LibraryRecord] = {}
        self.unmatched: List[UnmatchedRecord] = []
        self._known_unmatched: Set[str] = set()
        self.checkpoints: Optional[CheckpointManager] = None
        self.summary = RunSummary()

    def request_shutdown(self) -> None:
        """Ask the run to stop after in-flight work is abandoned."""
        if not self.shutdown_event.is_set():
            logger.warning("Shutdown requested, finishing up")
        self.shutdown_event.set()

    @property
    def shutdown_requested(self) -> bool:
        return self.shutdown_event.is_set()

    def _set_state(self, state: RunState) -> None:
        if state != self.state:
            logger.debug(f"Orchestrator state: {self.state.value} -> {state.value}")
            self.state = state

    def _save(self) -> None:
        self.store.save(self.records.values(), self.unmatched)

    def save_now(self) -> None:
        """Checkpoint the current in-memory state immediately."""
        if self.checkpoints is not None:
            self.checkpoints.save_now()
        else:
            self._save()

    def _api_calls(self) -> int:
        if self.engine is None:
            return 0
        return self.engine.client.api_calls

    async def run(self, entries: Optional[List[RomEntry]] = None) -> RunSummary:
        """
        Process ROM entries into the library.

        Args:
            entries: Entries to process; scanned from ``paths.roms`` when None

        Returns:
            RunSummary for this run

        Raises:
            OutputNotWritableError: Output directory unusable (before any work)
            FatalAPIError: Credentials rejected; raised after the final checkpoint
        """
        self.summary = RunSummary()
        self._set_state(RunState.SCANNING)
        self.store.ensure_writable()

        self.records, self.unmatched = self.store.load()
        self._known_unmatched = {u.file_path for u in self.unmatched}

        if entries is None:
            roots = [Path(p) for p in self.config.get('paths', {}).get('roms', [])]
            entries = scan_roms(roots)
        self.summary.discovered = len(entries)
        logger.info(f"Processing {len(entries)} ROM entries in batches of {self.batch_size}")

        self.checkpoints = CheckpointManager(self._save, every=self.checkpoint_every)
        calls_before = self._api_calls()

        try:
            for start in range(0, len(entries), self.batch_size):
                if self.shutdown_requested:
                    self.summary.interrupted = True
                    break

                self._set_state(RunState.BATCH_PROCESSING)
                batch = entries[start:start + self.batch_size]
                outcomes, interrupted = await self._process_batch(batch)
                for outcome in outcomes:
                    self._apply(outcome)
                    self.checkpoints.record_processed()
                self.summary.batches += 1

                logger.info(
                    f"Batch {self.summary.batches}: {self.summary.total}/{len(entries)} processed "
                    f"({self.summary.created} new, {self.summary.merged} merged, "
                    f"{self.summary.unmatched} unmatched)"
                )
                if interrupted:
                    self.summary.interrupted = True
                    break
        except asyncio.CancelledError:
            self.summary.interrupted = True
            self._finish_interrupted(calls_before)
            raise
        except Exception as e:
            logger.error(f"Run aborted: {e}")
            self._finish_interrupted(calls_before)
            raise

        if self.summary.interrupted:
            self._finish_interrupted(calls_before)
            return self.summary

        self._set_state(RunState.SAVING)
        self.checkpoints.save_now()
        self._set_state(RunState.DONE)
        self._finalize_summary(calls_before)
        return self.summary

    def _finish_interrupted(self, calls_before: int) -> None:
        self._set_state(RunState.INTERRUPTED)
        if self.checkpoints is not None:
            self.checkpoints.final_save()
        self._finalize_summary(calls_before)

    def _finalize_summary(self, calls_before: int) -> None:
        self.summary.api_calls = self._api_calls() - calls_before
        self.summary.checkpoints = self.checkpoints.checkpoints if self.checkpoints else 0

    # Batch processing

    def _needs_lookup(self, key: str, entry: RomEntry) -> bool:
        if key in self.records:
            return False
        if entry.file_path in self._known_unmatched and not self.retry_unmatched:
            return False
        return True

    async def _process_batch(self, batch: List[RomEntry]) -> Tuple[List[EntryOutcome], bool]:
        """
        Produce outcomes for one batch.

        Returns:
            Tuple of (outcomes in entry order, interrupted flag). When
            interrupted, entries whose lookup was abandoned have no outcome.
        """
        keys = [record_key(entry.platform_key, entry.title) for entry in batch]

        lookups: Dict[str, RomEntry] = {}
        for key, entry in zip(keys, batch):
            if self._needs_lookup(key, entry):
                lookups.setdefault(key, entry)

        results, interrupted = await self._lookup_all(lookups)

        outcomes: List[EntryOutcome] = []
        for key, entry in zip(keys, batch):
            if key in self.records:
                outcomes.append(EntryOutcome(entry=entry, key=key, kind=OutcomeKind.MERGE))
                continue
            if key not in lookups:
                outcomes.append(EntryOutcome(entry=entry, key=key, kind=OutcomeKind.KNOWN_UNMATCHED))
                continue
            if key not in results:
                continue

            result = results[key]
            if lookups[key] is entry:
                outcomes.append(result)
            elif result.kind == OutcomeKind.CREATED:
                outcomes.append(EntryOutcome(entry=entry, key=key, kind=OutcomeKind.MERGE))
            else:
                outcomes.append(self._unmatched_outcome(
                    entry, key, result.unmatched.reason, result.unmatched.attempted_variations
                ))
        return outcomes, interrupted

    async def _lookup_all(self, lookups: Dict[str, RomEntry]) -> Tuple[Dict[str, EntryOutcome], bool]:
        if not lookups:
            return {}, False

        cached = await self._cached_matches(lookups)
        tasks: Dict[asyncio.Task, str] = {}
        for key, entry in lookups.items():
            tasks[asyncio.create_task(self._lookup(key, entry, cached.get(key)))] = key

        stop_waiter = asyncio.create_task(self.shutdown_event.wait())
        pending: Set[asyncio.Task] = set(tasks)
        results: Dict[str, EntryOutcome] = {}
        interrupted = False

        try:
            while pending:
                done, _ = await asyncio.wait(pending | {stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is stop_waiter:
                        continue
                    pending.discard(task)
                    results[tasks[task]] = task.result()
                if stop_waiter in done and pending:
                    logger.warning(f"Abandoning {len(pending)} in-flight lookups")
                    interrupted = True
                    break
        finally:
            stop_waiter.cancel()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        return results, interrupted or self.shutdown_requested

    async def _cached_matches(self, lookups: Dict[str, RomEntry]) -> Dict[str, CandidateResult]:
        if self.match_cache is None or self.offline:
            return {}
        keys = list(lookups)
        values = await self.match_cache.mget([f"match:{key}" for key in keys])

        hits: Dict[str, CandidateResult] = {}
        for key, value in zip(keys, values):
            if isinstance(value, dict):
                candidate = parse_candidate(value.get('candidate'))
                if candidate is not None:
                    hits[key] = candidate
        if hits:
            logger.debug(f"Match cache answered {len(hits)}/{len(keys)} lookups")
        return hits

    def _platform_id(self, entry: RomEntry) -> Optional[int]:
        if self.folder_mapper is None:
            return None
        return self.folder_mapper.platform_id(entry.platform_key)

    async def _lookup(
        self,
        key: str,
        entry: RomEntry,
        cached: Optional[CandidateResult] = None
    ) -> EntryOutcome:
        platform_id = self._platform_id(entry)

        if self.offline:
            return EntryOutcome(
                entry=entry,
                key=key,
                kind=OutcomeKind.CREATED,
                record=build_declined_record(entry, platform_id),
            )

        candidate = cached
        if candidate is None:
            try:
                outcome = await self.engine.find_match(entry.title, platform_id)
            except CallerError as e:
                logger.warning(f"Lookup failed for '{entry.title}' ({entry.platform_key}): {e}")
                return self._unmatched_outcome(entry, key, f"lookup error: {e}", [])

            if not outcome.matched:
                if outcome.candidates:
                    best = outcome.candidates[0]
                    reason = f"best candidate '{best.candidate.name}' scored {best.score:.1f}, below threshold"
                else:
                    reason = "no candidates found"
                logger.info(f"No match for '{entry.title}' ({entry.platform_key}): {reason}")
                return self._unmatched_outcome(entry, key, reason, outcome.attempted_variations)

            candidate = outcome.match.candidate
            logger.info(
                f"Matched '{entry.title}' ({entry.platform_key}) -> {candidate.name} "
                f"[{outcome.method}, score={outcome.match.score:.1f}]"
            )
            if self.match_cache is not None:
                await self.match_cache.set(f"match:{key}", {'candidate': candidate.raw})

        record = build_record(entry, candidate, platform_id)
        if self.media is not None:
            await self.media.resolve(record, candidate)
        return EntryOutcome(entry=entry, key=key, kind=OutcomeKind.CREATED, record=record)

    def _unmatched_outcome(
        self,
        entry: RomEntry,
        key: str,
        reason: str,
        attempted: List[str]
    ) -> EntryOutcome:
        if not attempted:
            attempted = [f"variant:{v}" for v in alternate_titles(entry.title)]
        return EntryOutcome(
            entry=entry,
            key=key,
            kind=OutcomeKind.UNMATCHED,
            unmatched=UnmatchedRecord(
                title=entry.title,
                platform_key=entry.platform_key,
                file_path=entry.file_path,
                reason=reason,
                attempted_variations=list(attempted),
            ),
        )

    # Applying outcomes

    def _apply(self, outcome: EntryOutcome) -> None:
        """Fold one outcome into the library. Only the run task calls this."""
        entry = outcome.entry
        self.summary.total += 1

        if outcome.kind == OutcomeKind.CREATED and outcome.key not in self.records:
            self._forget_unmatched(entry.file_path)
            self.records[outcome.key] = outcome.record
            self.summary.created += 1
            return

        if outcome.kind in (OutcomeKind.CREATED, OutcomeKind.MERGE):
            self._forget_unmatched(entry.file_path)
            record = self.records[outcome.key]
            if not record.add_rom(entry.file_path, entry.file_size):
                self.summary.skipped_existing += 1
            self.summary.merged += 1
            return

        self.summary.unmatched += 1
        self.summary.unmatched_titles.append(f"{entry.platform_key}/{entry.title}")
        if outcome.kind == OutcomeKind.UNMATCHED:
            self._forget_unmatched(entry.file_path)
            self.unmatched.append(outcome.unmatched)
            self._known_unmatched.add(entry.file_path)

    def _forget_unmatched(self, file_path: str) -> None:
        if file_path in self._known_unmatched:
            self.unmatched = [u for u in self.unmatched if u.file_path != file_path]
            self._known_unmatched.discard(file_path)
