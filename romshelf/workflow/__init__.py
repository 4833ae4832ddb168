"""Workflow coordination package."""

from .checkpoint import CheckpointManager
from .orchestrator import BatchOrchestrator, EntryOutcome, OutcomeKind, RunState, RunSummary

__all__ = [
    "BatchOrchestrator",
    "CheckpointManager",
    "EntryOutcome",
    "OutcomeKind",
    "RunState",
    "RunSummary",
]
