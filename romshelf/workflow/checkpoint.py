"""
Checkpoint management.

A checkpoint is a full flush of in-memory library state through a save
function. Checkpoints fire every N processed entries and once more on
shutdown; there is no write-ahead log, so a crash loses at most the
entries processed since the last checkpoint.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_EVERY = 20


class CheckpointManager:
    """
    Triggers periodic full saves.

    Features:
    - Configurable save interval (default: every 20 entries)
    - Idempotent ``save_now`` usable at any time, including on partial state
    - Best-effort ``final_save`` that logs instead of raising

    Example:
        manager = CheckpointManager(lambda: store.save(records.values(), unmatched), every=20)

        for entry in entries:
            ...
            manager.record_processed()

        manager.final_save()
    """

    def __init__(self, save_fn: Callable[[], None], every: int = DEFAULT_CHECKPOINT_EVERY):
        """
        Initialize checkpoint manager

        Args:
            save_fn: Callable writing all current state to durable storage
            every: Entries between checkpoints
        """
        if every < 1:
            raise ValueError("Checkpoint interval must be at least 1")
        self.save_fn = save_fn
        self.every = every
        self.pending = 0
        self.checkpoints = 0
        self.last_saved: Optional[str] = None

    def record_processed(self, count: int = 1) -> bool:
        """
        Count processed entries, saving when the interval is reached.

        Args:
            count: Number of entries just processed

        Returns:
            True if a checkpoint was written
        """
        self.pending += count
        if self.pending >= self.every:
            self.save_now()
            return True
        return False

    def save_now(self) -> None:
        """
        Write a checkpoint immediately and reset the counter.

        Raises:
            OSError: If the save function cannot write
        """
        self.save_fn()
        self.checkpoints += 1
        self.last_saved = datetime.now().isoformat()
        logger.debug(f"Checkpoint {self.checkpoints} saved ({self.pending} entries since previous)")
        self.pending = 0

    def final_save(self) -> bool:
        """
        Last-chance save before exit.

        Returns:
            True if the save succeeded; failures are logged, not raised
        """
        try:
            self.save_now()
        except (OSError, ValueError) as e:
            logger.error(f"Final checkpoint failed: {e}")
            return False
        logger.info(f"Final checkpoint saved ({self.checkpoints} checkpoints this run)")
        return True
