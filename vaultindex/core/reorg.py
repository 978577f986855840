"""
Reorg Handler

Turns "the chain changed under us" into an exact store rollback.

Two signals:
1. Retracted records (removed=True) from the source. The lowest retracted
   block B tells us where the fork starts.
2. The source reports a different hash for a block we checkpointed. We
   walk the checkpoints back until one's block hash still matches.

In both cases the store rolls back to the newest checkpoint that is
entirely below the fork (or to genesis), undoing every later batch from
the journal, and ingestion resumes from there using canonical records.
Retractions above the scanned height were never applied; nothing to undo.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .source import EventSource
from ..db.store import EntityStore
from ..schemas.raw import RawLog

logger = logging.getLogger(__name__)


@dataclass
class ReorgOutcome:
    detected: bool = False
    fork_block: Optional[int] = None  # lowest block no longer canonical
    rolled_back_to: Optional[int] = None  # checkpoint sequence; -1 = genesis
    batches_undone: int = 0
    reason: str = ""

    @property
    def rolled_back(self) -> bool:
        return self.rolled_back_to is not None


class ReorgHandler:
    """
    Usage:
        handler = ReorgHandler(store, source)
        outcome = handler.check_canonical()
        outcome = handler.handle_retractions(removed_records)
    """

    def __init__(self, store: EntityStore, source: EventSource):
        self.store = store
        self.source = source

    def handle_retractions(self, removed: Iterable[RawLog]) -> ReorgOutcome:
        """Roll back below the lowest retracted block, if anything there was applied."""
        removed = list(removed)
        if not removed:
            return ReorgOutcome()

        fork_block = min(r.block_number for r in removed)
        head = self.store.get_checkpoint()
        if fork_block > head.scanned_block:
            logger.info(
                f"Dropping {len(removed)} retracted record(s) from block {fork_block}; "
                f"nothing applied above block {head.scanned_block}"
            )
            return ReorgOutcome(detected=True, fork_block=fork_block, reason="retraction")

        return self.rollback_below(fork_block, reason="retraction")

    def check_canonical(self) -> ReorgOutcome:
        """
        Compare the checkpointed block hash with the source.

        On mismatch, roll back to the newest checkpoint whose block is
        still canonical.
        """
        head = self.store.get_checkpoint()
        if head.is_genesis or head.block_hash is None:
            return ReorgOutcome()
        if self.source.get_block_hash(head.scanned_block) == head.block_hash:
            return ReorgOutcome()

        logger.warning(
            f"Block {head.scanned_block} hash changed since checkpoint {head.sequence}"
        )
        target = -1
        fork_block = head.scanned_block
        verified: dict[int, bool] = {}
        for cp in reversed(self.store.list_checkpoints()):
            if cp.block_hash is None or cp.scanned_block < 0:
                continue
            if cp.scanned_block not in verified:
                verified[cp.scanned_block] = (
                    self.source.get_block_hash(cp.scanned_block) == cp.block_hash
                )
            if verified[cp.scanned_block]:
                target = cp.sequence
                break
            fork_block = min(fork_block, cp.scanned_block)

        return self._rollback(target, fork_block, reason="block hash mismatch")

    def rollback_below(self, block_number: int, reason: str = "") -> ReorgOutcome:
        """Roll back to the newest checkpoint whose scanned block is below block_number."""
        target = -1
        for cp in reversed(self.store.list_checkpoints()):
            if cp.scanned_block < block_number:
                target = cp.sequence
                break
        return self._rollback(target, block_number, reason)

    def _rollback(self, target: int, fork_block: int, reason: str) -> ReorgOutcome:
        head = self.store.get_checkpoint()
        undone = head.sequence - target
        new_head = self.store.rollback_to(target)
        logger.warning(
            f"Reorg ({reason}) at block {fork_block}: undid {undone} batch(es), "
            f"resuming after block {new_head.scanned_block}"
        )
        return ReorgOutcome(
            detected=True,
            fork_block=fork_block,
            rolled_back_to=target,
            batches_undone=undone,
            reason=reason,
        )
