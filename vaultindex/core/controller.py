"""
Ingestion Controller

One cycle:

    check canonical -> pick range -> fetch -> retractions? -> dedup
        -> decode -> sort -> backfill -> reduce -> commit

ORDERING RULES:
1. Records are applied strictly in (block_number, log_index) order
2. Records at or below the checkpoint cursor are never re-applied
3. Identical redeliveries collapse to one record
4. Two different records at the same position fail loudly (OrderingConflictError)
5. Entity writes and the cursor advance commit as one unit; any failure
   or cancellation before commit leaves the cursor where it was

RETRIES:
Source reads, backfills and commits retry with exponential backoff
(backoff_base doubling up to backoff_max) for max_retries attempts, then
raise IngestionError. Nothing is committed by a failed attempt.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from .backfill import ContractReader, enrich
from .decoder import EventDecoder
from .errors import (
    BackfillUnavailableError,
    IngestionError,
    OrderingConflictError,
    SourceUnavailableError,
)
from .reducers import apply_events
from .reorg import ReorgHandler, ReorgOutcome
from .source import EventSource
from ..config import IndexerConfig
from ..db.store import Checkpoint, EntityStore, TransientStoreError
from ..observability import MetricsCollector, batch_context, get_metrics
from ..schemas.events import DecodedEvent, Unrecognized
from ..schemas.raw import RawLog

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Cancelled(Exception):
    """Cancellation observed while waiting to retry."""
    pass


@dataclass
class FetchedBatch:
    """Raw records for a block range, plus the hash of its last block at fetch time."""
    from_block: int
    to_block: int
    block_hash: Optional[str]
    logs: list[RawLog]

    @property
    def range(self) -> tuple[int, int]:
        return (self.from_block, self.to_block)


@dataclass
class CycleResult:
    """What one ingestion cycle did."""
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    fetched: int = 0
    applied: int = 0
    skipped: int = 0  # at/below cursor or redelivered
    unrecognized: int = 0
    warnings: list[str] = field(default_factory=list)
    checkpoint: Optional[Checkpoint] = None
    reorg: Optional[ReorgOutcome] = None
    caught_up: bool = False
    cancelled: bool = False

    @property
    def committed(self) -> bool:
        return self.checkpoint is not None

    @property
    def rolled_back(self) -> bool:
        return self.reorg is not None and self.reorg.rolled_back


class IngestionController:
    """
    Single-writer ingestion pipeline.

    Usage:
        controller = IngestionController(source, store, decoder, reader, config)
        result = controller.run_cycle()       # one batch
        results = controller.sync()           # until caught up
        controller.close()
    """

    def __init__(
        self,
        source: EventSource,
        store: EntityStore,
        decoder: Optional[EventDecoder] = None,
        reader: Optional[ContractReader] = None,
        config: Optional[IndexerConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.source = source
        self.store = store
        self.config = config or IndexerConfig()
        self.decoder = decoder or EventDecoder(self.config.address_roles())
        self.reader = reader
        self.metrics = metrics or get_metrics()
        self.reorg_handler = ReorgHandler(store, source)
        self._sleep = sleep

        self._decode_pool = (
            ThreadPoolExecutor(max_workers=self.config.decode_workers, thread_name_prefix="decode")
            if self.config.decode_workers > 1
            else None
        )
        self._prefetch_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="prefetch")

    def close(self) -> None:
        if self._decode_pool is not None:
            self._decode_pool.shutdown(wait=True)
        self._prefetch_pool.shutdown(wait=True)

    # ----------------------------------------------------------------
    # Retry
    # ----------------------------------------------------------------

    def _with_retry(
        self,
        what: str,
        fn: Callable[[], T],
        retry_on: tuple,
        cancel: Optional[threading.Event] = None,
        on_retry: Optional[Callable[[], None]] = None,
    ) -> T:
        delay = self.config.backoff_base_seconds
        attempts = self.config.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except retry_on as e:
                if attempt == attempts:
                    raise IngestionError(f"{what} failed after {attempts} attempt(s): {e}") from e
                logger.warning(f"{what} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay}s")
                if on_retry is not None:
                    on_retry()
                if cancel is not None:
                    if cancel.wait(delay):
                        raise _Cancelled() from e
                else:
                    self._sleep(delay)
                delay = min(delay * 2, self.config.backoff_max_seconds)
        raise AssertionError("unreachable")

    # ----------------------------------------------------------------
    # Fetch
    # ----------------------------------------------------------------

    def safe_head(self, until_block: Optional[int] = None) -> int:
        """Highest block we are willing to ingest right now."""
        head = self._with_retry(
            "get_block_number", self.source.get_block_number, (SourceUnavailableError,)
        )
        self.metrics.record_head(head)
        safe = head - self.config.confirmations
        if until_block is not None:
            safe = min(safe, until_block)
        return safe

    def next_range(
        self,
        after_block: int,
        until_block: Optional[int] = None,
    ) -> Optional[tuple[int, int]]:
        """The next block range to ingest after `after_block`, or None if caught up."""
        start = max(after_block + 1, self.config.start_block)
        end = min(start + self.config.batch_blocks - 1, self.safe_head(until_block))
        if end < start:
            return None
        return (start, end)

    def fetch(self, from_block: int, to_block: int) -> FetchedBatch:
        """Fetch a range. The block hash is read before the logs."""
        def _fetch() -> FetchedBatch:
            block_hash = self.source.get_block_hash(to_block)
            logs = self.source.get_logs(from_block, to_block)
            return FetchedBatch(from_block, to_block, block_hash, logs)

        return self._with_retry(
            f"fetch {from_block}-{to_block}", _fetch, (SourceUnavailableError,)
        )

    def _fetch_after(self, after_block: int, until_block: Optional[int]) -> Optional[FetchedBatch]:
        rng = self.next_range(after_block, until_block)
        return self.fetch(*rng) if rng else None

    # ----------------------------------------------------------------
    # Cycle
    # ----------------------------------------------------------------

    def run_cycle(
        self,
        cancel: Optional[threading.Event] = None,
        until_block: Optional[int] = None,
    ) -> CycleResult:
        """Ingest one batch."""
        reorg = self._check_canonical()
        head = self.store.get_checkpoint()
        rng = self.next_range(head.scanned_block, until_block)
        if rng is None:
            return CycleResult(caught_up=True, reorg=reorg if reorg.detected else None)
        batch = self.fetch(*rng)
        return self.process(batch, head, cancel, reorg)

    def sync(
        self,
        until_block: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
        max_cycles: Optional[int] = None,
    ) -> list[CycleResult]:
        """
        Run cycles until caught up, cancelled, or max_cycles.

        With prefetch enabled the next range is fetched on a worker thread
        while the current batch is reduced and committed. A prefetched
        batch is only used if it is exactly the range the new checkpoint
        asks for; after a reorg it is discarded.
        """
        results: list[CycleResult] = []
        pending: Optional[Future] = None

        try:
            while max_cycles is None or len(results) < max_cycles:
                if cancel is not None and cancel.is_set():
                    break

                reorg = self._check_canonical()
                if reorg.rolled_back:
                    pending = self._discard(pending)

                head = self.store.get_checkpoint()
                rng = self.next_range(head.scanned_block, until_block)
                if rng is None:
                    pending = self._discard(pending)
                    results.append(CycleResult(caught_up=True, reorg=reorg if reorg.detected else None))
                    break

                batch = self._take_prefetched(pending, rng)
                pending = None
                if batch is None:
                    batch = self.fetch(*rng)

                if self.config.prefetch:
                    pending = self._prefetch_pool.submit(self._fetch_after, batch.to_block, until_block)

                result = self.process(batch, head, cancel, reorg)
                results.append(result)

                if result.cancelled:
                    break
                if result.rolled_back:
                    pending = self._discard(pending)
        finally:
            self._discard(pending)

        return results

    @staticmethod
    def _take_prefetched(pending: Optional[Future], rng: tuple[int, int]) -> Optional[FetchedBatch]:
        if pending is None:
            return None
        try:
            batch = pending.result()
        except (IngestionError, SourceUnavailableError) as e:
            logger.info(f"Prefetch failed, fetching again: {e}")
            return None
        if batch is None or batch.range != rng:
            return None
        return batch

    @staticmethod
    def _discard(pending: Optional[Future]) -> None:
        # A running prefetch finishes in the background; its result is dropped.
        if pending is not None:
            pending.cancel()
        return None

    def _check_canonical(self) -> ReorgOutcome:
        outcome = self._with_retry(
            "canonical check", self.reorg_handler.check_canonical, (SourceUnavailableError,)
        )
        if outcome.rolled_back:
            self.metrics.record_reorg(outcome.batches_undone)
        return outcome

    def process(
        self,
        batch: FetchedBatch,
        head: Checkpoint,
        cancel: Optional[threading.Event] = None,
        reorg: Optional[ReorgOutcome] = None,
    ) -> CycleResult:
        """Turn one fetched batch into (at most) one committed checkpoint."""
        result = CycleResult(
            from_block=batch.from_block,
            to_block=batch.to_block,
            fetched=len(batch.logs),
            reorg=reorg if reorg is not None and reorg.detected else None,
        )

        with batch_context(uuid.uuid4().hex[:8]):
            if self._cancelled(cancel, result):
                return result

            # Retractions: roll back if needed, then refetch next cycle.
            removed = [log for log in batch.logs if log.removed]
            if removed:
                outcome = self.reorg_handler.handle_retractions(removed)
                if outcome.rolled_back:
                    self.metrics.record_reorg(outcome.batches_undone)
                if outcome.rolled_back or result.reorg is None:
                    result.reorg = outcome
                logger.info(f"Batch {batch.from_block}-{batch.to_block} abandoned after retractions")
                return result

            live = self._dedupe(batch.logs, head, result)

            if self._cancelled(cancel, result):
                return result

            events = self._decode(live, result)
            events.sort(key=lambda e: e.position)

            if self._cancelled(cancel, result):
                return result

            try:
                events = self._with_retry(
                    "ledger backfill",
                    lambda: enrich(events, self.reader),
                    (BackfillUnavailableError,),
                    cancel=cancel,
                )
                if self._cancelled(cancel, result):
                    return result

                cursor = max([head.cursor] + [log.position for log in live])
                checkpoint = self._commit(events, cursor, batch, head, cancel, result)
            except _Cancelled:
                self._cancelled(cancel, result)
                return result
            if checkpoint is None:
                return result

            result.checkpoint = checkpoint
            result.applied = len(events)
            self.metrics.record_skipped(result.skipped, result.unrecognized)
            self.metrics.record_warnings(len(result.warnings))
            logger.info(
                f"Committed checkpoint {checkpoint.sequence}: blocks "
                f"{batch.from_block}-{batch.to_block}, {len(events)} event(s), "
                f"cursor {checkpoint.cursor}"
            )
            return result

    def _cancelled(self, cancel: Optional[threading.Event], result: CycleResult) -> bool:
        if cancel is not None and cancel.is_set():
            result.cancelled = True
            logger.info("Cycle cancelled before commit")
            return True
        return False

    def _dedupe(self, logs: list[RawLog], head: Checkpoint, result: CycleResult) -> list[RawLog]:
        """Drop already-applied positions and identical redeliveries."""
        seen: dict[tuple[int, int], RawLog] = {}
        for log in logs:
            if log.position <= head.cursor:
                result.skipped += 1
                continue
            existing = seen.get(log.position)
            if existing is None:
                seen[log.position] = log
            elif existing.identity() == log.identity():
                result.skipped += 1
            else:
                raise OrderingConflictError(
                    f"Two different records at block {log.block_number}, "
                    f"log index {log.log_index}"
                )
        return sorted(seen.values(), key=lambda log: log.position)

    def _decode(self, logs: list[RawLog], result: CycleResult) -> list[DecodedEvent]:
        if self._decode_pool is not None and len(logs) > 1:
            decoded = list(self._decode_pool.map(self.decoder.decode, logs))
        else:
            decoded = [self.decoder.decode(log) for log in logs]

        events = []
        for item in decoded:
            if isinstance(item, Unrecognized):
                result.unrecognized += 1
                level = logging.DEBUG if item.reason == "foreign contract" else logging.WARNING
                logger.log(
                    level,
                    f"Unrecognized record at {item.block_number}:{item.log_index}: {item.reason}",
                )
            else:
                events.append(item)
        return events

    def _commit(
        self,
        events: list[DecodedEvent],
        cursor: tuple[int, int],
        batch: FetchedBatch,
        head: Checkpoint,
        cancel: Optional[threading.Event],
        result: CycleResult,
    ) -> Optional[Checkpoint]:
        """Reduce and commit atomically; retried as a whole on transient store errors."""

        def attempt() -> Optional[Checkpoint]:
            started = time.perf_counter()
            with self.store.begin_batch() as ctx:
                if ctx.head.sequence != head.sequence:
                    logger.warning(
                        f"Store head moved ({head.sequence} -> {ctx.head.sequence}) "
                        f"during the cycle; batch dropped"
                    )
                    return None
                warnings = apply_events(ctx, events)
                if self._cancelled(cancel, result):
                    ctx.rollback()
                    return None
                checkpoint = ctx.commit(
                    cursor=cursor,
                    scanned_block=batch.to_block,
                    block_hash=batch.block_hash,
                )
            result.warnings = warnings
            self.metrics.record_commit(
                (time.perf_counter() - started) * 1000,
                len(events),
                checkpoint.cursor_block,
                checkpoint.scanned_block,
            )
            return checkpoint

        return self._with_retry(
            f"commit {batch.from_block}-{batch.to_block}",
            attempt,
            (TransientStoreError,),
            cancel=cancel,
            on_retry=self.metrics.record_commit_retry,
        )
