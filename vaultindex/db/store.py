"""
Entity Store Abstraction

This module defines the EntityStore interface and provides two implementations:
- InMemoryEntityStore: For development and testing
- PostgresEntityStore: For production with full durability and concurrency safety

The EntityStore is responsible for:
- Keyed storage of materialized entities (load / find / upsert)
- Atomic batch commit: entity writes + cursor advance, all-or-nothing
- The undo journal (before/after image of every write, per batch)
- The checkpoint chain (one hash-linked checkpoint per committed batch)
- Exact rollback to any earlier checkpoint

The ingestion pipeline retains responsibility for:
- Deciding what to write (reducers)
- Ordering, dedup and reorg detection

TRANSACTION CONTRACT:
All writes MUST go through the begin_batch() context manager:

    with store.begin_batch() as ctx:
        current = ctx.load(EntityKind.DOCUMENT, doc_id)   # sees staged writes
        ctx.upsert(new_entity)
        ctx.commit(cursor=(block, log_index), scanned_block=block, block_hash=h)

Readers outside a batch only ever see the last fully committed batch.
"""

import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock, RLock
from typing import Any, Callable, Generator, Iterable, Optional

import psycopg2
from psycopg2.extras import Json

from ..core.hasher import Hasher
from ..schemas.entities import Entity, EntityKind, entity_from_record

logger = logging.getLogger(__name__)


# ============================================================
# EXCEPTIONS
# ============================================================

class EntityStoreError(Exception):
    """Base exception for entity store errors."""
    pass


class TransientStoreError(EntityStoreError):
    """A write failed for a reason that may go away (I/O, lock contention). Retry the batch."""
    pass


class LockTimeoutError(TransientStoreError):
    """Raised when the store head lock could not be acquired in time."""
    pass


class StoreCorruptionError(EntityStoreError):
    """
    Checkpoints, journal and entities disagree.

    FATAL: the indexer must stop rather than re-derive possibly-wrong state.
    """
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class Checkpoint:
    """
    One committed batch.

    The cursor is the highest (block_number, log_index) applied. The
    scanned block is the highest block fully fetched, which can be ahead
    of the cursor when the tail of the range held no events.
    """
    sequence: int  # -1 means genesis (nothing committed)
    cursor_block: int = -1
    cursor_log_index: int = -1
    scanned_block: int = -1
    block_hash: Optional[str] = None  # hash of scanned_block when committed
    batch_hash: Optional[str] = None
    previous_hash: Optional[str] = None
    committed_at: Optional[datetime] = None

    @property
    def cursor(self) -> tuple[int, int]:
        return (self.cursor_block, self.cursor_log_index)

    @property
    def is_genesis(self) -> bool:
        return self.sequence == -1

    @property
    def next_sequence(self) -> int:
        return self.sequence + 1

    def header(self) -> dict[str, Any]:
        """The hashed part of a checkpoint (no wall-clock fields)."""
        return {
            "sequence": self.sequence,
            "cursor_block": self.cursor_block,
            "cursor_log_index": self.cursor_log_index,
            "scanned_block": self.scanned_block,
            "block_hash": self.block_hash,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.header(),
            "batch_hash": self.batch_hash,
            "previous_hash": self.previous_hash,
            "committed_at": self.committed_at.isoformat() if self.committed_at else None,
        }


def genesis_checkpoint() -> Checkpoint:
    return Checkpoint(sequence=-1)


@dataclass
class JournalEntry:
    """Before/after image of one entity write. before=None means created."""
    kind: str
    entity_id: str
    before: Optional[dict]
    after: dict

    @property
    def key(self) -> tuple[str, str]:
        return (self.kind, self.entity_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.entity_id,
            "before": self.before,
            "after": self.after,
        }


def batch_document(checkpoint: Checkpoint, entries: list[JournalEntry]) -> dict[str, Any]:
    """What a checkpoint's batch_hash commits to."""
    return {**checkpoint.header(), "writes": [e.to_dict() for e in entries]}


def verify_history(
    checkpoints: list[Checkpoint],
    journal: dict[int, list[JournalEntry]],
    entities: dict[tuple[str, str], dict],
    head_sequence: int,
) -> int:
    """
    Check that checkpoints, journal and entities tell one consistent story.

    1. Checkpoint sequences are contiguous from 0 and end at the head
    2. Every batch_hash recomputes from its journal and links to the previous one
    3. Every journaled before-image equals the state left by earlier batches
    4. Replaying every after-image yields exactly the stored entities

    Returns:
        Number of checkpoints verified

    Raises:
        StoreCorruptionError on the first inconsistency
    """
    expected_sequence = 0
    previous_hash = None
    state: dict[tuple[str, str], dict] = {}

    for cp in checkpoints:
        if cp.sequence != expected_sequence:
            raise StoreCorruptionError(
                f"Checkpoint sequence gap: expected {expected_sequence}, found {cp.sequence}"
            )
        if cp.previous_hash != previous_hash:
            raise StoreCorruptionError(
                f"Checkpoint {cp.sequence} does not link to checkpoint {cp.sequence - 1}"
            )
        entries = journal.get(cp.sequence, [])
        if not cp.batch_hash or not Hasher.verify_link(
            batch_document(cp, entries), cp.batch_hash, previous_hash
        ):
            raise StoreCorruptionError(
                f"Checkpoint {cp.sequence} hash does not match its journal"
            )
        for entry in entries:
            if state.get(entry.key) != entry.before:
                raise StoreCorruptionError(
                    f"Journal before-image mismatch for {entry.kind}:{entry.entity_id} "
                    f"at checkpoint {cp.sequence}"
                )
            state[entry.key] = entry.after
        previous_hash = cp.batch_hash
        expected_sequence += 1

    if expected_sequence - 1 != head_sequence:
        raise StoreCorruptionError(
            f"Head points at checkpoint {head_sequence}, "
            f"but the last checkpoint is {expected_sequence - 1}"
        )

    orphan_journal = set(journal) - {cp.sequence for cp in checkpoints}
    if orphan_journal:
        raise StoreCorruptionError(
            f"Journal entries without a checkpoint: {sorted(orphan_journal)}"
        )

    if state != entities:
        missing = set(state) - set(entities)
        extra = set(entities) - set(state)
        changed = {k for k in set(state) & set(entities) if state[k] != entities[k]}
        raise StoreCorruptionError(
            f"Entity snapshot disagrees with journal "
            f"(missing={len(missing)}, unexpected={len(extra)}, changed={len(changed)})"
        )

    return len(checkpoints)


# ============================================================
# STATE VIEW
# ============================================================

class StateView(ABC):
    """Read access to entity state, as reducers see it."""

    @abstractmethod
    def load(self, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        """Return the entity or None if it does not exist."""
        pass


@dataclass
class BatchContext(StateView):
    """
    Transaction context for one atomic batch.

    Holds the head checkpoint at batch start, staged writes, and (for SQL
    stores) the connection that holds the head lock. load() sees staged
    writes first, then committed state, so later events in the batch
    observe earlier ones.

    Usage:
        with store.begin_batch() as ctx:
            ctx.upsert(entity)
            ctx.commit(cursor=(12, 3), scanned_block=15, block_hash="0x...")
    """
    head: Checkpoint
    _store: "EntityStore"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _staged: dict = field(default_factory=dict, init=False)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def load(self, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        key = (EntityKind(kind).value, entity_id)
        if key in self._staged:
            return self._staged[key]
        return self._store._load_in_batch(self, kind, entity_id)

    def upsert(self, entity: Entity) -> None:
        if self._committed or self._rolled_back:
            raise EntityStoreError("Batch already closed")
        self._staged[entity.key] = entity

    @property
    def staged(self) -> list[Entity]:
        return list(self._staged.values())

    def commit(
        self,
        cursor: tuple[int, int],
        scanned_block: int,
        block_hash: Optional[str] = None,
    ) -> Checkpoint:
        """
        Commit staged writes and advance the cursor as one unit.

        Args:
            cursor: Highest (block_number, log_index) applied in this batch
            scanned_block: Highest block fully fetched
            block_hash: Hash of scanned_block, used for reorg detection

        Returns:
            The new head checkpoint
        """
        if self._committed:
            raise EntityStoreError("Batch already committed")
        if self._rolled_back:
            raise EntityStoreError("Batch already rolled back")
        if tuple(cursor) < self.head.cursor:
            raise EntityStoreError(
                f"Cursor cannot move backwards: {self.head.cursor} -> {tuple(cursor)}"
            )
        if scanned_block < self.head.scanned_block:
            raise EntityStoreError(
                f"Scanned block cannot move backwards: "
                f"{self.head.scanned_block} -> {scanned_block}"
            )

        checkpoint = Checkpoint(
            sequence=self.head.next_sequence,
            cursor_block=cursor[0],
            cursor_log_index=cursor[1],
            scanned_block=scanned_block,
            block_hash=block_hash,
            previous_hash=self.head.batch_hash,
        )
        result = self._store._do_commit(self, checkpoint)
        self._committed = True
        return result

    def rollback(self) -> None:
        """Discard staged writes."""
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._staged.clear()
            self._rolled_back = True


def _journal_entries(
    staged: Iterable[Entity],
    current: Callable[[str, str], Optional[dict]],
) -> list[JournalEntry]:
    """Journal entries for staged writes, dropping writes that change nothing."""
    entries = []
    for entity in staged:
        kind, entity_id = entity.key
        before = current(kind, entity_id)
        after = entity.to_record()
        if before == after:
            continue
        entries.append(JournalEntry(kind=kind, entity_id=entity_id, before=before, after=after))
    return entries


def _seal(checkpoint: Checkpoint, entries: list[JournalEntry]) -> Checkpoint:
    checkpoint.batch_hash = Hasher.hash_batch(
        batch_document(checkpoint, entries), checkpoint.previous_hash
    )
    checkpoint.committed_at = datetime.now(timezone.utc)
    return checkpoint


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class EntityStore(ABC):
    """
    Abstract base class for entity storage.

    Implementations must ensure:
    1. Atomic batches: entity writes, journal, checkpoint and head move together
    2. Readers never observe a partially applied batch
    3. Checkpoint sequences have no gaps and no duplicates
    4. rollback_to() restores exactly the state at that checkpoint

    CRITICAL: Always use begin_batch() for write operations.
    """

    @contextmanager
    @abstractmethod
    def begin_batch(self) -> Generator[BatchContext, None, None]:
        """
        Begin an atomic batch.

        Locks the head, yields a BatchContext, and rolls back
        automatically if the block exits without commit.
        """
        pass

    @abstractmethod
    def _load_in_batch(self, ctx: BatchContext, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        """Internal: read committed state inside the batch transaction."""
        pass

    @abstractmethod
    def _do_commit(self, ctx: BatchContext, checkpoint: Checkpoint) -> Checkpoint:
        """Internal: commit within current transaction. Use ctx.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, ctx: BatchContext) -> None:
        """Internal: rollback current transaction. Use ctx.rollback() instead."""
        pass

    @abstractmethod
    def load(self, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        """Load one committed entity by id."""
        pass

    @abstractmethod
    def find(self, kind: EntityKind, **match: Any) -> list[Entity]:
        """Committed entities of a kind whose fields equal every given value."""
        pass

    @abstractmethod
    def list_entities(self, kind: Optional[EntityKind] = None) -> list[Entity]:
        """All committed entities (optionally of one kind), ordered by (kind, id)."""
        pass

    @abstractmethod
    def get_checkpoint(self) -> Checkpoint:
        """Current head checkpoint (genesis if nothing committed)."""
        pass

    @abstractmethod
    def list_checkpoints(self) -> list[Checkpoint]:
        """All retained checkpoints, ascending by sequence."""
        pass

    @abstractmethod
    def rollback_to(self, sequence: int) -> Checkpoint:
        """
        Undo every batch after `sequence` (-1 = genesis) and make it the head.

        Returns:
            The new head checkpoint
        """
        pass

    @abstractmethod
    def verify_integrity(self) -> int:
        """
        Verify checkpoint chain, journal and entities against each other.

        Returns:
            Number of checkpoints verified

        Raises:
            StoreCorruptionError if anything disagrees
        """
        pass

    def commit_batch(
        self,
        upserts: Iterable[Entity],
        cursor: tuple[int, int],
        scanned_block: int,
        block_hash: Optional[str] = None,
    ) -> Checkpoint:
        """Apply a list of upserts plus a cursor advance as one atomic unit."""
        with self.begin_batch() as ctx:
            for entity in upserts:
                ctx.upsert(entity)
            return ctx.commit(cursor=cursor, scanned_block=scanned_block, block_hash=block_hash)

    def upsert(self, entity: Entity) -> Checkpoint:
        """Idempotent single write outside ingestion; the cursor stays where it is."""
        with self.begin_batch() as ctx:
            ctx.upsert(entity)
            return ctx.commit(
                cursor=ctx.head.cursor,
                scanned_block=ctx.head.scanned_block,
                block_hash=ctx.head.block_hash,
            )

    def snapshot(self) -> dict[tuple[str, str], dict]:
        """Every committed entity as {(kind, id): record}."""
        return {e.key: e.to_record() for e in self.list_entities()}


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryEntityStore(EntityStore):
    """
    In-memory implementation of EntityStore.

    Suitable for:
    - Development
    - Testing
    - Replaying a chain into a throwaway snapshot

    NOT suitable for:
    - Production (no durability)
    - Multi-process deployments (no shared state)
    """

    def __init__(self):
        self._entities: dict[tuple[str, str], dict] = {}
        self._checkpoints: list[Checkpoint] = []
        self._journal: dict[int, list[JournalEntry]] = {}
        self._head = genesis_checkpoint()
        self._writer = Lock()  # one batch at a time
        self._state = RLock()  # readers vs. apply

    @contextmanager
    def begin_batch(self) -> Generator[BatchContext, None, None]:
        """Begin atomic batch with writer lock."""
        with self._writer:
            ctx = BatchContext(head=self.get_checkpoint(), _store=self, _conn="in_memory_lock")
            try:
                yield ctx
            finally:
                if not ctx._committed and not ctx._rolled_back:
                    ctx.rollback()

    def _load_in_batch(self, ctx: BatchContext, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        return self.load(kind, entity_id)

    def _do_commit(self, ctx: BatchContext, checkpoint: Checkpoint) -> Checkpoint:
        if ctx._conn != "in_memory_lock":
            raise EntityStoreError("_do_commit called outside begin_batch context")

        with self._state:
            entries = _journal_entries(ctx.staged, lambda k, i: self._entities.get((k, i)))
            _seal(checkpoint, entries)
            self._apply(checkpoint, entries)
        ctx._conn = None
        return Checkpoint(**vars(checkpoint))

    def _apply(self, checkpoint: Checkpoint, entries: list[JournalEntry]) -> None:
        """Make a sealed batch visible. Holds the state lock; nothing partial is observable."""
        entities = dict(self._entities)
        for entry in entries:
            entities[entry.key] = entry.after
        self._entities = entities
        self._journal[checkpoint.sequence] = entries
        self._checkpoints.append(checkpoint)
        self._head = checkpoint

    def _do_rollback(self, ctx: BatchContext) -> None:
        ctx._conn = None

    def load(self, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        kind = EntityKind(kind)
        with self._state:
            record = self._entities.get((kind.value, entity_id))
        return entity_from_record(kind, record) if record is not None else None

    def find(self, kind: EntityKind, **match: Any) -> list[Entity]:
        kind = EntityKind(kind)
        with self._state:
            records = [
                (key, rec) for key, rec in self._entities.items()
                if key[0] == kind.value and all(rec.get(f) == v for f, v in match.items())
            ]
        return [entity_from_record(kind, rec) for _, rec in sorted(records, key=lambda kr: kr[0])]

    def list_entities(self, kind: Optional[EntityKind] = None) -> list[Entity]:
        with self._state:
            items = sorted(self._entities.items())
        return [
            entity_from_record(k[0], rec)
            for k, rec in items
            if kind is None or k[0] == EntityKind(kind).value
        ]

    def get_checkpoint(self) -> Checkpoint:
        with self._state:
            return Checkpoint(**vars(self._head))

    def list_checkpoints(self) -> list[Checkpoint]:
        with self._state:
            return [Checkpoint(**vars(cp)) for cp in self._checkpoints]

    def rollback_to(self, sequence: int) -> Checkpoint:
        with self._writer, self._state:
            if sequence < -1 or sequence > self._head.sequence:
                raise EntityStoreError(
                    f"Cannot roll back to {sequence}; head is {self._head.sequence}"
                )

            entities = dict(self._entities)
            for cp in reversed(self._checkpoints):
                if cp.sequence <= sequence:
                    break
                if cp.sequence not in self._journal:
                    raise StoreCorruptionError(f"Journal missing for checkpoint {cp.sequence}")
                for entry in reversed(self._journal[cp.sequence]):
                    if entry.before is None:
                        entities.pop(entry.key, None)
                    else:
                        entities[entry.key] = entry.before

            undone = [cp.sequence for cp in self._checkpoints if cp.sequence > sequence]
            for seq in undone:
                self._journal.pop(seq, None)
            self._checkpoints = [cp for cp in self._checkpoints if cp.sequence <= sequence]
            self._entities = entities
            self._head = self._checkpoints[-1] if self._checkpoints else genesis_checkpoint()

            logger.info(f"Rolled back {len(undone)} batch(es) to checkpoint {sequence}")
            return Checkpoint(**vars(self._head))

    def verify_integrity(self) -> int:
        with self._state:
            return verify_history(
                list(self._checkpoints),
                dict(self._journal),
                dict(self._entities),
                self._head.sequence,
            )

    def clear(self) -> None:
        """Clear everything (for testing only)."""
        with self._writer, self._state:
            self._entities = {}
            self._checkpoints = []
            self._journal = {}
            self._head = genesis_checkpoint()


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS index_entities (
    kind TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    data JSONB NOT NULL,
    updated_sequence BIGINT NOT NULL,
    PRIMARY KEY (kind, entity_id)
);

CREATE INDEX IF NOT EXISTS idx_index_entities_data
    ON index_entities USING GIN (data jsonb_path_ops);

CREATE TABLE IF NOT EXISTS index_checkpoints (
    sequence BIGINT PRIMARY KEY,
    cursor_block BIGINT NOT NULL,
    cursor_log_index BIGINT NOT NULL,
    scanned_block BIGINT NOT NULL,
    block_hash TEXT,
    batch_hash TEXT NOT NULL,
    previous_hash TEXT,
    committed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS index_journal (
    sequence BIGINT NOT NULL REFERENCES index_checkpoints (sequence) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    kind TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    before_data JSONB,
    after_data JSONB NOT NULL,
    PRIMARY KEY (sequence, position)
);

CREATE TABLE IF NOT EXISTS index_head (
    id BOOLEAN PRIMARY KEY DEFAULT TRUE CHECK (id),
    last_sequence BIGINT NOT NULL DEFAULT -1
);
"""

_CHECKPOINT_COLUMNS = """
    sequence, cursor_block, cursor_log_index, scanned_block,
    block_hash, batch_hash, previous_hash, committed_at
"""


def _as_dict(value: Any) -> Optional[dict]:
    """JSONB may come back as dict or str depending on driver settings."""
    if value is None:
        return None
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresEntityStore(EntityStore):
    """
    PostgreSQL implementation of EntityStore.

    Provides:
    - Full ACID guarantees: one transaction per batch
    - Single-writer safety via FOR UPDATE on the head row
    - Durability (snapshot, journal and checkpoints survive restarts)
    - Lock/statement timeouts to prevent hanging

    THREAD SAFETY:
    Transaction state (conn, cursor) lives in BatchContext, never on the
    store, so one store instance can be shared across threads.

    Usage:
        store = PostgresEntityStore(lambda: psycopg2.connect(dsn))
        store.initialize_schema()
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 30000

    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for the head lock (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    # ----------------------------------------------------------------
    # Connection helpers
    # ----------------------------------------------------------------

    def _connect(self):
        try:
            return self._connection_factory()
        except psycopg2.OperationalError as e:
            raise TransientStoreError(f"Could not connect to database: {e}") from e

    @contextmanager
    def _read(self):
        conn = self._connect()
        cursor = conn.cursor()
        try:
            yield cursor
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            raise TransientStoreError(str(e)) from e
        finally:
            try:
                cursor.close()
            finally:
                conn.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Classify a PostgreSQL error as "lock", "statement", "timeout" or None.

        57014 (query_canceled) covers both lock_timeout and statement_timeout;
        the message tells them apart. 55P03 is a NOWAIT refusal, treated as lock.
        """
        pgcode = getattr(e, 'pgcode', None)
        err_msg = (getattr(e, 'pgerror', None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"
        if pgcode == self.PGCODE_QUERY_CANCELED:
            if 'lock timeout' in err_msg or 'lock_timeout' in err_msg:
                return "lock"
            if 'statement timeout' in err_msg or 'statement_timeout' in err_msg:
                return "statement"
            return "timeout"
        return None

    def initialize_schema(self) -> None:
        """Create tables if they don't exist."""
        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
                cur.execute("""
                    INSERT INTO index_head (id, last_sequence)
                    VALUES (TRUE, -1)
                    ON CONFLICT (id) DO NOTHING
                """)
            conn.commit()
        finally:
            conn.close()

    # ----------------------------------------------------------------
    # Batches
    # ----------------------------------------------------------------

    @contextmanager
    def begin_batch(self) -> Generator[BatchContext, None, None]:
        """
        Begin atomic batch with FOR UPDATE lock on the head row.

        The connection and transaction are scoped to this context manager,
        so reads, writes and commit all happen on the same connection.
        """
        conn = self._connect()
        conn.autocommit = False
        cursor = conn.cursor()
        ctx = None

        try:
            try:
                cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
                cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
                cursor.execute("SET LOCAL idle_in_transaction_session_timeout = '60s'")
                cursor.execute("""
                    INSERT INTO index_head (id, last_sequence)
                    VALUES (TRUE, -1)
                    ON CONFLICT (id) DO NOTHING
                """)
                cursor.execute("SELECT last_sequence FROM index_head WHERE id = TRUE FOR UPDATE")
            except psycopg2.Error as e:
                kind = self._timeout_kind(e)
                if kind == "lock":
                    raise LockTimeoutError("Index busy - could not acquire head lock.") from e
                if isinstance(e, (psycopg2.OperationalError, psycopg2.InterfaceError)) or kind:
                    raise TransientStoreError(str(e)) from e
                raise

            last_sequence = cursor.fetchone()[0]
            head = self._fetch_checkpoint(cursor, last_sequence)
            ctx = BatchContext(head=head, _store=self, _conn=conn, _cursor=cursor)

            yield ctx

        finally:
            if ctx is None or not ctx._committed:
                try:
                    conn.rollback()
                except psycopg2.Error:
                    logger.warning("Rollback failed; connection is being discarded")
            try:
                cursor.close()
            finally:
                conn.close()

    def _load_in_batch(self, ctx: BatchContext, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        kind = EntityKind(kind)
        ctx._cursor.execute(
            "SELECT data FROM index_entities WHERE kind = %s AND entity_id = %s",
            (kind.value, entity_id),
        )
        row = ctx._cursor.fetchone()
        return entity_from_record(kind, _as_dict(row[0])) if row else None

    def _current_record(self, cursor, kind: str, entity_id: str) -> Optional[dict]:
        cursor.execute(
            "SELECT data FROM index_entities WHERE kind = %s AND entity_id = %s",
            (kind, entity_id),
        )
        row = cursor.fetchone()
        return _as_dict(row[0]) if row else None

    def _do_commit(self, ctx: BatchContext, checkpoint: Checkpoint) -> Checkpoint:
        if ctx._cursor is None or ctx._conn is None:
            raise EntityStoreError("_do_commit called outside begin_batch context")

        cursor = ctx._cursor
        try:
            entries = _journal_entries(
                ctx.staged, lambda k, i: self._current_record(cursor, k, i)
            )
            _seal(checkpoint, entries)

            cursor.execute(f"""
                INSERT INTO index_checkpoints ({_CHECKPOINT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                checkpoint.sequence,
                checkpoint.cursor_block,
                checkpoint.cursor_log_index,
                checkpoint.scanned_block,
                checkpoint.block_hash,
                checkpoint.batch_hash,
                checkpoint.previous_hash,
                checkpoint.committed_at,
            ))

            for position, entry in enumerate(entries):
                cursor.execute("""
                    INSERT INTO index_journal (
                        sequence, position, kind, entity_id, before_data, after_data
                    ) VALUES (%s, %s, %s, %s, %s, %s)
                """, (
                    checkpoint.sequence,
                    position,
                    entry.kind,
                    entry.entity_id,
                    Json(entry.before) if entry.before is not None else None,
                    Json(entry.after),
                ))
                cursor.execute("""
                    INSERT INTO index_entities (kind, entity_id, data, updated_sequence)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (kind, entity_id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_sequence = EXCLUDED.updated_sequence
                """, (entry.kind, entry.entity_id, Json(entry.after), checkpoint.sequence))

            cursor.execute(
                "UPDATE index_head SET last_sequence = %s WHERE id = TRUE",
                (checkpoint.sequence,),
            )
            ctx._conn.commit()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            raise TransientStoreError(f"Batch commit failed: {e}") from e

        return checkpoint

    def _do_rollback(self, ctx: BatchContext) -> None:
        if ctx._conn is not None:
            try:
                ctx._conn.rollback()
            except psycopg2.Error:
                logger.warning("Rollback failed; connection is being discarded")

    # ----------------------------------------------------------------
    # Reads
    # ----------------------------------------------------------------

    def load(self, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        kind = EntityKind(kind)
        with self._read() as cursor:
            record = self._current_record(cursor, kind.value, entity_id)
        return entity_from_record(kind, record) if record is not None else None

    def find(self, kind: EntityKind, **match: Any) -> list[Entity]:
        kind = EntityKind(kind)
        with self._read() as cursor:
            cursor.execute("""
                SELECT data FROM index_entities
                WHERE kind = %s AND data @> %s
                ORDER BY entity_id
            """, (kind.value, Json(match)))
            rows = cursor.fetchall()
        return [entity_from_record(kind, _as_dict(row[0])) for row in rows]

    def list_entities(self, kind: Optional[EntityKind] = None) -> list[Entity]:
        with self._read() as cursor:
            if kind is None:
                cursor.execute("SELECT kind, data FROM index_entities ORDER BY kind, entity_id")
            else:
                cursor.execute(
                    "SELECT kind, data FROM index_entities WHERE kind = %s ORDER BY entity_id",
                    (EntityKind(kind).value,),
                )
            rows = cursor.fetchall()
        return [entity_from_record(row[0], _as_dict(row[1])) for row in rows]

    def _fetch_checkpoint(self, cursor, sequence: int) -> Checkpoint:
        if sequence < 0:
            return genesis_checkpoint()
        cursor.execute(
            f"SELECT {_CHECKPOINT_COLUMNS} FROM index_checkpoints WHERE sequence = %s",
            (sequence,),
        )
        row = cursor.fetchone()
        if row is None:
            raise StoreCorruptionError(f"Head points at missing checkpoint {sequence}")
        return self._row_to_checkpoint(row)

    def get_checkpoint(self) -> Checkpoint:
        with self._read() as cursor:
            cursor.execute("SELECT last_sequence FROM index_head WHERE id = TRUE")
            row = cursor.fetchone()
            return self._fetch_checkpoint(cursor, row[0] if row else -1)

    def list_checkpoints(self) -> list[Checkpoint]:
        with self._read() as cursor:
            cursor.execute(
                f"SELECT {_CHECKPOINT_COLUMNS} FROM index_checkpoints ORDER BY sequence"
            )
            return [self._row_to_checkpoint(row) for row in cursor.fetchall()]

    def _load_journal(self, cursor, after_sequence: int = -1) -> dict[int, list[JournalEntry]]:
        cursor.execute("""
            SELECT sequence, kind, entity_id, before_data, after_data
            FROM index_journal
            WHERE sequence > %s
            ORDER BY sequence, position
        """, (after_sequence,))
        journal: dict[int, list[JournalEntry]] = {}
        for seq, kind, entity_id, before, after in cursor.fetchall():
            journal.setdefault(seq, []).append(JournalEntry(
                kind=kind,
                entity_id=entity_id,
                before=_as_dict(before),
                after=_as_dict(after),
            ))
        return journal

    # ----------------------------------------------------------------
    # Rollback / integrity
    # ----------------------------------------------------------------

    def rollback_to(self, sequence: int) -> Checkpoint:
        with self.begin_batch() as ctx:
            cursor = ctx._cursor
            if sequence < -1 or sequence > ctx.head.sequence:
                raise EntityStoreError(
                    f"Cannot roll back to {sequence}; head is {ctx.head.sequence}"
                )

            journal = self._load_journal(cursor, after_sequence=sequence)
            undone = list(range(sequence + 1, ctx.head.sequence + 1))
            for seq in reversed(undone):
                if seq not in journal:
                    cursor.execute(
                        "SELECT 1 FROM index_checkpoints WHERE sequence = %s", (seq,)
                    )
                    if cursor.fetchone() is None:
                        raise StoreCorruptionError(f"Checkpoint {seq} missing during rollback")
                for entry in reversed(journal.get(seq, [])):
                    if entry.before is None:
                        cursor.execute(
                            "DELETE FROM index_entities WHERE kind = %s AND entity_id = %s",
                            (entry.kind, entry.entity_id),
                        )
                    else:
                        cursor.execute("""
                            UPDATE index_entities SET data = %s, updated_sequence = %s
                            WHERE kind = %s AND entity_id = %s
                        """, (Json(entry.before), max(sequence, 0), entry.kind, entry.entity_id))

            cursor.execute("DELETE FROM index_checkpoints WHERE sequence > %s", (sequence,))
            cursor.execute(
                "UPDATE index_head SET last_sequence = %s WHERE id = TRUE", (sequence,)
            )
            new_head = self._fetch_checkpoint(cursor, sequence)
            try:
                ctx._conn.commit()
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                raise TransientStoreError(f"Rollback commit failed: {e}") from e
            ctx._committed = True

        logger.info(f"Rolled back {len(undone)} batch(es) to checkpoint {sequence}")
        return new_head

    def verify_integrity(self) -> int:
        conn = self._connect()
        try:
            conn.set_session(isolation_level="REPEATABLE READ", readonly=True)
            with conn.cursor() as cursor:
                cursor.execute("SELECT last_sequence FROM index_head WHERE id = TRUE")
                row = cursor.fetchone()
                head_sequence = row[0] if row else -1
                cursor.execute(
                    f"SELECT {_CHECKPOINT_COLUMNS} FROM index_checkpoints ORDER BY sequence"
                )
                checkpoints = [self._row_to_checkpoint(r) for r in cursor.fetchall()]
                journal = self._load_journal(cursor)
                cursor.execute("SELECT kind, entity_id, data FROM index_entities")
                entities = {(k, i): _as_dict(d) for k, i, d in cursor.fetchall()}
            conn.rollback()
        finally:
            conn.close()

        return verify_history(checkpoints, journal, entities, head_sequence)

    @staticmethod
    def _row_to_checkpoint(row: tuple) -> Checkpoint:
        return Checkpoint(
            sequence=row[0],
            cursor_block=row[1],
            cursor_log_index=row[2],
            scanned_block=row[3],
            block_hash=row[4],
            batch_hash=row[5],
            previous_hash=row[6],
            committed_at=row[7],
        )


# ============================================================
# FACTORY
# ============================================================

def create_entity_store(driver: Optional[str] = None) -> EntityStore:
    """
    Build the configured entity store.

    Args:
        driver: "memory" or "psycopg2"; defaults to ENTITYSTORE_DRIVER / auto-detect
    """
    from .config import DatabaseConfig, EntityStoreDriver, get_entitystore_driver

    driver = EntityStoreDriver(driver) if driver else get_entitystore_driver()

    if driver == EntityStoreDriver.MEMORY:
        logger.info("Using in-memory entity store")
        return InMemoryEntityStore()

    config = DatabaseConfig.resolve()
    dsn = config.to_dsn()
    logger.info(f"Using PostgreSQL entity store at {config.to_url(include_password=False)}")
    return PostgresEntityStore(lambda: psycopg2.connect(dsn))
