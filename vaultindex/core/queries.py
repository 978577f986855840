"""
Query Service - Reads Against the Committed Snapshot

Every answer is taken from one committed checkpoint and carries its
height, so callers can tell how far behind the chain the index is.
A read that races a commit (the head sequence moves while reading) is
retried; staged batch state is never visible here.

USAGE:
    queries = IndexQueries(store)

    result = queries.list_active_roles("did:example:alice")
    result.height.cursor_block   # block the snapshot is complete up to
    result.value                 # list[RoleGrant]
"""

import logging
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from ..db.store import Checkpoint, EntityStore
from ..schemas.entities import (
    Authentication,
    Document,
    Entity,
    EntityKind,
    RoleGrant,
    TrustedIssuer,
    trusted_issuer_key,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Attempts at a read that keeps racing commits before answering anyway
MAX_READ_ATTEMPTS = 5


@dataclass(frozen=True)
class SnapshotHeight:
    sequence: int
    cursor_block: int
    cursor_log_index: int
    scanned_block: int

    @classmethod
    def of(cls, checkpoint: Checkpoint) -> "SnapshotHeight":
        return cls(
            sequence=checkpoint.sequence,
            cursor_block=checkpoint.cursor_block,
            cursor_log_index=checkpoint.cursor_log_index,
            scanned_block=checkpoint.scanned_block,
        )

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "cursor_block": self.cursor_block,
            "cursor_log_index": self.cursor_log_index,
            "scanned_block": self.scanned_block,
        }


@dataclass(frozen=True)
class QueryResult(Generic[T]):
    value: T
    height: SnapshotHeight


class IndexQueries:
    """Read-only view over an EntityStore."""

    def __init__(self, store: EntityStore):
        self.store = store

    def _read(self, fn: Callable[[], T]) -> QueryResult[T]:
        before = self.store.get_checkpoint()
        for _ in range(MAX_READ_ATTEMPTS):
            value = fn()
            after = self.store.get_checkpoint()
            if (after.sequence, after.batch_hash) == (before.sequence, before.batch_hash):
                return QueryResult(value=value, height=SnapshotHeight.of(after))
            before = after
        logger.warning("Query kept racing commits; answering from the latest read")
        return QueryResult(value=value, height=SnapshotHeight.of(before))

    def snapshot_height(self) -> SnapshotHeight:
        return SnapshotHeight.of(self.store.get_checkpoint())

    def get_entity(self, kind: EntityKind | str, entity_id: str) -> QueryResult[Optional[Entity]]:
        kind = EntityKind(kind)
        return self._read(lambda: self.store.load(kind, entity_id))

    def list_active_roles(self, did: str) -> QueryResult[list[RoleGrant]]:
        """Roles the DID currently holds, ordered by role hash."""
        def read() -> list[RoleGrant]:
            grants = self.store.find(EntityKind.ROLE, did=did, granted=True)
            return sorted(grants, key=lambda g: g.role)
        return self._read(read)

    def get_authentication_history(
        self,
        did: str,
        since: Optional[int] = None,
        until: Optional[int] = None,
    ) -> QueryResult[list[Authentication]]:
        """
        Authentication attempts for a DID, newest first.

        `since` and `until` are inclusive unix-second bounds on the
        attempt timestamp.
        """
        def read() -> list[Authentication]:
            records = [
                r for r in self.store.find(EntityKind.AUTHENTICATION, did=did)
                if (since is None or r.timestamp >= since)
                and (until is None or r.timestamp <= until)
            ]
            return sorted(records, key=lambda r: (r.timestamp, r.id), reverse=True)
        return self._read(read)

    def list_documents_by_holder(self, holder: str) -> QueryResult[list[Document]]:
        holder = holder.lower()

        def read() -> list[Document]:
            docs = self.store.find(EntityKind.DOCUMENT, holder=holder)
            return sorted(docs, key=lambda d: (d.registered_at, d.id))
        return self._read(read)

    def get_trust_status(self, credential_type: str, issuer: str) -> QueryResult[Optional[TrustedIssuer]]:
        """Latest trust decision for (credential type, issuer); None if never set."""
        key = trusted_issuer_key(credential_type, issuer.lower())
        return self._read(lambda: self.store.load(EntityKind.TRUSTED_ISSUER, key))
