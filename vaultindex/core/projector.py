"""
Derived-State Projector

Stateless folds over an in-memory list of decoded events, for read paths
that want a transient answer without touching the store (a client that
fetched a handful of events, a consistency check against the snapshot).

All functions are pure and safe to call concurrently. Ordering always
uses (block_number, log_index), so two events in the same block fold
deterministically. DIDs and addresses compare case-insensitively.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from .abi import role_name
from ..schemas.events import DecodedEvent, EventType

ROLE_EVENTS = (EventType.ROLE_GRANTED, EventType.ROLE_REVOKED)
AUTH_EVENTS = (EventType.AUTHENTICATION_SUCCEEDED, EventType.AUTHENTICATION_FAILED)
CONSENT_EVENTS = (EventType.CONSENT_GRANTED, EventType.CONSENT_REVOKED)


@dataclass(frozen=True)
class ActiveRole:
    role: str
    name: str
    granted_at: int
    block_number: int


@dataclass(frozen=True)
class AuthenticationAttempt:
    did: str
    role: str
    role_name: str
    timestamp: int
    successful: bool
    block_number: int
    log_index: int
    transaction_hash: str


@dataclass(frozen=True)
class DocumentHistory:
    registration: Optional[DecodedEvent]
    verifications: list[DecodedEvent]
    updates: list[DecodedEvent]


def _ascending(events: Iterable[DecodedEvent]) -> list[DecodedEvent]:
    return sorted(events, key=lambda e: e.position)


def _of_type(events: Iterable[DecodedEvent], types: tuple[EventType, ...]) -> list[DecodedEvent]:
    return [e for e in events if e.event_type in types]


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return a is not None and b is not None and a.lower() == b.lower()


# ============================================================
# Filters
# ============================================================

def filter_by_did(events: Iterable[DecodedEvent], did: str) -> list[DecodedEvent]:
    """Events whose payload names this DID (case-insensitive)."""
    return [e for e in events if _same(getattr(e.payload, "did", None), did)]


def filter_by_role(events: Iterable[DecodedEvent], role: str) -> list[DecodedEvent]:
    return [e for e in events if _same(getattr(e.payload, "role", None), role)]


def filter_by_document(events: Iterable[DecodedEvent], document_id: str) -> list[DecodedEvent]:
    def refers(e: DecodedEvent) -> bool:
        p = e.payload
        return any(
            _same(getattr(p, name, None), document_id)
            for name in ("document_id", "old_document_id", "new_document_id")
        )
    return [e for e in events if refers(e)]


def filter_documents_by_holder(events: Iterable[DecodedEvent], holder: str) -> list[DecodedEvent]:
    return [e for e in events if _same(getattr(e.payload, "holder", None), holder)]


def filter_documents_by_issuer(events: Iterable[DecodedEvent], issuer: str) -> list[DecodedEvent]:
    return [e for e in events if _same(getattr(e.payload, "issuer", None), issuer)]


def sort_by_block(events: Iterable[DecodedEvent], descending: bool = True) -> list[DecodedEvent]:
    return sorted(events, key=lambda e: e.position, reverse=descending)


def latest_event(events: Iterable[DecodedEvent]) -> Optional[DecodedEvent]:
    return max(events, key=lambda e: e.position, default=None)


# ============================================================
# Folds
# ============================================================

def active_roles(events: Iterable[DecodedEvent], did: str) -> list[ActiveRole]:
    """
    Roles currently held by a DID.

    Grants and revokes for the DID are folded oldest-first; the last
    event for each role wins.
    """
    state: dict[str, Optional[ActiveRole]] = {}
    for e in _ascending(filter_by_did(_of_type(events, ROLE_EVENTS), did)):
        role = e.payload.role
        if e.event_type == EventType.ROLE_GRANTED:
            state[role] = ActiveRole(
                role=role,
                name=role_name(role),
                granted_at=e.payload.timestamp,
                block_number=e.block_number,
            )
        else:
            state[role] = None
    return sorted((r for r in state.values() if r is not None), key=lambda r: r.role)


def authentication_history(
    events: Iterable[DecodedEvent],
    did: Optional[str] = None,
) -> list[AuthenticationAttempt]:
    """Successful and failed authentications, newest first."""
    attempts = _of_type(events, AUTH_EVENTS)
    if did is not None:
        attempts = filter_by_did(attempts, did)
    return [
        AuthenticationAttempt(
            did=e.payload.did,
            role=e.payload.role,
            role_name=role_name(e.payload.role),
            timestamp=e.payload.timestamp,
            successful=e.event_type == EventType.AUTHENTICATION_SUCCEEDED,
            block_number=e.block_number,
            log_index=e.log_index,
            transaction_hash=e.provenance.transaction_hash,
        )
        for e in sort_by_block(attempts, descending=True)
    ]


def consent_status(events: Iterable[DecodedEvent], document_id: str, requester: str) -> bool:
    """True if the latest consent event for (document, requester) is a grant."""
    relevant = [
        e for e in _of_type(events, CONSENT_EVENTS)
        if _same(e.payload.document_id, document_id) and _same(e.payload.requester, requester)
    ]
    latest = latest_event(relevant)
    return latest is not None and latest.event_type == EventType.CONSENT_GRANTED


def active_consents(events: Iterable[DecodedEvent], document_id: str) -> list[str]:
    """Requesters currently holding consent for a document."""
    state: dict[str, bool] = {}
    relevant = [
        e for e in _of_type(events, CONSENT_EVENTS)
        if _same(e.payload.document_id, document_id)
    ]
    for e in _ascending(relevant):
        state[e.payload.requester.lower()] = e.event_type == EventType.CONSENT_GRANTED
    return sorted(requester for requester, active in state.items() if active)


def document_history(events: Iterable[DecodedEvent], document_id: str) -> DocumentHistory:
    """Registration, verifications and updates of one document, oldest first."""
    events = _ascending(filter_by_document(events, document_id))
    registration = next(
        (e for e in events if e.event_type == EventType.DOCUMENT_REGISTERED),
        None,
    )
    return DocumentHistory(
        registration=registration,
        verifications=[e for e in events if e.event_type == EventType.DOCUMENT_VERIFIED],
        updates=[e for e in events if e.event_type == EventType.DOCUMENT_UPDATED],
    )
