"""
Event Reducers

One pure function per event type: (StateView, DecodedEvent) -> Reduction.
A reducer reads current state through the view, never writes, never
touches the network and never reads the clock. All it can do is return
the entities to upsert and any warnings about referential gaps.

The controller stages the returned upserts into the open batch, so the
next event in the same batch sees them through the same view.

REFERENTIAL GAPS:
An event that refers to something the index does not know yet (an
unknown role revoked, an unknown document verified) is not an error.
The reducer returns a warning and no upserts. Placeholders are only
created where the ledger itself allows a forward reference: identities
referenced by CredentialIssued and RoleGranted, and issuers/holders
referenced by document events.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import UnknownEventTypeError
from ..db.store import StateView
from ..schemas.entities import (
    DEFAULT_DOCUMENT_VALIDITY_SECONDS,
    ZERO_ADDRESS,
    Authentication,
    Credential,
    Document,
    DocumentType,
    Entity,
    EntityKind,
    Holder,
    Identity,
    IdentityHolderLink,
    Issuer,
    RoleGrant,
    ShareRequest,
    ShareStatus,
    TrustedIssuer,
    VerificationRequest,
    authentication_key,
    identity_holder_key,
    role_key,
    share_request_key,
    trusted_issuer_key,
    verification_request_key,
)
from ..schemas.events import Backfill, DecodedEvent, EventType

logger = logging.getLogger(__name__)


@dataclass
class Reduction:
    """What one event does to the snapshot."""
    upserts: list[Entity] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def skip(cls, warning: str) -> "Reduction":
        return cls(warnings=[warning])


Reducer = Callable[[StateView, DecodedEvent], Reduction]

REDUCERS: dict[EventType, Reducer] = {}


def reducer(*event_types: EventType):
    """Register a reducer for one or more event types."""
    def register(fn: Reducer) -> Reducer:
        for event_type in event_types:
            if event_type in REDUCERS:
                raise ValueError(f"Reducer already registered for {event_type.value}")
            REDUCERS[event_type] = fn
        return fn
    return register


def reduce_event(view: StateView, event: DecodedEvent) -> Reduction:
    """Dispatch an event to its reducer."""
    fn = REDUCERS.get(event.event_type)
    if fn is None:
        raise UnknownEventTypeError(f"No reducer for {event.event_type.value}")
    return fn(view, event)


# ============================================================
# Shared helpers
# ============================================================

def _placeholder_identity(did: str, timestamp: int) -> Identity:
    return Identity(
        id=did,
        did=did,
        controller=ZERO_ADDRESS,
        active=True,
        last_updated=timestamp,
    )


def _issuer(view: StateView, address: str) -> Issuer:
    existing = view.load(EntityKind.ISSUER, address)
    return existing if existing is not None else Issuer(id=address, address=address)


def _holder(view: StateView, address: str) -> tuple[Holder, bool]:
    """Returns (holder, created)."""
    existing = view.load(EntityKind.HOLDER, address)
    if existing is not None:
        return existing, False
    return Holder(id=address, address=address), True


def _new_document(
    document_id: str,
    issuer: str,
    holder: str,
    timestamp: int,
    backfill: Optional[Backfill],
    previous_version: Optional[str] = None,
) -> tuple[Document, list[str]]:
    """Document from ledger info when present, else one-year GENERIC defaults."""
    warnings = []
    if backfill is not None and backfill.is_present and backfill.document is not None:
        info = backfill.document
        document = Document(
            id=document_id,
            document_id=document_id,
            issuer=issuer,
            holder=holder,
            document_type=DocumentType.from_code(info.document_type),
            registered_at=timestamp,
            issuance_date=info.issuance_date,
            expiration_date=info.expiration_date,
            verified=info.verified,
            expired=info.expired,
            previous_version=previous_version,
        )
    else:
        document = Document(
            id=document_id,
            document_id=document_id,
            issuer=issuer,
            holder=holder,
            document_type=DocumentType.GENERIC,
            registered_at=timestamp,
            issuance_date=timestamp,
            expiration_date=timestamp + DEFAULT_DOCUMENT_VALIDITY_SECONDS,
            previous_version=previous_version,
        )
        warnings.append(f"No ledger info for document {document_id}; using defaults")
    return document, warnings


# ============================================================
# DidRegistry
# ============================================================

@reducer(EventType.IDENTITY_REGISTERED)
def reduce_identity_registered(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    existing = view.load(EntityKind.IDENTITY, p.did)
    fields = dict(
        controller=p.controller,
        active=True,
        last_updated=p.timestamp,
        registered_at=p.timestamp,
    )
    identity = (
        existing.model_copy(update=fields)
        if existing is not None
        else Identity(id=p.did, did=p.did, **fields)
    )
    upserts: list[Entity] = [identity]

    if view.load(EntityKind.HOLDER, p.controller) is not None:
        link_id = identity_holder_key(p.did, p.controller)
        upserts.append(IdentityHolderLink(id=link_id, did=p.did, holder=p.controller))

    return Reduction(upserts=upserts)


@reducer(EventType.IDENTITY_UPDATED)
def reduce_identity_updated(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    identity = view.load(EntityKind.IDENTITY, p.did)
    if identity is None:
        return Reduction.skip(f"Update for unknown identity {p.did}")
    return Reduction(upserts=[identity.model_copy(update={"last_updated": p.timestamp})])


@reducer(EventType.IDENTITY_DEACTIVATED)
def reduce_identity_deactivated(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    identity = view.load(EntityKind.IDENTITY, p.did)
    if identity is None:
        return Reduction.skip(f"Deactivation of unknown identity {p.did}")
    return Reduction(upserts=[
        identity.model_copy(update={"active": False, "last_updated": p.timestamp})
    ])


# ============================================================
# DidVerifier / DidIssuer
# ============================================================

@reducer(EventType.ISSUER_TRUST_STATUS_UPDATED)
def reduce_trust_status(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    entity_id = trusted_issuer_key(p.credential_type, p.issuer)
    return Reduction(upserts=[TrustedIssuer(
        id=entity_id,
        credential_type=p.credential_type,
        issuer=p.issuer,
        trusted=p.trusted,
        updated_at=p.timestamp,
    )])


@reducer(EventType.CREDENTIAL_ISSUED)
def reduce_credential_issued(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    upserts: list[Entity] = []
    if view.load(EntityKind.IDENTITY, p.subject) is None:
        upserts.append(_placeholder_identity(p.subject, p.timestamp))

    upserts.append(Credential(
        id=p.credential_id,
        credential_id=p.credential_id,
        credential_type=p.credential_type,
        subject=p.subject,
        issuer=event.provenance.transaction_from,
        issued_at=p.timestamp,
    ))
    return Reduction(upserts=upserts)


# ============================================================
# DidAuth
# ============================================================

@reducer(EventType.ROLE_GRANTED)
def reduce_role_granted(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    upserts: list[Entity] = []
    if view.load(EntityKind.IDENTITY, p.did) is None:
        upserts.append(_placeholder_identity(p.did, p.timestamp))

    entity_id = role_key(p.did, p.role)
    existing = view.load(EntityKind.ROLE, entity_id)
    grant = existing if existing is not None else RoleGrant(id=entity_id, did=p.did, role=p.role)
    upserts.append(grant.model_copy(update={
        "granted": True,
        "granted_at": p.timestamp,
        "revoked_at": None,
    }))
    return Reduction(upserts=upserts)


@reducer(EventType.ROLE_REVOKED)
def reduce_role_revoked(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    grant = view.load(EntityKind.ROLE, role_key(p.did, p.role))
    if grant is None:
        return Reduction.skip(f"Revocation of unknown role {p.role} for {p.did}")
    return Reduction(upserts=[
        grant.model_copy(update={"granted": False, "revoked_at": p.timestamp})
    ])


@reducer(EventType.AUTHENTICATION_SUCCEEDED, EventType.AUTHENTICATION_FAILED)
def reduce_authentication(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    if view.load(EntityKind.IDENTITY, p.did) is None:
        return Reduction.skip(f"Authentication attempt for unknown identity {p.did}")
    return Reduction(upserts=[Authentication(
        id=authentication_key(p.did, p.role, p.timestamp),
        did=p.did,
        role=p.role,
        timestamp=p.timestamp,
        successful=event.event_type == EventType.AUTHENTICATION_SUCCEEDED,
    )])


@reducer(EventType.CREDENTIAL_VERIFIED)
def reduce_credential_verified(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    credential = view.load(EntityKind.CREDENTIAL, p.credential_id)
    if credential is None:
        return Reduction.skip(f"Verification of unknown credential {p.credential_id}")
    return Reduction(upserts=[
        credential.model_copy(update={"verified": True, "verified_at": p.timestamp})
    ])


@reducer(EventType.CREDENTIAL_VERIFICATION_FAILED)
def reduce_credential_verification_failed(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    credential = view.load(EntityKind.CREDENTIAL, p.credential_id)
    if credential is None:
        return Reduction.skip(f"Failed verification of unknown credential {p.credential_id}")
    return Reduction(upserts=[credential.model_copy(update={"verified": False})])


# ============================================================
# DocuVault: issuers
# ============================================================

@reducer(EventType.ISSUER_REGISTERED)
def reduce_issuer_registered(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    issuer = _issuer(view, p.issuer).model_copy(update={
        "active": True,
        "registered_at": p.timestamp,
        "activated_at": p.timestamp,
    })
    return Reduction(upserts=[issuer])


@reducer(EventType.ISSUER_ACTIVATED)
def reduce_issuer_activated(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    issuer = _issuer(view, p.issuer).model_copy(update={
        "active": True,
        "activated_at": p.timestamp,
    })
    return Reduction(upserts=[issuer])


@reducer(EventType.ISSUER_DEACTIVATED)
def reduce_issuer_deactivated(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    issuer = _issuer(view, p.issuer).model_copy(update={
        "active": False,
        "deactivated_at": p.timestamp,
    })
    return Reduction(upserts=[issuer])


# ============================================================
# DocuVault: documents
# ============================================================

@reducer(EventType.DOCUMENT_REGISTERED)
def reduce_document_registered(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    upserts: list[Entity] = []
    if view.load(EntityKind.ISSUER, p.issuer) is None:
        upserts.append(Issuer(id=p.issuer, address=p.issuer))
    holder, created = _holder(view, p.holder)
    if created:
        upserts.append(holder)

    document, warnings = _new_document(
        p.document_id, p.issuer, p.holder, p.timestamp, event.backfill
    )
    upserts.append(document)
    return Reduction(upserts=upserts, warnings=warnings)


@reducer(EventType.DOCUMENT_VERIFIED)
def reduce_document_verified(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    document = view.load(EntityKind.DOCUMENT, p.document_id)
    if document is None:
        return Reduction.skip(f"Verification of unknown document {p.document_id}")
    return Reduction(upserts=[document.model_copy(update={
        "verified": True,
        "verified_at": p.timestamp,
        "verified_by": p.verifier,
    })])


@reducer(EventType.DOCUMENT_UPDATED)
def reduce_document_updated(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    old = view.load(EntityKind.DOCUMENT, p.old_document_id)
    if old is None:
        return Reduction.skip(f"Update of unknown document {p.old_document_id}")

    document, warnings = _new_document(
        p.new_document_id,
        old.issuer,
        old.holder,
        p.timestamp,
        event.backfill,
        previous_version=p.old_document_id,
    )
    return Reduction(upserts=[document], warnings=warnings)


# ============================================================
# DocuVault: sharing and consent
# ============================================================

def _document_holder(view: StateView, document_id: str) -> Optional[str]:
    """Holder of a known document, or None when either is unknown."""
    document = view.load(EntityKind.DOCUMENT, document_id)
    if document is None:
        return None
    if view.load(EntityKind.HOLDER, document.holder) is None:
        return None
    return document.holder


@reducer(EventType.SHARE_REQUESTED)
def reduce_share_requested(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    holder = _document_holder(view, p.document_id)
    if holder is None:
        return Reduction.skip(f"Share request for unknown document {p.document_id}")

    entity_id = share_request_key(p.document_id, p.requester)
    existing = view.load(EntityKind.SHARE_REQUEST, entity_id)
    if existing is not None:
        request = existing.model_copy(update={"status": ShareStatus.PENDING})
    else:
        request = ShareRequest(
            id=entity_id,
            document_id=p.document_id,
            requester=p.requester,
            holder=holder,
            status=ShareStatus.PENDING,
            requested_at=p.timestamp,
        )
    return Reduction(upserts=[request])


@reducer(EventType.CONSENT_GRANTED)
def reduce_consent_granted(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    entity_id = share_request_key(p.document_id, p.requester)
    existing = view.load(EntityKind.SHARE_REQUEST, entity_id)

    if existing is not None:
        request = existing.model_copy(update={
            "status": ShareStatus.GRANTED,
            "granted_at": p.timestamp,
        })
    else:
        holder = _document_holder(view, p.document_id)
        if holder is None:
            return Reduction.skip(f"Consent for unknown document {p.document_id}")
        request = ShareRequest(
            id=entity_id,
            document_id=p.document_id,
            requester=p.requester,
            holder=holder,
            status=ShareStatus.GRANTED,
            requested_at=p.timestamp,
            granted_at=p.timestamp,
        )

    backfill = event.backfill
    if backfill is not None and backfill.is_present and backfill.consent is not None:
        request = request.model_copy(update={"valid_until": backfill.consent.valid_until})
    return Reduction(upserts=[request])


@reducer(EventType.CONSENT_REVOKED)
def reduce_consent_revoked(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    existing = view.load(EntityKind.SHARE_REQUEST, share_request_key(p.document_id, p.requester))
    if existing is None:
        return Reduction.skip(
            f"Revocation of unknown consent {p.document_id} for {p.requester}"
        )
    return Reduction(upserts=[existing.model_copy(update={
        "status": ShareStatus.REJECTED,
        "revoked_at": p.timestamp,
        "valid_until": 0,
    })])


@reducer(EventType.DOCUMENT_SHARED)
def reduce_document_shared(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    entity_id = share_request_key(p.document_id, p.requester)
    if view.load(EntityKind.SHARE_REQUEST, entity_id) is not None:
        return Reduction()

    holder = _document_holder(view, p.document_id)
    if holder is None:
        return Reduction.skip(f"Share of unknown document {p.document_id}")
    return Reduction(upserts=[ShareRequest(
        id=entity_id,
        document_id=p.document_id,
        requester=p.requester,
        holder=holder,
        status=ShareStatus.GRANTED,
        requested_at=p.timestamp,
        granted_at=p.timestamp,
    )])


@reducer(EventType.VERIFICATION_REQUESTED)
def reduce_verification_requested(view: StateView, event: DecodedEvent) -> Reduction:
    p = event.payload
    if view.load(EntityKind.DOCUMENT, p.document_id) is None:
        return Reduction.skip(f"Verification request for unknown document {p.document_id}")

    upserts: list[Entity] = []
    holder, created = _holder(view, p.holder)
    if created:
        upserts.append(holder)
    upserts.append(VerificationRequest(
        id=verification_request_key(p.document_id, p.timestamp),
        document_id=p.document_id,
        holder=p.holder,
        requested_at=p.timestamp,
    ))
    return Reduction(upserts=upserts)


def apply_events(view, events) -> list[str]:
    """
    Reduce events in order against a batch context, staging every upsert.

    `view` must offer load() and upsert() (a BatchContext). Returns all
    warnings, which are also logged.
    """
    warnings: list[str] = []
    for event in events:
        reduction = reduce_event(view, event)
        for entity in reduction.upserts:
            view.upsert(entity)
        for warning in reduction.warnings:
            logger.warning(f"{warning} (block {event.block_number}, log {event.log_index})")
        warnings.extend(reduction.warnings)
    return warnings
