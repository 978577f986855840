"""
Decoded Event Schema

The contracts emit an untyped log. The decoder turns each record into
exactly one of the variants below, or into Unrecognized. Reducers only
ever see these types.

Each decoded event:
- Names its type (EventType)
- Carries a typed payload with the event's own fields
- Carries its provenance (where in the chain it came from)
- May carry a ledger-state backfill attached before reduction
"""

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict


class EventType(str, Enum):
    """
    All event types the indexer understands.
    You can add more later, never remove.
    """
    # DidRegistry
    IDENTITY_REGISTERED = "IDENTITY_REGISTERED"
    IDENTITY_UPDATED = "IDENTITY_UPDATED"
    IDENTITY_DEACTIVATED = "IDENTITY_DEACTIVATED"

    # DidVerifier / DidIssuer
    ISSUER_TRUST_STATUS_UPDATED = "ISSUER_TRUST_STATUS_UPDATED"
    CREDENTIAL_ISSUED = "CREDENTIAL_ISSUED"

    # DidAuth
    ROLE_GRANTED = "ROLE_GRANTED"
    ROLE_REVOKED = "ROLE_REVOKED"
    AUTHENTICATION_SUCCEEDED = "AUTHENTICATION_SUCCEEDED"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    CREDENTIAL_VERIFIED = "CREDENTIAL_VERIFIED"
    CREDENTIAL_VERIFICATION_FAILED = "CREDENTIAL_VERIFICATION_FAILED"

    # DocuVault
    ISSUER_REGISTERED = "ISSUER_REGISTERED"
    ISSUER_ACTIVATED = "ISSUER_ACTIVATED"
    ISSUER_DEACTIVATED = "ISSUER_DEACTIVATED"
    DOCUMENT_REGISTERED = "DOCUMENT_REGISTERED"
    DOCUMENT_VERIFIED = "DOCUMENT_VERIFIED"
    DOCUMENT_UPDATED = "DOCUMENT_UPDATED"
    DOCUMENT_SHARED = "DOCUMENT_SHARED"
    SHARE_REQUESTED = "SHARE_REQUESTED"
    CONSENT_GRANTED = "CONSENT_GRANTED"
    CONSENT_REVOKED = "CONSENT_REVOKED"
    VERIFICATION_REQUESTED = "VERIFICATION_REQUESTED"


# ============================================================
# Event Payloads
# ============================================================

class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True)


class IdentityPayload(_Payload):
    """IDENTITY_REGISTERED / IDENTITY_UPDATED / IDENTITY_DEACTIVATED."""
    did: str
    controller: Optional[str] = None  # registration only
    timestamp: int = 0


class RolePayload(_Payload):
    """ROLE_GRANTED / ROLE_REVOKED / AUTHENTICATION_*."""
    did: str
    role: str
    timestamp: int


class CredentialCheckPayload(_Payload):
    """CREDENTIAL_VERIFIED / CREDENTIAL_VERIFICATION_FAILED."""
    did: str
    credential_type: str
    credential_id: str
    timestamp: int


class CredentialIssuedPayload(_Payload):
    credential_type: str
    subject: str
    credential_id: str
    timestamp: int


class TrustStatusPayload(_Payload):
    credential_type: str
    issuer: str
    trusted: bool
    timestamp: int = 0  # block timestamp; the event carries none


class IssuerPayload(_Payload):
    """ISSUER_REGISTERED / ISSUER_ACTIVATED / ISSUER_DEACTIVATED."""
    issuer: str
    timestamp: int


class DocumentRegisteredPayload(_Payload):
    document_id: str
    issuer: str
    holder: str
    timestamp: int


class DocumentVerifiedPayload(_Payload):
    document_id: str
    verifier: str
    timestamp: int


class DocumentUpdatedPayload(_Payload):
    old_document_id: str
    new_document_id: str
    issuer: str
    timestamp: int


class ConsentPayload(_Payload):
    """SHARE_REQUESTED / CONSENT_GRANTED / CONSENT_REVOKED / DOCUMENT_SHARED."""
    document_id: str
    requester: str
    timestamp: int
    valid_until: Optional[int] = None


class VerificationRequestedPayload(_Payload):
    document_id: str
    holder: str
    timestamp: int


EventPayload = Union[
    IdentityPayload,
    RolePayload,
    CredentialCheckPayload,
    CredentialIssuedPayload,
    TrustStatusPayload,
    IssuerPayload,
    DocumentRegisteredPayload,
    DocumentVerifiedPayload,
    DocumentUpdatedPayload,
    ConsentPayload,
    VerificationRequestedPayload,
]


# ============================================================
# Ledger-state backfill
# Fields the event alone does not carry, read from the contract
# at the event's block. Only ABSENT is a normal "no data" outcome.
# ============================================================

class BackfillStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    FAILED = "failed"


class DocumentInfo(_Payload):
    """DocuVault.getDocumentInfo() at a given block."""
    verified: bool
    expired: bool
    issuer: str
    holder: str
    issuance_date: int
    expiration_date: int
    document_type: int


class ConsentInfo(_Payload):
    """DocuVault.getConsentStatus() at a given block."""
    status: int
    valid_until: int


class Backfill(_Payload):
    status: BackfillStatus
    document: Optional[DocumentInfo] = None
    consent: Optional[ConsentInfo] = None
    error: Optional[str] = None

    @classmethod
    def absent(cls) -> "Backfill":
        return cls(status=BackfillStatus.ABSENT)

    @classmethod
    def failed(cls, error: str) -> "Backfill":
        return cls(status=BackfillStatus.FAILED, error=error)

    @property
    def is_present(self) -> bool:
        return self.status == BackfillStatus.PRESENT


# ============================================================
# Envelopes
# ============================================================

class Provenance(_Payload):
    """Where an event sits in the chain."""
    contract_address: str
    block_number: int
    block_hash: str
    transaction_hash: str
    log_index: int
    block_timestamp: Optional[int] = None
    transaction_from: Optional[str] = None

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


class DecodedEvent(_Payload):
    """A typed domain event. Same raw record, same DecodedEvent. Always."""
    event_type: EventType
    provenance: Provenance
    payload: EventPayload
    backfill: Optional[Backfill] = None

    @property
    def position(self) -> tuple[int, int]:
        return self.provenance.position

    @property
    def block_number(self) -> int:
        return self.provenance.block_number

    @property
    def log_index(self) -> int:
        return self.provenance.log_index

    def with_backfill(self, backfill: Backfill) -> "DecodedEvent":
        return self.model_copy(update={"backfill": backfill})


class Unrecognized(_Payload):
    """A record the decoder could not (or would not) interpret."""
    reason: str
    contract_address: str
    block_number: int
    log_index: int
    topic0: Optional[str] = None

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


DecodeResult = Union[DecodedEvent, Unrecognized]
