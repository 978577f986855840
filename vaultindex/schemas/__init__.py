# Schemas for the DocuVault index
# Raw records in, typed events through, entities out.

from .raw import RawLog
from .events import (
    EventType,
    DecodedEvent,
    DecodeResult,
    Unrecognized,
    Provenance,
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
    Backfill,
    BackfillStatus,
    DocumentInfo,
    ConsentInfo,
)
from .entities import (
    ZERO_ADDRESS,
    Entity,
    EntityKind,
    Identity,
    RoleGrant,
    Credential,
    TrustedIssuer,
    Document,
    DocumentType,
    Issuer,
    Holder,
    ShareRequest,
    ShareStatus,
    VerificationRequest,
    Authentication,
    IdentityHolderLink,
    entity_from_record,
)

__all__ = [
    # Raw
    "RawLog",
    # Events
    "EventType",
    "DecodedEvent",
    "DecodeResult",
    "Unrecognized",
    "Provenance",
    "IdentityPayload",
    "RolePayload",
    "CredentialCheckPayload",
    "CredentialIssuedPayload",
    "TrustStatusPayload",
    "IssuerPayload",
    "DocumentRegisteredPayload",
    "DocumentVerifiedPayload",
    "DocumentUpdatedPayload",
    "ConsentPayload",
    "VerificationRequestedPayload",
    # Backfill
    "Backfill",
    "BackfillStatus",
    "DocumentInfo",
    "ConsentInfo",
    # Entities
    "ZERO_ADDRESS",
    "Entity",
    "EntityKind",
    "Identity",
    "RoleGrant",
    "Credential",
    "TrustedIssuer",
    "Document",
    "DocumentType",
    "Issuer",
    "Holder",
    "ShareRequest",
    "ShareStatus",
    "VerificationRequest",
    "Authentication",
    "IdentityHolderLink",
    "entity_from_record",
]
