"""
Materialized Entities

The durable, queryable snapshot produced by applying every event up to
the checkpoint. Entities are immutable values: reducers never mutate an
entity, they return a new one (model_copy(update=...)).

ID RULES (deterministic, no random ids):
- identity:             did
- role:                 did + "-" + roleHex
- credential:           credentialIdHex
- trusted_issuer:       credentialType + "-" + issuerAddress
- document:             documentIdHex
- issuer / holder:      address
- share_request:        documentIdHex + "-" + requesterAddress
- verification_request: documentIdHex + "-" + timestamp
- authentication:       did + "-" + roleHex + "-" + timestamp
- identity_holder:      did + "-" + holderAddress

Placeholders (created for forward references) have exactly the same
shape as real entities and are filled in later, never replaced.
"""

from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Default validity applied when the ledger has no document info
DEFAULT_DOCUMENT_VALIDITY_SECONDS = 31536000


class EntityKind(str, Enum):
    IDENTITY = "identity"
    ROLE = "role"
    CREDENTIAL = "credential"
    TRUSTED_ISSUER = "trusted_issuer"
    DOCUMENT = "document"
    ISSUER = "issuer"
    HOLDER = "holder"
    SHARE_REQUEST = "share_request"
    VERIFICATION_REQUEST = "verification_request"
    AUTHENTICATION = "authentication"
    IDENTITY_HOLDER = "identity_holder"


class DocumentType(str, Enum):
    GENERIC = "GENERIC"
    BIRTH_CERTIFICATE = "BIRTH_CERTIFICATE"
    DEATH_CERTIFICATE = "DEATH_CERTIFICATE"
    MARRIAGE_CERTIFICATE = "MARRIAGE_CERTIFICATE"
    ID_CARD = "ID_CARD"
    PASSPORT = "PASSPORT"
    OTHER = "OTHER"

    @classmethod
    def from_code(cls, code: int) -> "DocumentType":
        """Map the contract's uint8 document type."""
        ordered = [
            cls.GENERIC,
            cls.BIRTH_CERTIFICATE,
            cls.DEATH_CERTIFICATE,
            cls.MARRIAGE_CERTIFICATE,
            cls.ID_CARD,
            cls.PASSPORT,
        ]
        if 0 <= code < len(ordered):
            return ordered[code]
        return cls.OTHER


class ShareStatus(str, Enum):
    PENDING = "PENDING"
    GRANTED = "GRANTED"
    REJECTED = "REJECTED"


# ============================================================
# Key helpers
# ============================================================

def role_key(did: str, role: str) -> str:
    return f"{did}-{role}"


def trusted_issuer_key(credential_type: str, issuer: str) -> str:
    return f"{credential_type}-{issuer}"


def share_request_key(document_id: str, requester: str) -> str:
    return f"{document_id}-{requester}"


def verification_request_key(document_id: str, timestamp: int) -> str:
    return f"{document_id}-{timestamp}"


def authentication_key(did: str, role: str, timestamp: int) -> str:
    return f"{did}-{role}-{timestamp}"


def identity_holder_key(did: str, holder: str) -> str:
    return f"{did}-{holder}"


# ============================================================
# Entities
# ============================================================

class Entity(BaseModel):
    """Base for every materialized record."""

    model_config = ConfigDict(frozen=True)

    kind: ClassVar[EntityKind]

    id: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.kind.value, self.id)

    def to_record(self) -> dict:
        """JSON-safe dict for storage and hashing."""
        return self.model_dump(mode="json")


class Identity(Entity):
    kind: ClassVar[EntityKind] = EntityKind.IDENTITY

    did: str
    controller: str = ZERO_ADDRESS
    active: bool = True
    last_updated: int = 0
    registered_at: Optional[int] = None  # None while still a placeholder


class RoleGrant(Entity):
    kind: ClassVar[EntityKind] = EntityKind.ROLE

    did: str
    role: str
    granted: bool = False
    granted_at: Optional[int] = None
    revoked_at: Optional[int] = None


class Credential(Entity):
    kind: ClassVar[EntityKind] = EntityKind.CREDENTIAL

    credential_id: str
    credential_type: str
    subject: str
    issuer: Optional[str] = None
    issued_at: int
    verified: bool = False
    verified_at: Optional[int] = None


class TrustedIssuer(Entity):
    kind: ClassVar[EntityKind] = EntityKind.TRUSTED_ISSUER

    credential_type: str
    issuer: str
    trusted: bool
    updated_at: int


class Document(Entity):
    kind: ClassVar[EntityKind] = EntityKind.DOCUMENT

    document_id: str
    issuer: str
    holder: str
    document_type: DocumentType = DocumentType.GENERIC
    registered_at: int
    issuance_date: int
    expiration_date: int
    verified: bool = False
    expired: bool = False
    verified_by: Optional[str] = None
    verified_at: Optional[int] = None
    previous_version: Optional[str] = None


class Issuer(Entity):
    kind: ClassVar[EntityKind] = EntityKind.ISSUER

    address: str
    active: bool = True
    registered_at: int = 0
    activated_at: Optional[int] = None
    deactivated_at: Optional[int] = None


class Holder(Entity):
    kind: ClassVar[EntityKind] = EntityKind.HOLDER

    address: str


class ShareRequest(Entity):
    kind: ClassVar[EntityKind] = EntityKind.SHARE_REQUEST

    document_id: str
    requester: str
    holder: str
    status: ShareStatus
    requested_at: int
    granted_at: Optional[int] = None
    revoked_at: Optional[int] = None
    valid_until: Optional[int] = None


class VerificationRequest(Entity):
    kind: ClassVar[EntityKind] = EntityKind.VERIFICATION_REQUEST

    document_id: str
    holder: str
    requested_at: int
    verified: bool = False


class Authentication(Entity):
    """
    One authentication attempt, keyed by (did, role, timestamp).

    Not mutated by later attempts with a different key. A success and a
    failure for the same did and role within one second share the key,
    so the later of the two (by block and log index) is the one kept.
    """
    kind: ClassVar[EntityKind] = EntityKind.AUTHENTICATION

    did: str
    role: str
    timestamp: int
    successful: bool


class IdentityHolderLink(Entity):
    kind: ClassVar[EntityKind] = EntityKind.IDENTITY_HOLDER

    did: str
    holder: str


ENTITY_TYPES: dict[EntityKind, type[Entity]] = {
    cls.kind: cls
    for cls in (
        Identity,
        RoleGrant,
        Credential,
        TrustedIssuer,
        Document,
        Issuer,
        Holder,
        ShareRequest,
        VerificationRequest,
        Authentication,
        IdentityHolderLink,
    )
}


def entity_from_record(kind: EntityKind | str, record: dict) -> Entity:
    """Rebuild an entity from its stored record."""
    return ENTITY_TYPES[EntityKind(kind)].model_validate(record)
