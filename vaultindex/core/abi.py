"""
Contract Event ABI

The fixed table of events emitted by the DocuVault / DID contracts, with
the exact Solidity signatures the contracts were compiled from. topic0
of every log is keccak256(signature), computed here with web3.

LAYOUT RULES:
- Indexed value types (address, bytes32, uint256) live in topics[1:]
  in declaration order, one 32-byte word each
- Non-indexed values are ABI-encoded together in data
- Indexed dynamic types would only leave a hash in the topic; none of
  the events we decode rely on one

Also holds the well-known AccessControl role hashes and their names.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from eth_abi import encode as abi_encode
from hexbytes import HexBytes
from web3 import Web3

from ..schemas.events import (
    EventType,
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
)


class ContractRole(str, Enum):
    """Which deployed contract a log came from."""
    DOCU_VAULT = "DocuVault"
    DID_REGISTRY = "DidRegistry"
    DID_VERIFIER = "DidVerifier"
    DID_ISSUER = "DidIssuer"
    DID_AUTH = "DidAuth"


@dataclass(frozen=True)
class EventInput:
    name: str
    abi_type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSpec:
    """One Solidity event and how it maps onto an EventType."""
    event_type: EventType
    name: str
    contract: ContractRole
    inputs: tuple[EventInput, ...]
    payload_model: type
    timestamp_from_block: bool = False
    topic0: str = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "topic0", Web3.to_hex(Web3.keccak(text=self.signature)))

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.abi_type for i in self.inputs)})"

    @property
    def indexed_inputs(self) -> tuple[EventInput, ...]:
        return tuple(i for i in self.inputs if i.indexed)

    @property
    def data_inputs(self) -> tuple[EventInput, ...]:
        return tuple(i for i in self.inputs if not i.indexed)


def _i(name: str, abi_type: str) -> EventInput:
    return EventInput(name, abi_type, indexed=True)


def _d(name: str, abi_type: str) -> EventInput:
    return EventInput(name, abi_type)


# ============================================================
# EVENT TABLE
# ============================================================

EVENT_SPECS: tuple[EventSpec, ...] = (
    # DidRegistry
    EventSpec(
        EventType.IDENTITY_REGISTERED, "DIDRegistered", ContractRole.DID_REGISTRY,
        (_d("did", "string"), _i("controller", "address")),
        IdentityPayload, timestamp_from_block=True,
    ),
    EventSpec(
        EventType.IDENTITY_UPDATED, "DIDUpdated", ContractRole.DID_REGISTRY,
        (_d("did", "string"), _i("timestamp", "uint256")),
        IdentityPayload,
    ),
    EventSpec(
        EventType.IDENTITY_DEACTIVATED, "DIDDeactivated", ContractRole.DID_REGISTRY,
        (_d("did", "string"), _i("timestamp", "uint256")),
        IdentityPayload,
    ),
    # DidVerifier
    EventSpec(
        EventType.ISSUER_TRUST_STATUS_UPDATED, "IssuerTrustStatusUpdated", ContractRole.DID_VERIFIER,
        (_d("credential_type", "string"), _d("issuer", "address"), _d("trusted", "bool")),
        TrustStatusPayload, timestamp_from_block=True,
    ),
    # DidIssuer
    EventSpec(
        EventType.CREDENTIAL_ISSUED, "CredentialIssued", ContractRole.DID_ISSUER,
        (
            _d("credential_type", "string"),
            _d("subject", "string"),
            _d("credential_id", "bytes32"),
            _d("timestamp", "uint256"),
        ),
        CredentialIssuedPayload,
    ),
    # DidAuth
    EventSpec(
        EventType.ROLE_GRANTED, "RoleGranted", ContractRole.DID_AUTH,
        (_d("did", "string"), _d("role", "bytes32"), _d("timestamp", "uint256")),
        RolePayload,
    ),
    EventSpec(
        EventType.ROLE_REVOKED, "RoleRevoked", ContractRole.DID_AUTH,
        (_d("did", "string"), _d("role", "bytes32"), _d("timestamp", "uint256")),
        RolePayload,
    ),
    EventSpec(
        EventType.AUTHENTICATION_SUCCEEDED, "AuthenticationSuccessful", ContractRole.DID_AUTH,
        (_d("did", "string"), _d("role", "bytes32"), _d("timestamp", "uint256")),
        RolePayload,
    ),
    EventSpec(
        EventType.AUTHENTICATION_FAILED, "AuthenticationFailed", ContractRole.DID_AUTH,
        (_d("did", "string"), _d("role", "bytes32"), _d("timestamp", "uint256")),
        RolePayload,
    ),
    EventSpec(
        EventType.CREDENTIAL_VERIFIED, "CredentialVerified", ContractRole.DID_AUTH,
        (
            _d("did", "string"),
            _d("credential_type", "string"),
            _d("credential_id", "bytes32"),
            _d("timestamp", "uint256"),
        ),
        CredentialCheckPayload,
    ),
    EventSpec(
        EventType.CREDENTIAL_VERIFICATION_FAILED, "CredentialVerificationFailed", ContractRole.DID_AUTH,
        (
            _d("did", "string"),
            _d("credential_type", "string"),
            _d("credential_id", "bytes32"),
            _d("timestamp", "uint256"),
        ),
        CredentialCheckPayload,
    ),
    # DocuVault
    EventSpec(
        EventType.ISSUER_REGISTERED, "IssuerRegistered", ContractRole.DOCU_VAULT,
        (_i("issuer", "address"), _d("timestamp", "uint256")),
        IssuerPayload,
    ),
    EventSpec(
        EventType.ISSUER_ACTIVATED, "IssuerActivated", ContractRole.DOCU_VAULT,
        (_i("issuer", "address"), _d("timestamp", "uint256")),
        IssuerPayload,
    ),
    EventSpec(
        EventType.ISSUER_DEACTIVATED, "IssuerDeactivated", ContractRole.DOCU_VAULT,
        (_i("issuer", "address"), _d("timestamp", "uint256")),
        IssuerPayload,
    ),
    EventSpec(
        EventType.DOCUMENT_REGISTERED, "DocumentRegistered", ContractRole.DOCU_VAULT,
        (
            _i("document_id", "bytes32"),
            _i("issuer", "address"),
            _i("holder", "address"),
            _d("timestamp", "uint256"),
        ),
        DocumentRegisteredPayload,
    ),
    EventSpec(
        EventType.DOCUMENT_VERIFIED, "DocumentVerified", ContractRole.DOCU_VAULT,
        (_i("document_id", "bytes32"), _i("verifier", "address"), _d("timestamp", "uint256")),
        DocumentVerifiedPayload,
    ),
    EventSpec(
        EventType.DOCUMENT_UPDATED, "DocumentUpdated", ContractRole.DOCU_VAULT,
        (
            _i("old_document_id", "bytes32"),
            _i("new_document_id", "bytes32"),
            _i("issuer", "address"),
            _d("timestamp", "uint256"),
        ),
        DocumentUpdatedPayload,
    ),
    # The contract names this parameter "holder"; it is the party the
    # document was shared with, i.e. the requester.
    EventSpec(
        EventType.DOCUMENT_SHARED, "DocumentShared", ContractRole.DOCU_VAULT,
        (_i("document_id", "bytes32"), _i("requester", "address"), _d("timestamp", "uint256")),
        ConsentPayload,
    ),
    EventSpec(
        EventType.SHARE_REQUESTED, "ShareRequested", ContractRole.DOCU_VAULT,
        (_i("document_id", "bytes32"), _i("requester", "address"), _d("timestamp", "uint256")),
        ConsentPayload,
    ),
    EventSpec(
        EventType.CONSENT_GRANTED, "ConsentGranted", ContractRole.DOCU_VAULT,
        (_i("document_id", "bytes32"), _i("requester", "address"), _d("timestamp", "uint256")),
        ConsentPayload,
    ),
    EventSpec(
        EventType.CONSENT_REVOKED, "ConsentRevoked", ContractRole.DOCU_VAULT,
        (_i("document_id", "bytes32"), _i("requester", "address"), _d("timestamp", "uint256")),
        ConsentPayload,
    ),
    EventSpec(
        EventType.VERIFICATION_REQUESTED, "VerificationRequested", ContractRole.DOCU_VAULT,
        (_i("document_id", "bytes32"), _i("holder", "address"), _d("timestamp", "uint256")),
        VerificationRequestedPayload,
    ),
)

SPECS_BY_TOPIC: dict[str, EventSpec] = {spec.topic0: spec for spec in EVENT_SPECS}
SPECS_BY_NAME: dict[str, EventSpec] = {spec.name: spec for spec in EVENT_SPECS}
SPECS_BY_TYPE: dict[EventType, EventSpec] = {spec.event_type: spec for spec in EVENT_SPECS}


# ============================================================
# WORD CODEC
# ============================================================

def to_hex32(value: bytes) -> str:
    """bytes32 -> lowercase 0x hex."""
    return "0x" + bytes(value).hex()


def normalize_address(value: str) -> str:
    return value.lower()


def decode_topic(abi_type: str, topic: bytes) -> Any:
    """Decode a single indexed value-type word."""
    if len(topic) != 32:
        raise ValueError(f"topic must be 32 bytes, got {len(topic)}")
    if abi_type == "address":
        return "0x" + topic[-20:].hex()
    if abi_type == "bytes32":
        return to_hex32(topic)
    if abi_type == "uint256":
        return int.from_bytes(topic, "big")
    if abi_type == "bool":
        return topic[-1] == 1
    raise ValueError(f"unsupported indexed type {abi_type}")


def encode_topic(abi_type: str, value: Any) -> str:
    """Encode a single indexed value-type word."""
    if abi_type == "address":
        return "0x" + bytes(HexBytes(value)).rjust(32, b"\0").hex()
    if abi_type == "bytes32":
        raw = bytes(HexBytes(value))
        if len(raw) != 32:
            raise ValueError(f"bytes32 topic must be 32 bytes, got {len(raw)}")
        return "0x" + raw.hex()
    if abi_type == "uint256":
        return "0x" + int(value).to_bytes(32, "big").hex()
    if abi_type == "bool":
        return "0x" + int(bool(value)).to_bytes(32, "big").hex()
    raise ValueError(f"unsupported indexed type {abi_type}")


def _abi_value(abi_type: str, value: Any) -> Any:
    if abi_type == "bytes32":
        return bytes(HexBytes(value))
    if abi_type == "address":
        return Web3.to_checksum_address(value)
    return value


def encode_event(name: str, **args: Any) -> tuple[tuple[str, ...], str]:
    """
    Build (topics, data) for a known event, exactly as the contract
    would emit it.

    Usage:
        topics, data = encode_event(
            "RoleGranted", did="did:x:1", role=ISSUER_ROLE, timestamp=100,
        )
    """
    spec = SPECS_BY_NAME[name]
    topics = [spec.topic0]
    for item in spec.indexed_inputs:
        topics.append(encode_topic(item.abi_type, args[item.name]))

    data_inputs = spec.data_inputs
    data = abi_encode(
        [i.abi_type for i in data_inputs],
        [_abi_value(i.abi_type, args[i.name]) for i in data_inputs],
    )
    return tuple(topics), "0x" + data.hex()


# ============================================================
# ROLES
# ============================================================

def _role_hash(name: str) -> str:
    """keccak256(name), as AccessControl declares roles."""
    return Web3.to_hex(Web3.keccak(text=name))


DEFAULT_ADMIN_ROLE = "0x" + "00" * 32
ADMIN_ROLE = _role_hash("ADMIN_ROLE")
OPERATOR_ROLE = _role_hash("OPERATOR_ROLE")
ISSUER_ROLE = _role_hash("ISSUER_ROLE")
VERIFIER_ROLE = _role_hash("VERIFIER_ROLE")
HOLDER_ROLE = _role_hash("HOLDER_ROLE")

ROLE_NAMES: dict[str, str] = {
    DEFAULT_ADMIN_ROLE: "DEFAULT_ADMIN_ROLE",
    ADMIN_ROLE: "ADMIN_ROLE",
    OPERATOR_ROLE: "OPERATOR_ROLE",
    ISSUER_ROLE: "ISSUER_ROLE",
    VERIFIER_ROLE: "VERIFIER_ROLE",
    HOLDER_ROLE: "HOLDER_ROLE",
}


def role_name(role: Optional[str]) -> str:
    """Human name for a role hash, UNKNOWN_ROLE if it isn't a known one."""
    if not role:
        return "UNKNOWN_ROLE"
    return ROLE_NAMES.get(role.lower(), "UNKNOWN_ROLE")
