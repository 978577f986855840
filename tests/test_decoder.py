"""
Tests for the event decoder.

A record is decoded into exactly one typed event, or into an explicit
Unrecognized result. The decoder never raises on foreign or malformed
input.
"""

import pytest

from vaultindex.core.abi import (
    DEFAULT_ADMIN_ROLE,
    EVENT_SPECS,
    ISSUER_ROLE,
    SPECS_BY_NAME,
    ContractRole,
    encode_event,
    role_name,
)
from vaultindex.core.decoder import EventDecoder
from vaultindex.core.source import DEFAULT_CONTRACT_ADDRESSES
from vaultindex.schemas.events import DecodedEvent, EventType, Unrecognized
from vaultindex.schemas.raw import RawLog

from .scenario import ALICE, DOC_A, HOLDER, ISSUER, REQUESTER


def raw(event_name: str, address=None, block_timestamp=1_700_000_100, **args) -> RawLog:
    spec = SPECS_BY_NAME[event_name]
    topics, data = encode_event(event_name, **args)
    return RawLog(
        contract_address=address or DEFAULT_CONTRACT_ADDRESSES[spec.contract],
        topics=topics,
        data=data,
        block_number=7,
        block_hash="0x" + "ab" * 32,
        transaction_hash="0x" + "cd" * 32,
        log_index=3,
        block_timestamp=block_timestamp,
    )


@pytest.fixture
def decoder():
    return EventDecoder({addr: role for role, addr in DEFAULT_CONTRACT_ADDRESSES.items()})


class TestEventTable:
    """The fixed ABI table."""

    def test_topics_are_unique(self):
        """No two events share a topic0."""
        topics = [spec.topic0 for spec in EVENT_SPECS]
        assert len(topics) == len(set(topics))

    def test_topic0_is_keccak_of_signature(self):
        """topic0 is keccak256 of the canonical Solidity signature."""
        spec = SPECS_BY_NAME["DocumentRegistered"]
        assert spec.signature == "DocumentRegistered(bytes32,address,address,uint256)"
        assert spec.topic0.startswith("0x") and len(spec.topic0) == 66

    def test_role_names(self):
        """Well-known role hashes resolve to their names."""
        assert role_name(ISSUER_ROLE) == "ISSUER_ROLE"
        assert role_name(ISSUER_ROLE.upper().replace("0X", "0x")) == "ISSUER_ROLE"
        assert role_name(DEFAULT_ADMIN_ROLE) == "DEFAULT_ADMIN_ROLE"
        assert role_name("0x" + "ef" * 32) == "UNKNOWN_ROLE"
        assert role_name(None) == "UNKNOWN_ROLE"


class TestDecode:
    """Successful decodes."""

    def test_indexed_and_data_fields(self, decoder):
        """Indexed fields come from topics, the rest from data."""
        result = decoder.decode(raw(
            "DocumentRegistered", document_id=DOC_A, issuer=ISSUER, holder=HOLDER, timestamp=500,
        ))
        assert isinstance(result, DecodedEvent)
        assert result.event_type == EventType.DOCUMENT_REGISTERED
        assert result.payload.document_id == DOC_A
        assert result.payload.issuer == ISSUER
        assert result.payload.holder == HOLDER
        assert result.payload.timestamp == 500
        assert result.position == (7, 3)

    def test_string_fields(self, decoder):
        """Dynamic string fields decode from data."""
        result = decoder.decode(raw("RoleGranted", did=ALICE, role=ISSUER_ROLE, timestamp=42))
        assert result.event_type == EventType.ROLE_GRANTED
        assert result.payload.did == ALICE
        assert result.payload.role == ISSUER_ROLE

    def test_block_timestamp_fills_missing_timestamp(self, decoder):
        """Events that emit no timestamp take the block's."""
        result = decoder.decode(raw("DIDRegistered", did=ALICE, controller=HOLDER, block_timestamp=999))
        assert result.event_type == EventType.IDENTITY_REGISTERED
        assert result.payload.controller == HOLDER
        assert result.payload.timestamp == 999

    def test_unknown_block_timestamp_is_zero(self, decoder):
        """Without a block timestamp the timestamp is 0, not an error."""
        result = decoder.decode(raw(
            "IssuerTrustStatusUpdated",
            block_timestamp=None,
            credential_type="KYC",
            issuer=ISSUER,
            trusted=True,
        ))
        assert isinstance(result, DecodedEvent)
        assert result.payload.timestamp == 0
        assert result.payload.trusted is True

    def test_addresses_lowercased(self, decoder):
        """Checksummed input still decodes to lowercase addresses."""
        mixed = "0x" + "Ab" * 20
        result = decoder.decode(raw(
            "ConsentGranted", document_id=DOC_A, requester=mixed, timestamp=1,
        ))
        assert result.payload.requester == mixed.lower()

    def test_deterministic(self, decoder):
        """Same record in, same event out."""
        record = raw("ShareRequested", document_id=DOC_A, requester=REQUESTER, timestamp=5)
        assert decoder.decode(record) == decoder.decode(record)

    def test_without_contract_map(self):
        """With no address map, events resolve by topic alone."""
        result = EventDecoder().decode(raw(
            "IssuerRegistered", address="0x" + "99" * 20, issuer=ISSUER, timestamp=1,
        ))
        assert result.event_type == EventType.ISSUER_REGISTERED


class TestUnrecognized:
    """Everything the decoder refuses, with a reason."""

    def test_foreign_contract(self, decoder):
        result = decoder.decode(raw(
            "IssuerRegistered", address="0x" + "99" * 20, issuer=ISSUER, timestamp=1,
        ))
        assert isinstance(result, Unrecognized)
        assert result.reason == "foreign contract"

    def test_unknown_signature(self, decoder):
        record = raw("IssuerRegistered", issuer=ISSUER, timestamp=1)
        record = record.model_copy(update={"topics": ("0x" + "12" * 32,) + record.topics[1:]})
        result = decoder.decode(record)
        assert isinstance(result, Unrecognized)
        assert result.reason == "unknown event signature"

    def test_no_topics(self, decoder):
        record = raw("IssuerRegistered", issuer=ISSUER, timestamp=1).model_copy(update={"topics": ()})
        assert decoder.decode(record).reason == "no topics"

    def test_wrong_contract_role(self, decoder):
        """A DocuVault event from the DID registry address is refused."""
        record = raw(
            "IssuerRegistered",
            address=DEFAULT_CONTRACT_ADDRESSES[ContractRole.DID_REGISTRY],
            issuer=ISSUER,
            timestamp=1,
        )
        result = decoder.decode(record)
        assert isinstance(result, Unrecognized)
        assert "not emitted by" in result.reason

    def test_wrong_topic_count(self, decoder):
        record = raw("IssuerRegistered", issuer=ISSUER, timestamp=1)
        record = record.model_copy(update={"topics": record.topics[:1]})
        result = decoder.decode(record)
        assert isinstance(result, Unrecognized)
        assert result.reason.startswith("malformed IssuerRegistered")

    def test_truncated_data(self, decoder):
        record = raw("RoleGranted", did=ALICE, role=ISSUER_ROLE, timestamp=1)
        record = record.model_copy(update={"data": record.data[:40]})
        result = decoder.decode(record)
        assert isinstance(result, Unrecognized)
        assert result.reason.startswith("malformed RoleGranted")

    @pytest.mark.parametrize("word, replacement", [
        (0, 2**255),       # string offset far past the data
        (3, 2**255),       # string length that fits no index
        (4, int.from_bytes(b"\xff\xfe".ljust(32, b"\x00"), "big")),  # invalid utf-8
    ])
    def test_corrupt_data_words(self, decoder, word, replacement):
        record = raw("RoleGranted", did=ALICE, role=ISSUER_ROLE, timestamp=1)
        words = [record.data[2 + i:2 + i + 64] for i in range(0, len(record.data) - 2, 64)]
        words[word] = f"{replacement:064x}"
        result = decoder.decode(record.model_copy(update={"data": "0x" + "".join(words)}))
        assert isinstance(result, Unrecognized)
        assert result.reason.startswith("malformed RoleGranted")

    def test_retracted_record(self, decoder):
        record = raw("IssuerRegistered", issuer=ISSUER, timestamp=1).model_copy(update={"removed": True})
        assert decoder.decode(record).reason == "retracted record"

    def test_unrecognized_keeps_position(self, decoder):
        record = raw("IssuerRegistered", address="0x" + "99" * 20, issuer=ISSUER, timestamp=1)
        result = decoder.decode(record)
        assert result.position == (7, 3)
        assert result.topic0 == SPECS_BY_NAME["IssuerRegistered"].topic0
