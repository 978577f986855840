"""
Event Decoder

Turns one RawLog into one DecodedEvent, or into an explicit Unrecognized
result. Pure: no network, no store, no clock. Same record in, same
result out.

DECODE RULES:
1. Retracted records are not decoded (the reorg handler owns them)
2. If a contract map is configured, the address must be in it
3. topic0 must match a known event signature
4. The event must belong to the contract role the address maps to
5. Topic count must be exactly 1 + number of indexed inputs
6. data must ABI-decode against the non-indexed inputs
7. Events without an emitted timestamp take the block timestamp (0 if unknown)

Any failure of rules 2-6 yields Unrecognized with a reason. decode()
never raises for malformed or foreign input.
"""

import logging
from typing import Any, Optional

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from pydantic import ValidationError as PydanticValidationError

from .abi import ContractRole, EventSpec, SPECS_BY_TOPIC, decode_topic, to_hex32
from ..schemas.events import DecodedEvent, DecodeResult, Provenance, Unrecognized
from ..schemas.raw import RawLog

logger = logging.getLogger(__name__)


class EventDecoder:
    """
    Closed, table-driven decoder for the DocuVault / DID event set.

    Usage:
        decoder = EventDecoder({"0xabc...": ContractRole.DOCU_VAULT})
        result = decoder.decode(raw)
        if isinstance(result, Unrecognized):
            ...
    """

    def __init__(self, contract_roles: Optional[dict[str, ContractRole]] = None):
        """
        Args:
            contract_roles: address -> contract role. When None, any address
                is accepted and events are resolved by topic0 alone.
        """
        self._roles = (
            {addr.lower(): ContractRole(role) for addr, role in contract_roles.items()}
            if contract_roles
            else None
        )

    @property
    def addresses(self) -> list[str]:
        return sorted(self._roles) if self._roles else []

    def decode(self, raw: RawLog) -> DecodeResult:
        if raw.removed:
            return self._unrecognized(raw, "retracted record")

        role = None
        if self._roles is not None:
            role = self._roles.get(raw.contract_address)
            if role is None:
                return self._unrecognized(raw, "foreign contract")

        if not raw.topics:
            return self._unrecognized(raw, "no topics")

        spec = SPECS_BY_TOPIC.get(raw.topic0)
        if spec is None:
            return self._unrecognized(raw, "unknown event signature")

        if role is not None and spec.contract != role:
            return self._unrecognized(
                raw, f"{spec.name} is not emitted by {role.value}"
            )

        try:
            values = self._decode_values(spec, raw)
            if spec.timestamp_from_block:
                values["timestamp"] = raw.block_timestamp or 0
            payload = spec.payload_model(**values)
        except (DecodingError, ValueError, TypeError, OverflowError, PydanticValidationError) as e:
            logger.debug(f"Malformed {spec.name} at {raw.block_number}:{raw.log_index}: {e}")
            return self._unrecognized(raw, f"malformed {spec.name}: {e}")

        return DecodedEvent(
            event_type=spec.event_type,
            provenance=Provenance(
                contract_address=raw.contract_address,
                block_number=raw.block_number,
                block_hash=raw.block_hash,
                transaction_hash=raw.transaction_hash,
                log_index=raw.log_index,
                block_timestamp=raw.block_timestamp,
                transaction_from=raw.transaction_from,
            ),
            payload=payload,
        )

    def _decode_values(self, spec: EventSpec, raw: RawLog) -> dict[str, Any]:
        indexed = spec.indexed_inputs
        if len(raw.topics) != 1 + len(indexed):
            raise ValueError(
                f"expected {1 + len(indexed)} topics, got {len(raw.topics)}"
            )

        values: dict[str, Any] = {}
        for item, topic in zip(indexed, raw.topics[1:]):
            values[item.name] = decode_topic(item.abi_type, bytes(HexBytes(topic)))

        data_inputs = spec.data_inputs
        if data_inputs:
            decoded = abi_decode(
                [i.abi_type for i in data_inputs],
                bytes(HexBytes(raw.data)),
            )
            for item, value in zip(data_inputs, decoded):
                values[item.name] = self._normalize(item.abi_type, value)

        return values

    @staticmethod
    def _normalize(abi_type: str, value: Any) -> Any:
        if abi_type == "address":
            return value.lower()
        if abi_type == "bytes32":
            return to_hex32(value)
        return value

    @staticmethod
    def _unrecognized(raw: RawLog, reason: str) -> Unrecognized:
        return Unrecognized(
            reason=reason,
            contract_address=raw.contract_address,
            block_number=raw.block_number,
            log_index=raw.log_index,
            topic0=raw.topic0,
        )
