"""
Ledger State Backfill

Some entity fields are not in the event at all: a document's type,
issuance/expiration dates and verified/expired flags, and a consent's
valid-until. They are read from the DocuVault contract at the event's
block and attached to the event before reduction, so reducers stay pure.

Every read has one of three outcomes:
- PRESENT: the contract answered
- ABSENT:  the contract reverted (no such document / consent). Normal;
           reducers fall back to defaults.
- FAILED:  the read itself failed (timeout, connection). Transient; the
           whole cycle aborts before commit and is retried, so a flaky
           node never turns into silently defaulted documents.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, Web3Exception

from .errors import BackfillUnavailableError
from ..schemas.events import (
    Backfill,
    BackfillStatus,
    ConsentInfo,
    DecodedEvent,
    DocumentInfo,
    EventType,
)

logger = logging.getLogger(__name__)


DOCU_VAULT_READ_ABI = [
    {
        "name": "getDocumentInfo",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "documentId", "type": "bytes32"}],
        "outputs": [
            {"name": "isVerified", "type": "bool"},
            {"name": "isExpired", "type": "bool"},
            {"name": "issuer", "type": "address"},
            {"name": "holder", "type": "address"},
            {"name": "issuanceDate", "type": "uint256"},
            {"name": "expirationDate", "type": "uint256"},
            {"name": "documentType", "type": "uint8"},
        ],
    },
    {
        "name": "getConsentStatus",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "documentId", "type": "bytes32"},
            {"name": "requester", "type": "address"},
        ],
        "outputs": [
            {"name": "consentStatus", "type": "uint8"},
            {"name": "validUntil", "type": "uint256"},
        ],
    },
]


class ContractReader(ABC):
    """Point-in-time reads of DocuVault state."""

    @abstractmethod
    def get_document_info(self, document_id: str, block_number: int) -> Backfill:
        pass

    @abstractmethod
    def get_consent_status(self, document_id: str, requester: str, block_number: int) -> Backfill:
        pass


class StaticContractReader(ContractReader):
    """
    Dictionary-backed reader for tests and local chains.

    Anything not registered is ABSENT. fail_next() makes the next N reads
    FAILED, to exercise the transient path.
    """

    def __init__(self):
        self.documents: dict[str, DocumentInfo] = {}
        self.consents: dict[tuple[str, str], ConsentInfo] = {}
        self._failures_left = 0
        self.calls = 0

    def set_document(self, document_id: str, info: DocumentInfo) -> None:
        self.documents[document_id.lower()] = info

    def set_consent(self, document_id: str, requester: str, info: ConsentInfo) -> None:
        self.consents[(document_id.lower(), requester.lower())] = info

    def fail_next(self, count: int = 1) -> None:
        self._failures_left = count

    def _should_fail(self) -> bool:
        self.calls += 1
        if self._failures_left > 0:
            self._failures_left -= 1
            return True
        return False

    def get_document_info(self, document_id: str, block_number: int) -> Backfill:
        if self._should_fail():
            return Backfill.failed("injected failure")
        info = self.documents.get(document_id.lower())
        if info is None:
            return Backfill.absent()
        return Backfill(status=BackfillStatus.PRESENT, document=info)

    def get_consent_status(self, document_id: str, requester: str, block_number: int) -> Backfill:
        if self._should_fail():
            return Backfill.failed("injected failure")
        info = self.consents.get((document_id.lower(), requester.lower()))
        if info is None:
            return Backfill.absent()
        return Backfill(status=BackfillStatus.PRESENT, consent=info)


class Web3ContractReader(ContractReader):
    """
    Reads DocuVault view functions over JSON-RPC at a given block.

    A revert (ContractLogicError) or an empty return is ABSENT; transport
    and node errors are FAILED.
    """

    def __init__(self, w3: Web3, docu_vault_address: str):
        self._contract = w3.eth.contract(
            address=Web3.to_checksum_address(docu_vault_address),
            abi=DOCU_VAULT_READ_ABI,
        )

    def _call(self, fn: Any, block_number: int) -> tuple[Optional[Any], Optional[Backfill]]:
        try:
            return fn.call(block_identifier=block_number), None
        except (ContractLogicError, BadFunctionCallOutput):
            return None, Backfill.absent()
        except (OSError, ValueError, Web3Exception) as e:
            logger.warning(f"Ledger read failed at block {block_number}: {e}")
            return None, Backfill.failed(str(e))

    def get_document_info(self, document_id: str, block_number: int) -> Backfill:
        fn = self._contract.functions.getDocumentInfo(bytes(HexBytes(document_id)))
        result, outcome = self._call(fn, block_number)
        if outcome is not None:
            return outcome
        verified, expired, issuer, holder, issuance, expiration, doc_type = result
        return Backfill(
            status=BackfillStatus.PRESENT,
            document=DocumentInfo(
                verified=verified,
                expired=expired,
                issuer=issuer.lower(),
                holder=holder.lower(),
                issuance_date=issuance,
                expiration_date=expiration,
                document_type=doc_type,
            ),
        )

    def get_consent_status(self, document_id: str, requester: str, block_number: int) -> Backfill:
        fn = self._contract.functions.getConsentStatus(
            bytes(HexBytes(document_id)),
            Web3.to_checksum_address(requester),
        )
        result, outcome = self._call(fn, block_number)
        if outcome is not None:
            return outcome
        status, valid_until = result
        return Backfill(
            status=BackfillStatus.PRESENT,
            consent=ConsentInfo(status=status, valid_until=valid_until),
        )


def needs_backfill(event: DecodedEvent) -> bool:
    return event.event_type in (
        EventType.DOCUMENT_REGISTERED,
        EventType.DOCUMENT_UPDATED,
        EventType.CONSENT_GRANTED,
    )


def backfill_event(event: DecodedEvent, reader: ContractReader) -> Backfill:
    """Read the ledger state one event needs."""
    p = event.payload
    block = event.block_number
    if event.event_type == EventType.DOCUMENT_REGISTERED:
        return reader.get_document_info(p.document_id, block)
    if event.event_type == EventType.DOCUMENT_UPDATED:
        return reader.get_document_info(p.new_document_id, block)
    if event.event_type == EventType.CONSENT_GRANTED:
        return reader.get_consent_status(p.document_id, p.requester, block)
    raise ValueError(f"{event.event_type.value} carries no ledger backfill")


def enrich(events: Iterable[DecodedEvent], reader: Optional[ContractReader]) -> list[DecodedEvent]:
    """
    Attach backfills to the events that need them.

    Without a reader every backfill is ABSENT.

    Raises:
        BackfillUnavailableError: if any read FAILED
    """
    enriched = []
    for event in events:
        if not needs_backfill(event):
            enriched.append(event)
            continue
        backfill = backfill_event(event, reader) if reader is not None else Backfill.absent()
        if backfill.status == BackfillStatus.FAILED:
            raise BackfillUnavailableError(
                f"Ledger read for {event.event_type.value} at "
                f"{event.block_number}:{event.log_index} failed: {backfill.error}"
            )
        enriched.append(event.with_backfill(backfill))
    return enriched
