"""
Tests for the stateless projector folds.
"""

import pytest

from vaultindex.core import projector
from vaultindex.core.abi import HOLDER_ROLE, ISSUER_ROLE, VERIFIER_ROLE
from vaultindex.core.decoder import EventDecoder
from vaultindex.core.source import InMemoryChain
from vaultindex.schemas.events import DecodedEvent, EventType

from .scenario import ALICE, BOB, DOC_A, DOC_B, HOLDER, ISSUER, REQUESTER, T0, build_lifecycle


def decode_all(chain: InMemoryChain) -> list[DecodedEvent]:
    decoder = EventDecoder(chain.contract_roles)
    decoded = [decoder.decode(log) for log in chain.get_logs(0, chain.get_block_number())]
    return [e for e in decoded if isinstance(e, DecodedEvent)]


@pytest.fixture
def events(chain):
    build_lifecycle(chain)
    return decode_all(chain)


def before(events, event_type):
    """Events strictly before the first event of a type."""
    cut = min(e.position for e in events if e.event_type == event_type)
    return [e for e in events if e.position < cut]


class TestFilters:

    def test_by_did_case_insensitive(self, events):
        assert projector.filter_by_did(events, ALICE.upper()) == projector.filter_by_did(events, ALICE)
        assert {e.event_type for e in projector.filter_by_did(events, BOB)} == {EventType.CREDENTIAL_VERIFIED}

    def test_by_role(self, events):
        assert len(projector.filter_by_role(events, ISSUER_ROLE)) == 3

    def test_by_document_includes_updates(self, events):
        types = [e.event_type for e in projector.filter_by_document(events, DOC_A)]
        assert EventType.DOCUMENT_UPDATED in types
        assert EventType.CONSENT_REVOKED in types
        assert [e.event_type for e in projector.filter_by_document(events, DOC_B)] == [
            EventType.DOCUMENT_UPDATED
        ]

    def test_documents_by_holder_and_issuer(self, events):
        assert len(projector.filter_documents_by_holder(events, HOLDER.upper().replace("0X", "0x"))) == 1
        assert len(projector.filter_documents_by_issuer(events, ISSUER)) == 4


class TestOrdering:

    def test_sort_by_block(self, events):
        descending = projector.sort_by_block(events)
        assert [e.position for e in descending] == sorted((e.position for e in events), reverse=True)
        ascending = projector.sort_by_block(reversed(events), descending=False)
        assert ascending == sorted(events, key=lambda e: e.position)

    def test_latest_event(self, events):
        assert projector.latest_event(events).event_type == EventType.CONSENT_REVOKED
        assert projector.latest_event([]) is None


class TestFolds:

    def test_active_roles(self, events):
        roles = projector.active_roles(events, ALICE)
        assert [(r.role, r.name) for r in roles] == [(VERIFIER_ROLE, "VERIFIER_ROLE")]
        assert roles[0].granted_at == T0 + 52

    def test_active_roles_before_revoke(self, events):
        roles = projector.active_roles(before(events, EventType.ROLE_REVOKED), ALICE)
        assert sorted(r.name for r in roles) == ["ISSUER_ROLE", "VERIFIER_ROLE"]

    def test_active_roles_order_independent(self, events):
        assert projector.active_roles(list(reversed(events)), ALICE) == projector.active_roles(events, ALICE)

    def test_authentication_history(self, events):
        history = projector.authentication_history(events, ALICE)
        assert [(a.role_name, a.successful) for a in history] == [
            ("HOLDER_ROLE", False),
            ("ISSUER_ROLE", True),
        ]
        assert history[0].role == HOLDER_ROLE
        assert history[0].transaction_hash.startswith("0x")
        assert projector.authentication_history(events, BOB) == []
        assert len(projector.authentication_history(events)) == 2

    def test_consent_status(self, events):
        assert projector.consent_status(events, DOC_A, REQUESTER) is False
        earlier = before(events, EventType.CONSENT_REVOKED)
        assert projector.consent_status(earlier, DOC_A, REQUESTER.upper().replace("0X", "0x")) is True
        assert projector.consent_status(events, DOC_B, REQUESTER) is False

    def test_active_consents(self, events):
        assert projector.active_consents(events, DOC_A) == []
        assert projector.active_consents(before(events, EventType.CONSENT_REVOKED), DOC_A) == [REQUESTER]

    def test_document_history(self, events):
        history = projector.document_history(events, DOC_A)
        assert history.registration.event_type == EventType.DOCUMENT_REGISTERED
        assert len(history.verifications) == 1
        assert [u.payload.new_document_id for u in history.updates] == [DOC_B]

        replacement = projector.document_history(events, DOC_B)
        assert replacement.registration is None
        assert len(replacement.updates) == 1
