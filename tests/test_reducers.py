"""
Tests for the event reducers.

Reducers are pure: given the state visible through a view and one
event, they return the entities to upsert plus warnings. These tests
drive them through a real batch context so staged writes are visible
to later events exactly as during ingestion.
"""

import pytest

from vaultindex.core.abi import HOLDER_ROLE, ISSUER_ROLE, VERIFIER_ROLE
from vaultindex.core.errors import UnknownEventTypeError
from vaultindex.core.reducers import REDUCERS, apply_events, reduce_event
from vaultindex.schemas.entities import (
    DEFAULT_DOCUMENT_VALIDITY_SECONDS,
    ZERO_ADDRESS,
    DocumentType,
    EntityKind,
    ShareStatus,
    authentication_key,
    identity_holder_key,
    role_key,
    share_request_key,
    trusted_issuer_key,
    verification_request_key,
)
from vaultindex.schemas.events import (
    Backfill,
    BackfillStatus,
    ConsentInfo,
    ConsentPayload,
    CredentialCheckPayload,
    CredentialIssuedPayload,
    DecodedEvent,
    DocumentInfo,
    DocumentRegisteredPayload,
    DocumentUpdatedPayload,
    DocumentVerifiedPayload,
    EventType,
    IdentityPayload,
    IssuerPayload,
    Provenance,
    RolePayload,
    TrustStatusPayload,
    VerificationRequestedPayload,
)

from .scenario import ALICE, BOB, CREDENTIAL, DOC_A, DOC_B, HOLDER, ISSUER, REQUESTER, VERIFIER


class Events:
    """Builds decoded events at strictly increasing positions."""

    def __init__(self):
        self.block = 1
        self.log_index = 0

    def __call__(self, event_type, payload, sender=None, backfill=None) -> DecodedEvent:
        self.log_index += 1
        return DecodedEvent(
            event_type=event_type,
            provenance=Provenance(
                contract_address="0x" + "d0" * 20,
                block_number=self.block,
                block_hash="0x" + "ab" * 32,
                transaction_hash="0x" + f"{self.log_index:064x}",
                log_index=self.log_index,
                transaction_from=sender,
            ),
            payload=payload,
            backfill=backfill,
        )


@pytest.fixture
def ev():
    return Events()


def apply(store, *events):
    """Reduce events in one batch and commit; returns the warnings."""
    with store.begin_batch() as ctx:
        warnings = apply_events(ctx, list(events))
        ctx.commit(cursor=events[-1].position, scanned_block=events[-1].block_number)
    return warnings


def registered(ev, document_id=DOC_A, timestamp=100, backfill=None):
    return ev(
        EventType.DOCUMENT_REGISTERED,
        DocumentRegisteredPayload(
            document_id=document_id, issuer=ISSUER, holder=HOLDER, timestamp=timestamp,
        ),
        backfill=backfill,
    )


class TestRegistry:
    """Every event type has exactly one reducer."""

    def test_every_event_type_registered(self):
        assert set(REDUCERS) == set(EventType)

    def test_missing_reducer_raises(self, ev, store, monkeypatch):
        monkeypatch.delitem(REDUCERS, EventType.ISSUER_REGISTERED)
        event = ev(EventType.ISSUER_REGISTERED, IssuerPayload(issuer=ISSUER, timestamp=1))
        with store.begin_batch() as ctx:
            with pytest.raises(UnknownEventTypeError):
                reduce_event(ctx, event)


class TestIdentities:
    """DidRegistry events and forward references."""

    def test_register(self, ev, store):
        apply(store, ev(
            EventType.IDENTITY_REGISTERED,
            IdentityPayload(did=ALICE, controller=HOLDER, timestamp=100),
        ))
        identity = store.load(EntityKind.IDENTITY, ALICE)
        assert identity.controller == HOLDER
        assert identity.active is True
        assert identity.registered_at == 100

    def test_forward_reference_fills_placeholder(self, ev, store):
        """A role granted before registration creates a placeholder that registration fills in."""
        apply(store, ev(EventType.ROLE_GRANTED, RolePayload(did=ALICE, role=ISSUER_ROLE, timestamp=50)))
        placeholder = store.load(EntityKind.IDENTITY, ALICE)
        assert placeholder.controller == ZERO_ADDRESS
        assert placeholder.registered_at is None
        assert placeholder.last_updated == 50

        apply(store, ev(
            EventType.IDENTITY_REGISTERED,
            IdentityPayload(did=ALICE, controller=HOLDER, timestamp=60),
        ))
        identity = store.load(EntityKind.IDENTITY, ALICE)
        assert identity.controller == HOLDER
        assert identity.registered_at == 60
        assert store.load(EntityKind.ROLE, role_key(ALICE, ISSUER_ROLE)).granted is True

    def test_link_to_known_holder(self, ev, store):
        """A controller that already holds documents is linked to the identity."""
        apply(
            store,
            registered(ev),
            ev(EventType.IDENTITY_REGISTERED, IdentityPayload(did=ALICE, controller=HOLDER, timestamp=101)),
        )
        link = store.load(EntityKind.IDENTITY_HOLDER, identity_holder_key(ALICE, HOLDER))
        assert link is not None
        assert link.did == ALICE

    def test_update_and_deactivate(self, ev, store):
        apply(
            store,
            ev(EventType.IDENTITY_REGISTERED, IdentityPayload(did=ALICE, controller=HOLDER, timestamp=1)),
            ev(EventType.IDENTITY_UPDATED, IdentityPayload(did=ALICE, timestamp=5)),
            ev(EventType.IDENTITY_DEACTIVATED, IdentityPayload(did=ALICE, timestamp=9)),
        )
        identity = store.load(EntityKind.IDENTITY, ALICE)
        assert identity.active is False
        assert identity.last_updated == 9
        assert identity.registered_at == 1

    def test_update_unknown_identity_is_warning(self, ev, store):
        warnings = apply(store, ev(EventType.IDENTITY_UPDATED, IdentityPayload(did=BOB, timestamp=5)))
        assert len(warnings) == 1
        assert store.load(EntityKind.IDENTITY, BOB) is None


class TestRoles:
    """Grant / revoke folding."""

    def grant(self, ev, role=ISSUER_ROLE, timestamp=10):
        return ev(EventType.ROLE_GRANTED, RolePayload(did=ALICE, role=role, timestamp=timestamp))

    def revoke(self, ev, role=ISSUER_ROLE, timestamp=20):
        return ev(EventType.ROLE_REVOKED, RolePayload(did=ALICE, role=role, timestamp=timestamp))

    def test_grant_revoke_regrant(self, ev, store):
        """The same role entity is reused across cycles; last event wins."""
        apply(store, self.grant(ev, timestamp=10), self.revoke(ev, timestamp=20))
        grant = store.load(EntityKind.ROLE, role_key(ALICE, ISSUER_ROLE))
        assert grant.granted is False
        assert grant.revoked_at == 20

        apply(store, self.grant(ev, timestamp=30))
        grant = store.load(EntityKind.ROLE, role_key(ALICE, ISSUER_ROLE))
        assert grant.granted is True
        assert grant.granted_at == 30
        assert grant.revoked_at is None
        assert len(store.find(EntityKind.ROLE, did=ALICE)) == 1

    def test_roles_are_independent(self, ev, store):
        apply(
            store,
            self.grant(ev, ISSUER_ROLE),
            self.grant(ev, VERIFIER_ROLE),
            self.revoke(ev, ISSUER_ROLE),
        )
        active = store.find(EntityKind.ROLE, did=ALICE, granted=True)
        assert [g.role for g in active] == [VERIFIER_ROLE]

    def test_revoke_unknown_role_is_warning(self, ev, store):
        warnings = apply(store, self.revoke(ev))
        assert len(warnings) == 1
        assert store.list_entities() == []


class TestAuthentication:

    def test_records_success_and_failure(self, ev, store):
        apply(
            store,
            ev(EventType.IDENTITY_REGISTERED, IdentityPayload(did=ALICE, controller=HOLDER, timestamp=1)),
            ev(EventType.AUTHENTICATION_SUCCEEDED, RolePayload(did=ALICE, role=ISSUER_ROLE, timestamp=10)),
            ev(EventType.AUTHENTICATION_FAILED, RolePayload(did=ALICE, role=HOLDER_ROLE, timestamp=11)),
        )
        ok = store.load(EntityKind.AUTHENTICATION, authentication_key(ALICE, ISSUER_ROLE, 10))
        failed = store.load(EntityKind.AUTHENTICATION, authentication_key(ALICE, HOLDER_ROLE, 11))
        assert ok.successful is True
        assert failed.successful is False

    def test_same_second_attempts_share_a_record(self, ev, store):
        apply(
            store,
            ev(EventType.IDENTITY_REGISTERED, IdentityPayload(did=ALICE, controller=HOLDER, timestamp=1)),
            ev(EventType.AUTHENTICATION_SUCCEEDED, RolePayload(did=ALICE, role=ISSUER_ROLE, timestamp=10)),
            ev(EventType.AUTHENTICATION_FAILED, RolePayload(did=ALICE, role=ISSUER_ROLE, timestamp=10)),
        )
        attempts = store.find(EntityKind.AUTHENTICATION, did=ALICE)
        assert len(attempts) == 1
        assert attempts[0].id == authentication_key(ALICE, ISSUER_ROLE, 10)
        assert attempts[0].successful is False

    def test_unknown_identity_is_warning(self, ev, store):
        warnings = apply(
            store,
            ev(EventType.AUTHENTICATION_SUCCEEDED, RolePayload(did=BOB, role=ISSUER_ROLE, timestamp=10)),
        )
        assert len(warnings) == 1
        assert store.find(EntityKind.AUTHENTICATION) == []


class TestCredentials:

    def issued(self, ev, timestamp=10):
        return ev(
            EventType.CREDENTIAL_ISSUED,
            CredentialIssuedPayload(
                credential_type="KYC", subject=BOB, credential_id=CREDENTIAL, timestamp=timestamp,
            ),
            sender=ISSUER,
        )

    def test_issue_creates_placeholder_subject(self, ev, store):
        apply(store, self.issued(ev))
        credential = store.load(EntityKind.CREDENTIAL, CREDENTIAL)
        assert credential.issuer == ISSUER
        assert credential.verified is False
        assert store.load(EntityKind.IDENTITY, BOB).controller == ZERO_ADDRESS

    def test_verify_then_fail(self, ev, store):
        check = CredentialCheckPayload(
            did=BOB, credential_type="KYC", credential_id=CREDENTIAL, timestamp=20,
        )
        apply(store, self.issued(ev), ev(EventType.CREDENTIAL_VERIFIED, check))
        credential = store.load(EntityKind.CREDENTIAL, CREDENTIAL)
        assert credential.verified is True
        assert credential.verified_at == 20

        apply(store, ev(EventType.CREDENTIAL_VERIFICATION_FAILED, check))
        assert store.load(EntityKind.CREDENTIAL, CREDENTIAL).verified is False

    def test_verify_unknown_credential_is_warning(self, ev, store):
        warnings = apply(store, ev(
            EventType.CREDENTIAL_VERIFIED,
            CredentialCheckPayload(did=BOB, credential_type="KYC", credential_id=CREDENTIAL, timestamp=1),
        ))
        assert len(warnings) == 1
        assert store.load(EntityKind.CREDENTIAL, CREDENTIAL) is None

    def test_trust_status_last_writer_wins(self, ev, store):
        apply(
            store,
            ev(EventType.ISSUER_TRUST_STATUS_UPDATED,
               TrustStatusPayload(credential_type="KYC", issuer=ISSUER, trusted=True, timestamp=1)),
            ev(EventType.ISSUER_TRUST_STATUS_UPDATED,
               TrustStatusPayload(credential_type="KYC", issuer=ISSUER, trusted=False, timestamp=2)),
        )
        trust = store.load(EntityKind.TRUSTED_ISSUER, trusted_issuer_key("KYC", ISSUER))
        assert trust.trusted is False
        assert trust.updated_at == 2


class TestIssuers:

    def test_lifecycle(self, ev, store):
        apply(
            store,
            ev(EventType.ISSUER_REGISTERED, IssuerPayload(issuer=ISSUER, timestamp=1)),
            ev(EventType.ISSUER_DEACTIVATED, IssuerPayload(issuer=ISSUER, timestamp=2)),
        )
        issuer = store.load(EntityKind.ISSUER, ISSUER)
        assert issuer.active is False
        assert issuer.deactivated_at == 2

        apply(store, ev(EventType.ISSUER_ACTIVATED, IssuerPayload(issuer=ISSUER, timestamp=3)))
        issuer = store.load(EntityKind.ISSUER, ISSUER)
        assert issuer.active is True
        assert issuer.activated_at == 3
        assert issuer.registered_at == 1


class TestDocuments:

    def test_register_without_ledger_info_uses_defaults(self, ev, store):
        """An unverifiable document is indexed as GENERIC, valid for a year, with a warning."""
        warnings = apply(store, registered(ev, timestamp=1000, backfill=Backfill.absent()))
        document = store.load(EntityKind.DOCUMENT, DOC_A)
        assert document.document_type == DocumentType.GENERIC
        assert document.issuance_date == 1000
        assert document.expiration_date == 1000 + DEFAULT_DOCUMENT_VALIDITY_SECONDS
        assert len(warnings) == 1
        assert store.load(EntityKind.ISSUER, ISSUER) is not None
        assert store.load(EntityKind.HOLDER, HOLDER) is not None

    def test_register_with_ledger_info(self, ev, store):
        info = DocumentInfo(
            verified=True,
            expired=False,
            issuer=ISSUER,
            holder=HOLDER,
            issuance_date=900,
            expiration_date=5000,
            document_type=5,
        )
        warnings = apply(store, registered(
            ev, backfill=Backfill(status=BackfillStatus.PRESENT, document=info),
        ))
        document = store.load(EntityKind.DOCUMENT, DOC_A)
        assert document.document_type == DocumentType.PASSPORT
        assert document.verified is True
        assert document.expiration_date == 5000
        assert warnings == []

    def test_verify_in_same_batch(self, ev, store):
        """A later event in the batch sees the document staged by an earlier one."""
        apply(
            store,
            registered(ev),
            ev(EventType.DOCUMENT_VERIFIED,
               DocumentVerifiedPayload(document_id=DOC_A, verifier=VERIFIER, timestamp=150)),
        )
        document = store.load(EntityKind.DOCUMENT, DOC_A)
        assert document.verified is True
        assert document.verified_by == VERIFIER
        assert document.verified_at == 150

    def test_verify_unknown_document_is_warning(self, ev, store):
        warnings = apply(store, ev(
            EventType.DOCUMENT_VERIFIED,
            DocumentVerifiedPayload(document_id=DOC_B, verifier=VERIFIER, timestamp=1),
        ))
        assert len(warnings) == 1
        assert store.list_entities() == []

    def test_update_chain(self, ev, store):
        """The new version inherits issuer and holder and points at the old one."""
        apply(
            store,
            registered(ev),
            ev(EventType.DOCUMENT_UPDATED, DocumentUpdatedPayload(
                old_document_id=DOC_A, new_document_id=DOC_B, issuer=ISSUER, timestamp=200,
            )),
        )
        new = store.load(EntityKind.DOCUMENT, DOC_B)
        assert new.previous_version == DOC_A
        assert new.holder == HOLDER
        assert new.registered_at == 200
        assert store.load(EntityKind.DOCUMENT, DOC_A) is not None

    def test_update_unknown_document_is_warning(self, ev, store):
        warnings = apply(store, ev(EventType.DOCUMENT_UPDATED, DocumentUpdatedPayload(
            old_document_id=DOC_A, new_document_id=DOC_B, issuer=ISSUER, timestamp=200,
        )))
        assert len(warnings) == 1
        assert store.load(EntityKind.DOCUMENT, DOC_B) is None

    def test_verification_request(self, ev, store):
        apply(
            store,
            registered(ev),
            ev(EventType.VERIFICATION_REQUESTED,
               VerificationRequestedPayload(document_id=DOC_A, holder=HOLDER, timestamp=300)),
        )
        request = store.load(
            EntityKind.VERIFICATION_REQUEST, verification_request_key(DOC_A, 300)
        )
        assert request.holder == HOLDER
        assert request.verified is False


class TestConsent:

    def consent(self, ev, event_type, timestamp, backfill=None):
        return ev(
            event_type,
            ConsentPayload(document_id=DOC_A, requester=REQUESTER, timestamp=timestamp),
            backfill=backfill,
        )

    def test_request_grant_revoke(self, ev, store):
        key = share_request_key(DOC_A, REQUESTER)
        apply(store, registered(ev), self.consent(ev, EventType.SHARE_REQUESTED, 110))
        request = store.load(EntityKind.SHARE_REQUEST, key)
        assert request.status == ShareStatus.PENDING
        assert request.holder == HOLDER

        backfill = Backfill(
            status=BackfillStatus.PRESENT, consent=ConsentInfo(status=1, valid_until=9999),
        )
        apply(store, self.consent(ev, EventType.CONSENT_GRANTED, 120, backfill))
        request = store.load(EntityKind.SHARE_REQUEST, key)
        assert request.status == ShareStatus.GRANTED
        assert request.granted_at == 120
        assert request.valid_until == 9999
        assert request.requested_at == 110

        apply(store, self.consent(ev, EventType.CONSENT_REVOKED, 130))
        request = store.load(EntityKind.SHARE_REQUEST, key)
        assert request.status == ShareStatus.REJECTED
        assert request.revoked_at == 130
        assert request.valid_until == 0

    def test_grant_without_request(self, ev, store):
        apply(store, registered(ev), self.consent(ev, EventType.CONSENT_GRANTED, 120))
        request = store.load(EntityKind.SHARE_REQUEST, share_request_key(DOC_A, REQUESTER))
        assert request.status == ShareStatus.GRANTED
        assert request.valid_until is None

    def test_consent_for_unknown_document_is_warning(self, ev, store):
        warnings = apply(store, self.consent(ev, EventType.CONSENT_GRANTED, 120))
        assert len(warnings) == 1
        assert store.find(EntityKind.SHARE_REQUEST) == []

    def test_revoke_unknown_consent_is_warning(self, ev, store):
        warnings = apply(store, registered(ev), self.consent(ev, EventType.CONSENT_REVOKED, 120))
        assert any("unknown consent" in w for w in warnings)

    def test_shared_does_not_override_request(self, ev, store):
        apply(
            store,
            registered(ev),
            self.consent(ev, EventType.SHARE_REQUESTED, 110),
            self.consent(ev, EventType.DOCUMENT_SHARED, 111),
        )
        request = store.load(EntityKind.SHARE_REQUEST, share_request_key(DOC_A, REQUESTER))
        assert request.status == ShareStatus.PENDING

    def test_shared_creates_granted(self, ev, store):
        apply(store, registered(ev), self.consent(ev, EventType.DOCUMENT_SHARED, 111))
        request = store.load(EntityKind.SHARE_REQUEST, share_request_key(DOC_A, REQUESTER))
        assert request.status == ShareStatus.GRANTED
        assert request.granted_at == 111

