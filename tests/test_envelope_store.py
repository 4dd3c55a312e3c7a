"""
StudioSign - Envelope aggregate store tests: creation, DRAFT-only mutation,
signer validation and statistics.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import DatabaseError

from app.core.exceptions import (
    AggregateInvariantError,
    DocumentNotFoundError,
    DuplicateSignerError,
    EnvelopeNotFoundError,
    EnvelopeValidationError,
    InvalidStateError,
    SequenceNumberConflictError,
    SignerNotFoundError,
)
from app.core.tokens import sha256_hex
from app.services.envelope_store import signer_slots

OWNER = "owner_001"
SIG = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUg=="


@pytest.fixture
def draft(store):
    return store.create_envelope(name="Portrait Session Release", created_by=OWNER)


# ─── Envelopes ────────────────────────────────────────────────────────────────


def test_create_envelope_defaults(draft, repos):
    assert draft.status == "DRAFT"
    assert draft.signing_workflow == "SEQUENTIAL"
    assert draft.created_by == OWNER
    assert repos.audit_logs.actions_for_envelope(draft.id) == ["ENVELOPE_CREATED"]

    entry = repos.audit_logs.list_for_envelope(draft.id)[0]
    assert entry.actor == OWNER
    assert entry.event_metadata == {"name": "Portrait Session Release", "workflow": "SEQUENTIAL"}


def test_create_envelope_validation(store, clock):
    with pytest.raises(EnvelopeValidationError) as exc_info:
        store.create_envelope(
            name="  ",
            created_by=OWNER,
            signing_workflow="ROUND_ROBIN",
            expires_at=clock.now() - timedelta(days=1),
        )
    fields = {e["field"] for e in exc_info.value.errors}
    assert fields == {"name", "signing_workflow", "expires_at"}


def test_get_envelope_not_found(store):
    with pytest.raises(EnvelopeNotFoundError):
        store.get_envelope("missing")


def test_list_envelopes_filters(store, make_envelope, lifecycle):
    sent = make_envelope(name="Sent")
    make_envelope(name="Draft")
    store.create_envelope(name="Someone else's", created_by="other_user")
    lifecycle.send(sent.id, actor=OWNER)

    assert [e.name for e in store.list_envelopes(status="PENDING")] == ["Sent"]
    assert len(store.list_envelopes(created_by=OWNER)) == 2
    assert len(store.list_envelopes()) == 3
    with pytest.raises(EnvelopeValidationError):
        store.list_envelopes(status="BOGUS")


def test_update_envelope_records_changed_fields(store, draft, repos):
    updated = store.update_envelope(
        draft.id, actor=OWNER, name="Renamed", signing_workflow="PARALLEL"
    )
    assert updated.name == "Renamed"
    assert updated.signing_workflow == "PARALLEL"

    entries = repos.audit_logs.list_for_envelope(draft.id)
    entry = next(e for e in entries if e.action == "ENVELOPE_UPDATED")
    assert sorted(entry.event_metadata["changed_fields"]) == ["name", "signing_workflow"]


def test_update_without_changes_writes_no_audit(store, draft, repos):
    store.update_envelope(draft.id, actor=OWNER, name=draft.name)
    assert repos.audit_logs.actions_for_envelope(draft.id) == ["ENVELOPE_CREATED"]


def test_switch_to_sequential_needs_sequence_numbers(store):
    envelope = store.create_envelope(name="Parallel", created_by=OWNER, signing_workflow="PARALLEL")
    store.add_signer(envelope.id, name="A", email="a@example.com", actor=OWNER)
    with pytest.raises(EnvelopeValidationError):
        store.update_envelope(envelope.id, actor=OWNER, signing_workflow="SEQUENTIAL")


def test_update_only_in_draft(store, make_envelope, lifecycle):
    envelope = make_envelope()
    lifecycle.send(envelope.id, actor=OWNER)
    with pytest.raises(InvalidStateError):
        store.update_envelope(envelope.id, actor=OWNER, name="Too late")


# ─── Documents ────────────────────────────────────────────────────────────────


def test_add_document_hashes_content(store, draft):
    content = b"%PDF-1.7 contract body"
    doc = store.add_document(
        draft.id,
        name="Contract",
        file_name="contract.pdf",
        file_path="envelopes/contract.pdf",
        actor=OWNER,
        content=content,
    )
    assert doc.file_hash == sha256_hex(content)
    assert doc.file_size == len(content)


def test_add_document_with_caller_digest(store, draft):
    digest = sha256_hex(b"stored elsewhere")
    doc = store.add_document(
        draft.id,
        name="Contract",
        file_name="contract.pdf",
        file_path="s3://bucket/contract.pdf",
        actor=OWNER,
        file_hash=digest.upper(),
        file_size=1234,
    )
    assert doc.file_hash == digest
    assert doc.file_size == 1234


def test_add_document_requires_digest(store, draft):
    with pytest.raises(EnvelopeValidationError) as exc_info:
        store.add_document(
            draft.id, name="Contract", file_name="c.pdf", file_path="c.pdf", actor=OWNER
        )
    fields = {e["field"] for e in exc_info.value.errors}
    assert {"file_hash", "file_size"} <= fields


def test_remove_document(store, draft, repos):
    doc = store.add_document(
        draft.id, name="A", file_name="a.pdf", file_path="a.pdf", actor=OWNER, content=b"a"
    )
    store.remove_document(draft.id, doc.id, actor=OWNER)
    assert repos.envelopes.count_documents(draft.id) == 0
    assert "DOCUMENT_REMOVED" in repos.audit_logs.actions_for_envelope(draft.id)

    with pytest.raises(DocumentNotFoundError):
        store.remove_document(draft.id, doc.id, actor=OWNER)


def test_documents_frozen_after_send(store, make_envelope, lifecycle):
    envelope = make_envelope()
    doc_id = envelope.documents[0].id
    lifecycle.send(envelope.id, actor=OWNER)

    with pytest.raises(InvalidStateError):
        store.remove_document(envelope.id, doc_id, actor=OWNER)
    with pytest.raises(InvalidStateError):
        store.add_document(
            envelope.id, name="B", file_name="b.pdf", file_path="b.pdf", actor=OWNER, content=b"b"
        )


# ─── Signers ──────────────────────────────────────────────────────────────────


def test_add_signer_creates_paired_signature(store, draft, repos):
    signer = store.add_signer(
        draft.id, name="Jane Smith", email="  Jane@Example.COM ", actor=OWNER, sequence_number=1
    )
    assert signer.email == "jane@example.com"
    assert signer.status == "PENDING"
    assert signer.signature is not None
    assert signer.signature.status == "PENDING"
    assert signer.signature.envelope_id == draft.id

    entries = repos.audit_logs.list_for_envelope(draft.id)
    entry = next(e for e in entries if e.action == "SIGNER_ADDED")
    assert entry.event_metadata["signer_email"] == "jane@example.com"


def test_duplicate_signer_email_rejected(store, draft):
    store.add_signer(draft.id, name="Jane", email="jane@example.com", actor=OWNER, sequence_number=1)
    with pytest.raises(DuplicateSignerError):
        store.add_signer(
            draft.id, name="Jane again", email="JANE@example.com", actor=OWNER, sequence_number=2
        )


def test_sequence_number_conflict_rejected(store, draft):
    store.add_signer(draft.id, name="Jane", email="jane@example.com", actor=OWNER, sequence_number=1)
    with pytest.raises(SequenceNumberConflictError) as exc_info:
        store.add_signer(draft.id, name="John", email="john@example.com", actor=OWNER, sequence_number=1)
    assert exc_info.value.http_status_code == 422


def test_sequential_signer_needs_sequence_number(store, draft):
    store.add_signer(draft.id, name="Jane", email="jane@example.com", actor=OWNER, sequence_number=1)
    with pytest.raises(EnvelopeValidationError) as exc_info:
        store.add_signer(draft.id, name="John", email="john@example.com", actor=OWNER)
    assert "next free: 2" in exc_info.value.message


def test_parallel_signer_without_sequence_number(store):
    envelope = store.create_envelope(name="P", created_by=OWNER, signing_workflow="PARALLEL")
    signer = store.add_signer(envelope.id, name="A", email="a@example.com", actor=OWNER)
    assert signer.sequence_number is None


def test_add_signer_field_validation(store, draft):
    with pytest.raises(EnvelopeValidationError) as exc_info:
        store.add_signer(draft.id, name="", email="not-an-email", actor=OWNER, sequence_number=0)
    fields = {e["field"] for e in exc_info.value.errors}
    assert fields == {"name", "email", "sequence_number"}


def test_remove_signer_drops_signature(store, draft, repos):
    signer = store.add_signer(draft.id, name="Jane", email="jane@example.com", actor=OWNER, sequence_number=1)
    signature_id = signer.signature.id
    store.remove_signer(draft.id, signer.id, actor=OWNER)

    assert repos.signers.count_for_envelope(draft.id) == 0
    assert repos.signatures.get(signature_id) is None
    assert "SIGNER_REMOVED" in repos.audit_logs.actions_for_envelope(draft.id)


def test_remove_signer_from_other_envelope(store, draft):
    other = store.create_envelope(name="Other", created_by=OWNER)
    signer = store.add_signer(other.id, name="Jane", email="jane@example.com", actor=OWNER, sequence_number=1)
    with pytest.raises(SignerNotFoundError):
        store.remove_signer(draft.id, signer.id, actor=OWNER)


def test_signers_frozen_after_send(store, make_envelope, lifecycle):
    envelope = make_envelope()
    lifecycle.send(envelope.id, actor=OWNER)
    with pytest.raises(InvalidStateError):
        store.add_signer(envelope.id, name="Late", email="late@example.com", actor=OWNER, sequence_number=9)


def test_list_signers_ordered_by_sequence(store, draft):
    store.add_signer(draft.id, name="C", email="c@example.com", actor=OWNER, sequence_number=3)
    store.add_signer(draft.id, name="A", email="a@example.com", actor=OWNER, sequence_number=1)
    store.add_signer(draft.id, name="B", email="b@example.com", actor=OWNER, sequence_number=2)
    assert [s.name for s in store.list_signers(draft.id)] == ["A", "B", "C"]


# ─── Consistency & statistics ─────────────────────────────────────────────────


def test_signer_without_signature_is_an_invariant_error(store, draft, db_session):
    signer = store.add_signer(draft.id, name="Jane", email="jane@example.com", actor=OWNER, sequence_number=1)
    db_session.delete(signer.signature)
    db_session.commit()
    db_session.expire_all()

    envelope = store.get_envelope(draft.id)
    with pytest.raises(AggregateInvariantError):
        signer_slots(envelope)


def test_statistics(store, make_envelope, lifecycle, repos):
    sent = make_envelope(name="One")
    make_envelope(name="Two", signers=[("Solo", "solo@example.com", 1)])
    lifecycle.send(sent.id, actor=OWNER)
    lifecycle.capture_signature(sent.signers[0].id, SIG)

    stats = store.get_envelope_statistics()
    assert stats["total"] == 2
    assert stats["by_status"]["IN_PROGRESS"] == 1
    assert stats["by_status"]["DRAFT"] == 1
    assert stats["by_status"]["COMPLETED"] == 0
    assert stats["total_signers"] == 4
    assert stats["total_signatures"] == 4
    assert stats["signatures_by_status"] == {"PENDING": 3, "SIGNED": 1, "DECLINED": 0}
    assert repos.signatures.status_counts(sent.id) == {"PENDING": 2, "SIGNED": 1}


def test_audit_log_is_append_only(draft, db_session):
    with pytest.raises(DatabaseError, match="IMMUTABLE"):
        db_session.execute(text("UPDATE envelope_audit_logs SET action = 'TAMPERED'"))
    db_session.rollback()

    with pytest.raises(DatabaseError, match="IMMUTABLE"):
        db_session.execute(text("DELETE FROM envelope_audit_logs"))
    db_session.rollback()
