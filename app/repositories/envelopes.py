"""
StudioSign - Envelope aggregate repositories.

Thin query objects over a SQLAlchemy Session, one per aggregate. Services
receive an ``EnvelopeRepositories`` bundle and never touch the session's
query API themselves, so every read/write path is visible here.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.models.envelopes import (
    Document,
    Envelope,
    EnvelopeAuditLog,
    Signature,
    Signer,
)


class EnvelopeRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, envelope: Envelope) -> Envelope:
        self.session.add(envelope)
        self.session.flush()
        return envelope

    def get(self, envelope_id: str) -> Optional[Envelope]:
        return self.session.query(Envelope).filter_by(id=envelope_id).first()

    def get_for_update(self, envelope_id: str) -> Optional[Envelope]:
        """
        Row-lock the envelope for the rest of the transaction. All writes to
        one aggregate funnel through this lock. SQLite ignores FOR UPDATE and
        relies on its database-level write lock instead.
        """
        return (
            self.session.query(Envelope)
            .filter_by(id=envelope_id)
            .populate_existing()
            .with_for_update()
            .first()
        )

    def list(
        self,
        status: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> List[Envelope]:
        q = self.session.query(Envelope)
        if status:
            q = q.filter(Envelope.status == status)
        if created_by:
            q = q.filter(Envelope.created_by == created_by)
        return q.order_by(Envelope.created_at.desc()).all()

    def count(self) -> int:
        return self.session.query(func.count(Envelope.id)).scalar() or 0

    def count_by_status(self) -> Dict[str, int]:
        rows = (
            self.session.query(Envelope.status, func.count(Envelope.id))
            .group_by(Envelope.status)
            .all()
        )
        return {status: count for status, count in rows}

    # ── Documents ─────────────────────────────────────────────────────────────

    def add_document(self, document: Document) -> Document:
        self.session.add(document)
        self.session.flush()
        return document

    def get_document(self, document_id: str) -> Optional[Document]:
        return self.session.query(Document).filter_by(id=document_id).first()

    def delete_document(self, document: Document) -> None:
        envelope = document.envelope
        self.session.delete(document)
        self.session.flush()
        self.session.expire(envelope, ["documents"])

    def count_documents(self, envelope_id: str) -> int:
        return (
            self.session.query(func.count(Document.id))
            .filter(Document.envelope_id == envelope_id)
            .scalar()
            or 0
        )


class SignerRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, signer: Signer) -> Signer:
        self.session.add(signer)
        self.session.flush()
        return signer

    def get(self, signer_id: str) -> Optional[Signer]:
        return self.session.query(Signer).filter_by(id=signer_id).first()

    def get_by_token(self, token: str) -> Optional[Signer]:
        return self.session.query(Signer).filter_by(magic_link_token=token).first()

    def get_by_email(self, envelope_id: str, email: str) -> Optional[Signer]:
        return (
            self.session.query(Signer)
            .filter_by(envelope_id=envelope_id, email=email)
            .first()
        )

    def get_by_sequence(self, envelope_id: str, sequence_number: int) -> Optional[Signer]:
        return (
            self.session.query(Signer)
            .filter_by(envelope_id=envelope_id, sequence_number=sequence_number)
            .first()
        )

    def list_for_envelope(self, envelope_id: str) -> List[Signer]:
        return (
            self.session.query(Signer)
            .filter(Signer.envelope_id == envelope_id)
            .order_by(Signer.sequence_number.asc().nulls_last(), Signer.created_at)
            .all()
        )

    def next_sequence_number(self, envelope_id: str) -> int:
        current = (
            self.session.query(func.max(Signer.sequence_number))
            .filter(Signer.envelope_id == envelope_id)
            .scalar()
        )
        return (current or 0) + 1

    def delete(self, signer: Signer) -> None:
        envelope = signer.envelope
        self.session.delete(signer)
        self.session.flush()
        self.session.expire(envelope, ["signers", "signatures"])

    def count(self) -> int:
        return self.session.query(func.count(Signer.id)).scalar() or 0

    def count_for_envelope(self, envelope_id: str) -> int:
        return (
            self.session.query(func.count(Signer.id))
            .filter(Signer.envelope_id == envelope_id)
            .scalar()
            or 0
        )

    # ── Atomic secret updates ─────────────────────────────────────────────────

    def increment_failed_attempts(self, signer: Signer, ceiling: int) -> int:
        """
        Single read-modify-write in the database. The WHERE clause keeps the
        counter from overshooting the ceiling under concurrent submissions.
        """
        self.session.execute(
            update(Signer)
            .where(Signer.id == signer.id, Signer.failed_attempts < ceiling)
            .values(failed_attempts=Signer.failed_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        self.session.expire(signer, ["failed_attempts"])
        return signer.failed_attempts

    def consume_otp(
        self,
        signer: Signer,
        otp_code_hash: str,
        now: datetime,
        ceiling: int,
        session_id: str,
        session_expires_at: datetime,
    ) -> bool:
        """
        Swap a matching, unexpired OTP for a signing session. Returns False if
        another request already consumed the code (or it changed meanwhile).
        """
        result = self.session.execute(
            update(Signer)
            .where(
                Signer.id == signer.id,
                Signer.otp_code_hash == otp_code_hash,
                Signer.otp_expires_at >= now,
                Signer.failed_attempts < ceiling,
            )
            .values(
                otp_code_hash=None,
                otp_expires_at=None,
                failed_attempts=0,
                session_id=session_id,
                session_expires_at=session_expires_at,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.expire(signer)
        return result.rowcount == 1


class SignatureRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, signature: Signature) -> Signature:
        self.session.add(signature)
        self.session.flush()
        return signature

    def get(self, signature_id: str) -> Optional[Signature]:
        return self.session.query(Signature).filter_by(id=signature_id).first()

    def get_for_signer(self, envelope_id: str, signer_id: str) -> Optional[Signature]:
        return (
            self.session.query(Signature)
            .filter_by(envelope_id=envelope_id, signer_id=signer_id)
            .first()
        )

    def list_for_envelope(self, envelope_id: str) -> List[Signature]:
        return (
            self.session.query(Signature)
            .filter(Signature.envelope_id == envelope_id)
            .populate_existing()
            .all()
        )

    def count(self) -> int:
        return self.session.query(func.count(Signature.id)).scalar() or 0

    def status_counts(self, envelope_id: Optional[str] = None) -> Dict[str, int]:
        query = self.session.query(Signature.status, func.count(Signature.id))
        if envelope_id is not None:
            query = query.filter(Signature.envelope_id == envelope_id)
        rows = query.group_by(Signature.status).all()
        return {status: count for status, count in rows}


class AuditLogRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, entry: EnvelopeAuditLog) -> EnvelopeAuditLog:
        self.session.add(entry)
        self.session.flush()
        return entry

    def next_sequence(self, envelope_id: str) -> int:
        # prior rows are already flushed by add()
        with self.session.no_autoflush:
            last = (
                self.session.query(func.max(EnvelopeAuditLog.sequence))
                .filter(EnvelopeAuditLog.envelope_id == envelope_id)
                .scalar()
            )
        return (last or 0) + 1

    def list_for_envelope(self, envelope_id: str) -> List[EnvelopeAuditLog]:
        return (
            self.session.query(EnvelopeAuditLog)
            .filter(EnvelopeAuditLog.envelope_id == envelope_id)
            .order_by(EnvelopeAuditLog.sequence.asc(), EnvelopeAuditLog.timestamp.asc())
            .all()
        )

    def actions_for_envelope(self, envelope_id: str) -> List[str]:
        return [entry.action for entry in self.list_for_envelope(envelope_id)]


@dataclass
class EnvelopeRepositories:
    """Unit of work: the four repositories sharing one Session/transaction."""

    session: Session
    envelopes: EnvelopeRepository
    signers: SignerRepository
    signatures: SignatureRepository
    audit_logs: AuditLogRepository

    @classmethod
    def from_session(cls, session: Session) -> "EnvelopeRepositories":
        return cls(
            session=session,
            envelopes=EnvelopeRepository(session),
            signers=SignerRepository(session),
            signatures=SignatureRepository(session),
            audit_logs=AuditLogRepository(session),
        )

    def flush(self) -> None:
        self.session.flush()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
