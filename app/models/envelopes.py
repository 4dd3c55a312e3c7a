"""
StudioSign - ORM Models: Envelopes, Documents, Signers, Signatures, Audit Log
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.tokens import utc_now
from app.database import Base

ENVELOPE_STATUSES = ("DRAFT", "PENDING", "IN_PROGRESS", "COMPLETED", "CANCELLED", "EXPIRED")
TERMINAL_ENVELOPE_STATUSES = frozenset({"COMPLETED", "CANCELLED", "EXPIRED"})
OPEN_ENVELOPE_STATUSES = frozenset({"PENDING", "IN_PROGRESS"})

SIGNING_WORKFLOWS = ("SEQUENTIAL", "PARALLEL")

SIGNER_STATUSES = ("PENDING", "VIEWED", "SIGNED", "DECLINED", "EXPIRED")
SIGNATURE_STATUSES = ("PENDING", "SIGNED", "DECLINED")


def _uuid() -> str:
    return str(uuid.uuid4())


class Envelope(Base):
    """A signing request bundling N documents and M signers."""

    __tablename__ = "envelopes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        SAEnum(*ENVELOPE_STATUSES, name="envelope_status_enum"),
        nullable=False,
        default="DRAFT",
    )
    signing_workflow: Mapped[str] = mapped_column(
        SAEnum(*SIGNING_WORKFLOWS, name="signing_workflow_enum"),
        nullable=False,
        default="SEQUENTIAL",
    )

    created_by: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    documents: Mapped[List["Document"]] = relationship(
        "Document",
        back_populates="envelope",
        cascade="all, delete-orphan",
        order_by="Document.created_at",
    )
    signers: Mapped[List["Signer"]] = relationship(
        "Signer",
        back_populates="envelope",
        cascade="all, delete-orphan",
        order_by="Signer.sequence_number",
    )
    signatures: Mapped[List["Signature"]] = relationship(
        "Signature",
        viewonly=True,
        order_by="Signature.created_at",
    )
    audit_logs: Mapped[List["EnvelopeAuditLog"]] = relationship(
        "EnvelopeAuditLog",
        viewonly=True,
        order_by="EnvelopeAuditLog.sequence",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ENVELOPE_STATUSES

    def __repr__(self) -> str:
        return f"<Envelope(id={self.id}, name={self.name!r}, status={self.status})>"


class Document(Base):
    """Immutable file reference attached to an envelope."""

    __tablename__ = "envelope_documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    envelope_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("envelopes.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)  # SHA-256 hex
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    envelope: Mapped["Envelope"] = relationship("Envelope", back_populates="documents")


class Signer(Base):
    """
    A party invited to sign. Also carries the magic-link / OTP / session
    secrets that gate that party's access.
    """

    __tablename__ = "envelope_signers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    envelope_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("envelopes.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)  # e.g. "BRIDE"
    sequence_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(
        SAEnum(*SIGNER_STATUSES, name="signer_status_enum"),
        nullable=False,
        default="PENDING",
    )
    viewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    signed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    declined_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    declined_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Magic link
    magic_link_token: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True, unique=True, index=True
    )
    magic_link_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # OTP: only the SHA-256 of the code is stored
    otp_code_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    otp_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    otp_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Signing session
    session_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    session_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("envelope_id", "email", name="uq_envelope_signers_email"),
        UniqueConstraint(
            "envelope_id", "sequence_number", name="uq_envelope_signers_sequence"
        ),
    )

    envelope: Mapped["Envelope"] = relationship("Envelope", back_populates="signers")
    signature: Mapped[Optional["Signature"]] = relationship(
        "Signature",
        back_populates="signer",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Signer(id={self.id}, email={self.email}, status={self.status})>"


class Signature(Base):
    """Signing artifact, one-to-one with a signer."""

    __tablename__ = "envelope_signatures"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    envelope_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("envelopes.id"), nullable=False, index=True
    )
    signer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("envelope_signers.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        SAEnum(*SIGNATURE_STATUSES, name="signature_status_enum"),
        nullable=False,
        default="PENDING",
    )

    signature_data_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    initials_data_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    signature_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Placement on the page
    page_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    x: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    y: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    width: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    height: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    signed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    signer_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    signer_user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("envelope_id", "signer_id", name="uq_envelope_signatures_signer"),
    )

    signer: Mapped["Signer"] = relationship("Signer", back_populates="signature")


class EnvelopeAuditLog(Base):
    """Append-only record of every significant action on an envelope."""

    __tablename__ = "envelope_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    envelope_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("envelopes.id"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # per-envelope append order; timestamps can tie
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)


SQLITE_TRIGGERS = """
CREATE TRIGGER IF NOT EXISTS trg_envelope_audit_logs_block_update
BEFORE UPDATE ON envelope_audit_logs
BEGIN
    SELECT RAISE(ABORT, 'IMMUTABLE: Updates to envelope_audit_logs are not permitted');
END;

CREATE TRIGGER IF NOT EXISTS trg_envelope_audit_logs_block_delete
BEFORE DELETE ON envelope_audit_logs
BEGIN
    SELECT RAISE(ABORT, 'IMMUTABLE: Deletes from envelope_audit_logs are not permitted');
END;
"""
