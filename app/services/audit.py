"""
StudioSign - Envelope Audit Trail
Typed audit events and the append-only writer shared by every service.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core.tokens import Clock, SystemClock
from app.models.envelopes import EnvelopeAuditLog
from app.repositories.envelopes import AuditLogRepository

logger = logging.getLogger(__name__)


# ─── Events ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AuditEvent:
    action: ClassVar[str] = "EVENT"

    def metadata(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EnvelopeCreated(AuditEvent):
    action: ClassVar[str] = "ENVELOPE_CREATED"
    name: str
    workflow: str


@dataclass(frozen=True)
class EnvelopeUpdated(AuditEvent):
    action: ClassVar[str] = "ENVELOPE_UPDATED"
    changed_fields: list


@dataclass(frozen=True)
class EnvelopeSent(AuditEvent):
    action: ClassVar[str] = "ENVELOPE_SENT"
    signer_count: int
    workflow: str
    resend: bool = False


@dataclass(frozen=True)
class EnvelopeCompleted(AuditEvent):
    action: ClassVar[str] = "ENVELOPE_COMPLETED"
    completed_at: str
    total_signers: int


@dataclass(frozen=True)
class EnvelopeCancelled(AuditEvent):
    action: ClassVar[str] = "ENVELOPE_CANCELLED"
    reason: Optional[str] = None


@dataclass(frozen=True)
class EnvelopeExpired(AuditEvent):
    action: ClassVar[str] = "ENVELOPE_EXPIRED"
    expires_at: str


@dataclass(frozen=True)
class DocumentAdded(AuditEvent):
    action: ClassVar[str] = "DOCUMENT_ADDED"
    document_id: str
    file_name: str
    file_size: int
    file_hash: str


@dataclass(frozen=True)
class DocumentRemoved(AuditEvent):
    action: ClassVar[str] = "DOCUMENT_REMOVED"
    document_id: str
    file_name: str


@dataclass(frozen=True)
class SignerAdded(AuditEvent):
    action: ClassVar[str] = "SIGNER_ADDED"
    signer_id: str
    signer_email: str
    signer_name: str
    role: Optional[str] = None
    sequence_number: Optional[int] = None


@dataclass(frozen=True)
class SignerRemoved(AuditEvent):
    action: ClassVar[str] = "SIGNER_REMOVED"
    signer_id: str
    signer_email: str


@dataclass(frozen=True)
class SignerViewed(AuditEvent):
    action: ClassVar[str] = "SIGNER_VIEWED"
    signer_id: str
    signer_email: str


@dataclass(frozen=True)
class SignerSigned(AuditEvent):
    action: ClassVar[str] = "SIGNER_SIGNED"
    signer_id: str
    signature_hash: str
    page_number: Optional[int] = None
    signer_ip: Optional[str] = None


@dataclass(frozen=True)
class SignerDeclined(AuditEvent):
    action: ClassVar[str] = "SIGNER_DECLINED"
    signer_id: str
    signer_email: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class SignerExpired(AuditEvent):
    action: ClassVar[str] = "SIGNER_EXPIRED"
    signer_id: str
    link_expired_at: str


@dataclass(frozen=True)
class LinkIssued(AuditEvent):
    action: ClassVar[str] = "LINK_ISSUED"
    signer_id: str
    expires_at: str


@dataclass(frozen=True)
class LinkRevoked(AuditEvent):
    action: ClassVar[str] = "LINK_REVOKED"
    signer_id: str


@dataclass(frozen=True)
class OTPIssued(AuditEvent):
    action: ClassVar[str] = "OTP_ISSUED"
    signer_id: str
    expires_at: str


@dataclass(frozen=True)
class OTPVerified(AuditEvent):
    action: ClassVar[str] = "OTP_VERIFIED"
    signer_id: str
    session_expires_at: str


@dataclass(frozen=True)
class RawEvent(AuditEvent):
    """Free-form diagnostic entry for anything without a dedicated type."""

    name: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def action(self) -> str:  # type: ignore[override]
        return self.name

    def metadata(self) -> Dict[str, Any]:
        return dict(self.data)


# ─── Appender ─────────────────────────────────────────────────────────────────


class AuditLogAppender:
    """
    Writes audit rows into the caller's transaction so a state change and its
    audit entry commit together. Each write runs inside a SAVEPOINT: a failed
    insert is rolled back on its own and reported to the operational log
    instead of sinking the primary transition.
    """

    def __init__(self, audit_logs: AuditLogRepository, clock: Optional[Clock] = None) -> None:
        self.audit_logs = audit_logs
        self.clock = clock or SystemClock()

    def append(
        self,
        envelope_id: str,
        event: AuditEvent,
        actor: Optional[str] = None,
    ) -> Optional[EnvelopeAuditLog]:
        entry = EnvelopeAuditLog(
            envelope_id=envelope_id,
            action=event.action,
            actor=actor,
            event_metadata=event.metadata(),
            timestamp=self.clock.now(),
        )
        session = self.audit_logs.session
        try:
            with session.begin_nested():
                entry.sequence = self.audit_logs.next_sequence(envelope_id)
                self.audit_logs.add(entry)
        except SQLAlchemyError:
            logger.exception(
                "Audit write failed: envelope=%s action=%s", envelope_id, event.action
            )
            return None
        return entry
