"""
StudioSign - Envelope Aggregate Store

Creation and DRAFT-time mutation of the envelope graph:
    Envelope 1─N Document
    Envelope 1─N Signer 1─1 Signature

Every signer is created together with its PENDING signature row, so the
one-to-one pairing holds from the first commit. Once an envelope leaves
DRAFT its documents and signers are frozen.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

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
from app.core.logging import fingerprint
from app.core.tokens import Clock, SystemClock, sha256_hex
from app.models.envelopes import (
    ENVELOPE_STATUSES,
    SIGNATURE_STATUSES,
    SIGNING_WORKFLOWS,
    Document,
    Envelope,
    EnvelopeAuditLog,
    Signature,
    Signer,
)
from app.repositories.envelopes import EnvelopeRepositories
from app.services.audit import (
    AuditLogAppender,
    DocumentAdded,
    DocumentRemoved,
    EnvelopeCreated,
    EnvelopeUpdated,
    SignerAdded,
    SignerRemoved,
)
from app.services.signing_order import SignerSlot

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


def signer_slots(envelope: Envelope) -> List[SignerSlot]:
    """Project the envelope's signers onto what the signing-order gate reads."""
    slots = []
    for signer in envelope.signers:
        if signer.signature is None:
            raise AggregateInvariantError(
                f"Signer {signer.id} of envelope {envelope.id} has no signature row"
            )
        slots.append(
            SignerSlot(
                signer_id=signer.id,
                sequence_number=signer.sequence_number,
                signature_status=signer.signature.status,
            )
        )
    return slots


class EnvelopeStore:
    def __init__(self, repos: EnvelopeRepositories, clock: Optional[Clock] = None) -> None:
        self.repos = repos
        self.clock = clock or SystemClock()
        self.audit = AuditLogAppender(repos.audit_logs, self.clock)

    # ─── Envelopes ────────────────────────────────────────────────────────────

    def create_envelope(
        self,
        name: str,
        created_by: str,
        description: Optional[str] = None,
        signing_workflow: str = "SEQUENTIAL",
        expires_at: Optional[datetime] = None,
    ) -> Envelope:
        errors = self._validate_envelope_fields(name, signing_workflow, expires_at)
        if errors:
            raise EnvelopeValidationError(errors)

        envelope = Envelope(
            name=name.strip(),
            description=description,
            signing_workflow=signing_workflow,
            status="DRAFT",
            created_by=created_by,
            expires_at=expires_at,
            created_at=self.clock.now(),
        )
        self.repos.envelopes.add(envelope)
        self.audit.append(
            envelope.id,
            EnvelopeCreated(name=envelope.name, workflow=signing_workflow),
            actor=created_by,
        )
        self.repos.commit()
        logger.info("Envelope created: id=%s workflow=%s", envelope.id, signing_workflow)
        return envelope

    def get_envelope(self, envelope_id: str) -> Envelope:
        envelope = self.repos.envelopes.get(envelope_id)
        if envelope is None:
            raise EnvelopeNotFoundError(envelope_id)
        return envelope

    def list_envelopes(
        self, status: Optional[str] = None, created_by: Optional[str] = None
    ) -> List[Envelope]:
        if status is not None and status not in ENVELOPE_STATUSES:
            raise EnvelopeValidationError(
                [{"field": "status", "error": f"Unknown envelope status {status!r}"}]
            )
        return self.repos.envelopes.list(status=status, created_by=created_by)

    def update_envelope(
        self,
        envelope_id: str,
        actor: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        signing_workflow: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Envelope:
        envelope = self._lock_draft(envelope_id, "updated")

        errors = self._validate_envelope_fields(
            name if name is not None else envelope.name,
            signing_workflow or envelope.signing_workflow,
            expires_at,
        )
        if signing_workflow == "SEQUENTIAL" and any(
            s.sequence_number is None for s in envelope.signers
        ):
            errors.append(
                {
                    "field": "signing_workflow",
                    "error": "Every signer needs a sequence_number before switching to SEQUENTIAL",
                }
            )
        if errors:
            raise EnvelopeValidationError(errors)

        changed: List[str] = []
        if name is not None and name.strip() != envelope.name:
            envelope.name = name.strip()
            changed.append("name")
        if description is not None and description != envelope.description:
            envelope.description = description
            changed.append("description")
        if signing_workflow is not None and signing_workflow != envelope.signing_workflow:
            envelope.signing_workflow = signing_workflow
            changed.append("signing_workflow")
        if expires_at is not None and expires_at != envelope.expires_at:
            envelope.expires_at = expires_at
            changed.append("expires_at")

        if changed:
            envelope.updated_at = self.clock.now()
            self.audit.append(envelope.id, EnvelopeUpdated(changed_fields=changed), actor=actor)
        self.repos.commit()
        return envelope

    def audit_trail(self, envelope_id: str) -> List[EnvelopeAuditLog]:
        self.get_envelope(envelope_id)
        return self.repos.audit_logs.list_for_envelope(envelope_id)

    def get_envelope_statistics(self) -> Dict[str, Any]:
        by_status = {status: 0 for status in ENVELOPE_STATUSES}
        by_status.update(self.repos.envelopes.count_by_status())
        signatures_by_status = {status: 0 for status in SIGNATURE_STATUSES}
        signatures_by_status.update(self.repos.signatures.status_counts())
        return {
            "total": self.repos.envelopes.count(),
            "by_status": by_status,
            "total_signers": self.repos.signers.count(),
            "total_signatures": self.repos.signatures.count(),
            "signatures_by_status": signatures_by_status,
        }

    # ─── Documents ────────────────────────────────────────────────────────────

    def add_document(
        self,
        envelope_id: str,
        name: str,
        file_name: str,
        file_path: str,
        actor: str,
        content: Optional[bytes] = None,
        file_hash: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> Document:
        """
        When ``content`` is given the digest and size are computed here;
        otherwise the caller's ``file_hash``/``file_size`` are stored as-is.
        """
        envelope = self._lock_draft(envelope_id, "given new documents")

        if content is not None:
            file_hash = sha256_hex(content)
            file_size = len(content)

        errors = []
        if not name or not name.strip():
            errors.append({"field": "name", "error": "Document name is required"})
        if not file_name or not file_name.strip():
            errors.append({"field": "file_name", "error": "file_name is required"})
        if not file_path or not file_path.strip():
            errors.append({"field": "file_path", "error": "file_path is required"})
        if file_hash is None or not _SHA256_RE.match(file_hash.lower()):
            errors.append({"field": "file_hash", "error": "file_hash must be a SHA-256 hex digest"})
        if file_size is None or file_size < 0:
            errors.append({"field": "file_size", "error": "file_size must be a non-negative integer"})
        if errors:
            raise EnvelopeValidationError(errors)

        document = Document(
            envelope_id=envelope.id,
            name=name.strip(),
            file_name=file_name.strip(),
            file_path=file_path.strip(),
            file_hash=file_hash.lower(),
            file_size=file_size,
            created_at=self.clock.now(),
        )
        self.repos.envelopes.add_document(document)
        self.audit.append(
            envelope.id,
            DocumentAdded(
                document_id=document.id,
                file_name=document.file_name,
                file_size=document.file_size,
                file_hash=document.file_hash,
            ),
            actor=actor,
        )
        self.repos.commit()
        return document

    def remove_document(self, envelope_id: str, document_id: str, actor: str) -> None:
        envelope = self._lock_draft(envelope_id, "stripped of documents")
        document = self.repos.envelopes.get_document(document_id)
        if document is None or document.envelope_id != envelope.id:
            raise DocumentNotFoundError(document_id, envelope_id)

        event = DocumentRemoved(document_id=document.id, file_name=document.file_name)
        self.repos.envelopes.delete_document(document)
        self.audit.append(envelope.id, event, actor=actor)
        self.repos.commit()

    # ─── Signers ──────────────────────────────────────────────────────────────

    def add_signer(
        self,
        envelope_id: str,
        name: str,
        email: str,
        actor: str,
        role: Optional[str] = None,
        sequence_number: Optional[int] = None,
    ) -> Signer:
        envelope = self._lock_draft(envelope_id, "given new signers")
        email = (email or "").strip().lower()

        errors = []
        if not name or not name.strip():
            errors.append({"field": "name", "error": "Signer name is required"})
        if not _EMAIL_RE.match(email):
            errors.append({"field": "email", "error": f"Invalid email address {email!r}"})
        if sequence_number is not None and sequence_number < 1:
            errors.append({"field": "sequence_number", "error": "sequence_number must be >= 1"})
        if sequence_number is None and envelope.signing_workflow == "SEQUENTIAL":
            suggested = self.repos.signers.next_sequence_number(envelope.id)
            errors.append(
                {
                    "field": "sequence_number",
                    "error": f"sequence_number is required for SEQUENTIAL envelopes (next free: {suggested})",
                }
            )
        if errors:
            raise EnvelopeValidationError(errors)

        if self.repos.signers.get_by_email(envelope.id, email) is not None:
            raise DuplicateSignerError(envelope.id, email)
        if (
            sequence_number is not None
            and self.repos.signers.get_by_sequence(envelope.id, sequence_number) is not None
        ):
            raise SequenceNumberConflictError(envelope.id, sequence_number)

        now = self.clock.now()
        signer = Signer(
            envelope_id=envelope.id,
            name=name.strip(),
            email=email,
            role=role,
            sequence_number=sequence_number,
            status="PENDING",
            failed_attempts=0,
            created_at=now,
        )
        signer.signature = Signature(envelope_id=envelope.id, status="PENDING", created_at=now)
        self.repos.signers.add(signer)

        self.audit.append(
            envelope.id,
            SignerAdded(
                signer_id=signer.id,
                signer_email=email,
                signer_name=signer.name,
                role=role,
                sequence_number=sequence_number,
            ),
            actor=actor,
        )
        self.repos.commit()
        logger.info(
            "Signer added: envelope=%s signer=%s email=%s",
            envelope.id,
            signer.id,
            fingerprint(email),
        )
        return signer

    def remove_signer(self, envelope_id: str, signer_id: str, actor: str) -> None:
        envelope = self._lock_draft(envelope_id, "stripped of signers")
        signer = self.get_signer(envelope.id, signer_id)

        event = SignerRemoved(signer_id=signer.id, signer_email=signer.email)
        self.repos.signers.delete(signer)
        self.audit.append(envelope.id, event, actor=actor)
        self.repos.commit()

    def get_signer(self, envelope_id: str, signer_id: str) -> Signer:
        signer = self.repos.signers.get(signer_id)
        if signer is None or signer.envelope_id != envelope_id:
            raise SignerNotFoundError(signer_id, envelope_id)
        return signer

    def list_signers(self, envelope_id: str) -> List[Signer]:
        self.get_envelope(envelope_id)
        return self.repos.signers.list_for_envelope(envelope_id)

    # ─── Private ──────────────────────────────────────────────────────────────

    def _lock_draft(self, envelope_id: str, verb: str) -> Envelope:
        envelope = self.repos.envelopes.get_for_update(envelope_id)
        if envelope is None:
            raise EnvelopeNotFoundError(envelope_id)
        if envelope.status != "DRAFT":
            raise InvalidStateError(
                f"Envelope {envelope_id} is {envelope.status}; only DRAFT envelopes can be {verb}",
                current_state=envelope.status,
            )
        return envelope

    def _validate_envelope_fields(
        self,
        name: Optional[str],
        signing_workflow: str,
        expires_at: Optional[datetime],
    ) -> List[Dict[str, str]]:
        errors = []
        if not name or not name.strip():
            errors.append({"field": "name", "error": "Envelope name is required"})
        elif len(name.strip()) > 255:
            errors.append({"field": "name", "error": "Envelope name exceeds 255 characters"})
        if signing_workflow not in SIGNING_WORKFLOWS:
            errors.append(
                {
                    "field": "signing_workflow",
                    "error": f"signing_workflow must be one of {', '.join(SIGNING_WORKFLOWS)}",
                }
            )
        if expires_at is not None and expires_at <= self.clock.now():
            errors.append({"field": "expires_at", "error": "expires_at must be in the future"})
        return errors
