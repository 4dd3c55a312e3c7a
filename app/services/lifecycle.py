"""
StudioSign - Envelope Lifecycle Engine

State machine:
  DRAFT → PENDING → IN_PROGRESS → COMPLETED
                 ↘              ↘ CANCELLED | EXPIRED

Every mutating operation:
  1. Row-locks the envelope (serializes writes to one aggregate)
  2. Applies lazy expiry
  3. Checks state, then the signing-order gate
  4. Writes the change plus its audit rows in one transaction
  5. Sends e-mail after commit (best effort)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from app.config import Settings, get_settings
from app.core.exceptions import (
    AggregateInvariantError,
    AlreadySignedError,
    EnvelopeNotFoundError,
    EnvelopeValidationError,
    InvalidStateError,
    InvalidStateTransitionError,
    SignerNotFoundError,
    WorkflowViolationError,
)
from app.core.tokens import Clock, SystemClock, secure_compare, sha256_hex
from app.models.envelopes import (
    OPEN_ENVELOPE_STATUSES,
    Document,
    Envelope,
    Signature,
    Signer,
)
from app.repositories.envelopes import EnvelopeRepositories
from app.services.audit import (
    AuditLogAppender,
    EnvelopeCancelled,
    EnvelopeCompleted,
    EnvelopeExpired,
    EnvelopeSent,
    RawEvent,
    SignerDeclined,
    SignerSigned,
    SignerViewed,
)
from app.services.envelope_store import signer_slots
from app.services.magic_link import IssuedLink, MagicLinkService
from app.services.notifications import NotificationDispatcher
from app.services.signing_order import GateDecision, evaluate

logger = logging.getLogger(__name__)


# ─── Envelope State Machine ───────────────────────────────────────────────────

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "DRAFT": {"PENDING", "CANCELLED"},
    "PENDING": {"PENDING", "IN_PROGRESS", "COMPLETED", "CANCELLED", "EXPIRED"},
    "IN_PROGRESS": {"COMPLETED", "CANCELLED", "EXPIRED"},
    "COMPLETED": set(),
    "CANCELLED": set(),
    "EXPIRED": set(),
}

# can_sign() reasons on top of the gate's own
DENIED_ENVELOPE_NOT_OPEN = "ENVELOPE_NOT_OPEN"
DENIED_ENVELOPE_EXPIRED = "ENVELOPE_EXPIRED"
DENIED_SIGNER_CLOSED = "SIGNER_CLOSED"


def advance_state(current: str, target: str) -> str:
    """Validate and advance the envelope state machine."""
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidStateTransitionError(current, target)
    return target


# ─── Result types ─────────────────────────────────────────────────────────────


@dataclass
class Placement:
    x: float
    y: float
    width: float
    height: float


@dataclass
class SendResult:
    envelope: Envelope
    links: Dict[str, IssuedLink] = field(default_factory=dict)  # keyed by signer id
    resend: bool = False


# ─── Lifecycle ────────────────────────────────────────────────────────────────


class EnvelopeLifecycle:
    def __init__(
        self,
        repos: EnvelopeRepositories,
        links: MagicLinkService,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.repos = repos
        self.links = links
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()
        self.audit = AuditLogAppender(repos.audit_logs, self.clock)

    # ── Send ──────────────────────────────────────────────────────────────────

    def send(self, envelope_id: str, actor: str) -> SendResult:
        """
        DRAFT → PENDING, or a re-send while still PENDING. Issues a fresh link
        to every signer who has not yet signed or declined.
        """
        envelope = self._lock(envelope_id)
        self._expire_or_pass(envelope)
        resend = envelope.status == "PENDING"
        target = advance_state(envelope.status, "PENDING")

        errors = []
        if not envelope.documents:
            errors.append({"field": "documents", "error": "Envelope must have at least one document"})
        if not envelope.signers:
            errors.append({"field": "signers", "error": "Envelope must have at least one signer"})
        if envelope.signing_workflow == "SEQUENTIAL":
            missing = [s.email for s in envelope.signers if s.sequence_number is None]
            if missing:
                errors.append(
                    {
                        "field": "sequence_number",
                        "error": f"Signers without a sequence_number: {', '.join(missing)}",
                    }
                )
        if envelope.status == "DRAFT" and self._is_past_expiry(envelope):
            errors.append({"field": "expires_at", "error": "Envelope expiry is already in the past"})
        if errors:
            raise EnvelopeValidationError(errors)

        now = self.clock.now()
        envelope.status = target
        envelope.sent_at = now
        envelope.updated_at = now
        self.audit.append(
            envelope.id,
            EnvelopeSent(
                signer_count=len(envelope.signers),
                workflow=envelope.signing_workflow,
                resend=resend,
            ),
            actor=actor,
        )

        result = SendResult(envelope=envelope, resend=resend)
        for signer in envelope.signers:
            if signer.status in ("SIGNED", "DECLINED"):
                continue
            result.links[signer.id] = self.links.stamp_link(signer)
        self.repos.commit()
        logger.info(
            "Envelope sent: id=%s signers=%d resend=%s", envelope.id, len(result.links), resend
        )

        if self.notifier is not None:
            hours = self.settings.MAGIC_LINK_EXPIRY_HOURS
            for signer in envelope.signers:
                link = result.links.get(signer.id)
                if link is not None:
                    self.notifier.send_invitation(envelope, signer, link.url, hours)
        return result

    # ── Signer actions ────────────────────────────────────────────────────────

    def record_view(self, signer_id: str) -> Signer:
        signer = self._signer(signer_id)
        envelope = self._lock(signer.envelope_id)
        self._expire_or_pass(envelope)
        self._require_open(envelope)

        if signer.status != "PENDING":
            return signer

        now = self.clock.now()
        signer.status = "VIEWED"
        signer.viewed_at = now
        self.audit.append(
            envelope.id, SignerViewed(signer_id=signer.id, signer_email=signer.email)
        )
        if envelope.status == "PENDING":
            envelope.status = advance_state(envelope.status, "IN_PROGRESS")
            envelope.updated_at = now
        self.repos.commit()
        return signer

    def capture_signature(
        self,
        signer_id: str,
        signature_data_url: str,
        initials_data_url: Optional[str] = None,
        page_number: Optional[int] = None,
        placement: Optional[Placement] = None,
        signer_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Signature:
        signer = self._signer(signer_id)
        envelope = self._lock(signer.envelope_id)
        signature = self._signature_of(signer)

        if signature.status == "SIGNED":
            raise AlreadySignedError(signer.id, signature.signed_at)
        self._expire_or_pass(envelope)
        self._require_open(envelope)
        if signer.status in ("DECLINED", "EXPIRED"):
            raise InvalidStateError(
                f"Signer {signer.id} is {signer.status} and cannot sign",
                current_state=signer.status,
            )
        if not signature_data_url:
            raise EnvelopeValidationError(
                [{"field": "signature_data_url", "error": "Signature image is required"}]
            )

        decision = evaluate(envelope.signing_workflow, signer_slots(envelope), signer.id)
        if not decision.allowed:
            raise WorkflowViolationError(signer.id, decision.reason, decision.blocking_signer_ids)

        now = self.clock.now()
        signature.signature_data_url = signature_data_url
        signature.initials_data_url = initials_data_url
        signature.signature_hash = sha256_hex(signature_data_url)
        signature.page_number = page_number
        if placement is not None:
            signature.x = placement.x
            signature.y = placement.y
            signature.width = placement.width
            signature.height = placement.height
        signature.signer_ip = signer_ip
        signature.signer_user_agent = user_agent
        signature.signed_at = now
        signature.status = "SIGNED"

        signer.status = "SIGNED"
        signer.signed_at = now
        self.links.clear_session(signer)

        self.audit.append(
            envelope.id,
            SignerSigned(
                signer_id=signer.id,
                signature_hash=signature.signature_hash,
                page_number=page_number,
                signer_ip=signer_ip,
            ),
        )
        if envelope.status == "PENDING":
            envelope.status = advance_state(envelope.status, "IN_PROGRESS")
        envelope.updated_at = now

        self.repos.flush()
        completed = self._complete_if_all_signed(envelope, now)
        self.repos.commit()
        logger.info("Signature captured: envelope=%s signer=%s", envelope.id, signer.id)

        if self.notifier is not None:
            self.notifier.send_signature_confirmation(envelope, signer)
            if completed:
                self.notifier.send_completed_notice(envelope)
        return signature

    def decline_signature(self, signer_id: str, reason: Optional[str] = None) -> Signer:
        """A decline by any signer voids the whole envelope."""
        signer = self._signer(signer_id)
        envelope = self._lock(signer.envelope_id)
        signature = self._signature_of(signer)

        self._expire_or_pass(envelope)
        self._require_open(envelope)
        if signer.status == "SIGNED":
            raise AlreadySignedError(signer.id, signer.signed_at)
        if signer.status == "DECLINED":
            raise InvalidStateError(
                f"Signer {signer.id} has already declined", current_state="DECLINED"
            )

        now = self.clock.now()
        signer.status = "DECLINED"
        signer.declined_at = now
        signer.declined_reason = reason
        signature.status = "DECLINED"
        self.links.clear_session(signer)

        envelope.status = advance_state(envelope.status, "CANCELLED")
        envelope.cancelled_at = now
        envelope.updated_at = now

        self.audit.append(
            envelope.id,
            SignerDeclined(signer_id=signer.id, signer_email=signer.email, reason=reason),
        )
        self.repos.commit()
        logger.info("Envelope cancelled by decline: envelope=%s signer=%s", envelope.id, signer.id)

        if self.notifier is not None:
            self.notifier.send_declined_notice(envelope, signer)
        return signer

    # ── Administrative ────────────────────────────────────────────────────────

    def cancel(self, envelope_id: str, actor: str, reason: Optional[str] = None) -> Envelope:
        envelope = self._lock(envelope_id)
        self._expire_or_pass(envelope)
        now = self.clock.now()
        envelope.status = advance_state(envelope.status, "CANCELLED")
        envelope.cancelled_at = now
        envelope.updated_at = now
        self.audit.append(envelope.id, EnvelopeCancelled(reason=reason), actor=actor)
        self.repos.commit()
        logger.info("Envelope cancelled: id=%s actor=%s", envelope.id, actor)
        return envelope

    def reissue_link(self, envelope_id: str, signer_id: str, actor: str) -> IssuedLink:
        """Fresh link for one signer of a sent envelope, e-mailed after commit."""
        envelope = self._lock(envelope_id)
        self._expire_or_pass(envelope)
        self._require_open(envelope)
        signer = self._signer(signer_id)
        if signer.envelope_id != envelope.id:
            raise SignerNotFoundError(signer_id, envelope_id)
        if signer.status in ("SIGNED", "DECLINED"):
            raise InvalidStateError(
                f"Signer {signer.id} is {signer.status}; no new link can be issued",
                current_state=signer.status,
            )

        link = self.links.stamp_link(signer)
        self.audit.append(
            envelope.id,
            RawEvent("LINK_REISSUED", {"signer_id": signer.id, "signer_email": signer.email}),
            actor=actor,
        )
        self.repos.commit()
        logger.info("Link reissued: envelope=%s signer=%s actor=%s", envelope.id, signer.id, actor)

        if self.notifier is not None:
            self.notifier.send_invitation(
                envelope, signer, link.url, self.settings.MAGIC_LINK_EXPIRY_HOURS
            )
        return link

    def expire_if_due(self, envelope_id: str) -> bool:
        """Apply lazy expiry on its own. Returns True if the envelope expired now."""
        envelope = self._lock(envelope_id)
        expired = self._apply_expiry(envelope)
        if expired:
            self.repos.commit()
        else:
            self.repos.rollback()
        return expired

    # ── Read-only queries ─────────────────────────────────────────────────────

    def verify_signature_integrity(self, signature_id: str) -> bool:
        signature = self.repos.signatures.get(signature_id)
        if signature is None:
            return False
        if not signature.signature_data_url or not signature.signature_hash:
            return False
        return secure_compare(sha256_hex(signature.signature_data_url), signature.signature_hash)

    def can_sign(self, signer_id: str) -> GateDecision:
        signer = self._signer(signer_id)
        envelope = signer.envelope
        if envelope.status not in OPEN_ENVELOPE_STATUSES:
            return GateDecision(False, DENIED_ENVELOPE_NOT_OPEN)
        if self._is_past_expiry(envelope):
            return GateDecision(False, DENIED_ENVELOPE_EXPIRED)
        if signer.status not in ("PENDING", "VIEWED"):
            return GateDecision(False, DENIED_SIGNER_CLOSED)
        return evaluate(envelope.signing_workflow, signer_slots(envelope), signer.id)

    def signed_documents(self, signer_id: str) -> List[Document]:
        signer = self._signer(signer_id)
        envelope = signer.envelope
        if envelope.status != "COMPLETED":
            raise InvalidStateError(
                "Signed documents are available once every signer has signed",
                current_state=envelope.status,
            )
        return list(envelope.documents)

    # ── Private ───────────────────────────────────────────────────────────────

    def _lock(self, envelope_id: str) -> Envelope:
        envelope = self.repos.envelopes.get_for_update(envelope_id)
        if envelope is None:
            raise EnvelopeNotFoundError(envelope_id)
        return envelope

    def _signer(self, signer_id: str) -> Signer:
        signer = self.repos.signers.get(signer_id)
        if signer is None:
            raise SignerNotFoundError(signer_id)
        return signer

    def _signature_of(self, signer: Signer) -> Signature:
        if signer.signature is None:
            raise AggregateInvariantError(f"Signer {signer.id} has no signature row")
        return signer.signature

    def _require_open(self, envelope: Envelope) -> None:
        if envelope.status not in OPEN_ENVELOPE_STATUSES:
            raise InvalidStateError(
                f"Envelope {envelope.id} is {envelope.status} and not open for signing",
                current_state=envelope.status,
            )

    def _is_past_expiry(self, envelope: Envelope) -> bool:
        return envelope.expires_at is not None and envelope.expires_at < self.clock.now()

    def _apply_expiry(self, envelope: Envelope) -> bool:
        if envelope.status not in OPEN_ENVELOPE_STATUSES or not self._is_past_expiry(envelope):
            return False
        envelope.status = advance_state(envelope.status, "EXPIRED")
        envelope.updated_at = self.clock.now()
        self.audit.append(
            envelope.id, EnvelopeExpired(expires_at=envelope.expires_at.isoformat())
        )
        logger.info("Envelope expired: id=%s", envelope.id)
        return True

    def _expire_or_pass(self, envelope: Envelope) -> None:
        """Persist a due expiry, then reject the action that observed it."""
        if self._apply_expiry(envelope):
            self.repos.commit()
            raise InvalidStateError(
                f"Envelope {envelope.id} expired at {envelope.expires_at.isoformat()}",
                current_state="EXPIRED",
            )

    def _complete_if_all_signed(self, envelope: Envelope, now: datetime) -> bool:
        signatures = self.repos.signatures.list_for_envelope(envelope.id)
        if not signatures or len(signatures) != len(envelope.signers):
            return False
        if any(sig.status != "SIGNED" for sig in signatures):
            return False

        envelope.status = advance_state(envelope.status, "COMPLETED")
        envelope.completed_at = now
        self.audit.append(
            envelope.id,
            EnvelopeCompleted(completed_at=now.isoformat(), total_signers=len(signatures)),
        )
        logger.info("Envelope completed: id=%s", envelope.id)
        return True
