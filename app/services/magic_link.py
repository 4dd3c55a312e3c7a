"""
StudioSign - Magic Link & Signing Session Service

Passwordless proof of identity for a signer, in two factors: possession of
the link (token) and, optionally, of the inbox (6-digit OTP). A verified OTP
is exchanged for a short-lived signing session.

Not-found / expired / locked-out are result values, not exceptions. Results
expose ``raise_for_failure()`` for callers (the HTTP layer) that prefer the
typed errors from app.core.exceptions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.config import Settings, get_settings
from app.core.exceptions import (
    AuthExpiredError,
    AuthLockedOutError,
    AuthMismatchError,
    SignerNotFoundError,
)
from app.core.logging import fingerprint
from app.core.tokens import (
    Clock,
    RandomSource,
    SecretsRandomSource,
    SystemClock,
    generate_magic_token,
    generate_otp_code,
    generate_session_id,
    hash_otp,
    is_expired,
    secure_compare,
)
from app.models.envelopes import Signer
from app.repositories.envelopes import EnvelopeRepositories
from app.services.audit import (
    AuditLogAppender,
    LinkIssued,
    LinkRevoked,
    OTPIssued,
    OTPVerified,
    SignerExpired,
)
from app.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

# Shared ceiling for link validation and OTP verification. Not configurable.
MAX_FAILED_ATTEMPTS = 5

# Signers in these states can no longer use their link or session
CLOSED_SIGNER_STATUSES = frozenset({"SIGNED", "DECLINED"})

# OTP failure kinds
OTP_MISSING = "MISSING"
OTP_EXPIRED = "EXPIRED"
OTP_LOCKED_OUT = "LOCKED_OUT"
OTP_MISMATCH = "MISMATCH"


# ─── Result types ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class IssuedLink:
    token: str
    url: str
    expires_at: datetime


@dataclass(frozen=True)
class LinkValidation:
    valid: bool
    signer_id: Optional[str] = None
    expired: bool = False
    not_found: bool = False
    locked_out: bool = False

    def raise_for_failure(self) -> None:
        if self.valid:
            return
        if self.expired:
            raise AuthExpiredError("link")
        if self.locked_out:
            raise AuthLockedOutError()
        # unknown token and closed signer read the same to the caller
        raise AuthMismatchError()


@dataclass(frozen=True)
class IssuedOTP:
    code: str
    expires_at: datetime


@dataclass(frozen=True)
class OTPVerification:
    success: bool
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    attempts_remaining: Optional[int] = None
    failure: Optional[str] = None

    def raise_for_failure(self) -> None:
        if self.success:
            return
        if self.failure == OTP_LOCKED_OUT:
            raise AuthLockedOutError()
        if self.failure == OTP_EXPIRED:
            raise AuthExpiredError("code")
        if self.failure == OTP_MISMATCH:
            raise AuthMismatchError(
                "The code you entered is incorrect.",
                attempts_remaining=self.attempts_remaining,
            )
        raise AuthMismatchError("No active verification code. Please request a new one.")


# ─── Service ──────────────────────────────────────────────────────────────────


class MagicLinkService:
    def __init__(
        self,
        repos: EnvelopeRepositories,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Optional[Clock] = None,
        rng: Optional[RandomSource] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.repos = repos
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.rng = rng or SecretsRandomSource()
        self.settings = settings or get_settings()
        self.audit = AuditLogAppender(repos.audit_logs, self.clock)

    # ── Links ─────────────────────────────────────────────────────────────────

    def issue_link(self, signer_id: str, expiry_hours: Optional[int] = None) -> IssuedLink:
        """Generate and store a fresh link token. Does not send e-mail."""
        signer = self._require(signer_id)
        link = self.stamp_link(signer, expiry_hours)
        self.repos.commit()
        return link

    def stamp_link(self, signer: Signer, expiry_hours: Optional[int] = None) -> IssuedLink:
        """issue_link without the commit, for callers already inside a transaction."""
        hours = expiry_hours if expiry_hours is not None else self.settings.MAGIC_LINK_EXPIRY_HOURS
        token = generate_magic_token(self.rng)
        expires_at = self.clock.now() + timedelta(hours=hours)

        signer.magic_link_token = token
        signer.magic_link_expires_at = expires_at
        signer.failed_attempts = 0
        if signer.status == "EXPIRED":
            signer.status = "PENDING"

        self.audit.append(
            signer.envelope_id,
            LinkIssued(signer_id=signer.id, expires_at=expires_at.isoformat()),
        )
        return IssuedLink(token=token, url=self.link_url(token), expires_at=expires_at)

    def link_url(self, token: str) -> str:
        return f"{self.settings.PUBLIC_URL}/sign/{token}"

    def validate_link(self, token: Optional[str]) -> LinkValidation:
        if not token:
            return LinkValidation(valid=False, not_found=True)

        signer = self.repos.signers.get_by_token(token)
        if signer is None:
            logger.info("Link lookup miss: token=%s", fingerprint(token))
            return LinkValidation(valid=False, not_found=True)

        now = self.clock.now()
        if is_expired(signer.magic_link_expires_at, now):
            self._mark_signer_expired(signer)
            return LinkValidation(valid=False, signer_id=signer.id, expired=True)

        if signer.status in CLOSED_SIGNER_STATUSES:
            return LinkValidation(valid=False, signer_id=signer.id)

        if signer.failed_attempts >= MAX_FAILED_ATTEMPTS:
            return LinkValidation(valid=False, signer_id=signer.id, locked_out=True)

        return LinkValidation(valid=True, signer_id=signer.id)

    def revoke_link(self, signer_id: str) -> None:
        """Clear token, OTP and session. Repeating the call changes nothing."""
        signer = self._require(signer_id)
        signer.magic_link_token = None
        signer.magic_link_expires_at = None
        signer.otp_code_hash = None
        signer.otp_expires_at = None
        signer.session_id = None
        signer.session_expires_at = None
        signer.failed_attempts = 0
        self.audit.append(signer.envelope_id, LinkRevoked(signer_id=signer.id))
        self.repos.commit()
        logger.info("Link revoked: signer=%s", signer.id)

    # ── OTP ───────────────────────────────────────────────────────────────────

    def issue_otp(
        self,
        signer_id: str,
        email: Optional[str] = None,
        expiry_minutes: Optional[int] = None,
    ) -> IssuedOTP:
        signer = self._require(signer_id)
        minutes = expiry_minutes if expiry_minutes is not None else self.settings.OTP_EXPIRY_MINUTES
        recipient = email or signer.email

        code = generate_otp_code(self.rng)
        expires_at = self.clock.now() + timedelta(minutes=minutes)

        signer.otp_code_hash = hash_otp(code)
        signer.otp_expires_at = expires_at
        signer.otp_email = recipient
        signer.failed_attempts = 0

        self.audit.append(
            signer.envelope_id,
            OTPIssued(signer_id=signer.id, expires_at=expires_at.isoformat()),
        )
        self.repos.commit()

        if self.notifier is not None:
            self.notifier.send_otp(signer.envelope, signer, recipient, code, minutes)
        else:
            logger.warning("No notifier configured; OTP for signer %s not delivered", signer.id)

        return IssuedOTP(code=code, expires_at=expires_at)

    def verify_otp(self, signer_id: str, submitted_code: str) -> OTPVerification:
        """
        Fails closed. Only a matching, unexpired code under the attempt
        ceiling produces a session; this is the one transition that grants
        signing capability.
        """
        signer = self._require(signer_id)
        now = self.clock.now()

        if not signer.otp_code_hash or signer.otp_expires_at is None:
            return OTPVerification(success=False, failure=OTP_MISSING)

        if is_expired(signer.otp_expires_at, now):
            return OTPVerification(success=False, failure=OTP_EXPIRED)

        if signer.failed_attempts >= MAX_FAILED_ATTEMPTS:
            return OTPVerification(success=False, attempts_remaining=0, failure=OTP_LOCKED_OUT)

        submitted_hash = hash_otp(submitted_code)
        if not secure_compare(submitted_hash, signer.otp_code_hash):
            attempts = self.repos.signers.increment_failed_attempts(signer, MAX_FAILED_ATTEMPTS)
            self.repos.commit()
            remaining = max(0, MAX_FAILED_ATTEMPTS - attempts)
            logger.info("OTP mismatch: signer=%s attempts_remaining=%d", signer_id, remaining)
            return OTPVerification(
                success=False, attempts_remaining=remaining, failure=OTP_MISMATCH
            )

        session_id = generate_session_id(self.rng)
        session_expires_at = now + timedelta(hours=self.settings.SESSION_EXPIRY_HOURS)
        consumed = self.repos.signers.consume_otp(
            signer,
            submitted_hash,
            now,
            MAX_FAILED_ATTEMPTS,
            session_id,
            session_expires_at,
        )
        if not consumed:
            self.repos.rollback()
            logger.info("OTP already consumed: signer=%s", signer_id)
            return OTPVerification(success=False, failure=OTP_MISSING)

        self.audit.append(
            signer.envelope_id,
            OTPVerified(signer_id=signer_id, session_expires_at=session_expires_at.isoformat()),
        )
        self.repos.commit()
        logger.info("OTP verified, session opened: signer=%s", signer_id)
        return OTPVerification(success=True, session_id=session_id, expires_at=session_expires_at)

    # ── Sessions ──────────────────────────────────────────────────────────────

    def validate_session(self, signer_id: str, session_id: Optional[str]) -> bool:
        signer = self._require(signer_id)
        if signer.status in CLOSED_SIGNER_STATUSES:
            return False
        if not secure_compare(signer.session_id, session_id):
            return False
        return not is_expired(signer.session_expires_at, self.clock.now())

    def extend_session(
        self, signer_id: str, session_id: Optional[str], hours: int = 1
    ) -> Optional[datetime]:
        if not self.validate_session(signer_id, session_id):
            return None
        signer = self._require(signer_id)
        signer.session_expires_at = self.clock.now() + timedelta(hours=hours)
        self.repos.commit()
        return signer.session_expires_at

    def invalidate_session(self, signer_id: str) -> None:
        signer = self._require(signer_id)
        self.clear_session(signer)
        self.repos.commit()

    def clear_session(self, signer: Signer) -> None:
        signer.session_id = None
        signer.session_expires_at = None

    # ── Combined check for signer-facing requests ─────────────────────────────

    def authenticate(
        self,
        token: Optional[str],
        session_id: Optional[str] = None,
        require_session: bool = False,
    ) -> Signer:
        """
        Resolve a signer from their link, optionally demanding a live
        signing session as well. Raises the typed auth errors on failure.
        """
        validation = self.validate_link(token)
        validation.raise_for_failure()
        signer = self._require(validation.signer_id)

        if require_session:
            if not session_id or not secure_compare(signer.session_id, session_id):
                raise AuthMismatchError(
                    "A verified signing session is required. Please confirm your email code."
                )
            if is_expired(signer.session_expires_at, self.clock.now()):
                raise AuthExpiredError("session")
        return signer

    def link_holder(self, token: Optional[str]) -> Signer:
        """
        Signer behind an unexpired link whatever their status. Only for
        read-only access after signing, e.g. fetching the completed documents.
        """
        signer = self.repos.signers.get_by_token(token) if token else None
        if signer is None:
            raise AuthMismatchError()
        if is_expired(signer.magic_link_expires_at, self.clock.now()):
            raise AuthExpiredError("link")
        return signer

    # ── Private ───────────────────────────────────────────────────────────────

    def _require(self, signer_id: Optional[str]) -> Signer:
        signer = self.repos.signers.get(signer_id) if signer_id else None
        if signer is None:
            raise SignerNotFoundError(str(signer_id))
        return signer

    def _mark_signer_expired(self, signer: Signer) -> None:
        if signer.status not in ("PENDING", "VIEWED") or signer.envelope.is_terminal:
            return
        signer.status = "EXPIRED"
        self.audit.append(
            signer.envelope_id,
            SignerExpired(
                signer_id=signer.id,
                link_expired_at=signer.magic_link_expires_at.isoformat()
                if signer.magic_link_expires_at
                else "",
            ),
        )
        self.repos.commit()
        logger.info("Signer link expired: signer=%s", signer.id)
