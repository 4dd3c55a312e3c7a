"""
StudioSign - Envelope e-mail notifications.

Delivery is best effort: a failed send is logged and swallowed so it never
rolls back the state change that triggered it.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from html import escape
from typing import Any, Callable, Dict, Optional, Protocol

from app.config import Settings, get_settings
from app.core.logging import fingerprint
from app.core.tokens import format_otp
from app.models.envelopes import Envelope, Signer

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        template: str,
        metadata: Dict[str, Any],
    ) -> None: ...


class LoggingEmailSender:
    """Default sender when SMTP is disabled: records the intent only."""

    def send(self, to, subject, html, text, template, metadata) -> None:
        logger.info("Email not sent (disabled): template=%s to=%s", template, fingerprint(to))


class SMTPEmailSender:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def send(self, to, subject, html, text, template, metadata) -> None:
        msg = EmailMessage()
        msg["From"] = self.settings.EMAIL_FROM
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(text)
        msg.add_alternative(html, subtype="html")

        with smtplib.SMTP(self.settings.SMTP_HOST, self.settings.SMTP_PORT, timeout=10) as smtp:
            if self.settings.SMTP_USE_TLS:
                smtp.starttls()
            if self.settings.SMTP_USERNAME and self.settings.SMTP_PASSWORD:
                smtp.login(self.settings.SMTP_USERNAME, self.settings.SMTP_PASSWORD)
            smtp.send_message(msg)
        logger.info("Email sent: template=%s to=%s", template, fingerprint(to))


def build_email_sender(settings: Optional[Settings] = None) -> EmailSender:
    settings = settings or get_settings()
    if settings.EMAIL_ENABLED:
        return SMTPEmailSender(settings)
    return LoggingEmailSender()


# ─── Templates ────────────────────────────────────────────────────────────────


def _wrap(title: str, body_html: str) -> str:
    return (
        "<!DOCTYPE html><html><body style=\"font-family: sans-serif;\">"
        f"<h2>{escape(title)}</h2>{body_html}"
        "</body></html>"
    )


def _greeting(name: Optional[str]) -> str:
    return f"Hello {name}," if name else "Hello,"


# ─── Dispatcher ───────────────────────────────────────────────────────────────


class NotificationDispatcher:
    """Builds envelope e-mails and hands them to an EmailSender."""

    def __init__(
        self,
        sender: EmailSender,
        owner_email_lookup: Optional[Callable[[str], Optional[str]]] = None,
    ) -> None:
        self.sender = sender
        self.owner_email_lookup = owner_email_lookup

    def send_invitation(
        self, envelope: Envelope, signer: Signer, url: str, expires_in_hours: int
    ) -> bool:
        subject = f"Documents ready for your signature: {envelope.name}"
        text = (
            f"{_greeting(signer.name)}\n\n"
            f"You have been asked to review and sign \"{envelope.name}\".\n\n"
            f"Open this secure link to continue:\n{url}\n\n"
            f"The link expires in {expires_in_hours} hours. Do not share it with anyone.\n"
        )
        html = _wrap(
            "Documents Ready for Your Signature",
            f"<p>{escape(_greeting(signer.name))}</p>"
            f"<p>You have been asked to review and sign <strong>{escape(envelope.name)}</strong>.</p>"
            f"<p><a href=\"{escape(url)}\">Review &amp; Sign</a></p>"
            f"<p><em>This link expires in {expires_in_hours} hours. Do not share it with anyone.</em></p>",
        )
        return self._dispatch(
            signer.email,
            subject,
            html,
            text,
            "envelope_invitation",
            {"envelope_id": envelope.id, "signer_id": signer.id},
        )

    def send_otp(
        self, envelope: Envelope, signer: Signer, email: str, code: str, expires_in_minutes: int
    ) -> bool:
        subject = "Your verification code"
        display_code = format_otp(code)
        text = (
            f"{_greeting(signer.name)}\n\n"
            f"Use this code to verify your identity and access \"{envelope.name}\":\n\n"
            f"    {display_code}\n\n"
            f"This code will expire in {expires_in_minutes} minutes. "
            "If you didn't request it, ignore this email.\n"
        )
        html = _wrap(
            "Your Verification Code",
            f"<p>{escape(_greeting(signer.name))}</p>"
            f"<p>Use the code below to access <strong>{escape(envelope.name)}</strong>:</p>"
            f"<p style=\"font-size: 28px; letter-spacing: 6px;\"><strong>{display_code}</strong></p>"
            f"<p>This code will expire in {expires_in_minutes} minutes.</p>",
        )
        # the code itself stays out of metadata: senders may persist or log it
        return self._dispatch(
            email,
            subject,
            html,
            text,
            "envelope_otp",
            {"envelope_id": envelope.id, "signer_id": signer.id},
        )

    def send_signature_confirmation(self, envelope: Envelope, signer: Signer) -> bool:
        subject = f"You signed: {envelope.name}"
        text = (
            f"{_greeting(signer.name)}\n\n"
            f"Thank you. Your signature on \"{envelope.name}\" has been recorded.\n"
        )
        html = _wrap(
            "Signature Recorded",
            f"<p>{escape(_greeting(signer.name))}</p>"
            f"<p>Thank you. Your signature on <strong>{escape(envelope.name)}</strong> has been recorded.</p>",
        )
        return self._dispatch(
            signer.email,
            subject,
            html,
            text,
            "envelope_signed_confirmation",
            {"envelope_id": envelope.id, "signer_id": signer.id},
        )

    def send_completed_notice(self, envelope: Envelope) -> bool:
        owner = self._owner_email(envelope)
        if owner is None:
            return False
        subject = f"Envelope completed: {envelope.name}"
        text = f"All signers have signed \"{envelope.name}\".\n"
        html = _wrap(
            "Envelope Completed",
            f"<p>All signers have signed <strong>{escape(envelope.name)}</strong>.</p>",
        )
        return self._dispatch(
            owner, subject, html, text, "envelope_completed", {"envelope_id": envelope.id}
        )

    def send_declined_notice(self, envelope: Envelope, signer: Signer) -> bool:
        owner = self._owner_email(envelope)
        if owner is None:
            return False
        reason = signer.declined_reason or "No reason given"
        subject = f"Envelope declined: {envelope.name}"
        text = (
            f"{signer.name} ({signer.email}) declined to sign \"{envelope.name}\".\n"
            f"Reason: {reason}\n\nThe envelope has been cancelled.\n"
        )
        html = _wrap(
            "Envelope Declined",
            f"<p>{escape(signer.name)} ({escape(signer.email)}) declined to sign "
            f"<strong>{escape(envelope.name)}</strong>.</p>"
            f"<p>Reason: {escape(reason)}</p><p>The envelope has been cancelled.</p>",
        )
        return self._dispatch(
            owner,
            subject,
            html,
            text,
            "envelope_declined",
            {"envelope_id": envelope.id, "signer_id": signer.id},
        )

    # ── Private ───────────────────────────────────────────────────────────────

    def _owner_email(self, envelope: Envelope) -> Optional[str]:
        if self.owner_email_lookup is None:
            return None
        email = self.owner_email_lookup(envelope.created_by)
        if not email:
            logger.warning("No owner email found for envelope %s", envelope.id)
        return email

    def _dispatch(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        template: str,
        metadata: Dict[str, Any],
    ) -> bool:
        try:
            self.sender.send(to, subject, html, text, template, metadata)
        except Exception:
            logger.exception(
                "Email delivery failed: template=%s to=%s", template, fingerprint(to)
            )
            return False
        return True
