"""
StudioSign - Custom Exceptions.
Each exception carries: message, error_code, http_status_code, optional detail dict.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

# ─────────────────────────────────────────────────────────────────────────────
# BASE
# ─────────────────────────────────────────────────────────────────────────────


class StudioSignError(Exception):
    """Root exception for all expected, caller-recoverable errors."""

    http_status_code: int = 400
    error_code: str = "STUDIOSIGN_ERROR"

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.detail = detail or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "detail": self.detail,
        }


class AggregateInvariantError(RuntimeError):
    """
    The stored envelope graph is inconsistent (e.g. a signer without its
    paired signature row). Not a StudioSignError: it is never expected and
    surfaces as a 500.
    """


# ─────────────────────────────────────────────────────────────────────────────
# NOT FOUND
# ─────────────────────────────────────────────────────────────────────────────


class NotFoundError(StudioSignError):
    http_status_code = 404
    error_code = "NOT_FOUND"


class EnvelopeNotFoundError(NotFoundError):
    error_code = "ENVELOPE_NOT_FOUND"

    def __init__(self, envelope_id: str) -> None:
        self.envelope_id = envelope_id
        super().__init__(
            message=f"Envelope {envelope_id} not found",
            detail={"envelope_id": envelope_id},
        )


class SignerNotFoundError(NotFoundError):
    error_code = "SIGNER_NOT_FOUND"

    def __init__(self, signer_id: str, envelope_id: Optional[str] = None) -> None:
        self.signer_id = signer_id
        self.envelope_id = envelope_id
        where = f" in envelope {envelope_id}" if envelope_id else ""
        super().__init__(
            message=f"Signer {signer_id} not found{where}",
            detail={"signer_id": signer_id, "envelope_id": envelope_id},
        )


class DocumentNotFoundError(NotFoundError):
    error_code = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: str, envelope_id: Optional[str] = None) -> None:
        self.document_id = document_id
        self.envelope_id = envelope_id
        where = f" in envelope {envelope_id}" if envelope_id else ""
        super().__init__(
            message=f"Document {document_id} not found{where}",
            detail={"document_id": document_id, "envelope_id": envelope_id},
        )


class SignatureNotFoundError(NotFoundError):
    error_code = "SIGNATURE_NOT_FOUND"

    def __init__(self, signature_id: str) -> None:
        self.signature_id = signature_id
        super().__init__(
            message=f"Signature {signature_id} not found",
            detail={"signature_id": signature_id},
        )


# ─────────────────────────────────────────────────────────────────────────────
# STATE MACHINE
# ─────────────────────────────────────────────────────────────────────────────


class InvalidStateError(StudioSignError):
    http_status_code = 409
    error_code = "INVALID_STATE"

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.current_state = current_state
        payload = dict(detail or {})
        if current_state is not None:
            payload.setdefault("current_state", current_state)
        super().__init__(message=message, detail=payload)


class InvalidStateTransitionError(InvalidStateError):
    error_code = "INVALID_STATE_TRANSITION"

    def __init__(self, current: str, target: str) -> None:
        self.target_state = target
        super().__init__(
            message=f"Cannot transition from '{current}' to '{target}'",
            current_state=current,
            detail={"target_state": target},
        )


class AlreadySignedError(InvalidStateError):
    error_code = "ALREADY_SIGNED"

    def __init__(self, signer_id: str, signed_at: Optional[datetime] = None) -> None:
        self.signer_id = signer_id
        self.signed_at = signed_at
        super().__init__(
            message=f"Signer {signer_id} has already signed",
            current_state="SIGNED",
            detail={
                "signer_id": signer_id,
                "signed_at": signed_at.isoformat() if signed_at else None,
            },
        )


class WorkflowViolationError(StudioSignError):
    """The signing-order gate refused: the signer is out of turn."""

    http_status_code = 403
    error_code = "WORKFLOW_VIOLATION"

    def __init__(
        self,
        signer_id: str,
        reason: str,
        blocking_signer_ids: Optional[List[str]] = None,
    ) -> None:
        self.signer_id = signer_id
        self.reason = reason
        self.blocking_signer_ids = blocking_signer_ids or []
        super().__init__(
            message="Signer cannot sign at this time (workflow constraints)",
            detail={
                "signer_id": signer_id,
                "reason": reason,
                "blocking_signer_ids": self.blocking_signer_ids,
            },
        )


# ─────────────────────────────────────────────────────────────────────────────
# SIGNER AUTHENTICATION (magic link / OTP / session)
# ─────────────────────────────────────────────────────────────────────────────


class AuthExpiredError(StudioSignError):
    http_status_code = 401
    error_code = "AUTH_EXPIRED"

    def __init__(self, what: str = "link") -> None:
        self.what = what
        super().__init__(
            message=f"This signing {what} has expired. Please request a new one.",
            detail={"credential": what},
        )


class AuthLockedOutError(StudioSignError):
    http_status_code = 429
    error_code = "AUTH_LOCKED_OUT"

    def __init__(self) -> None:
        super().__init__(
            message="Too many failed attempts. Please request a new code.",
            detail={"attempts_remaining": 0},
        )


class AuthMismatchError(StudioSignError):
    http_status_code = 401
    error_code = "AUTH_MISMATCH"

    def __init__(
        self,
        message: str = "This signing link is invalid.",
        attempts_remaining: Optional[int] = None,
    ) -> None:
        self.attempts_remaining = attempts_remaining
        detail: Dict[str, Any] = {}
        if attempts_remaining is not None:
            detail["attempts_remaining"] = attempts_remaining
        super().__init__(message=message, detail=detail)


# ─────────────────────────────────────────────────────────────────────────────
# VALIDATION
# ─────────────────────────────────────────────────────────────────────────────


class EnvelopeValidationError(StudioSignError):
    http_status_code = 422
    error_code = "ENVELOPE_VALIDATION_ERROR"

    def __init__(self, errors: List[Dict[str, str]]) -> None:
        self.errors = errors
        summary = "; ".join(e["error"] for e in errors)
        super().__init__(
            message=f"Envelope validation failed: {summary}",
            detail={"validation_errors": errors},
        )


class DuplicateSignerError(EnvelopeValidationError):
    error_code = "DUPLICATE_SIGNER"

    def __init__(self, envelope_id: str, email: str) -> None:
        self.envelope_id = envelope_id
        self.email = email
        super().__init__(
            [{"field": "email", "error": f"Signer {email} already exists in this envelope"}]
        )
        self.detail["envelope_id"] = envelope_id


class SequenceNumberConflictError(EnvelopeValidationError):
    error_code = "SEQUENCE_NUMBER_CONFLICT"

    def __init__(self, envelope_id: str, sequence_number: int) -> None:
        self.envelope_id = envelope_id
        self.sequence_number = sequence_number
        super().__init__(
            [
                {
                    "field": "sequence_number",
                    "error": f"Sequence number {sequence_number} is already taken",
                }
            ]
        )
        self.detail["envelope_id"] = envelope_id


# ─────────────────────────────────────────────────────────────────────────────
# STAFF AUTHENTICATION / RBAC
# ─────────────────────────────────────────────────────────────────────────────


class PermissionDeniedError(StudioSignError):
    http_status_code = 403
    error_code = "PERMISSION_DENIED"

    def __init__(self, role: str, action: str = "", resource: str = "") -> None:
        self.role = role
        self.action = action
        self.resource = resource
        super().__init__(
            message=f"Role '{role}' is not permitted to perform {action} on {resource}",
            detail={"role": role, "action": action, "resource": resource},
        )


class AuthenticationError(StudioSignError):
    http_status_code = 401
    error_code = "AUTHENTICATION_ERROR"

    def __init__(self, reason: str = "Invalid or expired token") -> None:
        super().__init__(message=reason, detail={"reason": reason})
