"""
StudioSign - API v1: Public signer routes

The magic-link token in the path identifies the signer. When REQUIRE_OTP is
on, state-changing routes also need the session id obtained from
/otp/verify, sent in the X-Signing-Session header.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from app.api.deps import get_lifecycle, get_magic_links
from app.config import Settings, get_settings
from app.models.envelopes import Document, Signer
from app.services.lifecycle import EnvelopeLifecycle, Placement
from app.services.magic_link import MagicLinkService

router = APIRouter(prefix="/sign", tags=["signing"])

SESSION_HEADER = "X-Signing-Session"


# ── Request / Response schemas ────────────────────────────────────────────────


class VerifyOTPRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)


class CaptureSignatureRequest(BaseModel):
    signature_data_url: str = Field(..., min_length=1)
    initials_data_url: Optional[str] = None
    page_number: Optional[int] = Field(None, ge=1)
    x: Optional[float] = None
    y: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None


class DeclineRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)


class SignerDocument(BaseModel):
    id: str
    name: str
    file_name: str
    file_hash: str
    file_size: int


class SigningContextResponse(BaseModel):
    envelope_id: str
    envelope_name: str
    envelope_status: str
    signing_workflow: str
    signer_id: str
    signer_name: str
    signer_status: str
    can_sign: bool
    gate_reason: str
    otp_required: bool
    documents: List[SignerDocument]


class SignerStatusResponse(BaseModel):
    signer_id: str
    signer_status: str
    envelope_status: str


class OTPIssuedResponse(BaseModel):
    sent_to: str
    expires_at: datetime


class SessionResponse(BaseModel):
    session_id: str
    expires_at: datetime


class SessionExtendedResponse(BaseModel):
    expires_at: datetime


class SignatureCapturedResponse(BaseModel):
    signature_id: str
    signature_hash: str
    signed_at: datetime
    envelope_status: str


def _mask_email(email: str) -> str:
    local, _, domain = email.partition("@")
    if len(local) <= 2:
        return f"{local[:1]}***@{domain}"
    return f"{local[0]}***{local[-1]}@{domain}"


def _documents(documents: List[Document]) -> List[SignerDocument]:
    return [
        SignerDocument(
            id=d.id,
            name=d.name,
            file_name=d.file_name,
            file_hash=d.file_hash,
            file_size=d.file_size,
        )
        for d in documents
    ]


def _status(signer: Signer) -> SignerStatusResponse:
    return SignerStatusResponse(
        signer_id=signer.id,
        signer_status=signer.status,
        envelope_status=signer.envelope.status,
    )


# ── Endpoints ─────────────────────────────────────────────────────────────────


@router.get("/{token}", response_model=SigningContextResponse)
def signing_context(
    token: str,
    links: MagicLinkService = Depends(get_magic_links),
    lifecycle: EnvelopeLifecycle = Depends(get_lifecycle),
    settings: Settings = Depends(get_settings),
):
    """Everything the signing page needs to render for this link."""
    signer = links.authenticate(token)
    envelope = signer.envelope
    decision = lifecycle.can_sign(signer.id)
    return SigningContextResponse(
        envelope_id=envelope.id,
        envelope_name=envelope.name,
        envelope_status=envelope.status,
        signing_workflow=envelope.signing_workflow,
        signer_id=signer.id,
        signer_name=signer.name,
        signer_status=signer.status,
        can_sign=decision.allowed,
        gate_reason=decision.reason,
        otp_required=settings.REQUIRE_OTP,
        documents=_documents(envelope.documents),
    )


@router.post("/{token}/view", response_model=SignerStatusResponse)
def record_view(
    token: str,
    links: MagicLinkService = Depends(get_magic_links),
    lifecycle: EnvelopeLifecycle = Depends(get_lifecycle),
):
    signer = links.authenticate(token)
    return _status(lifecycle.record_view(signer.id))


@router.post("/{token}/otp", response_model=OTPIssuedResponse)
def request_otp(
    token: str,
    links: MagicLinkService = Depends(get_magic_links),
):
    signer = links.authenticate(token)
    issued = links.issue_otp(signer.id, signer.email)
    return OTPIssuedResponse(sent_to=_mask_email(signer.email), expires_at=issued.expires_at)


@router.post("/{token}/otp/verify", response_model=SessionResponse)
def verify_otp(
    token: str,
    req: VerifyOTPRequest,
    links: MagicLinkService = Depends(get_magic_links),
):
    signer = links.authenticate(token)
    result = links.verify_otp(signer.id, req.code)
    result.raise_for_failure()
    return SessionResponse(session_id=result.session_id, expires_at=result.expires_at)


@router.post("/{token}/session/extend", response_model=SessionExtendedResponse)
def extend_session(
    token: str,
    session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    links: MagicLinkService = Depends(get_magic_links),
):
    signer = links.authenticate(token, session_id, require_session=True)
    expires_at = links.extend_session(signer.id, session_id)
    return SessionExtendedResponse(expires_at=expires_at)


@router.post("/{token}/sign", response_model=SignatureCapturedResponse)
def capture_signature(
    token: str,
    req: CaptureSignatureRequest,
    request: Request,
    session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    links: MagicLinkService = Depends(get_magic_links),
    lifecycle: EnvelopeLifecycle = Depends(get_lifecycle),
    settings: Settings = Depends(get_settings),
):
    signer = links.authenticate(token, session_id, require_session=settings.REQUIRE_OTP)

    placement = None
    if None not in (req.x, req.y, req.width, req.height):
        placement = Placement(x=req.x, y=req.y, width=req.width, height=req.height)

    signature = lifecycle.capture_signature(
        signer.id,
        signature_data_url=req.signature_data_url,
        initials_data_url=req.initials_data_url,
        page_number=req.page_number,
        placement=placement,
        signer_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return SignatureCapturedResponse(
        signature_id=signature.id,
        signature_hash=signature.signature_hash,
        signed_at=signature.signed_at,
        envelope_status=signer.envelope.status,
    )


@router.post("/{token}/decline", response_model=SignerStatusResponse)
def decline(
    token: str,
    req: DeclineRequest,
    session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    links: MagicLinkService = Depends(get_magic_links),
    lifecycle: EnvelopeLifecycle = Depends(get_lifecycle),
    settings: Settings = Depends(get_settings),
):
    signer = links.authenticate(token, session_id, require_session=settings.REQUIRE_OTP)
    return _status(lifecycle.decline_signature(signer.id, req.reason))


@router.get("/{token}/documents", response_model=List[SignerDocument])
def signed_documents(
    token: str,
    links: MagicLinkService = Depends(get_magic_links),
    lifecycle: EnvelopeLifecycle = Depends(get_lifecycle),
):
    """Completed document set, still reachable through the link after signing."""
    signer = links.link_holder(token)
    return _documents(lifecycle.signed_documents(signer.id))
