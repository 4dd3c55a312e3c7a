"""
StudioSign - API v1: Envelopes (studio staff)
"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, EmailStr, Field

from app.api.deps import get_lifecycle, get_store
from app.core.exceptions import EnvelopeValidationError, SignatureNotFoundError
from app.core.security import CurrentUser, get_current_user
from app.core.tokens import to_naive_utc
from app.models.envelopes import Envelope, EnvelopeAuditLog, Signer
from app.services.envelope_store import EnvelopeStore
from app.services.lifecycle import EnvelopeLifecycle
from app.services.rbac import RBACService

router = APIRouter(prefix="/envelopes", tags=["envelopes"])
rbac = RBACService()


# ── Request / Response schemas ────────────────────────────────────────────────


class CreateEnvelopeRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    signing_workflow: str = "SEQUENTIAL"
    expires_at: Optional[datetime] = None


class UpdateEnvelopeRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    signing_workflow: Optional[str] = None
    expires_at: Optional[datetime] = None


class AddDocumentRequest(BaseModel):
    name: str
    file_name: str
    file_path: str
    content_base64: Optional[str] = None
    file_hash: Optional[str] = None
    file_size: Optional[int] = None


class AddSignerRequest(BaseModel):
    name: str
    email: EmailStr
    role: Optional[str] = None
    sequence_number: Optional[int] = None


class CancelEnvelopeRequest(BaseModel):
    reason: Optional[str] = None


class DocumentResponse(BaseModel):
    id: str
    name: str
    file_name: str
    file_path: str
    file_hash: str
    file_size: int
    created_at: datetime


class SignerResponse(BaseModel):
    id: str
    name: str
    email: str
    role: Optional[str]
    sequence_number: Optional[int]
    status: str
    viewed_at: Optional[datetime]
    signed_at: Optional[datetime]
    declined_at: Optional[datetime]
    declined_reason: Optional[str]
    link_expires_at: Optional[datetime]
    signature_id: Optional[str]
    signature_status: Optional[str]


class SignatureResponse(BaseModel):
    id: str
    signer_id: str
    status: str
    signature_hash: Optional[str]
    page_number: Optional[int]
    x: Optional[float]
    y: Optional[float]
    width: Optional[float]
    height: Optional[float]
    signed_at: Optional[datetime]
    signer_ip: Optional[str]


class AuditEntryResponse(BaseModel):
    id: str
    action: str
    actor: Optional[str]
    metadata: Dict[str, Any]
    timestamp: datetime


class EnvelopeResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    status: str
    signing_workflow: str
    created_by: str
    sent_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    expires_at: Optional[datetime]
    created_at: datetime
    documents: List[DocumentResponse]
    signers: List[SignerResponse]
    signatures: List[SignatureResponse]
    audit_logs: List[AuditEntryResponse]


class SendEnvelopeResponse(BaseModel):
    envelope: EnvelopeResponse
    links_issued: int
    resend: bool


class ReissueLinkResponse(BaseModel):
    signer_id: str
    expires_at: datetime


class SignatureVerificationResponse(BaseModel):
    signature_id: str
    valid: bool


class EnvelopeStatsResponse(BaseModel):
    total: int
    by_status: Dict[str, int]
    total_signers: int
    total_signatures: int
    signatures_by_status: Dict[str, int]


def _signer_response(signer: Signer) -> SignerResponse:
    signature = signer.signature
    return SignerResponse(
        id=signer.id,
        name=signer.name,
        email=signer.email,
        role=signer.role,
        sequence_number=signer.sequence_number,
        status=signer.status,
        viewed_at=signer.viewed_at,
        signed_at=signer.signed_at,
        declined_at=signer.declined_at,
        declined_reason=signer.declined_reason,
        link_expires_at=signer.magic_link_expires_at,
        signature_id=signature.id if signature else None,
        signature_status=signature.status if signature else None,
    )


def _audit_entry_response(entry: EnvelopeAuditLog) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        action=entry.action,
        actor=entry.actor,
        metadata=entry.event_metadata or {},
        timestamp=entry.timestamp,
    )


def _envelope_response(envelope: Envelope) -> EnvelopeResponse:
    return EnvelopeResponse(
        id=envelope.id,
        name=envelope.name,
        description=envelope.description,
        status=envelope.status,
        signing_workflow=envelope.signing_workflow,
        created_by=envelope.created_by,
        sent_at=envelope.sent_at,
        completed_at=envelope.completed_at,
        cancelled_at=envelope.cancelled_at,
        expires_at=envelope.expires_at,
        created_at=envelope.created_at,
        documents=[
            DocumentResponse(
                id=d.id,
                name=d.name,
                file_name=d.file_name,
                file_path=d.file_path,
                file_hash=d.file_hash,
                file_size=d.file_size,
                created_at=d.created_at,
            )
            for d in envelope.documents
        ],
        signers=[_signer_response(s) for s in envelope.signers],
        signatures=[
            SignatureResponse(
                id=sig.id,
                signer_id=sig.signer_id,
                status=sig.status,
                signature_hash=sig.signature_hash,
                page_number=sig.page_number,
                x=sig.x,
                y=sig.y,
                width=sig.width,
                height=sig.height,
                signed_at=sig.signed_at,
                signer_ip=sig.signer_ip,
            )
            for sig in envelope.signatures
        ],
        audit_logs=[_audit_entry_response(e) for e in envelope.audit_logs],
    )


# ── Endpoints ─────────────────────────────────────────────────────────────────


@router.post("", response_model=EnvelopeResponse, status_code=status.HTTP_201_CREATED)
def create_envelope(
    req: CreateEnvelopeRequest,
    store: EnvelopeStore = Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user),
):
    rbac.check(current_user.role, "WRITE", "envelopes")
    envelope = store.create_envelope(
        name=req.name,
        created_by=current_user.user_id,
        description=req.description,
        signing_workflow=req.signing_workflow,
        expires_at=to_naive_utc(req.expires_at),
    )
    return _envelope_response(envelope)


@router.get("", response_model=List[EnvelopeResponse])
def list_envelopes(
    status_filter: Optional[str] = Query(None, alias="status"),
    created_by: Optional[str] = None,
    store: EnvelopeStore = Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user),
):
    rbac.check(current_user.role, "READ", "envelopes")
    envelopes = store.list_envelopes(status=status_filter, created_by=created_by)
    return [_envelope_response(e) for e in envelopes]


@router.get("/stats", response_model=EnvelopeStatsResponse)
def envelope_stats(
    store: EnvelopeStore = Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user),
):
    rbac.check(current_user.role, "READ", "envelope_stats")
    return EnvelopeStatsResponse(**store.get_envelope_statistics())


@router.get("/{envelope_id}", response_model=EnvelopeResponse)
def get_envelope(
    envelope_id: str,
    store: EnvelopeStore = Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user),
):
    rbac.check(current_user.role, "READ", "envelopes")
    return _envelope_response(store.get_envelope(envelope_id))


@router.patch("/{envelope_id}", response_model=EnvelopeResponse)
def update_envelope(
    envelope_id: str,
    req: UpdateEnvelopeRequest,
    store: EnvelopeStore = Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user),
):
    rbac.check(current_user.role, "WRITE", "envelopes")
    envelope = store.update_envelope(
        envelope_id,
        actor=current_user.user_id,
        name=req.name,
        description=req.description,
        signing_workflow=req.signing_workflow,
        expires_at=to_naive_utc(req.expires_at),
    )
    return _envelope_response(envelope)


@router.get("/{envelope_id}/audit", response_model=List[AuditEntryResponse])
def envelope_audit_trail(
    envelope_id: str,
    store: EnvelopeStore = Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user),
):
    rbac.check(current_user.role, "READ", "audit_logs")
    entries: List[EnvelopeAuditLog] = store.audit_trail(envelope_id)
    return [_audit_entry_response(e) for e in entries]


@router.post("/{envelope_id}/send", response_model=SendEnvelopeResponse)
def send_envelope(
    envelope_id: str,
    lifecycle: EnvelopeLifecycle = Depends(get_lifecycle),
    current_user: CurrentUser = Depends(get_current_user),
):
    rbac.check(current_user.role, "WRITE", "send_envelope")
    result = lifecycle.send(envelope_id, actor=current_user.user_id)
    return SendEnvelopeResponse(
        envelope=_envelope_response(result.envelope),
        links_issued=len(result.links),
        resend=result.resend,
    )


@router.post("/{envelope_id}/cancel", response_model=EnvelopeResponse)
def cancel_envelope(
    envelope_id: str,
    req: Optional[CancelEnvelopeRequest] = None,
    lifecycle: EnvelopeLifecycle = Depends(get_lifecycle),
    current_user: CurrentUser = Depends(get_current_user),
):
    rbac.check(current_user.role, "WRITE", "cancel_envelope")
    reason = req.reason if req else None
    envelope = lifecycle.cancel(envelope_id, actor=current_user.user_id, reason=reason)
    return _envelope_response(envelope)


@router.post(
    "/{envelope_id}/documents",
    response_model=DocumentResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_document(
    envelope_id: str,
    req: AddDocumentRequest,
    store: EnvelopeStore = Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user),
):
    rbac.check(current_user.role, "WRITE", "envelopes")
    content = None
    if req.content_base64 is not None:
        try:
            content = base64.b64decode(req.content_base64, validate=True)
        except (binascii.Error, ValueError):
            raise EnvelopeValidationError(
                [{"field": "content_base64", "error": "content_base64 is not valid base64"}]
            )
    document = store.add_document(
        envelope_id,
        name=req.name,
        file_name=req.file_name,
        file_path=req.file_path,
        actor=current_user.user_id,
        content=content,
        file_hash=req.file_hash,
        file_size=req.file_size,
    )
    return DocumentResponse(
        id=document.id,
        name=document.name,
        file_name=document.file_name,
        file_path=document.file_path,
        file_hash=document.file_hash,
        file_size=document.file_size,
        created_at=document.created_at,
    )


@router.delete("/{envelope_id}/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_document(
    envelope_id: str,
    document_id: str,
    store: EnvelopeStore = Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user),
):
    rbac.check(current_user.role, "DELETE", "envelopes")
    store.remove_document(envelope_id, document_id, actor=current_user.user_id)


@router.post(
    "/{envelope_id}/signers",
    response_model=SignerResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_signer(
    envelope_id: str,
    req: AddSignerRequest,
    store: EnvelopeStore = Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user),
):
    rbac.check(current_user.role, "WRITE", "envelopes")
    signer = store.add_signer(
        envelope_id,
        name=req.name,
        email=req.email,
        actor=current_user.user_id,
        role=req.role,
        sequence_number=req.sequence_number,
    )
    return _signer_response(signer)


@router.delete("/{envelope_id}/signers/{signer_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_signer(
    envelope_id: str,
    signer_id: str,
    store: EnvelopeStore = Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user),
):
    rbac.check(current_user.role, "DELETE", "envelopes")
    store.remove_signer(envelope_id, signer_id, actor=current_user.user_id)


@router.post("/{envelope_id}/signers/{signer_id}/reissue", response_model=ReissueLinkResponse)
def reissue_link(
    envelope_id: str,
    signer_id: str,
    lifecycle: EnvelopeLifecycle = Depends(get_lifecycle),
    current_user: CurrentUser = Depends(get_current_user),
):
    rbac.check(current_user.role, "WRITE", "send_envelope")
    link = lifecycle.reissue_link(envelope_id, signer_id, actor=current_user.user_id)
    return ReissueLinkResponse(signer_id=signer_id, expires_at=link.expires_at)


@router.get(
    "/{envelope_id}/signatures/{signature_id}/verify",
    response_model=SignatureVerificationResponse,
)
def verify_signature(
    envelope_id: str,
    signature_id: str,
    lifecycle: EnvelopeLifecycle = Depends(get_lifecycle),
    current_user: CurrentUser = Depends(get_current_user),
):
    rbac.check(current_user.role, "READ", "signatures")
    signature = lifecycle.repos.signatures.get(signature_id)
    if signature is None or signature.envelope_id != envelope_id:
        raise SignatureNotFoundError(signature_id)
    return SignatureVerificationResponse(
        signature_id=signature_id,
        valid=lifecycle.verify_signature_integrity(signature_id),
    )
