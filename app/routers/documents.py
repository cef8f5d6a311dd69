"""
Owner document API router.
Paths: /documents/*
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile

from app.auth import get_current_owner, get_optional_owner
from app.gcs import content_disposition
from app.models import (
    CompletionStatusResponse,
    DocumentResponse,
    ErrorResponse,
    FieldsResponse,
    FinalizeResponse,
    OwnerIdentity,
    ReplaceFieldsRequest,
    SendInvitationsRequest,
    SendInvitationsResponse,
)
from app.services.container import ServiceContainer, get_services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["documents"],
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)


@router.post("", response_model=DocumentResponse, status_code=201)
async def upload_document(
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    owner: OwnerIdentity = Depends(get_current_owner),
    services: ServiceContainer = Depends(get_services),
):
    """Upload a PDF; the document starts in draft."""
    content = await file.read()
    return await services.documents.create_document(
        owner,
        title or file.filename or "Untitled document",
        content,
    )


@router.get("/{document_id}", response_model=DocumentResponse)
async def get_document(
    document_id: str,
    owner: OwnerIdentity = Depends(get_current_owner),
    services: ServiceContainer = Depends(get_services),
):
    document = await services.documents.get_owned(document_id, owner)
    return await services.documents.describe(document)


@router.delete("/{document_id}", status_code=204)
async def delete_document(
    document_id: str,
    owner: OwnerIdentity = Depends(get_current_owner),
    services: ServiceContainer = Depends(get_services),
):
    document = await services.documents.get_owned(document_id, owner)
    await services.documents.delete_document(document, owner)
    return Response(status_code=204)


@router.get("/{document_id}/signature-fields", response_model=FieldsResponse)
async def get_signature_fields(
    document_id: str,
    owner: OwnerIdentity = Depends(get_current_owner),
    services: ServiceContainer = Depends(get_services),
):
    document = await services.documents.get_owned(document_id, owner)
    return await services.documents.get_fields(document)


@router.put(
    "/{document_id}/signature-fields",
    response_model=FieldsResponse,
    responses={409: {"model": ErrorResponse, "description": "Document is no longer a draft"}},
)
async def replace_signature_fields(
    document_id: str,
    body: ReplaceFieldsRequest,
    owner: OwnerIdentity = Depends(get_current_owner),
    services: ServiceContainer = Depends(get_services),
):
    """Replace all signature fields. Only allowed while the document is a draft."""
    document = await services.documents.get_owned(document_id, owner)
    return await services.documents.replace_fields(document, body.fields, owner)


@router.post("/{document_id}/prepare", response_model=DocumentResponse)
async def prepare_document(
    document_id: str,
    owner: OwnerIdentity = Depends(get_current_owner),
    services: ServiceContainer = Depends(get_services),
):
    document = await services.documents.get_owned(document_id, owner)
    return await services.documents.prepare(document, owner)


@router.post("/{document_id}/cancel", response_model=DocumentResponse)
async def cancel_document(
    document_id: str,
    owner: OwnerIdentity = Depends(get_current_owner),
    services: ServiceContainer = Depends(get_services),
):
    document = await services.documents.get_owned(document_id, owner)
    return await services.documents.cancel(document, owner)


@router.post("/{document_id}/send-invitations", response_model=SendInvitationsResponse)
async def send_invitations(
    document_id: str,
    body: SendInvitationsRequest,
    owner: OwnerIdentity = Depends(get_current_owner),
    services: ServiceContainer = Depends(get_services),
):
    """
    Create invitations and email the signing links.

    Email failures are reported per signer and do not undo the invitation.
    """
    document = await services.documents.get_owned(document_id, owner)
    return await services.documents.send_invitations(document, owner, body)


@router.delete("/{document_id}/invitations/{invitation_id}", status_code=204)
async def delete_invitation(
    document_id: str,
    invitation_id: str,
    owner: OwnerIdentity = Depends(get_current_owner),
    services: ServiceContainer = Depends(get_services),
):
    document = await services.documents.get_owned(document_id, owner)
    await services.documents.delete_invitation(document, invitation_id, owner)
    return Response(status_code=204)


@router.get("/{document_id}/completion-status", response_model=CompletionStatusResponse)
async def completion_status(
    document_id: str,
    owner: OwnerIdentity = Depends(get_current_owner),
    services: ServiceContainer = Depends(get_services),
):
    document = await services.documents.get_owned(document_id, owner)
    return await services.completion.status(document.id)


@router.post("/{document_id}/finalize", response_model=FinalizeResponse)
async def finalize_document(
    document_id: str,
    owner: OwnerIdentity = Depends(get_current_owner),
    services: ServiceContainer = Depends(get_services),
):
    """Idempotent: returns the existing final PDF when there is one."""
    document = await services.documents.get_owned(document_id, owner)
    return await services.documents.finalize(document)


@router.get("/{document_id}/download")
async def download_document(
    document_id: str,
    token: Optional[str] = Query(None, description="Signing token of a completed signer"),
    owner: Optional[OwnerIdentity] = Depends(get_optional_owner),
    services: ServiceContainer = Depends(get_services),
):
    document = await services.documents.authorize_download(document_id, owner=owner, token=token)
    payload = await services.documents.download(document, actor=owner.user_id if owner else "signer")
    return Response(
        content=payload.content,
        media_type="application/pdf",
        headers={
            "Content-Disposition": content_disposition(payload.filename),
            "Cache-Control": "private, no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
        },
    )
