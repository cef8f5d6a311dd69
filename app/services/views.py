"""Row -> response model conversions shared by the services."""
from typing import List, Optional

from app.models import (
    Document,
    DocumentResponse,
    Invitation,
    InvitationProgressView,
    InvitationStatus,
    SignatureField,
    SignatureFieldResponse,
    SigningFieldView,
    SigningProgress,
)
from app.utils.datetime_utils import is_past_with_grace


def document_response(document: Document, field_count: int = 0, invitation_count: int = 0) -> DocumentResponse:
    return DocumentResponse(
        id=document.id,
        title=document.title,
        status=document.status,
        final_pdf_ref=document.final_pdf_ref,
        finalized_at=document.finalized_at,
        created_at=document.created_at,
        field_count=field_count,
        invitation_count=invitation_count,
    )


def field_response(f: SignatureField) -> SignatureFieldResponse:
    return SignatureFieldResponse(
        id=f.id,
        page=f.page,
        x=f.x,
        y=f.y,
        width=f.width,
        height=f.height,
        required=f.required,
        label=f.label,
        invitation_id=f.invitation_id,
    )


def signing_field_view(f: SignatureField) -> SigningFieldView:
    return SigningFieldView(
        id=f.id, x=f.x, y=f.y, width=f.width, height=f.height, page=f.page, required=f.required,
    )


def invitation_expired(invitation: Invitation, grace_minutes: int) -> bool:
    if invitation.status == InvitationStatus.EXPIRED:
        return True
    if invitation.status == InvitationStatus.COMPLETED:
        return False
    return is_past_with_grace(invitation.expires_at, grace_minutes)


def invitation_progress_view(invitation: Invitation, grace_minutes: int) -> InvitationProgressView:
    return InvitationProgressView(
        id=invitation.id,
        status=invitation.status,
        is_expired=invitation_expired(invitation, grace_minutes),
        is_signed=invitation.status == InvitationStatus.COMPLETED,
        signed_at=invitation.signed_at,
        recipient_name=invitation.recipient_name,
        recipient_email=invitation.recipient_email,
    )


def progress_percentage(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    return round(completed * 100 / total)


def signing_progress(invitations: List[Invitation]) -> SigningProgress:
    total = len(invitations)
    completed = sum(1 for i in invitations if i.status == InvitationStatus.COMPLETED)
    return SigningProgress(
        total_signers=total,
        completed_signers=completed,
        pending_signers=total - completed,
        progress_percentage=progress_percentage(completed, total),
        all_completed=total > 0 and completed == total,
    )


def display_name(name: Optional[str], email: Optional[str]) -> str:
    if name:
        return name
    if email and "@" in email:
        return email.split("@", 1)[0]
    return "Signer"
