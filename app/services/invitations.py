"""
Signing tokens and invitations.

A token is generated once, handed to the signer inside the invitation link
and stored only as a salted SHA-256 hash. Every signer-side request
resolves the invitation through validate().
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Set

from app.email import EmailDeliveryStatus, create_audit_callback, render_invitation_email
from app.exceptions import (
    ConflictException,
    InvalidExpirationError,
    InvalidFieldError,
    InvitationLockedError,
    NotFoundError,
    TokenNotFoundError,
)
from app.models import (
    Document,
    DocumentStatus,
    EventType,
    Invitation,
    InvitationStatus,
    OwnerIdentity,
    ProgressResponse,
    DocumentProgressView,
    SendInvitationsResponse,
    SentInvitation,
    SignatureField,
    SignerInput,
    SignerProgressView,
    SigningData,
    SigningResultResponse,
)
from app.services.audit import record_event_safe
from app.services.views import (
    display_name,
    invitation_expired,
    invitation_progress_view,
    signing_field_view,
    signing_progress,
)
from app.utils.datetime_utils import end_of_day_after, utc_now
from app.utils.logging import fingerprint, mask_email, set_context
from app.utils.security import generate_signing_token, hash_signing_token, is_plausible_token, verify_signing_token

logger = logging.getLogger(__name__)

MIN_EXPIRATION_DAYS = 1
MAX_EXPIRATION_DAYS = 30


@dataclass
class IssuedToken:
    token: str
    token_hash: str
    expires_at: datetime


@dataclass
class InvitationSnapshot:
    """An invitation resolved from its token, with the context a signer needs."""
    invitation: Invitation
    document: Document
    fields: List[SignatureField] = field(default_factory=list)
    is_expired: bool = False

    @property
    def is_completed(self) -> bool:
        return self.invitation.status == InvitationStatus.COMPLETED


def fields_for_invitation(invitation_id: str, fields: List[SignatureField]) -> List[SignatureField]:
    """Fields assigned to the invitation, or the unassigned ones when it holds none."""
    own = [f for f in fields if f.invitation_id == invitation_id]
    if own:
        return own
    return [f for f in fields if f.invitation_id is None]


class InvitationManager:
    """Issues, resolves and removes signing invitations."""

    def __init__(
        self,
        store: Any,
        blob_store: Any,
        email_service: Any,
        *,
        token_salt: str,
        sign_app_url: str,
        grace_minutes: int = 5,
        document_url_minutes: int = 10,
    ):
        self.store = store
        self.blob_store = blob_store
        self.email_service = email_service
        self.token_salt = token_salt
        self.sign_app_url = sign_app_url.rstrip("/")
        self.grace_minutes = grace_minutes
        self.document_url_minutes = document_url_minutes

    def signing_url(self, token: str) -> str:
        return f"{self.sign_app_url}/sign/{token}"

    def issue(self, expiration_days: int, now: Optional[datetime] = None) -> IssuedToken:
        """
        Create a fresh token expiring at the end of the UTC day
        `expiration_days` from now.

        Raises:
            InvalidExpirationError: If expiration_days is outside [1, 30]
        """
        if (
            isinstance(expiration_days, bool)
            or not isinstance(expiration_days, int)
            or not MIN_EXPIRATION_DAYS <= expiration_days <= MAX_EXPIRATION_DAYS
        ):
            raise InvalidExpirationError(expiration_days)

        token, token_hash = generate_signing_token(self.token_salt)
        return IssuedToken(
            token=token,
            token_hash=token_hash,
            expires_at=end_of_day_after(expiration_days, now),
        )

    async def validate(self, token: str, *, mark_viewed: bool = True) -> InvitationSnapshot:
        """
        Resolve a token to its invitation.

        Expiry is reported through the snapshot, not raised. A PENDING,
        unexpired invitation is moved to VIEWED on first resolution unless
        `mark_viewed` is False.

        Raises:
            TokenNotFoundError: Malformed, unknown or mismatching token
        """
        token_fp = fingerprint(token, "tok_")
        set_context(token_fp=token_fp)

        if not is_plausible_token(token):
            logger.warning(f"Rejected malformed signing token {token_fp}")
            raise TokenNotFoundError()

        token_hash = hash_signing_token(token, self.token_salt)
        invitation = await self.store.get_invitation_by_token_hash(token_hash)
        if invitation is None or not verify_signing_token(token, invitation.token_hash, self.token_salt):
            logger.warning(f"Unknown signing token {token_fp}")
            raise TokenNotFoundError()

        document = await self.store.get_document(invitation.document_id)
        if document is None:
            logger.error(f"Invitation {invitation.id} points to missing document {invitation.document_id}")
            raise TokenNotFoundError()

        set_context(document_id=document.id, invitation_id=invitation.id)
        is_expired = invitation_expired(invitation, self.grace_minutes)

        if mark_viewed and invitation.status == InvitationStatus.PENDING and not is_expired:
            viewed_at = utc_now()
            if await self.store.mark_invitation_viewed(invitation.id, viewed_at):
                invitation = invitation.model_copy(
                    update={"status": InvitationStatus.VIEWED, "viewed_at": viewed_at}
                )
                await record_event_safe(
                    self.store,
                    document.id,
                    EventType.SIGNATURE_REQUEST_VIEWED,
                    invitation_id=invitation.id,
                    actor="signer",
                )

        fields = await self.store.list_fields(document.id)
        return InvitationSnapshot(
            invitation=invitation,
            document=document,
            fields=fields_for_invitation(invitation.id, fields),
            is_expired=is_expired,
        )

    async def signing_data(self, snapshot: InvitationSnapshot) -> SigningData:
        """What the signing page renders for a resolved token."""
        invitation, document = snapshot.invitation, snapshot.document
        document_url = await self.blob_store.signed_url(
            document.source_pdf_ref,
            expiration_minutes=self.document_url_minutes,
        )
        return SigningData(
            id=invitation.id,
            document_id=document.id,
            document_url=document_url,
            document_name=document.title,
            recipient_name=invitation.recipient_name,
            recipient_email=invitation.recipient_email,
            expires_at=invitation.expires_at,
            signature_fields=[signing_field_view(f) for f in snapshot.fields],
            is_expired=snapshot.is_expired,
            is_completed=snapshot.is_completed,
            sender_name=document.owner_name,
            sender_email=document.owner_email,
        )

    async def progress(self, token: str) -> ProgressResponse:
        snapshot = await self.validate(token)
        invitations = await self.store.list_invitations(snapshot.document.id)
        summary = signing_progress(invitations)

        return ProgressResponse(
            invitation=invitation_progress_view(snapshot.invitation, self.grace_minutes),
            document=DocumentProgressView(
                id=snapshot.document.id,
                title=snapshot.document.title,
                status=snapshot.document.status,
                is_completed=snapshot.document.status == DocumentStatus.COMPLETED,
            ),
            signing_progress=summary,
            signers=[
                SignerProgressView(
                    id=inv.id,
                    name=inv.signer_name or inv.recipient_name,
                    email=inv.recipient_email,
                    status=inv.status,
                    signed_at=inv.signed_at,
                    is_current_user=inv.id == snapshot.invitation.id,
                )
                for inv in invitations
            ],
        )

    async def result(self, token: str) -> SigningResultResponse:
        snapshot = await self.validate(token)
        invitation, document = snapshot.invitation, snapshot.document
        invitations = await self.store.list_invitations(document.id)

        signature_url = None
        if invitation.signature_ref:
            signature_url = await self.blob_store.signed_url(
                invitation.signature_ref,
                expiration_minutes=self.document_url_minutes,
            )

        return SigningResultResponse(
            document_name=document.title,
            signer_name=invitation.signer_name,
            signed_at=invitation.signed_at,
            sender_name=document.owner_name,
            sender_email=document.owner_email,
            all_signatures_complete=signing_progress(invitations).all_completed,
            signature_url=signature_url,
        )

    def _check_assignments(
        self,
        signers: List[SignerInput],
        fields: List[SignatureField],
    ) -> None:
        by_id = {f.id: f for f in fields}
        claimed: Set[str] = set()
        errors: List[str] = []

        for signer in signers:
            for field_id in signer.assigned_field_ids:
                f = by_id.get(field_id)
                if f is None:
                    errors.append(f"Unknown signature field {field_id}")
                elif f.invitation_id is not None:
                    errors.append(f"Signature field {field_id} is already assigned")
                elif field_id in claimed:
                    errors.append(f"Signature field {field_id} is assigned to more than one signer")
                claimed.add(field_id)

        if errors:
            raise InvalidFieldError("Invalid field assignment", details={"errors": errors})

    async def create_invitations(
        self,
        document: Document,
        owner: OwnerIdentity,
        signers: List[SignerInput],
        expiration_days: int,
    ) -> SendInvitationsResponse:
        """
        Create one invitation per signer, assign its fields and email the link.

        A failed email is reported per signer; the invitation is kept.
        """
        if document.status != DocumentStatus.SENT:
            raise ConflictException(
                f"Invitations can only be sent for a prepared document (status {document.status.value})",
                code="DOCUMENT_NOT_SENT",
                details={"status": document.status.value},
            )

        fields = await self.store.list_fields(document.id)
        if not fields:
            raise InvalidFieldError("Document has no signature fields")

        # Fails fast on a bad expiration before anything is written
        self.issue(expiration_days)
        self._check_assignments(signers, fields)

        sender_name = document.owner_name or owner.name or display_name(None, document.owner_email)
        results: List[SentInvitation] = []
        sent = failed = 0

        for signer in signers:
            issued = self.issue(expiration_days)
            invitation = await self.store.create_invitation({
                "id": str(uuid.uuid4()),
                "document_id": document.id,
                "token_hash": issued.token_hash,
                "recipient_email": signer.email,
                "recipient_name": signer.name,
                "message": signer.message,
                "expires_at": issued.expires_at,
            })
            await self.store.assign_fields(signer.assigned_field_ids, invitation.id)

            await record_event_safe(
                self.store,
                document.id,
                EventType.SIGNATURE_REQUEST_SENT,
                invitation_id=invitation.id,
                actor=owner.user_id,
                metadata={"recipient_fp": fingerprint(signer.email), "fields": len(signer.assigned_field_ids)},
            )

            signing_url = self.signing_url(issued.token)
            rendered = render_invitation_email(
                document_title=document.title,
                sender_name=sender_name,
                recipient_name=signer.name,
                signing_url=signing_url,
                expires_at=issued.expires_at,
                message=signer.message,
            )
            email_result = await self.email_service.send_rendered(
                signer.email,
                rendered,
                audit_callback=create_audit_callback(self.store, invitation.id),
                context_id=document.id,
            )
            if email_result.delivery_status == EmailDeliveryStatus.SENT:
                sent += 1
            else:
                failed += 1
                logger.warning(
                    f"Invitation email to {mask_email(signer.email)} not delivered: {email_result.error}"
                )

            results.append(SentInvitation(
                id=invitation.id,
                recipient_email=invitation.recipient_email,
                recipient_name=invitation.recipient_name,
                signing_url=signing_url,
                expires_at=invitation.expires_at,
                email_status=email_result.delivery_status.value,
                email_error=email_result.error,
            ))

        logger.info(f"Created {len(results)} invitation(s) for document {document.id}: {sent} emailed, {failed} failed")
        return SendInvitationsResponse(
            document_id=document.id,
            invitations=results,
            emails_sent=sent,
            emails_failed=failed,
        )

    async def delete_invitation(self, document: Document, invitation_id: str, actor: Optional[str] = None) -> None:
        """
        Remove an invitation that has not been completed and free its fields.

        Raises:
            NotFoundError: Invitation does not belong to the document
            InvitationLockedError: Invitation is completed
        """
        invitation = await self.store.get_invitation(invitation_id)
        if invitation is None or invitation.document_id != document.id:
            raise NotFoundError("Invitation", invitation_id)
        if invitation.status == InvitationStatus.COMPLETED:
            raise InvitationLockedError(invitation_id)

        if not await self.store.delete_invitation(invitation_id):
            # Completed between the read and the delete
            raise InvitationLockedError(invitation_id)

        await self.store.release_fields(invitation_id)
        await record_event_safe(
            self.store,
            document.id,
            EventType.INVITATION_DELETED,
            invitation_id=invitation_id,
            actor=actor,
            metadata={"recipient_fp": fingerprint(invitation.recipient_email)},
        )
        logger.info(f"Deleted invitation {invitation_id} of document {document.id}")

    def invitation_open(self, invitation: Invitation) -> bool:
        return invitation.status in (InvitationStatus.PENDING, InvitationStatus.VIEWED)

    async def expire_overdue(self, document_id: str) -> List[Invitation]:
        """Mark every open invitation past its grace period EXPIRED."""
        invitations = await self.store.list_invitations(document_id)
        updated: List[Invitation] = []
        for inv in invitations:
            if self.invitation_open(inv) and invitation_expired(inv, self.grace_minutes):
                if await self.store.expire_invitation(inv.id):
                    await record_event_safe(
                        self.store, document_id, EventType.TOKEN_EXPIRED, invitation_id=inv.id, actor="system",
                    )
                    inv = inv.model_copy(update={"status": InvitationStatus.EXPIRED})
            updated.append(inv)
        return updated
