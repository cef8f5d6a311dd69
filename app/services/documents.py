"""
Owner-side document operations.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, List, Optional

from app.auth import AuthorizationError, ensure_owner
from app.exceptions import (
    ConflictException,
    DocumentLockedError,
    DocumentNotCompleteError,
    InvalidFieldError,
    InvalidTransitionError,
    NotFoundError,
    ValidationException,
)
from app.models import (
    Document,
    DocumentResponse,
    DocumentStatus,
    EventType,
    FieldsResponse,
    FinalizeResponse,
    InvitationStatus,
    OwnerIdentity,
    SendInvitationsRequest,
    SendInvitationsResponse,
    SignatureFieldInput,
)
from app.pdf.sign import PDFSigner, SigningError, download_filename
from app.services.audit import record_event_safe
from app.services.completion import CompletionDetector
from app.services.document_state import (
    LifecycleEvent,
    SIGNABLE_STATUSES,
    allowed_from,
    next_status,
)
from app.services.finalizer import FinalizationPipeline
from app.services.invitations import InvitationManager
from app.services.views import document_response, field_response

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"


@dataclass
class DownloadPayload:
    content: bytes
    filename: str


class DocumentService:
    def __init__(
        self,
        store: Any,
        blob_store: Any,
        pdf_signer: PDFSigner,
        invitations: InvitationManager,
        completion: CompletionDetector,
        pipeline: FinalizationPipeline,
        *,
        max_pdf_bytes: int = 10 * 1024 * 1024,
        download_url_minutes: int = 10,
    ):
        self.store = store
        self.blob_store = blob_store
        self.pdf_signer = pdf_signer
        self.invitations = invitations
        self.completion = completion
        self.pipeline = pipeline
        self.max_pdf_bytes = max_pdf_bytes
        self.download_url_minutes = download_url_minutes

    async def load(self, document_id: str) -> Document:
        document = await self.store.get_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        return document

    async def get_owned(self, document_id: str, owner: OwnerIdentity) -> Document:
        document = await self.load(document_id)
        ensure_owner(document, owner)
        return document

    async def describe(self, document: Document) -> DocumentResponse:
        fields = await self.store.list_fields(document.id)
        invitations = await self.store.list_invitations(document.id)
        return document_response(document, len(fields), len(invitations))

    async def create_document(self, owner: OwnerIdentity, title: str, pdf_bytes: bytes) -> DocumentResponse:
        """Store an uploaded PDF as a new DRAFT document."""
        if not owner.email:
            raise ValidationException("Owner email is required to create a document", code="MISSING_OWNER_EMAIL")
        title = (title or "").strip()
        if not title:
            raise ValidationException("Document title is required")
        if len(title) > 255:
            raise ValidationException("Document title must be at most 255 characters")
        if not pdf_bytes or not pdf_bytes.startswith(PDF_MAGIC):
            raise ValidationException("Only PDF files are accepted", code="INVALID_PDF")
        if len(pdf_bytes) > self.max_pdf_bytes:
            raise ValidationException(
                f"PDF exceeds the {self.max_pdf_bytes // (1024 * 1024)}MB limit",
                details={"size": len(pdf_bytes), "limit": self.max_pdf_bytes},
                code="PDF_TOO_LARGE",
            )
        try:
            page_count = self.pdf_signer.get_page_count(pdf_bytes)
        except SigningError as e:
            raise ValidationException(str(e), code="INVALID_PDF")
        if page_count < 1:
            raise ValidationException("PDF has no pages", code="INVALID_PDF")

        document_id = str(uuid.uuid4())
        path = await self.blob_store.put(f"documents/{document_id}/source.pdf", pdf_bytes, "application/pdf")
        document = await self.store.create_document({
            "id": document_id,
            "title": title,
            "status": DocumentStatus.DRAFT,
            "source_pdf_ref": path,
            "page_count": page_count,
            "owner_id": owner.user_id,
            "owner_email": owner.email,
            "owner_name": owner.name,
        })
        await record_event_safe(
            self.store,
            document.id,
            EventType.DOCUMENT_CREATED,
            actor=owner.user_id,
            metadata={"pages": page_count, "size_bytes": len(pdf_bytes)},
        )
        return document_response(document)

    async def get_fields(self, document: Document) -> FieldsResponse:
        fields = await self.store.list_fields(document.id)
        return FieldsResponse(
            document_id=document.id,
            status=document.status,
            fields=[field_response(f) for f in fields],
        )

    async def replace_fields(
        self,
        document: Document,
        fields: List[SignatureFieldInput],
        owner: OwnerIdentity,
    ) -> FieldsResponse:
        """
        Replace every signature field of a DRAFT document.

        Raises:
            DocumentLockedError: Document has left DRAFT
            InvalidFieldError: A field lies on a page the PDF does not have
        """
        if document.status != DocumentStatus.DRAFT:
            raise DocumentLockedError(document.id, document.status.value)

        errors = []
        if document.page_count:
            for index, f in enumerate(fields):
                if f.page > document.page_count:
                    errors.append(f"Field {index + 1}: page {f.page} exceeds document page count {document.page_count}")
        if errors:
            raise InvalidFieldError("Invalid signature fields", details={"errors": errors})

        rows = [
            {
                "id": str(uuid.uuid4()),
                "page": f.page,
                "x": f.x,
                "y": f.y,
                "width": f.width,
                "height": f.height,
                "required": f.required,
                "label": f.label,
            }
            for f in fields
        ]
        saved = await self.store.replace_fields(document.id, rows)
        await record_event_safe(
            self.store, document.id, EventType.FIELDS_UPDATED, actor=owner.user_id, metadata={"count": len(saved)},
        )
        logger.info(f"Replaced fields of document {document.id}: {len(saved)} field(s)")
        return FieldsResponse(
            document_id=document.id,
            status=document.status,
            fields=[field_response(f) for f in saved],
        )

    async def _transition(self, document: Document, event: LifecycleEvent, target: DocumentStatus) -> Document:
        if not await self.store.transition_document_status(document.id, allowed_from(event), target):
            current = await self.load(document.id)
            raise InvalidTransitionError(current.status.value, event.value)
        return document.model_copy(update={"status": target})

    async def prepare(self, document: Document, owner: OwnerIdentity) -> DocumentResponse:
        fields = await self.store.list_fields(document.id)
        target = next_status(document.status, LifecycleEvent.PREPARE, field_count=len(fields))
        document = await self._transition(document, LifecycleEvent.PREPARE, target)
        await record_event_safe(
            self.store, document.id, EventType.DOCUMENT_PREPARED, actor=owner.user_id, metadata={"fields": len(fields)},
        )
        return await self.describe(document)

    async def cancel(self, document: Document, owner: OwnerIdentity) -> DocumentResponse:
        target = next_status(document.status, LifecycleEvent.CANCEL)
        document = await self._transition(document, LifecycleEvent.CANCEL, target)
        await record_event_safe(self.store, document.id, EventType.DOCUMENT_CANCELLED, actor=owner.user_id)
        return await self.describe(document)

    async def expire_overdue(self, document: Document) -> DocumentResponse:
        """
        Expire invitations past their grace period; the document becomes
        EXPIRED once none of its invitations can still be signed.
        """
        if document.status not in SIGNABLE_STATUSES:
            return await self.describe(document)

        invitations = await self.invitations.expire_overdue(document.id)
        open_count = sum(1 for i in invitations if self.invitations.invitation_open(i))
        expired_count = sum(1 for i in invitations if i.status == InvitationStatus.EXPIRED)
        all_expired = bool(invitations) and open_count == 0 and expired_count > 0

        if all_expired:
            target = next_status(document.status, LifecycleEvent.ALL_EXPIRED, all_expired=True)
            if await self.store.transition_document_status(document.id, allowed_from(LifecycleEvent.ALL_EXPIRED), target):
                document = document.model_copy(update={"status": target})
                await record_event_safe(
                    self.store, document.id, EventType.DOCUMENT_EXPIRED, actor="system",
                    metadata={"expired_invitations": expired_count},
                )
                logger.info(f"Document {document.id} expired")
        return await self.describe(document)

    async def delete_document(self, document: Document, owner: OwnerIdentity) -> None:
        """Delete a document that has not been completed, with its blobs."""
        if document.status == DocumentStatus.COMPLETED:
            raise ConflictException(
                "Completed documents cannot be deleted",
                code="DOCUMENT_COMPLETED",
                details={"status": document.status.value},
            )

        invitations = await self.store.list_invitations(document.id)
        paths = [document.source_pdf_ref] + [i.signature_ref for i in invitations if i.signature_ref]

        await self.store.delete_document(document.id)
        for path in paths:
            await self.blob_store.delete(path)
        logger.info(f"Document {document.id} deleted by {owner.user_id[:8]}... ({len(paths)} blob(s))")

    async def send_invitations(
        self,
        document: Document,
        owner: OwnerIdentity,
        request: SendInvitationsRequest,
    ) -> SendInvitationsResponse:
        return await self.invitations.create_invitations(document, owner, request.signers, request.expires_in_days)

    async def delete_invitation(self, document: Document, invitation_id: str, owner: OwnerIdentity) -> None:
        await self.invitations.delete_invitation(document, invitation_id, actor=owner.user_id)
        # The remaining invitations may now all be signed
        if document.status in SIGNABLE_STATUSES:
            await self.completion.reevaluate(document.id)

    async def finalize(self, document: Document) -> FinalizeResponse:
        if document.status != DocumentStatus.COMPLETED:
            raise DocumentNotCompleteError(document.status.value)
        result = await self.pipeline.finalize(document.id)
        download_url = await self.blob_store.signed_url(
            result.final_pdf_ref,
            expiration_minutes=self.download_url_minutes,
            filename=download_filename(document.title),
        )
        return FinalizeResponse(
            document_id=document.id,
            final_pdf_ref=result.final_pdf_ref,
            finalized_at=result.finalized_at,
            generated=result.generated,
            download_url=download_url,
        )

    async def authorize_download(
        self,
        document_id: str,
        owner: Optional[OwnerIdentity] = None,
        token: Optional[str] = None,
    ) -> Document:
        """
        The owner, or a signer whose invitation is completed, may download.

        Raises:
            AuthorizationError: Neither identity grants access
        """
        if owner is not None:
            return await self.get_owned(document_id, owner)
        if token:
            snapshot = await self.invitations.validate(token)
            if snapshot.document.id == document_id and snapshot.is_completed:
                return snapshot.document
        raise AuthorizationError("You don't have access to this document", "DOWNLOAD_FORBIDDEN")

    async def download(self, document: Document, actor: Optional[str] = None) -> DownloadPayload:
        if document.status != DocumentStatus.COMPLETED or not document.final_pdf_ref:
            raise ValidationException(
                "Document is not yet completed or final PDF is not available",
                code="DOCUMENT_NOT_FINALIZED",
                details={"status": document.status.value},
            )
        content = await self.blob_store.fetch(document.final_pdf_ref)
        await record_event_safe(
            self.store, document.id, EventType.DOCUMENT_DOWNLOADED, actor=actor, metadata={"size_bytes": len(content)},
        )
        return DownloadPayload(content=content, filename=download_filename(document.title))
