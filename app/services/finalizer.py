"""
Finalization: embed every collected signature into the source PDF and
publish the result exactly once.

Safe to run any number of times per document. The final PDF reference is
written with a conditional update, so concurrent runs agree on one artifact
and only the run that produced it sends notifications.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.exceptions import (
    DocumentNotCompleteError,
    ExternalServiceError,
    FinalizationValidationError,
    NotFoundError,
)
from app.models import Document, DocumentStatus, EventType, Invitation, InvitationStatus, SignatureField
from app.pdf.sign import DocumentInfo, PDFSigner, SignatureOverlay, completed_filename
from app.services.audit import record_event_safe
from app.services.notifications import DispatchReport, NotificationDispatcher
from app.services.views import display_name
from app.utils.datetime_utils import utc_now
from app.utils.logging import set_context

logger = logging.getLogger(__name__)

FINAL_PDF_PREFIX = "completed-documents"


@dataclass
class Placement:
    invitation: Invitation
    field: SignatureField


@dataclass
class FinalizationResult:
    document_id: str
    final_pdf_ref: str
    finalized_at: Optional[datetime]
    generated: bool
    skipped: List[str] = field(default_factory=list)
    notifications: Optional[DispatchReport] = None


def _field_order(f: SignatureField) -> Tuple[int, float, float, str]:
    return (f.page, f.y, f.x, f.id)


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _signing_order(inv: Invitation) -> Tuple[bool, datetime, str]:
    return (inv.signed_at is None, inv.signed_at or _EPOCH, inv.id)


def resolve_placements(
    fields: List[SignatureField],
    completed: List[Invitation],
) -> Tuple[List[Placement], List[Invitation]]:
    """
    Pair each completed invitation with the field(s) its signature goes in.

    Assigned fields are used as-is. Invitations holding no field take the
    unassigned fields in reading order (page, y, x), themselves ordered by
    signing time; when there are more of them than free fields, the extra
    ones reuse the first free field.

    Returns:
        (placements, invitations that could not be placed)
    """
    by_invitation: Dict[str, List[SignatureField]] = {}
    free: List[SignatureField] = []
    for f in sorted(fields, key=_field_order):
        if f.invitation_id:
            by_invitation.setdefault(f.invitation_id, []).append(f)
        else:
            free.append(f)

    placements: List[Placement] = []
    unplaced: List[Invitation] = []
    fallback = 0

    ordered = sorted(completed, key=_signing_order)
    for inv in ordered:
        own = by_invitation.get(inv.id)
        if own:
            placements.extend(Placement(invitation=inv, field=f) for f in own)
        elif free:
            target = free[fallback] if fallback < len(free) else free[0]
            fallback += 1
            placements.append(Placement(invitation=inv, field=target))
        else:
            unplaced.append(inv)

    return placements, unplaced


def validate_signature_set(
    placements: List[Placement],
    unplaced: List[Invitation],
) -> None:
    """
    Check everything needed to draw each signature before touching the PDF.

    Raises:
        FinalizationValidationError: With every problem found
    """
    errors: List[str] = []
    if not placements:
        errors.append("No signatures to embed")

    for inv in unplaced:
        errors.append(f"Signature {inv.id}: no signature field to place it in")

    for p in placements:
        label = f"Signature {p.invitation.id}"
        if not p.invitation.signature_ref:
            errors.append(f"{label}: missing signature image")
        if not (p.invitation.signer_name or "").strip():
            errors.append(f"{label}: missing signer name")
        if p.invitation.signed_at is None:
            errors.append(f"{label}: missing signing time")
        if p.field.page < 1:
            errors.append(f"{label}: invalid page {p.field.page}")
        if p.field.width <= 0 or p.field.height <= 0:
            errors.append(f"{label}: field {p.field.id} has no area")

    if errors:
        raise FinalizationValidationError(errors)


class FinalizationPipeline:
    """Produces, stores and announces the signed PDF of a completed document."""

    def __init__(
        self,
        store: Any,
        blob_store: Any,
        pdf_signer: PDFSigner,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.store = store
        self.blob_store = blob_store
        self.pdf_signer = pdf_signer
        self.notifier = notifier

    async def _load_overlays(self, placements: List[Placement]) -> Tuple[List[SignatureOverlay], List[str]]:
        images: Dict[str, bytes] = {}
        overlays: List[SignatureOverlay] = []
        skipped: List[str] = []

        for p in placements:
            inv = p.invitation
            ref = inv.signature_ref
            if ref not in images:
                try:
                    images[ref] = await self.blob_store.fetch(ref)
                except Exception as e:
                    logger.error(f"Signature image {ref} for invitation {inv.id} unavailable: {e}")
                    images[ref] = b""
            if not images[ref]:
                skipped.append(inv.id)
                continue
            overlays.append(SignatureOverlay(
                image=images[ref],
                signer_name=inv.signer_name.strip(),
                signed_at=inv.signed_at,
                page=p.field.page,
                x=p.field.x,
                y=p.field.y,
                width=p.field.width,
                height=p.field.height,
                invitation_id=inv.id,
            ))
        return overlays, skipped

    def _existing(self, document: Document) -> FinalizationResult:
        return FinalizationResult(
            document_id=document.id,
            final_pdf_ref=document.final_pdf_ref,
            finalized_at=document.finalized_at,
            generated=False,
        )

    async def finalize(
        self,
        document_id: str,
        triggering_invitation_id: Optional[str] = None,
    ) -> FinalizationResult:
        """
        Build the signed PDF of a completed document.

        Raises:
            NotFoundError: Unknown document
            DocumentNotCompleteError: Document is not COMPLETED
            FinalizationValidationError: Signature set cannot be embedded
            ExternalServiceError: Every signature image failed to load or draw
        """
        set_context(document_id=document_id)
        document = await self.store.get_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)

        if document.final_pdf_ref:
            logger.info(f"Document {document_id} already finalized as {document.final_pdf_ref}")
            return self._existing(document)

        if document.status != DocumentStatus.COMPLETED:
            raise DocumentNotCompleteError(document.status.value)

        invitations = await self.store.list_invitations(document_id)
        completed = [i for i in invitations if i.status == InvitationStatus.COMPLETED]
        fields = await self.store.list_fields(document_id)

        placements, unplaced = resolve_placements(fields, completed)
        validate_signature_set(placements, unplaced)

        source = await self.blob_store.fetch(document.source_pdf_ref)
        overlays, skipped = await self._load_overlays(placements)

        completed_at = utc_now()
        info = DocumentInfo(
            title=document.title,
            author=display_name(document.owner_name, document.owner_email),
            completed_at=completed_at,
        )
        report = await asyncio.to_thread(self.pdf_signer.embed_signatures, source, overlays, info)
        skipped.extend(report.skipped)
        if placements and report.embedded == 0:
            # Nothing claimed yet, so a later run can still produce the real artifact
            logger.error(f"No signature of document {document.id} could be embedded; skipped {skipped}")
            raise ExternalServiceError("finalization", f"no signature could be embedded into {document.id}")

        path = f"{FINAL_PDF_PREFIX}/{completed_filename(document.title, completed_at, document.id)}"
        await self.blob_store.put(path, report.pdf_bytes, "application/pdf")

        if not await self.store.set_final_pdf_ref(document.id, path, completed_at):
            winner = await self.store.get_document(document.id)
            if winner is None or not winner.final_pdf_ref:
                raise ExternalServiceError("database", f"final PDF reference of {document.id} not recorded")
            if winner.final_pdf_ref != path:
                await self.blob_store.delete(path)
            logger.info(f"Document {document.id} finalized concurrently; keeping {winner.final_pdf_ref}")
            return self._existing(winner)

        await record_event_safe(
            self.store,
            document.id,
            EventType.DOCUMENT_FINALIZED,
            invitation_id=triggering_invitation_id,
            actor="system",
            metadata={
                "final_pdf_ref": path,
                "embedded": report.embedded,
                "skipped": skipped,
                "size_bytes": len(report.pdf_bytes),
            },
        )
        logger.info(
            f"Finalized document {document.id}: {report.embedded} signature(s) embedded, "
            f"{len(skipped)} skipped"
        )

        result = FinalizationResult(
            document_id=document.id,
            final_pdf_ref=path,
            finalized_at=completed_at,
            generated=True,
            skipped=skipped,
        )

        if self.notifier is not None:
            try:
                result.notifications = await self.notifier.notify_completion(document.id, triggering_invitation_id)
            except Exception as e:
                logger.exception(f"Completion notifications for document {document.id} failed: {e}")

        return result


@dataclass
class FinalizationTask:
    document_id: str
    triggering_invitation_id: Optional[str] = None


class FinalizationQueue:
    """Hands finalization work to a worker."""

    async def enqueue(self, task: FinalizationTask) -> Optional[FinalizationResult]:
        raise NotImplementedError


class InlineFinalizationQueue(FinalizationQueue):
    """Runs the worker in-process and returns its result."""

    def __init__(self, pipeline: FinalizationPipeline):
        self.pipeline = pipeline

    async def enqueue(self, task: FinalizationTask) -> Optional[FinalizationResult]:
        return await self.pipeline.finalize(task.document_id, task.triggering_invitation_id)


class HttpFinalizationQueue(FinalizationQueue):
    """
    Posts the task to the internal finalize endpoint.

    Retried like email delivery; the endpoint is idempotent so a duplicate
    delivery only returns the existing artifact.
    """

    MAX_ATTEMPTS = 3
    RETRY_DELAYS_SECONDS = [0, 2, 4]

    def __init__(self, base_url: str, secret: str, timeout: float = 30.0):
        self.url = f"{base_url.rstrip('/')}/internal/v1/finalize"
        self.secret = secret
        self.timeout = timeout

    async def enqueue(self, task: FinalizationTask) -> Optional[FinalizationResult]:
        payload = {"document_id": task.document_id}
        headers = {"X-Internal-Secret": self.secret}
        last_error: Optional[str] = None

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            if attempt > 1:
                await asyncio.sleep(self.RETRY_DELAYS_SECONDS[attempt - 1])
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload, headers=headers)
                if response.status_code < 500:
                    response.raise_for_status()
                    logger.info(f"Finalization of {task.document_id} delivered on attempt {attempt}")
                    return None
                last_error = f"HTTP {response.status_code}"
            except httpx.HTTPStatusError as e:
                raise ExternalServiceError("finalization queue", f"task rejected: {e.response.status_code}")
            except httpx.HTTPError as e:
                last_error = str(e)
            logger.warning(f"Finalization delivery attempt {attempt}/{self.MAX_ATTEMPTS} failed: {last_error}")

        raise ExternalServiceError("finalization queue", f"delivery failed: {last_error}")
