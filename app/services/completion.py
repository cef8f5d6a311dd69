"""
Completion detection.

Decides after every signature whether the document is fully signed. The
status change to COMPLETED is a compare-and-swap, and only the caller that
wins it enqueues finalization, so concurrent last signers trigger exactly
one finalization run.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from app.exceptions import NotFoundError
from app.models import (
    CompletedSignatureView,
    CompletionMetrics,
    CompletionStatusResponse,
    DocumentStatus,
    EventType,
    InvitationStatus,
)
from app.services.audit import record_event_safe
from app.services.document_state import LifecycleEvent, SIGNABLE_STATUSES, next_status
from app.services.finalizer import FinalizationQueue, FinalizationResult, FinalizationTask
from app.services.views import document_response, invitation_progress_view, progress_percentage

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    complete: bool
    transitioned: bool
    completed_count: int
    total: int
    status: DocumentStatus
    finalization: Optional[FinalizationResult] = None


class CompletionDetector:
    def __init__(self, store: Any, queue: FinalizationQueue, *, grace_minutes: int = 5):
        self.store = store
        self.queue = queue
        self.grace_minutes = grace_minutes

    async def reevaluate(
        self,
        document_id: str,
        triggering_invitation_id: Optional[str] = None,
    ) -> CompletionResult:
        """
        Recount invitations and move the document forward if needed.

        Finalization errors are logged, not raised: the signatures are
        already stored and finalization can be retried.
        """
        document = await self.store.get_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)

        invitations = await self.store.list_invitations(document_id)
        total = len(invitations)
        completed = sum(1 for i in invitations if i.status == InvitationStatus.COMPLETED)
        complete = total > 0 and completed == total

        result = CompletionResult(
            complete=complete,
            transitioned=False,
            completed_count=completed,
            total=total,
            status=document.status,
        )

        if document.status not in SIGNABLE_STATUSES:
            return result

        target = next_status(
            document.status,
            LifecycleEvent.INVITATION_SIGNED,
            completed_count=completed,
            total_invitations=total,
        )

        if target == DocumentStatus.COMPLETED:
            won = await self.store.transition_document_status(document_id, SIGNABLE_STATUSES, DocumentStatus.COMPLETED)
            if not won:
                logger.info(f"Document {document_id} completion already claimed by another request")
                result.status = DocumentStatus.COMPLETED
                return result

            result.transitioned = True
            result.status = DocumentStatus.COMPLETED
            await record_event_safe(
                self.store,
                document_id,
                EventType.DOCUMENT_COMPLETED,
                invitation_id=triggering_invitation_id,
                actor="system",
                metadata={"signatures": completed},
            )
            logger.info(f"Document {document_id} completed with {completed} signature(s)")

            try:
                result.finalization = await self.queue.enqueue(
                    FinalizationTask(document_id=document_id, triggering_invitation_id=triggering_invitation_id)
                )
            except Exception as e:
                logger.exception(f"Finalization of document {document_id} failed, manual finalize required: {e}")
            return result

        if document.status == DocumentStatus.SENT and completed > 0:
            if await self.store.transition_document_status(
                document_id, (DocumentStatus.SENT,), DocumentStatus.PARTIALLY_SIGNED
            ):
                result.status = DocumentStatus.PARTIALLY_SIGNED
            else:
                refreshed = await self.store.get_document(document_id)
                if refreshed is not None:
                    result.status = refreshed.status

        return result

    async def status(self, document_id: str) -> CompletionStatusResponse:
        """Readiness and finalization summary for the owner."""
        document = await self.store.get_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)

        invitations = await self.store.list_invitations(document_id)
        fields = await self.store.list_fields(document_id)
        completed = [i for i in invitations if i.status == InvitationStatus.COMPLETED]

        return CompletionStatusResponse(
            document=document_response(document, len(fields), len(invitations)),
            signatures=[
                CompletedSignatureView(
                    signer_name=i.signer_name,
                    signed_at=i.signed_at,
                    recipient_email=i.recipient_email,
                )
                for i in sorted(completed, key=lambda i: i.signed_at)
            ],
            invitations=[invitation_progress_view(i, self.grace_minutes) for i in invitations],
            metrics=CompletionMetrics(
                total_signatures=len(invitations),
                completed_signatures=len(completed),
                progress_percentage=progress_percentage(len(completed), len(invitations)),
                is_fully_complete=len(invitations) > 0 and len(completed) == len(invitations),
                is_document_finalized=bool(document.final_pdf_ref),
            ),
        )
