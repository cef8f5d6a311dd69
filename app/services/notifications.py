"""
Completion notifications.

Sent once per finalized document to the owner and every invited signer.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.email import EmailDeliveryStatus, EmailResult, create_audit_callback, render_completion_email
from app.exceptions import NotFoundError
from app.models import Document, EventType, Invitation, InvitationStatus
from app.pdf.sign import download_filename
from app.services.audit import record_event_safe
from app.services.views import display_name
from app.utils.datetime_utils import utc_now
from app.utils.logging import mask_email

logger = logging.getLogger(__name__)


@dataclass
class Recipient:
    email: str
    name: str
    invitation_id: Optional[str] = None


@dataclass
class DispatchReport:
    sent: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.sent) + len(self.failed)


def collect_recipients(document: Document, invitations: List[Invitation]) -> List[Recipient]:
    """Owner first, then each invitation; addresses compared case-insensitively."""
    seen = set()
    recipients: List[Recipient] = []

    def add(email: Optional[str], name: str, invitation_id: Optional[str] = None) -> None:
        if not email:
            return
        key = email.strip().lower()
        if key in seen:
            return
        seen.add(key)
        recipients.append(Recipient(email=email.strip(), name=name, invitation_id=invitation_id))

    add(document.owner_email, display_name(document.owner_name, document.owner_email))
    for inv in invitations:
        add(
            inv.recipient_email,
            display_name(inv.signer_name or inv.recipient_name, inv.recipient_email),
            inv.id,
        )
    return recipients


def latest_signer(invitations: List[Invitation], invitation_id: Optional[str] = None) -> Optional[Invitation]:
    completed = [i for i in invitations if i.status == InvitationStatus.COMPLETED and i.signed_at]
    if invitation_id:
        for inv in completed:
            if inv.id == invitation_id:
                return inv
    if not completed:
        return None
    return max(completed, key=lambda i: i.signed_at)


class NotificationDispatcher:
    """Emails the completion notice to everyone involved in a document."""

    def __init__(self, store: Any, blob_store: Any, email_service: Any, *, download_link_minutes: int = 10080):
        self.store = store
        self.blob_store = blob_store
        self.email_service = email_service
        self.download_link_minutes = download_link_minutes

    async def _download_url(self, document: Document) -> Optional[str]:
        if not document.final_pdf_ref:
            return None
        try:
            return await self.blob_store.signed_url(
                document.final_pdf_ref,
                expiration_minutes=self.download_link_minutes,
                filename=download_filename(document.title),
            )
        except Exception as e:
            logger.warning(f"No download link for document {document.id}: {e}")
            return None

    async def notify_completion(
        self,
        document_id: str,
        triggering_invitation_id: Optional[str] = None,
    ) -> DispatchReport:
        """
        Send the completion email to the owner and all signers concurrently.

        One recipient's failure never stops the others; the outcome of every
        send is reported.
        """
        document = await self.store.get_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        invitations = await self.store.list_invitations(document_id)

        trigger = latest_signer(invitations, triggering_invitation_id)
        signer_name = display_name(
            (trigger.signer_name or trigger.recipient_name) if trigger else None,
            trigger.recipient_email if trigger else None,
        )
        completed_at = document.finalized_at or (trigger.signed_at if trigger else None) or utc_now()
        completed_count = sum(1 for i in invitations if i.status == InvitationStatus.COMPLETED)
        download_url = await self._download_url(document)

        recipients = collect_recipients(document, invitations)

        async def send(recipient: Recipient) -> EmailResult:
            rendered = render_completion_email(
                document_title=document.title,
                recipient_name=recipient.name,
                signer_name=signer_name,
                completed_at=completed_at,
                completed_count=completed_count,
                total_count=len(invitations),
                download_url=download_url,
            )
            return await self.email_service.send_rendered(
                recipient.email,
                rendered,
                audit_callback=create_audit_callback(self.store, recipient.invitation_id),
                context_id=document.id,
            )

        outcomes = await asyncio.gather(*(send(r) for r in recipients), return_exceptions=True)

        report = DispatchReport()
        for recipient, outcome in zip(recipients, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Completion email to {mask_email(recipient.email)} raised: {outcome}")
                report.failed.append({"email": recipient.email, "error": str(outcome)})
            elif outcome.delivery_status == EmailDeliveryStatus.SENT:
                report.sent.append(recipient.email)
            else:
                report.failed.append({"email": recipient.email, "error": outcome.error or "not sent"})

        await record_event_safe(
            self.store,
            document.id,
            EventType.COMPLETION_NOTIFICATIONS_SENT,
            invitation_id=trigger.id if trigger else None,
            actor="system",
            metadata={"sent": len(report.sent), "failed": len(report.failed)},
        )
        logger.info(
            f"Completion notifications for document {document.id}: "
            f"{len(report.sent)} sent, {len(report.failed)} failed"
        )
        return report
