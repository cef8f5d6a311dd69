"""
Email module using Resend for sending emails.

Includes reliable delivery with retry logic and the two message templates
the signing workflow sends: the invitation and the completion notice.
"""
import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from html import escape
from typing import Optional, Dict, Any, Callable, Awaitable, List

import httpx

from app.config import get_settings, Settings
from app.utils.datetime_utils import format_utc

logger = logging.getLogger(__name__)


# Retry configuration
MAX_RETRY_ATTEMPTS = 3
RETRY_DELAYS_SECONDS = [0, 2, 4]  # Exponential backoff: immediate, 2s, 4s


class EmailDeliveryStatus(str, Enum):
    """Email delivery status for tracking."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"  # Email not configured or disabled


@dataclass
class EmailAttempt:
    """Record of a single email send attempt."""
    attempt_number: int
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


# Type alias for audit callback
AuditCallback = Callable[[str, str, Dict[str, Any]], Awaitable[None]]


@dataclass
class EmailResult:
    """Result of email send operation with delivery tracking."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    delivery_status: EmailDeliveryStatus = EmailDeliveryStatus.PENDING
    attempts: List[EmailAttempt] = field(default_factory=list)
    total_attempts: int = 0

    @property
    def is_delivered(self) -> bool:
        return self.delivery_status == EmailDeliveryStatus.SENT

    @property
    def is_failed(self) -> bool:
        return self.delivery_status == EmailDeliveryStatus.FAILED


@dataclass
class RenderedEmail:
    """Rendered email ready to send."""
    subject: str
    html: str
    text: Optional[str] = None


def render_invitation_email(
    document_title: str,
    sender_name: str,
    recipient_name: Optional[str],
    signing_url: str,
    expires_at: datetime,
    message: Optional[str] = None,
) -> RenderedEmail:
    greeting = f"Hello {recipient_name}," if recipient_name else "Hello,"
    expires = format_utc(expires_at, "%Y-%m-%d")
    note_html = f"<blockquote>{escape(message)}</blockquote>" if message else ""
    note_text = f"\n\n{message}" if message else ""

    html = (
        f"<p>{escape(greeting)}</p>"
        f"<p>{escape(sender_name)} has asked you to sign <strong>{escape(document_title)}</strong>.</p>"
        f"{note_html}"
        f'<p><a href="{escape(signing_url, quote=True)}">Review and sign the document</a></p>'
        f"<p>This link expires on {expires}.</p>"
    )
    text = (
        f"{greeting}\n\n{sender_name} has asked you to sign \"{document_title}\".{note_text}\n\n"
        f"Review and sign: {signing_url}\n\nThis link expires on {expires}."
    )
    return RenderedEmail(subject=f"Signature requested: {document_title}", html=html, text=text)


def render_completion_email(
    document_title: str,
    recipient_name: str,
    signer_name: str,
    completed_at: datetime,
    completed_count: int,
    total_count: int,
    download_url: Optional[str] = None,
) -> RenderedEmail:
    is_complete = total_count > 0 and completed_count == total_count
    subject = (
        f"Document Complete: {document_title}" if is_complete
        else f"Signature Received: {document_title}"
    )
    when = format_utc(completed_at)
    headline = (
        "All signatures have been collected." if is_complete
        else f"{signer_name} signed the document."
    )
    link_html = (
        f'<p><a href="{escape(download_url, quote=True)}">Download the signed document</a></p>'
        if download_url else ""
    )
    link_text = f"\n\nDownload: {download_url}" if download_url else ""

    html = (
        f"<p>Hello {escape(recipient_name)},</p>"
        f"<p><strong>{escape(document_title)}</strong>: {escape(headline)}</p>"
        f"<ul>"
        f"<li>Last signed by: {escape(signer_name)}</li>"
        f"<li>Completed at: {when}</li>"
        f"<li>Signatures: {completed_count}/{total_count}</li>"
        f"</ul>"
        f"{link_html}"
    )
    text = (
        f"Hello {recipient_name},\n\n{document_title}: {headline}\n"
        f"Last signed by: {signer_name}\nCompleted at: {when}\n"
        f"Signatures: {completed_count}/{total_count}{link_text}"
    )
    return RenderedEmail(subject=subject, html=html, text=text)


class EmailService:
    """Email service using Resend HTTP API."""

    RESEND_API_URL = "https://api.resend.com/emails"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def is_configured(self) -> bool:
        """Check if email service is properly configured."""
        return bool(self.settings.resend_api_key)

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
        audit_callback: Optional[AuditCallback] = None,
        context_id: Optional[str] = None,  # Document ID for audit
    ) -> EmailResult:
        """
        Send email via Resend HTTP API with retry logic.

        - 3 attempts with exponential backoff (0s, 2s, 4s)
        - Audit logging via optional callback
        - Detailed attempt tracking

        Returns:
            EmailResult with delivery_status and attempt history
        """
        # Fingerprint for logging (no PII)
        email_fp = hashlib.sha256(to_email.encode()).hexdigest()[:8]

        if not self.is_configured():
            logger.warning(f"Resend API key not configured, skipping email to {email_fp}")
            return EmailResult(
                success=False,
                error="Email service not configured",
                delivery_status=EmailDeliveryStatus.SKIPPED,
            )

        payload = {
            "from": f"{self.settings.email_from_name} <{self.settings.resend_from_email}>",
            "to": [to_email],
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text

        headers = {
            "Authorization": f"Bearer {self.settings.resend_api_key}",
            "Content-Type": "application/json",
        }

        attempts: List[EmailAttempt] = []
        last_error: Optional[str] = None

        for attempt_num in range(1, MAX_RETRY_ATTEMPTS + 1):
            if attempt_num > 1:
                delay = RETRY_DELAYS_SECONDS[min(attempt_num - 1, len(RETRY_DELAYS_SECONDS) - 1)]
                logger.info(f"Email retry {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp}, waiting {delay}s")
                await asyncio.sleep(delay)

            try:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        self.RESEND_API_URL,
                        json=payload,
                        headers=headers,
                        timeout=self.settings.email_timeout_seconds,
                    )

                if response.status_code in (200, 201):
                    message_id = response.json().get("id")
                    attempts.append(EmailAttempt(
                        attempt_number=attempt_num,
                        success=True,
                        message_id=message_id,
                    ))
                    logger.info(
                        f"Email sent to {email_fp} on attempt {attempt_num}, "
                        f"message_id: {message_id}"
                    )

                    if audit_callback and context_id:
                        try:
                            await audit_callback("EMAIL_SENT", context_id, {
                                "email_fp": email_fp,
                                "message_id": message_id,
                                "attempt": attempt_num,
                            })
                        except Exception as e:
                            logger.warning(f"Audit callback failed: {e}")

                    return EmailResult(
                        success=True,
                        message_id=message_id,
                        delivery_status=EmailDeliveryStatus.SENT,
                        attempts=attempts,
                        total_attempts=attempt_num,
                    )

                last_error = f"API error {response.status_code}: {response.text[:200]}"
                attempts.append(EmailAttempt(attempt_number=attempt_num, success=False, error=last_error))
                logger.warning(
                    f"Email attempt {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp} "
                    f"failed: {last_error}"
                )

            except httpx.TimeoutException as e:
                last_error = f"Timeout: {e}"
                attempts.append(EmailAttempt(attempt_number=attempt_num, success=False, error=last_error))
                logger.warning(f"Email attempt {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp} timed out")

            except Exception as e:
                last_error = str(e)
                attempts.append(EmailAttempt(attempt_number=attempt_num, success=False, error=last_error))
                logger.warning(
                    f"Email attempt {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp} "
                    f"failed: {last_error}"
                )

        logger.error(
            f"Email to {email_fp} failed after {MAX_RETRY_ATTEMPTS} attempts. "
            f"Last error: {last_error}"
        )

        if audit_callback and context_id:
            try:
                await audit_callback("EMAIL_FAILED", context_id, {
                    "email_fp": email_fp,
                    "total_attempts": MAX_RETRY_ATTEMPTS,
                    "last_error": last_error[:200] if last_error else "Unknown",
                })
            except Exception as e:
                logger.warning(f"Audit callback failed: {e}")

        return EmailResult(
            success=False,
            error=last_error,
            delivery_status=EmailDeliveryStatus.FAILED,
            attempts=attempts,
            total_attempts=MAX_RETRY_ATTEMPTS,
        )

    async def send_rendered(
        self,
        to_email: str,
        rendered: RenderedEmail,
        audit_callback: Optional[AuditCallback] = None,
        context_id: Optional[str] = None,
    ) -> EmailResult:
        return await self.send_email(
            to_email=to_email,
            subject=rendered.subject,
            html=rendered.html,
            text=rendered.text,
            audit_callback=audit_callback,
            context_id=context_id,
        )


# Singleton instance
_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Get the email service singleton."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service


def create_audit_callback(store: Any, invitation_id: Optional[str] = None) -> AuditCallback:
    """
    Audit callback that records EMAIL_SENT / EMAIL_FAILED in document_events.

    Recording is best-effort; a failing audit write never fails the send.
    """
    from app.models import EventType

    async def callback(event_type: str, context_id: str, metadata: Dict[str, Any]) -> None:
        await store.record_event(
            document_id=context_id,
            event_type=EventType(event_type),
            invitation_id=invitation_id,
            actor="system",
            metadata=metadata,
        )

    return callback


__all__ = [
    "EmailService",
    "EmailResult",
    "EmailDeliveryStatus",
    "EmailAttempt",
    "RenderedEmail",
    "AuditCallback",
    "render_invitation_email",
    "render_completion_email",
    "get_email_service",
    "create_audit_callback",
    "MAX_RETRY_ATTEMPTS",
    "RETRY_DELAYS_SECONDS",
]
