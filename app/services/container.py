"""
Service wiring.

Everything is built once from Settings; routers reach services through
get_services(), tests build a ServiceContainer from fakes.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from app.config import Settings, get_settings
from app.pdf.sign import PDFSigner
from app.services.completion import CompletionDetector
from app.services.documents import DocumentService
from app.services.finalizer import (
    FinalizationPipeline,
    FinalizationQueue,
    HttpFinalizationQueue,
    InlineFinalizationQueue,
)
from app.services.invitations import InvitationManager
from app.services.notifications import NotificationDispatcher
from app.services.signature_collector import SignatureCollector

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    store: Any
    blob_store: Any
    email_service: Any
    pdf_signer: PDFSigner
    notifier: NotificationDispatcher
    pipeline: FinalizationPipeline
    queue: FinalizationQueue
    completion: CompletionDetector
    invitations: InvitationManager
    collector: SignatureCollector
    documents: DocumentService


def build_services(
    settings: Settings,
    store: Any,
    blob_store: Any,
    email_service: Any,
    pdf_signer: Optional[PDFSigner] = None,
    queue: Optional[FinalizationQueue] = None,
) -> ServiceContainer:
    pdf_signer = pdf_signer or PDFSigner(creator=settings.system_name)
    notifier = NotificationDispatcher(
        store, blob_store, email_service,
        download_link_minutes=settings.download_link_expiration_minutes,
    )
    pipeline = FinalizationPipeline(store, blob_store, pdf_signer, notifier)

    if queue is None:
        if settings.finalization_mode == "http":
            queue = HttpFinalizationQueue(
                settings.get_internal_base_url(),
                settings.internal_api_secret,
                timeout=settings.finalization_timeout_seconds,
            )
        else:
            queue = InlineFinalizationQueue(pipeline)

    completion = CompletionDetector(store, queue, grace_minutes=settings.token_grace_period_minutes)
    invitations = InvitationManager(
        store, blob_store, email_service,
        token_salt=settings.signing_token_salt,
        sign_app_url=settings.get_sign_app_url(),
        grace_minutes=settings.token_grace_period_minutes,
        document_url_minutes=settings.gcs_signed_url_expiration_minutes,
    )
    collector = SignatureCollector(
        store, blob_store, invitations, completion,
        min_base64_length=settings.min_signature_base64_length,
        max_signature_bytes=settings.max_signature_bytes,
    )
    documents = DocumentService(
        store, blob_store, pdf_signer, invitations, completion, pipeline,
        max_pdf_bytes=settings.max_pdf_bytes,
        download_url_minutes=settings.gcs_signed_url_expiration_minutes,
    )
    logger.info(f"Services ready (finalization mode: {type(queue).__name__})")
    return ServiceContainer(
        settings=settings,
        store=store,
        blob_store=blob_store,
        email_service=email_service,
        pdf_signer=pdf_signer,
        notifier=notifier,
        pipeline=pipeline,
        queue=queue,
        completion=completion,
        invitations=invitations,
        collector=collector,
        documents=documents,
    )


# Singleton instance
_services: Optional[ServiceContainer] = None


def get_services() -> ServiceContainer:
    """Get the service container singleton, wired to the real backends."""
    global _services
    if _services is None:
        from app.email import get_email_service
        from app.gcs import get_blob_store
        from app.pdf.sign import get_pdf_signer
        from app.supabase_client import get_store

        _services = build_services(
            get_settings(),
            store=get_store(),
            blob_store=get_blob_store(),
            email_service=get_email_service(),
            pdf_signer=get_pdf_signer(),
        )
    return _services
