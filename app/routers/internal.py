"""
Internal API Router - for service-to-service communication.
Not exposed to the public internet.
"""
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Header

from app.config import get_settings, Settings
from app.models import DocumentResponse, FinalizeResponse, FinalizeTaskRequest
from app.services.container import ServiceContainer, get_services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal/v1",
    tags=["internal"],
)


async def verify_internal_secret(
    x_internal_secret: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
):
    """Dependency to verify the internal API secret."""
    if not x_internal_secret:
        logger.warning("Internal endpoint called without X-Internal-Secret header")
        raise HTTPException(status_code=401, detail="Unauthorized")

    if not settings.internal_api_secret or not secrets.compare_digest(
        x_internal_secret, settings.internal_api_secret
    ):
        logger.warning("Internal secret mismatch")
        raise HTTPException(status_code=403, detail="Forbidden")


@router.post(
    "/finalize",
    response_model=FinalizeResponse,
    dependencies=[Depends(verify_internal_secret)],
    summary="Finalize a completed document",
)
async def finalize_document(
    request: FinalizeTaskRequest,
    services: ServiceContainer = Depends(get_services),
):
    """
    Worker side of the HTTP finalization queue.

    Idempotent: a redelivered task returns the existing artifact with
    generated=false.
    """
    logger.info(f"Finalization task received for document {request.document_id}")
    result = await services.pipeline.finalize(request.document_id)
    return FinalizeResponse(
        document_id=result.document_id,
        final_pdf_ref=result.final_pdf_ref,
        finalized_at=result.finalized_at,
        generated=result.generated,
    )


@router.post(
    "/expire",
    response_model=DocumentResponse,
    dependencies=[Depends(verify_internal_secret)],
    summary="Expire overdue invitations of a document",
)
async def expire_document(
    request: FinalizeTaskRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Called by a scheduler; moves the document to EXPIRED once nothing can be signed."""
    document = await services.documents.load(request.document_id)
    return await services.documents.expire_overdue(document)
