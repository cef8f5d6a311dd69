"""
Public signing API router.

Signers have no account: the token in the request body is the only
credential, so every endpoint here is rate limited per client IP.
Paths: /sign/*
"""
import logging

from fastapi import APIRouter, Depends

from app.auth import RequestContext, get_request_context
from app.models import (
    ErrorResponse,
    ProgressResponse,
    SigningResultResponse,
    SubmitSignatureRequest,
    SubmitSignatureResponse,
    TokenRequest,
    ValidateTokenResponse,
)
from app.services.container import ServiceContainer, get_services
from app.utils.rate_limiter import enforce_signing_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/sign",
    tags=["signing"],
    dependencies=[Depends(enforce_signing_rate_limit)],
    responses={
        404: {"model": ErrorResponse, "description": "Unknown token"},
        429: {"model": ErrorResponse, "description": "Rate limited"},
    },
)


@router.post("/validate-token", response_model=ValidateTokenResponse)
async def validate_token(
    body: TokenRequest,
    services: ServiceContainer = Depends(get_services),
):
    """
    Resolve a signing token.

    Expired or already completed invitations are still returned, flagged
    with is_expired / is_completed, so the page can explain the situation.
    """
    snapshot = await services.invitations.validate(body.token)
    signing_data = await services.invitations.signing_data(snapshot)
    return ValidateTokenResponse(valid=True, signing_data=signing_data)


@router.post(
    "/submit",
    response_model=SubmitSignatureResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid image, signer info or expired token"},
        409: {"model": ErrorResponse, "description": "Already signed or document not signable"},
    },
)
async def submit_signature(
    body: SubmitSignatureRequest,
    context: RequestContext = Depends(get_request_context),
    services: ServiceContainer = Depends(get_services),
):
    result = await services.collector.submit(
        token=body.token,
        signature_image=body.signature_image,
        signer_name=body.signer_name,
        context=context,
        signer_title=body.signer_title,
        signer_notes=body.signer_notes,
    )
    all_complete = result.all_complete
    return SubmitSignatureResponse(
        success=True,
        message="All signatures collected" if all_complete else "Signature submitted",
        invitation_id=result.invitation.id,
        signature_ref=result.signature_ref,
        signed_at=result.signed_at,
        all_signatures_complete=all_complete,
    )


@router.post("/progress", response_model=ProgressResponse)
async def signing_progress(
    body: TokenRequest,
    services: ServiceContainer = Depends(get_services),
):
    return await services.invitations.progress(body.token)


@router.post("/result", response_model=SigningResultResponse)
async def signing_result(
    body: TokenRequest,
    services: ServiceContainer = Depends(get_services),
):
    return await services.invitations.result(body.token)
