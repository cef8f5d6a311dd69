"""
Health check endpoint.
"""
from fastapi import APIRouter, Depends

from app.config import get_settings, Settings
from app.pdf.sign import _find_font

router = APIRouter(
    prefix="/health",
    tags=["health"],
)


@router.get("")
async def health_check(settings: Settings = Depends(get_settings)):
    """
    Liveness plus a summary of which collaborators are configured.
    Does not call any of them.
    """
    return {
        "status": "healthy",
        "environment": settings.environment,
        "finalization_mode": settings.finalization_mode,
        "configured": {
            "database": bool(settings.supabase_url and settings.supabase_service_key),
            "blob_store": bool(settings.gcs_bucket),
            "email": bool(settings.resend_api_key),
            "owner_auth": bool(settings.oauth_client_id or settings.admin_api_secret),
            "unicode_font": _find_font() is not None,
        },
    }
