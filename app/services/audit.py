"""
Best-effort audit trail writes.

A failing audit insert is logged and never fails the operation it describes.
"""
import logging
from typing import Any, Dict, Optional

from app.models import EventType

logger = logging.getLogger(__name__)


async def record_event_safe(
    store: Any,
    document_id: str,
    event_type: EventType,
    invitation_id: Optional[str] = None,
    actor: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    try:
        await store.record_event(
            document_id=document_id,
            event_type=event_type,
            invitation_id=invitation_id,
            actor=actor,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata,
        )
    except Exception as e:
        logger.warning(f"Audit event {event_type.value} for document {document_id} not recorded: {e}")
