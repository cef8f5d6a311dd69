"""
Supabase client module for database operations.

Every state change that can race (invitation completion, document status,
final PDF reference) is a single conditional UPDATE; the number of rows it
returns tells the caller whether it won.
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Iterable

from supabase import create_client, Client

from app.config import get_settings, Settings
from app.exceptions import ExternalServiceError
from app.models import (
    Document,
    DocumentEvent,
    DocumentStatus,
    EventType,
    Invitation,
    InvitationStatus,
    SignatureField,
)
from app.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

DOCUMENTS = "documents"
FIELDS = "signature_fields"
INVITATIONS = "invitations"
EVENTS = "document_events"


def _serialize(data: Dict[str, Any]) -> Dict[str, Any]:
    """Make a row JSON-safe for PostgREST."""
    out = {}
    for key, value in data.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, Enum):
            out[key] = value.value
        else:
            out[key] = value
    return out


class SupabaseStore:
    """Supabase (PostgREST) persistence for documents, fields, invitations and audit events."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._client: Optional[Client] = None

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = create_client(
                self.settings.supabase_url,
                self.settings.supabase_service_key,
            )
        return self._client

    def table(self, table_name: str):
        return self.client.table(table_name)

    async def _execute(self, query, operation: str) -> List[Dict[str, Any]]:
        """Run a blocking PostgREST query off the event loop."""
        try:
            response = await asyncio.to_thread(query.execute)
        except Exception as e:
            logger.error(f"Database {operation} failed: {e}")
            raise ExternalServiceError("database", f"{operation} failed")
        return response.data or []

    # Document operations
    async def create_document(self, data: Dict[str, Any]) -> Document:
        now = utc_now()
        row = {"created_at": now, "updated_at": now, **data}
        rows = await self._execute(self.table(DOCUMENTS).insert(_serialize(row)), "create_document")
        logger.info(f"Created document {rows[0]['id']}")
        return Document(**rows[0])

    async def get_document(self, document_id: str) -> Optional[Document]:
        rows = await self._execute(
            self.table(DOCUMENTS).select("*").eq("id", document_id).limit(1),
            "get_document",
        )
        return Document(**rows[0]) if rows else None

    async def transition_document_status(
        self,
        document_id: str,
        from_statuses: Iterable[DocumentStatus],
        to_status: DocumentStatus,
    ) -> bool:
        """
        Compare-and-swap the document status.

        Returns True only for the caller whose UPDATE matched the row.
        """
        expected = [s.value for s in from_statuses]
        rows = await self._execute(
            self.table(DOCUMENTS)
            .update({"status": to_status.value, "updated_at": utc_now().isoformat()})
            .eq("id", document_id)
            .in_("status", expected),
            "transition_document_status",
        )
        if rows:
            logger.info(f"Document {document_id} status {expected} -> {to_status.value}")
        return bool(rows)

    async def set_final_pdf_ref(self, document_id: str, final_pdf_ref: str, finalized_at: datetime) -> bool:
        """Record the finalized PDF once; later callers get False."""
        rows = await self._execute(
            self.table(DOCUMENTS)
            .update({
                "final_pdf_ref": final_pdf_ref,
                "finalized_at": finalized_at.isoformat(),
                "updated_at": utc_now().isoformat(),
            })
            .eq("id", document_id)
            .is_("final_pdf_ref", "null"),
            "set_final_pdf_ref",
        )
        return bool(rows)

    async def delete_document(self, document_id: str) -> None:
        # Fields, invitations and events cascade in the schema
        await self._execute(self.table(DOCUMENTS).delete().eq("id", document_id), "delete_document")

    # Signature field operations
    async def list_fields(self, document_id: str) -> List[SignatureField]:
        rows = await self._execute(
            self.table(FIELDS)
            .select("*")
            .eq("document_id", document_id)
            .order("page")
            .order("y")
            .order("x"),
            "list_fields",
        )
        return [SignatureField(**r) for r in rows]

    async def replace_fields(self, document_id: str, fields: List[Dict[str, Any]]) -> List[SignatureField]:
        """Replace all fields of a document (delete, then bulk insert)."""
        await self._execute(self.table(FIELDS).delete().eq("document_id", document_id), "replace_fields.delete")
        if not fields:
            return []
        rows = [_serialize({**f, "document_id": document_id}) for f in fields]
        await self._execute(self.table(FIELDS).insert(rows), "replace_fields.insert")
        return await self.list_fields(document_id)

    async def assign_fields(self, field_ids: List[str], invitation_id: str) -> int:
        rows = await self._execute(
            self.table(FIELDS).update({"invitation_id": invitation_id}).in_("id", field_ids),
            "assign_fields",
        )
        return len(rows)

    async def release_fields(self, invitation_id: str) -> int:
        """Clear the assignment of every field held by an invitation."""
        rows = await self._execute(
            self.table(FIELDS).update({"invitation_id": None}).eq("invitation_id", invitation_id),
            "release_fields",
        )
        return len(rows)

    # Invitation operations
    async def create_invitation(self, data: Dict[str, Any]) -> Invitation:
        row = {"created_at": utc_now(), "status": InvitationStatus.PENDING, **data}
        rows = await self._execute(self.table(INVITATIONS).insert(_serialize(row)), "create_invitation")
        return Invitation(**rows[0])

    async def get_invitation(self, invitation_id: str) -> Optional[Invitation]:
        rows = await self._execute(
            self.table(INVITATIONS).select("*").eq("id", invitation_id).limit(1),
            "get_invitation",
        )
        return Invitation(**rows[0]) if rows else None

    async def get_invitation_by_token_hash(self, token_hash: str) -> Optional[Invitation]:
        rows = await self._execute(
            self.table(INVITATIONS).select("*").eq("token_hash", token_hash).limit(1),
            "get_invitation_by_token_hash",
        )
        return Invitation(**rows[0]) if rows else None

    async def list_invitations(self, document_id: str) -> List[Invitation]:
        rows = await self._execute(
            self.table(INVITATIONS).select("*").eq("document_id", document_id).order("created_at"),
            "list_invitations",
        )
        return [Invitation(**r) for r in rows]

    async def mark_invitation_viewed(self, invitation_id: str, viewed_at: datetime) -> bool:
        rows = await self._execute(
            self.table(INVITATIONS)
            .update({"status": InvitationStatus.VIEWED.value, "viewed_at": viewed_at.isoformat()})
            .eq("id", invitation_id)
            .eq("status", InvitationStatus.PENDING.value),
            "mark_invitation_viewed",
        )
        return bool(rows)

    async def complete_invitation(self, invitation_id: str, updates: Dict[str, Any]) -> Optional[Invitation]:
        """
        Mark an invitation COMPLETED if it is still open.

        Returns the updated row, or None when another request completed it first.
        """
        payload = _serialize({**updates, "status": InvitationStatus.COMPLETED})
        rows = await self._execute(
            self.table(INVITATIONS)
            .update(payload)
            .eq("id", invitation_id)
            .in_("status", [InvitationStatus.PENDING.value, InvitationStatus.VIEWED.value]),
            "complete_invitation",
        )
        return Invitation(**rows[0]) if rows else None

    async def expire_invitation(self, invitation_id: str) -> bool:
        rows = await self._execute(
            self.table(INVITATIONS)
            .update({"status": InvitationStatus.EXPIRED.value})
            .eq("id", invitation_id)
            .in_("status", [InvitationStatus.PENDING.value, InvitationStatus.VIEWED.value]),
            "expire_invitation",
        )
        return bool(rows)

    async def delete_invitation(self, invitation_id: str) -> bool:
        """Delete an invitation unless it has been completed."""
        rows = await self._execute(
            self.table(INVITATIONS)
            .delete()
            .eq("id", invitation_id)
            .neq("status", InvitationStatus.COMPLETED.value),
            "delete_invitation",
        )
        return bool(rows)

    # Event operations
    async def record_event(
        self,
        document_id: str,
        event_type: EventType,
        invitation_id: Optional[str] = None,
        actor: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DocumentEvent:
        event_data = {
            "document_id": document_id,
            "event_type": event_type.value,
            "invitation_id": invitation_id,
            "actor": actor,
            "ip_address": ip_address,
            "user_agent": user_agent[:500] if user_agent else None,
            "metadata": metadata or {},
            "created_at": utc_now().isoformat(),
        }
        rows = await self._execute(self.table(EVENTS).insert(event_data), "record_event")
        logger.info(f"Created event {event_type.value} for document {document_id}")
        return DocumentEvent(**(rows[0] if rows else event_data))


# Singleton instance
_store: Optional[SupabaseStore] = None


def get_store() -> SupabaseStore:
    """Get the Supabase store singleton."""
    global _store
    if _store is None:
        _store = SupabaseStore()
    return _store
