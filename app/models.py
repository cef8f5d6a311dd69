from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class BaseRequest(BaseModel):
    """Base class for all request models - ignores extra fields."""
    model_config = ConfigDict(extra="ignore")


# Enums
class DocumentStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"  # Fields fixed, invitations may go out
    PARTIALLY_SIGNED = "partially_signed"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    VIEWED = "viewed"
    COMPLETED = "completed"
    EXPIRED = "expired"
    DECLINED = "declined"


class EventType(str, Enum):
    # Audit trail events (document_events.event_type)
    DOCUMENT_CREATED = "DOCUMENT_CREATED"
    DOCUMENT_PREPARED = "DOCUMENT_PREPARED"
    DOCUMENT_CANCELLED = "DOCUMENT_CANCELLED"
    DOCUMENT_EXPIRED = "DOCUMENT_EXPIRED"
    DOCUMENT_DELETED = "DOCUMENT_DELETED"
    DOCUMENT_DOWNLOADED = "DOCUMENT_DOWNLOADED"
    FIELDS_UPDATED = "FIELDS_UPDATED"
    SIGNATURE_REQUEST_SENT = "SIGNATURE_REQUEST_SENT"
    SIGNATURE_REQUEST_VIEWED = "SIGNATURE_REQUEST_VIEWED"
    SIGNATURE_SUBMITTED = "SIGNATURE_SUBMITTED"
    INVITATION_DELETED = "INVITATION_DELETED"
    DOCUMENT_COMPLETED = "DOCUMENT_COMPLETED"
    DOCUMENT_FINALIZED = "DOCUMENT_FINALIZED"
    COMPLETION_NOTIFICATIONS_SENT = "COMPLETION_NOTIFICATIONS_SENT"
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_FAILED = "EMAIL_FAILED"
    INVALID_TOKEN_USED = "INVALID_TOKEN_USED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"


# Stored records
class Document(BaseModel):
    """Document row."""
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    status: DocumentStatus
    source_pdf_ref: str
    page_count: Optional[int] = None
    final_pdf_ref: Optional[str] = None
    finalized_at: Optional[datetime] = None
    owner_id: str
    owner_email: str
    owner_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SignatureField(BaseModel):
    """
    Signature field placement, normalized to [0, 1] with top-left origin.
    """
    model_config = ConfigDict(extra="ignore")

    id: str
    document_id: str
    page: int
    x: float
    y: float
    width: float
    height: float
    required: bool = True
    label: Optional[str] = None
    invitation_id: Optional[str] = None


class Invitation(BaseModel):
    """Signing invitation row. The plaintext token is never stored."""
    model_config = ConfigDict(extra="ignore")

    id: str
    document_id: str
    token_hash: str
    recipient_email: str
    recipient_name: Optional[str] = None
    message: Optional[str] = None
    status: InvitationStatus
    expires_at: datetime
    viewed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    signature_ref: Optional[str] = None
    signer_name: Optional[str] = None
    signer_title: Optional[str] = None
    signer_notes: Optional[str] = None
    signer_ip: Optional[str] = None
    signer_user_agent: Optional[str] = None
    created_at: Optional[datetime] = None


class DocumentEvent(BaseModel):
    """Audit trail entry."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    document_id: str
    event_type: EventType
    invitation_id: Optional[str] = None
    actor: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class OwnerIdentity(BaseModel):
    """Authenticated document owner."""
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


# Request Models
class SignatureFieldInput(BaseRequest):
    id: Optional[str] = None
    page: int = Field(..., ge=1)
    x: float = Field(..., ge=0, le=1)
    y: float = Field(..., ge=0, le=1)
    width: float = Field(..., gt=0, le=1)
    height: float = Field(..., gt=0, le=1)
    label: Optional[str] = Field(default=None, max_length=100)
    required: bool = True

    @model_validator(mode="after")
    def _fits_on_page(self) -> "SignatureFieldInput":
        # Small epsilon for values produced by floating point UI math
        if self.x + self.width > 1.0 + 1e-6:
            raise ValueError("Field exceeds the right edge of the page")
        if self.y + self.height > 1.0 + 1e-6:
            raise ValueError("Field exceeds the bottom edge of the page")
        return self


class ReplaceFieldsRequest(BaseRequest):
    fields: List[SignatureFieldInput]


class SignerInput(BaseRequest):
    email: str = Field(..., min_length=3, max_length=254)
    name: Optional[str] = Field(default=None, max_length=100)
    message: Optional[str] = Field(default=None, max_length=1000)
    assigned_field_ids: List[str] = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        local, sep, domain = v.partition("@")
        if not sep or not local or "." not in domain:
            raise ValueError(f"Invalid email address: {v}")
        return v


class SendInvitationsRequest(BaseRequest):
    signers: List[SignerInput] = Field(..., min_length=1)
    expires_in_days: int = Field(default=7)


class TokenRequest(BaseRequest):
    token: str = Field(..., min_length=1, max_length=256)


class SubmitSignatureRequest(BaseRequest):
    token: str = Field(..., min_length=1, max_length=256)
    signature_image: str = Field(..., description="data:image/...;base64 URL or bare base64 payload")
    signer_name: str
    signer_title: Optional[str] = None
    signer_notes: Optional[str] = None


class FinalizeTaskRequest(BaseRequest):
    document_id: str = Field(..., min_length=1)


# Response Models
class DocumentResponse(BaseModel):
    id: str
    title: str
    status: DocumentStatus
    final_pdf_ref: Optional[str] = None
    finalized_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    field_count: int = 0
    invitation_count: int = 0


class SignatureFieldResponse(BaseModel):
    id: str
    page: int
    x: float
    y: float
    width: float
    height: float
    required: bool
    label: Optional[str] = None
    invitation_id: Optional[str] = None


class FieldsResponse(BaseModel):
    document_id: str
    status: DocumentStatus
    fields: List[SignatureFieldResponse]


class SentInvitation(BaseModel):
    id: str
    recipient_email: str
    recipient_name: Optional[str] = None
    signing_url: str
    expires_at: datetime
    email_status: str
    email_error: Optional[str] = None


class SendInvitationsResponse(BaseModel):
    document_id: str
    invitations: List[SentInvitation]
    emails_sent: int = 0
    emails_failed: int = 0


class SigningFieldView(BaseModel):
    id: str
    x: float
    y: float
    width: float
    height: float
    page: int
    required: bool


class SigningData(BaseModel):
    """What a signer sees after presenting a valid token."""
    id: str
    document_id: str
    document_url: Optional[str] = None
    document_name: str
    recipient_name: Optional[str] = None
    recipient_email: str
    expires_at: datetime
    signature_fields: List[SigningFieldView]
    is_expired: bool
    is_completed: bool
    sender_name: Optional[str] = None
    sender_email: str


class ValidateTokenResponse(BaseModel):
    valid: bool = True
    signing_data: SigningData


class SubmitSignatureResponse(BaseModel):
    success: bool = True
    message: str
    invitation_id: str
    signature_ref: str
    signed_at: datetime
    all_signatures_complete: bool


class InvitationProgressView(BaseModel):
    id: str
    status: InvitationStatus
    is_expired: bool
    is_signed: bool
    signed_at: Optional[datetime] = None
    recipient_name: Optional[str] = None
    recipient_email: str


class DocumentProgressView(BaseModel):
    id: str
    title: str
    status: DocumentStatus
    is_completed: bool


class SigningProgress(BaseModel):
    total_signers: int
    completed_signers: int
    pending_signers: int
    progress_percentage: int
    all_completed: bool


class SignerProgressView(BaseModel):
    id: str
    name: Optional[str] = None
    email: str
    status: InvitationStatus
    signed_at: Optional[datetime] = None
    is_current_user: bool = False


class ProgressResponse(BaseModel):
    invitation: InvitationProgressView
    document: DocumentProgressView
    signing_progress: SigningProgress
    signers: List[SignerProgressView]


class SigningResultResponse(BaseModel):
    document_name: str
    signer_name: Optional[str] = None
    signed_at: Optional[datetime] = None
    sender_name: Optional[str] = None
    sender_email: str
    all_signatures_complete: bool
    signature_url: Optional[str] = None


class FinalizeResponse(BaseModel):
    document_id: str
    final_pdf_ref: str
    finalized_at: Optional[datetime] = None
    generated: bool
    download_url: Optional[str] = None


class CompletedSignatureView(BaseModel):
    signer_name: Optional[str] = None
    signed_at: datetime
    recipient_email: str


class CompletionMetrics(BaseModel):
    total_signatures: int
    completed_signatures: int
    progress_percentage: int
    is_fully_complete: bool
    is_document_finalized: bool


class CompletionStatusResponse(BaseModel):
    document: DocumentResponse
    signatures: List[CompletedSignatureView]
    invitations: List[InvitationProgressView]
    metrics: CompletionMetrics


# Error Response
class ErrorResponse(BaseModel):
    error: bool = True
    code: str
    message: str
    details: Optional[dict] = None
    request_id: Optional[str] = None
