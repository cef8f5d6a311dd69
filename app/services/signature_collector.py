"""
Signature submission.

Storing the signer's image and completing the invitation is the durable
step. Whatever happens afterwards (completion, finalization, emails) never
undoes it.
"""
import base64
import binascii
import io
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Tuple, Union

from PIL import Image, UnidentifiedImageError

from app.auth import RequestContext
from app.exceptions import (
    AlreadySignedError,
    DocumentNotSignableError,
    EmptySignatureError,
    InvalidSignatureImageError,
    InvalidSignerInfoError,
    SignatureTooLargeError,
    TokenExpiredError,
)
from app.models import EventType, Invitation, InvitationStatus
from app.services.audit import record_event_safe
from app.services.completion import CompletionDetector, CompletionResult
from app.services.document_state import SIGNABLE_STATUSES
from app.services.invitations import InvitationManager
from app.utils.logging import fingerprint

logger = logging.getLogger(__name__)

MIN_SIGNATURE_BYTES = 75
MIN_SIGNER_NAME_LENGTH = 2
MAX_SIGNER_NAME_LENGTH = 100
MAX_SIGNER_TITLE_LENGTH = 100
MAX_SIGNER_NOTES_LENGTH = 1000

_DATA_URL = re.compile(r"^data:image/([a-zA-Z0-9.+-]+);base64,(.*)$", re.DOTALL)

# Pillow format name -> (content type, file extension)
_FORMATS = {
    "PNG": ("image/png", "png"),
    "JPEG": ("image/jpeg", "jpg"),
    "WEBP": ("image/webp", "webp"),
}


@dataclass
class SignatureImage:
    data: bytes
    content_type: str
    extension: str


@dataclass
class SignerInfo:
    name: str
    title: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class SubmissionResult:
    invitation: Invitation
    signature_ref: str
    signed_at: datetime
    completion: Optional[CompletionResult] = None

    @property
    def all_complete(self) -> bool:
        return bool(self.completion and self.completion.complete)


def _identify(data: bytes) -> Tuple[str, str]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise InvalidSignatureImageError(f"Signature image could not be decoded: {e}")
    if fmt not in _FORMATS:
        raise InvalidSignatureImageError(f"Unsupported signature image format: {fmt}")
    return _FORMATS[fmt]


def decode_signature_image(
    value: Union[str, bytes],
    min_base64_length: int = 100,
    max_bytes: int = 2 * 1024 * 1024,
) -> SignatureImage:
    """
    Accept raw image bytes, a `data:image/<type>;base64,` URL or bare base64.

    Raises:
        EmptySignatureError: Payload is missing or implausibly small
        SignatureTooLargeError: Decoded image exceeds max_bytes
        InvalidSignatureImageError: Not base64, or not a PNG/JPEG/WEBP image
    """
    if isinstance(value, (bytes, bytearray)):
        data = bytes(value)
    else:
        payload = (value or "").strip()
        match = _DATA_URL.match(payload)
        if match:
            payload = match.group(2)
        elif payload.startswith("data:"):
            raise InvalidSignatureImageError("Signature must be an image data URL")

        payload = re.sub(r"\s+", "", payload)
        if len(payload) < min_base64_length:
            raise EmptySignatureError()
        # Reject before decoding anything that cannot fit
        if len(payload) * 3 // 4 > max_bytes + 3:
            raise SignatureTooLargeError(len(payload) * 3 // 4, max_bytes)
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            raise InvalidSignatureImageError("Signature image is not valid base64")

    if len(data) < MIN_SIGNATURE_BYTES:
        raise EmptySignatureError()
    if len(data) > max_bytes:
        raise SignatureTooLargeError(len(data), max_bytes)

    content_type, extension = _identify(data)
    return SignatureImage(data=data, content_type=content_type, extension=extension)


def validate_signer_info(name: Optional[str], title: Optional[str] = None, notes: Optional[str] = None) -> SignerInfo:
    name = (name or "").strip()
    if not MIN_SIGNER_NAME_LENGTH <= len(name) <= MAX_SIGNER_NAME_LENGTH:
        raise InvalidSignerInfoError(
            f"Signer name must be between {MIN_SIGNER_NAME_LENGTH} and {MAX_SIGNER_NAME_LENGTH} characters"
        )
    title = (title or "").strip() or None
    if title and len(title) > MAX_SIGNER_TITLE_LENGTH:
        raise InvalidSignerInfoError(f"Signer title must be at most {MAX_SIGNER_TITLE_LENGTH} characters")
    notes = (notes or "").strip() or None
    if notes and len(notes) > MAX_SIGNER_NOTES_LENGTH:
        raise InvalidSignerInfoError(f"Signer notes must be at most {MAX_SIGNER_NOTES_LENGTH} characters")
    return SignerInfo(name=name, title=title, notes=notes)


class SignatureCollector:
    """Accepts a signer's signature for the invitation behind a token."""

    def __init__(
        self,
        store: Any,
        blob_store: Any,
        invitations: InvitationManager,
        completion: CompletionDetector,
        *,
        min_base64_length: int = 100,
        max_signature_bytes: int = 2 * 1024 * 1024,
    ):
        self.store = store
        self.blob_store = blob_store
        self.invitations = invitations
        self.completion = completion
        self.min_base64_length = min_base64_length
        self.max_signature_bytes = max_signature_bytes

    async def submit(
        self,
        token: str,
        signature_image: Union[str, bytes],
        signer_name: str,
        context: RequestContext,
        signer_title: Optional[str] = None,
        signer_notes: Optional[str] = None,
    ) -> SubmissionResult:
        """
        Store the signature and complete the invitation.

        Raises:
            TokenNotFoundError: Unknown token
            TokenExpiredError: Token past its grace period or invitation closed
            AlreadySignedError: Invitation already completed, including by a
                concurrent submit with the same token
            DocumentNotSignableError: Document not accepting signatures
            ValidationException subclasses: Bad image or signer info
        """
        # A rejected submission must leave the invitation untouched
        snapshot = await self.invitations.validate(token, mark_viewed=False)
        invitation, document = snapshot.invitation, snapshot.document

        if invitation.status == InvitationStatus.COMPLETED:
            raise AlreadySignedError()
        if snapshot.is_expired or invitation.status in (InvitationStatus.EXPIRED, InvitationStatus.DECLINED):
            await record_event_safe(
                self.store,
                document.id,
                EventType.TOKEN_EXPIRED,
                invitation_id=invitation.id,
                actor="signer",
                ip_address=context.ip_address,
                user_agent=context.user_agent,
            )
            raise TokenExpiredError()
        if document.status not in SIGNABLE_STATUSES:
            raise DocumentNotSignableError(document.status.value)

        image = decode_signature_image(signature_image, self.min_base64_length, self.max_signature_bytes)
        signer = validate_signer_info(signer_name, signer_title, signer_notes)

        epoch_ms = int(context.timestamp.timestamp() * 1000)
        path = f"signatures/{invitation.id}-{epoch_ms}-{secrets.token_hex(4)}.{image.extension}"
        await self.blob_store.put(path, image.data, image.content_type)

        signed_at = context.timestamp
        updated = await self.store.complete_invitation(invitation.id, {
            "signed_at": signed_at,
            "signature_ref": path,
            "signer_name": signer.name,
            "signer_title": signer.title,
            "signer_notes": signer.notes,
            "signer_ip": context.ip_address,
            "signer_user_agent": context.user_agent,
        })
        if updated is None:
            logger.warning(f"Invitation {invitation.id} was completed concurrently; discarding {path}")
            await self.blob_store.delete(path)
            raise AlreadySignedError()

        await record_event_safe(
            self.store,
            document.id,
            EventType.SIGNATURE_SUBMITTED,
            invitation_id=invitation.id,
            actor="signer",
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            metadata={
                "signer_fp": fingerprint(signer.name),
                "signature_ref": path,
                "size_bytes": len(image.data),
            },
        )
        logger.info(f"Signature stored for invitation {invitation.id} ({len(image.data)} bytes)")

        result = SubmissionResult(invitation=updated, signature_ref=path, signed_at=signed_at)
        try:
            result.completion = await self.completion.reevaluate(document.id, triggering_invitation_id=invitation.id)
        except Exception as e:
            logger.exception(f"Completion check for document {document.id} failed after signature: {e}")
        return result
