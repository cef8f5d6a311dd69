"""
Builders for PDFs, signature images and ready-to-sign documents.
"""
import base64
import io
from typing import List, Optional, Tuple

import fitz
from PIL import Image, ImageDraw

from app.auth import RequestContext
from app.models import Document, OwnerIdentity, SignatureFieldInput, SignerInput
from app.services.container import ServiceContainer
from app.utils.datetime_utils import utc_now

TEST_SALT = "test-salt"
OWNER = OwnerIdentity(user_id="owner-1", email="owner@example.com", name="Olivia Owner")


def make_pdf(pages: int = 2, width: float = 612, height: float = 792) -> bytes:
    """Blank PDF built with PyMuPDF."""
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=width, height=height)
        page.insert_text((72, 72), f"Page {i + 1}", fontsize=12)
    data = doc.tobytes()
    doc.close()
    return data


def make_signature_png(width: int = 240, height: int = 80) -> bytes:
    """A scribble on a transparent canvas, like a browser signature pad produces."""
    img = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(img)
    draw.line(
        [(10, height - 20), (60, 15), (110, height - 15), (170, 20), (width - 10, height // 2)],
        fill=(20, 20, 120, 255),
        width=3,
    )
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


def encode_image(img: Image.Image, fmt: str) -> bytes:
    out = io.BytesIO()
    img.save(out, format=fmt)
    return out.getvalue()


def as_data_url(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode()}"


def request_context(ip: str = "203.0.113.7") -> RequestContext:
    return RequestContext(ip_address=ip, user_agent="pytest-agent", timestamp=utc_now())


def token_from_url(url: str) -> str:
    return url.rsplit("/", 1)[1]


async def create_sent_document(
    services: ServiceContainer,
    signers: List[Tuple[str, Optional[str]]],
    pdf: Optional[bytes] = None,
    title: str = "Service Agreement.pdf",
    expires_in_days: int = 7,
) -> Tuple[Document, List[str]]:
    """
    Upload, place one field per signer, prepare and invite.

    Returns:
        (document, plaintext tokens in signer order)
    """
    created = await services.documents.create_document(OWNER, title, pdf or make_pdf())
    document = await services.documents.load(created.id)

    inputs = [
        SignatureFieldInput(page=1, x=0.1, y=0.1 + 0.2 * i, width=0.3, height=0.1, label=f"Signer {i + 1}")
        for i in range(len(signers))
    ]
    fields = await services.documents.replace_fields(document, inputs, OWNER)
    await services.documents.prepare(document, OWNER)
    document = await services.documents.load(document.id)

    response = await services.invitations.create_invitations(
        document,
        OWNER,
        [
            SignerInput(email=email, name=name, assigned_field_ids=[fields.fields[i].id])
            for i, (email, name) in enumerate(signers)
        ],
        expires_in_days,
    )
    tokens = [token_from_url(inv.signing_url) for inv in response.invitations]
    return await services.documents.load(document.id), tokens


async def sign(services: ServiceContainer, token: str, png: bytes, name: str = "Test Signer", ip: str = "203.0.113.7"):
    return await services.collector.submit(
        token=token,
        signature_image=as_data_url(png),
        signer_name=name,
        context=request_context(ip),
    )
