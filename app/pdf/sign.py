"""
PDF signing module using PyMuPDF (fitz).

Overlays every collected signature image onto its field, writes the
"Signed by" / "Date" lines under each image, stamps page one once and
sets the document metadata of the finalized PDF.
"""
import io
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import fitz  # PyMuPDF
from PIL import Image

from app.utils.datetime_utils import format_utc

logger = logging.getLogger(__name__)

# Fonts with wide Unicode coverage, used when present on the host
FONT_PATHS = [
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/freefont/FreeSans.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
]

AUDIT_FONT_SIZE = 8
AUDIT_TEXT_COLOR = (0.3, 0.3, 0.3)
STAMP_COLOR = (0.5, 0.5, 0.5)
STAMP_OPACITY = 0.7

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
JPEG_MAGIC = b"\xff\xd8\xff"


def _find_font() -> Optional[str]:
    for path in FONT_PATHS:
        if os.path.exists(path):
            return path
    return None


class SigningError(Exception):
    """PDF signing error."""
    pass


@dataclass
class PdfRect:
    """
    Rectangle in PDF user space: origin bottom-left, Y grows upward, points.
    """
    x: float
    y: float
    width: float
    height: float

    def to_fitz(self, page_height: float) -> fitz.Rect:
        """PyMuPDF addresses pages from the top-left corner."""
        y_top = page_height - self.y - self.height
        return fitz.Rect(self.x, y_top, self.x + self.width, y_top + self.height)


def normalized_to_pdf_rect(
    x: float,
    y: float,
    width: float,
    height: float,
    page_width: float,
    page_height: float,
) -> PdfRect:
    """
    Convert a field stored as page fractions with a top-left origin into
    PDF points with a bottom-left origin.

        pdf_x = x * W
        pdf_y = H - y * H - height * H
    """
    h_pt = height * page_height
    return PdfRect(
        x=x * page_width,
        y=page_height - y * page_height - h_pt,
        width=width * page_width,
        height=h_pt,
    )


@dataclass
class SignatureOverlay:
    """One signature image to place on the document."""
    image: bytes
    signer_name: str
    signed_at: datetime
    page: int  # 1-indexed
    x: float
    y: float
    width: float
    height: float
    invitation_id: Optional[str] = None


@dataclass
class DocumentInfo:
    title: str
    author: str
    completed_at: datetime


@dataclass
class EmbedReport:
    pdf_bytes: bytes
    embedded: int = 0
    skipped: List[str] = field(default_factory=list)


def normalize_signature_image(data: bytes) -> bytes:
    """
    Return image bytes PyMuPDF can embed directly (PNG or JPEG).

    Other formats (e.g. WEBP) are re-encoded to PNG with Pillow.
    """
    if data.startswith(PNG_MAGIC) or data.startswith(JPEG_MAGIC):
        return data
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        out = io.BytesIO()
        img.convert("RGBA").save(out, format="PNG")
        return out.getvalue()


_EXTENSION = re.compile(r"\.[^/.]+$")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9\s_-]")
_WHITESPACE = re.compile(r"\s+")


def sanitize_title(title: str, max_length: int = 50) -> str:
    """Filesystem-safe stem from a document title."""
    stem = _EXTENSION.sub("", title or "")
    stem = _UNSAFE_CHARS.sub("", stem).strip()
    stem = _WHITESPACE.sub("_", stem)[:max_length]
    return stem or "document"


def completed_filename(title: str, completed_at: datetime, document_id: str) -> str:
    """<title>_signed_<YYYY-MM-DD>_<id8>.pdf"""
    return f"{sanitize_title(title)}_signed_{format_utc(completed_at, '%Y-%m-%d')}_{document_id[:8]}.pdf"


def download_filename(title: str) -> str:
    return f"{sanitize_title(title)}_signed.pdf"


class PDFSigner:
    """Signature overlay using PyMuPDF."""

    def __init__(self, creator: str = "Document Signing Platform"):
        self.creator = creator
        self._font_path = _find_font()

    def _insert_text(self, page: fitz.Page, point: fitz.Point, text: str, **kwargs) -> None:
        if self._font_path:
            page.insert_text(point, text, fontname="sigfont", fontfile=self._font_path, **kwargs)
        else:
            page.insert_text(point, text, fontname="helv", **kwargs)

    def _set_metadata(self, doc: fitz.Document, info: DocumentInfo) -> None:
        pdf_date = info.completed_at.strftime("D:%Y%m%d%H%M%S+00'00'")
        metadata = doc.metadata or {}
        metadata.update({
            "title": info.title,
            "author": info.author,
            "creator": self.creator,
            "producer": self.creator,
            "subject": f"Signed Document: {info.title}",
            "creationDate": pdf_date,
            "modDate": pdf_date,
        })
        doc.set_metadata(metadata)

    def _draw_signature(self, doc: fitz.Document, overlay: SignatureOverlay) -> None:
        page = doc[overlay.page - 1]
        page_rect = page.rect
        target = normalized_to_pdf_rect(
            overlay.x, overlay.y, overlay.width, overlay.height,
            page_rect.width, page_rect.height,
        )
        rect = target.to_fitz(page_rect.height)

        page.insert_image(rect, stream=normalize_signature_image(overlay.image), keep_proportion=True)

        # Audit lines sit 12pt and 24pt below the image's bottom edge
        self._insert_text(
            page, fitz.Point(rect.x0, rect.y1 + 12), f"Signed by: {overlay.signer_name}",
            fontsize=AUDIT_FONT_SIZE, color=AUDIT_TEXT_COLOR,
        )
        self._insert_text(
            page, fitz.Point(rect.x0, rect.y1 + 24), f"Date: {format_utc(overlay.signed_at)}",
            fontsize=AUDIT_FONT_SIZE, color=AUDIT_TEXT_COLOR,
        )

    def _stamp_first_page(self, doc: fitz.Document, completed_at: datetime) -> None:
        page = doc[0]
        width, height = page.rect.width, page.rect.height
        self._insert_text(
            page, fitz.Point(width - 150, height - 20), "Digitally Signed Document",
            fontsize=10, color=STAMP_COLOR, fill_opacity=STAMP_OPACITY,
        )
        self._insert_text(
            page, fitz.Point(width - 150, height - 35), f"Completed: {format_utc(completed_at)}",
            fontsize=8, color=STAMP_COLOR, fill_opacity=STAMP_OPACITY,
        )

    def embed_signatures(
        self,
        pdf_bytes: bytes,
        overlays: List[SignatureOverlay],
        info: DocumentInfo,
    ) -> EmbedReport:
        """
        Produce the finalized PDF.

        A signature whose page is out of range or whose image cannot be
        decoded is skipped and reported; the rest of the document is still
        produced.

        Raises:
            SigningError: If the source PDF cannot be opened or saved
        """
        try:
            doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        except Exception as e:
            raise SigningError(f"Invalid PDF file: {e}")

        report = EmbedReport(pdf_bytes=b"")
        try:
            self._set_metadata(doc, info)

            for overlay in overlays:
                label = overlay.invitation_id or overlay.signer_name
                if overlay.page < 1 or overlay.page > doc.page_count:
                    logger.warning(
                        f"Skipping signature {label}: page {overlay.page} out of range "
                        f"(document has {doc.page_count} pages)"
                    )
                    report.skipped.append(label)
                    continue
                try:
                    self._draw_signature(doc, overlay)
                    report.embedded += 1
                except Exception as e:
                    logger.error(f"Failed to embed signature {label}: {e}")
                    report.skipped.append(label)

            if doc.page_count > 0:
                self._stamp_first_page(doc, info.completed_at)

            report.pdf_bytes = doc.tobytes(garbage=4, deflate=True)
        except SigningError:
            raise
        except Exception as e:
            logger.exception("Failed to produce signed PDF")
            raise SigningError(f"Failed to produce signed PDF: {e}")
        finally:
            doc.close()

        logger.info(
            f"Embedded {report.embedded} signature(s), skipped {len(report.skipped)}"
        )
        return report

    def get_page_count(self, pdf_bytes: bytes) -> int:
        """Page count of a PDF, raising SigningError for unreadable input."""
        try:
            with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
                return doc.page_count
        except Exception as e:
            raise SigningError(f"Invalid PDF file: {e}")


# Singleton instance
_pdf_signer: Optional[PDFSigner] = None


def get_pdf_signer() -> PDFSigner:
    """Get the PDF signer singleton."""
    global _pdf_signer
    if _pdf_signer is None:
        from app.config import get_settings
        _pdf_signer = PDFSigner(creator=get_settings().system_name)
    return _pdf_signer
