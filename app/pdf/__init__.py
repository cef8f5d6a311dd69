# PDF module
from app.pdf.sign import (
    PDFSigner,
    get_pdf_signer,
    SignatureOverlay,
    DocumentInfo,
    EmbedReport,
    PdfRect,
    SigningError,
    normalized_to_pdf_rect,
    completed_filename,
    download_filename,
)

__all__ = [
    "PDFSigner",
    "get_pdf_signer",
    "SignatureOverlay",
    "DocumentInfo",
    "EmbedReport",
    "PdfRect",
    "SigningError",
    "normalized_to_pdf_rect",
    "completed_filename",
    "download_filename",
]
