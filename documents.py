"""
documents.py
------------

PDF ingestion: every page of an uploaded PDF is rendered to a PNG,
stored under ``pdf_pages/<document_id>/page-<n>.png`` and recorded as a
``document_pages`` row. The document's status moves
pending -> processing -> completed, or to error if any page fails.
Pages written before a failure are left in place until the document is
processed again.
"""

import io
from typing import Optional

import pypdfium2 as pdfium
import structlog
from sqlalchemy.orm import Session

from database import Document, DocumentPage
from errors import DataIntegrityError, DocumentProcessingError, InvalidRequestError
from storage import PDF_PAGES, ObjectStorage

logger = structlog.get_logger(__name__)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
ERROR = "error"

# 72 dpi * 2 keeps receipts legible for OCR and the model
RENDER_SCALE = 2.0


def create_document(db: Session, user_id: str, file_url: str, original_name: str) -> Document:
    if not file_url:
        raise InvalidRequestError("file_url is required")
    doc = Document(user_id=user_id, file_url=file_url, original_name=original_name or "document.pdf", status=PENDING)
    db.add(doc)
    db.commit()
    db.refresh(doc)
    logger.info("document_created", document_id=doc.id)
    return doc


def render_page(pdf: pdfium.PdfDocument, index: int, scale: float = RENDER_SCALE) -> bytes:
    """Rasterise a single page to PNG bytes."""
    page = pdf[index]
    try:
        image = page.render(scale=scale).to_pil()
    finally:
        page.close()
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def _set_status(db: Session, doc: Document, status: str):
    doc.status = status
    db.commit()


def process_document(
    db: Session,
    storage: ObjectStorage,
    document_id: str,
    pdf_bytes: Optional[bytes] = None,
) -> int:
    """Render and store every page of a document. Returns the page count.

    Documents that are already processing or completed are left alone.
    """
    doc = db.get(Document, document_id)
    if doc is None:
        raise DataIntegrityError(f"No document found for id: {document_id}")

    if doc.status in (PROCESSING, COMPLETED):
        logger.info("document_already_processed", document_id=document_id, status=doc.status)
        return db.query(DocumentPage).filter(DocumentPage.document_id == document_id).count()

    # Pages left over from an earlier failed attempt are rendered again
    db.query(DocumentPage).filter(DocumentPage.document_id == document_id).delete()
    _set_status(db, doc, PROCESSING)
    try:
        if pdf_bytes is None:
            pdf_bytes = storage.load_file(doc.file_url)

        pdf = pdfium.PdfDocument(pdf_bytes)
        try:
            page_count = len(pdf)
            for index in range(page_count):
                png = render_page(pdf, index)
                url = storage.save_file(PDF_PAGES, f"{document_id}/page-{index + 1}.png", png, "image/png")
                db.add(DocumentPage(document_id=document_id, page_number=index + 1, image_url=url))
                db.commit()
        finally:
            pdf.close()
    except Exception as exc:
        db.rollback()
        _set_status(db, doc, ERROR)
        logger.error("document_failed", document_id=document_id, error=str(exc))
        raise DocumentProcessingError(f"Failed to process document {document_id}: {exc}") from exc

    _set_status(db, doc, COMPLETED)
    logger.info("document_processed", document_id=document_id, pages=page_count)
    return page_count


def get_pdf_images(db: Session, document_id: str) -> list[dict]:
    if not document_id:
        raise InvalidRequestError("Document ID is required for fetching PDF images")
    pages = (
        db.query(DocumentPage)
        .filter(DocumentPage.document_id == document_id)
        .order_by(DocumentPage.page_number)
        .all()
    )
    return [
        {"id": p.id, "document_id": p.document_id, "page_number": p.page_number, "image_url": p.image_url}
        for p in pages
    ]


def document_status(db: Session, document_id: str) -> dict:
    doc = db.get(Document, document_id)
    if doc is None:
        raise DataIntegrityError(f"No document found for id: {document_id}")
    page_count = db.query(DocumentPage).filter(DocumentPage.document_id == document_id).count()
    return {"document_id": doc.id, "status": doc.status, "page_count": page_count}
