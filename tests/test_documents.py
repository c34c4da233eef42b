import pytest

import documents
from conftest import make_pdf
from database import Document, DocumentPage
from errors import DataIntegrityError, DocumentProcessingError, InvalidRequestError


def test_three_page_pdf_yields_three_pages(db, profile, storage):
    doc = documents.create_document(db, profile.id, "http://testserver/storage/chat_files/a.pdf", "invoice.pdf")

    page_count = documents.process_document(db, storage, doc.id, pdf_bytes=make_pdf(3))

    assert page_count == 3
    assert documents.document_status(db, doc.id) == {"document_id": doc.id, "status": "completed", "page_count": 3}

    pages = documents.get_pdf_images(db, doc.id)
    assert [p["page_number"] for p in pages] == [1, 2, 3]
    assert pages[0]["image_url"].endswith(f"pdf_pages/{doc.id}/page-1.png")
    assert storage.load_file(pages[2]["image_url"]).startswith(b"\x89PNG")


def test_pdf_is_loaded_from_storage(db, profile, storage):
    url = storage.save_file("chat_files", "upload.pdf", make_pdf(2), "application/pdf")
    doc = documents.create_document(db, profile.id, url, "upload.pdf")

    assert documents.process_document(db, storage, doc.id) == 2
    assert db.get(Document, doc.id).status == "completed"


def test_corrupt_pdf_marks_document_as_error(db, profile, storage):
    doc = documents.create_document(db, profile.id, "http://testserver/storage/chat_files/bad.pdf", "bad.pdf")

    with pytest.raises(DocumentProcessingError):
        documents.process_document(db, storage, doc.id, pdf_bytes=b"this is not a pdf")

    status = documents.document_status(db, doc.id)
    assert status["status"] == "error"
    assert status["page_count"] == 0


def test_missing_file_marks_document_as_error(db, profile, storage):
    doc = documents.create_document(db, profile.id, "http://testserver/storage/chat_files/gone.pdf", "gone.pdf")

    with pytest.raises(DocumentProcessingError):
        documents.process_document(db, storage, doc.id)
    assert db.get(Document, doc.id).status == "error"


def test_unknown_document(db, storage):
    with pytest.raises(DataIntegrityError):
        documents.process_document(db, storage, "no-such-document", pdf_bytes=make_pdf(1))
    with pytest.raises(DataIntegrityError):
        documents.document_status(db, "no-such-document")


def test_processing_twice_keeps_one_set_of_pages(db, profile, storage):
    doc = documents.create_document(db, profile.id, "http://testserver/storage/chat_files/a.pdf", "invoice.pdf")
    documents.process_document(db, storage, doc.id, pdf_bytes=make_pdf(3))

    assert documents.process_document(db, storage, doc.id, pdf_bytes=make_pdf(3)) == 3
    assert documents.document_status(db, doc.id) == {"document_id": doc.id, "status": "completed", "page_count": 3}


def test_retry_after_error_replaces_partial_pages(db, profile, storage):
    doc = documents.create_document(db, profile.id, "http://testserver/storage/chat_files/a.pdf", "invoice.pdf")
    db.add(DocumentPage(document_id=doc.id, page_number=1, image_url="http://testserver/storage/pdf_pages/stale.png"))
    doc.status = "error"
    db.commit()

    assert documents.process_document(db, storage, doc.id, pdf_bytes=make_pdf(2)) == 2
    pages = documents.get_pdf_images(db, doc.id)
    assert [p["page_number"] for p in pages] == [1, 2]
    assert all("stale" not in p["image_url"] for p in pages)


def test_storage_refuses_paths_outside_its_folder(storage, tmp_path):
    (tmp_path / "secret.txt").write_bytes(b"TOP SECRET")

    with pytest.raises(InvalidRequestError):
        storage.load_file("http://testserver/storage/../secret.txt")
