"""Transaction persistence used by the functions, the assistant tools and bank sync."""

import uuid
from datetime import date, datetime
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from database import DocumentPage, Transaction
from errors import DataIntegrityError, InvalidRequestError
from storage import TRANSACTION_ATTACHMENTS, ObjectStorage

logger = structlog.get_logger(__name__)

DATE_FORMATS = ["%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y"]


def parse_transaction_date(value) -> date:
    """Normalise a user or model supplied date. ``None`` means today."""
    if value is None or value == "":
        return date.today()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(str(value).strip(), fmt).date()
        except ValueError:
            continue
    raise InvalidRequestError(f"Unrecognised date: {value!r} (use YYYY-MM-DD or DD-MM-YYYY)")


def _parse_amount(amount) -> float:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise InvalidRequestError(f"Amount must be a number, got {amount!r}")
    if value == 0:
        raise InvalidRequestError("Amount is required")
    return abs(value)


def _add_transaction(db: Session, user_id, amount, category, txn_date, txn_type, description, source, document_page_id):
    if not category:
        raise InvalidRequestError("Category is required")

    value = _parse_amount(amount)
    txn = Transaction(
        user_id=user_id,
        amount=-value if txn_type == "expense" else value,
        category=category,
        date=parse_transaction_date(txn_date),
        type=txn_type,
        description=description,
        source=source,
        document_page_id=document_page_id,
    )
    db.add(txn)
    db.commit()
    db.refresh(txn)
    logger.info("transaction_added", transaction_id=txn.id, type=txn_type, source=source)
    return txn


def add_expense(
    db: Session,
    user_id: str,
    amount,
    category: str,
    txn_date=None,
    description: Optional[str] = None,
    source: str = "manual",
    document_page_id: Optional[str] = None,
) -> Transaction:
    """Expenses are always stored negative, whatever sign the caller used."""
    return _add_transaction(db, user_id, amount, category, txn_date, "expense", description, source, document_page_id)


def add_income(
    db: Session,
    user_id: str,
    amount,
    category: str,
    txn_date=None,
    description: Optional[str] = None,
    source: str = "manual",
    document_page_id: Optional[str] = None,
) -> Transaction:
    return _add_transaction(db, user_id, amount, category, txn_date, "income", description, source, document_page_id)


def fetch_user_transactions(
    db: Session,
    user_id: str,
    start_date=None,
    end_date=None,
    category: Optional[str] = None,
) -> list[Transaction]:
    query = db.query(Transaction).filter(Transaction.user_id == user_id)
    if start_date:
        query = query.filter(Transaction.date >= parse_transaction_date(start_date))
    if end_date:
        query = query.filter(Transaction.date <= parse_transaction_date(end_date))
    if category:
        query = query.filter(Transaction.category == category)

    txns = query.order_by(Transaction.date.desc(), Transaction.id.desc()).all()
    logger.debug("transactions_fetched", count=len(txns), category=category)
    return txns


def delete_transaction(db: Session, user_id: str, transaction_id: int):
    txn = db.query(Transaction).filter(Transaction.id == transaction_id, Transaction.user_id == user_id).first()
    if not txn:
        raise DataIntegrityError(f"No transaction {transaction_id} for this user")
    db.delete(txn)
    db.commit()
    logger.info("transaction_deleted", transaction_id=transaction_id)


def latest_transaction(db: Session, user_id: str) -> Optional[Transaction]:
    return (
        db.query(Transaction)
        .filter(Transaction.user_id == user_id)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .first()
    )


def attach_receipt(
    db: Session,
    storage: ObjectStorage,
    user_id: str,
    file_name: str,
    data: bytes,
    content_type: str,
    transaction_id: Optional[int] = None,
) -> DocumentPage:
    """Store a receipt image and link it to a transaction (the latest one by default)."""
    if transaction_id is None:
        txn = latest_transaction(db, user_id)
    else:
        txn = db.query(Transaction).filter(Transaction.id == transaction_id, Transaction.user_id == user_id).first()
    if not txn:
        raise DataIntegrityError("No transaction to attach the image to")

    ext = file_name.rsplit(".", 1)[-1] if "." in file_name else "png"
    url = storage.save_file(TRANSACTION_ATTACHMENTS, f"{uuid.uuid4()}.{ext}", data, content_type)

    page = DocumentPage(image_url=url, page_number=1)
    db.add(page)
    db.commit()

    txn.document_page_id = page.id
    db.commit()
    db.refresh(page)
    logger.info("receipt_attached", transaction_id=txn.id, page_id=page.id)
    return page


def transaction_to_dict(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "user_id": txn.user_id,
        "amount": txn.amount,
        "category": txn.category,
        "date": txn.date.isoformat() if txn.date else None,
        "type": txn.type,
        "description": txn.description,
        "document_page_id": txn.document_page_id,
        "source": txn.source,
        "image_url": txn.document_page.image_url if txn.document_page else None,
    }
