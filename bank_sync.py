"""
bank_sync.py
------------

Plaid webhook handling and transaction reconciliation.

Incoming webhook bodies are validated into one of three shapes before
anything else happens:

* ``SyncUpdatesAvailable``: new data is ready for an item, pull the delta.
* ``ItemError``: the item needs attention (logged).
* ``UnhandledWebhook``: any other type/code, acknowledged and ignored.

Reconciliation keys on Plaid's ``transaction_id``. Rows stored without
one fall back to matching on description within the user's transactions.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

import pandas as pd
import structlog
from pydantic import BaseModel, Discriminator, Tag, TypeAdapter
from sqlalchemy.orm import Session

from database import PlaidConnection, Transaction
from errors import DataIntegrityError, ExternalServiceError
from plaid_integration import PlaidService, SyncDelta
from push import PushService

logger = structlog.get_logger(__name__)

SYNC_CODES = ("SYNC_UPDATES_AVAILABLE", "INITIAL_UPDATE", "HISTORICAL_UPDATE", "DEFAULT_UPDATE")


class SyncUpdatesAvailable(BaseModel):
    webhook_type: Literal["TRANSACTIONS"]
    webhook_code: Literal["SYNC_UPDATES_AVAILABLE", "INITIAL_UPDATE", "HISTORICAL_UPDATE", "DEFAULT_UPDATE"]
    item_id: str
    initial_update_complete: Optional[bool] = None
    historical_update_complete: Optional[bool] = None
    environment: Optional[str] = None


class ItemError(BaseModel):
    webhook_type: Literal["ITEM"]
    webhook_code: Literal["ERROR"]
    item_id: str
    error: Optional[dict[str, Any]] = None


class UnhandledWebhook(BaseModel):
    webhook_type: str
    webhook_code: str
    item_id: Optional[str] = None


def _webhook_kind(payload) -> str:
    get = payload.get if isinstance(payload, dict) else lambda key: getattr(payload, key, None)
    webhook_type, webhook_code = get("webhook_type"), get("webhook_code")
    if webhook_type == "TRANSACTIONS" and webhook_code in SYNC_CODES:
        return "sync"
    if webhook_type == "ITEM" and webhook_code == "ERROR":
        return "item_error"
    return "other"


PlaidWebhook = Annotated[
    Union[
        Annotated[SyncUpdatesAvailable, Tag("sync")],
        Annotated[ItemError, Tag("item_error")],
        Annotated[UnhandledWebhook, Tag("other")],
    ],
    Discriminator(_webhook_kind),
]

_webhook_adapter = TypeAdapter(PlaidWebhook)


def parse_webhook(payload: dict) -> Union[SyncUpdatesAvailable, ItemError, UnhandledWebhook]:
    """Raises pydantic.ValidationError for bodies that match no shape."""
    return _webhook_adapter.validate_python(payload)


def simulated_webhook(item_id: str) -> dict:
    """Body of a sandbox SYNC_UPDATES_AVAILABLE webhook for ``item_id``."""
    return {
        "webhook_type": "TRANSACTIONS",
        "webhook_code": "SYNC_UPDATES_AVAILABLE",
        "item_id": item_id,
        "initial_update_complete": True,
        "historical_update_complete": True,
        "environment": "sandbox",
    }


def upsert_connection(db: Session, user_id: str, item_id: str, access_token: str, institution_name: str = "Unknown Institution") -> PlaidConnection:
    conn = db.query(PlaidConnection).filter(PlaidConnection.item_id == item_id).first()
    if not conn:
        conn = PlaidConnection(user_id=user_id, item_id=item_id, access_token=access_token, institution_name=institution_name)
        db.add(conn)
    else:
        conn.access_token = access_token
        if institution_name:
            conn.institution_name = institution_name
    db.commit()
    db.refresh(conn)
    logger.info("plaid_connection_saved", item_id=item_id, institution=conn.institution_name)
    return conn


def _category(t: dict) -> str:
    pf_category = None
    if t.get("personal_finance_category"):
        pf_category = t["personal_finance_category"].get("primary")
    category_list = t.get("category") or []
    return pf_category or (category_list[0] if category_list else "Uncategorized")


def _apply_fields(txn: Transaction, t: dict):
    # Plaid convention: Positive = Expense, Negative = Income
    # Our App convention: Positive = Income, Negative = Expense
    signed_amount = -float(t.get("amount", 0))
    txn.amount = signed_amount
    txn.type = "expense" if signed_amount < 0 else "income"
    txn.date = pd.to_datetime(t.get("date")).date() if t.get("date") else txn.date
    txn.description = t.get("name") or t.get("merchant_name") or txn.description or "Plaid Transaction"
    txn.category = _category(t)


def _find_existing(db: Session, user_id: str, t: dict) -> Optional[Transaction]:
    plaid_id = t.get("transaction_id")
    if plaid_id:
        match = db.query(Transaction).filter(Transaction.plaid_transaction_id == plaid_id).first()
        if match:
            return match
    description = t.get("name")
    if not description:
        return None
    return (
        db.query(Transaction)
        .filter(
            Transaction.user_id == user_id,
            Transaction.description == description,
            Transaction.plaid_transaction_id.is_(None),
        )
        .first()
    )


def apply_delta(db: Session, user_id: str, delta: SyncDelta) -> dict:
    """Apply added/modified/removed rows. Re-applying the same delta is a no-op."""
    counts = {"added": 0, "modified": 0, "removed": 0}

    for t in delta.added:
        plaid_id = t.get("transaction_id")
        if plaid_id and db.query(Transaction).filter(Transaction.plaid_transaction_id == plaid_id).first():
            continue
        txn = Transaction(user_id=user_id, source="plaid", plaid_transaction_id=plaid_id)
        _apply_fields(txn, t)
        db.add(txn)
        # Later entries in this delta must be able to find this row
        db.flush()
        counts["added"] += 1

    for t in delta.modified:
        txn = _find_existing(db, user_id, t)
        if txn is None:
            logger.warning("modified_transaction_missing", plaid_transaction_id=t.get("transaction_id"))
            continue
        _apply_fields(txn, t)
        txn.plaid_transaction_id = txn.plaid_transaction_id or t.get("transaction_id")
        db.flush()
        counts["modified"] += 1

    for t in delta.removed:
        txn = _find_existing(db, user_id, t)
        if txn is None:
            continue
        db.delete(txn)
        db.flush()
        counts["removed"] += 1

    db.commit()
    logger.info("plaid_delta_applied", **counts)
    return counts


def sync_connection(db: Session, plaid: PlaidService, conn: PlaidConnection) -> dict:
    delta = plaid.sync_transactions(conn.access_token, cursor=conn.cursor)
    counts = apply_delta(db, conn.user_id, delta)
    conn.cursor = delta.next_cursor
    conn.last_synced_at = datetime.utcnow()
    db.commit()
    return counts


def handle_webhook(db: Session, plaid: Optional[PlaidService], push: Optional[PushService], event) -> dict:
    if isinstance(event, ItemError):
        logger.error("plaid_item_error", item_id=event.item_id, error=event.error)
        return {"received": True}

    if not isinstance(event, SyncUpdatesAvailable):
        logger.info("plaid_webhook_ignored", webhook_type=event.webhook_type, webhook_code=event.webhook_code)
        return {"received": True}

    conn = db.query(PlaidConnection).filter(PlaidConnection.item_id == event.item_id).first()
    if conn is None:
        raise DataIntegrityError(f"No connection found for item_id: {event.item_id}")
    if plaid is None:
        raise ExternalServiceError("Plaid is not configured")

    counts = sync_connection(db, plaid, conn)

    notified = 0
    if any(counts.values()):
        if push is None:
            logger.warning("push_not_configured", user_id=conn.user_id)
        else:
            result = push.notify_user(
                db,
                conn.user_id,
                title="New Transactions Available",
                body=f"New transactions detected in your {conn.institution_name} account",
                data={"type": "TRANSACTIONS_UPDATE", "institution": conn.institution_name},
            )
            notified = result.success_count

    return {"received": True, "synced": counts, "notified": notified}
