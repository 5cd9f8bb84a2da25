"""Transaction endpoints - duplicate merges, stock application and platform webhooks."""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from shared import get_db, Transaction, NotFoundError
from services.api.deps import verify_api_key, http_error
from services.ledger.inventory import apply_transaction_inventory
from services.ledger.merge import (
    find_date_amount_matches,
    merge_all_duplicates,
    merge_date_amount_duplicates,
    merge_duplicate_transactions,
    record_platform_order,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/transactions", tags=["transactions"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class MergeRequest(BaseModel):
    order_id: str
    platform: str


class SweepRequest(BaseModel):
    platform: str


class DateAmountRequest(BaseModel):
    date: str
    amount: float
    type: str = 'purchase'
    source: Optional[str] = None


def transaction_to_dict(txn: Transaction) -> Dict[str, Any]:
    return {
        'id': txn.transaction_id,
        'source': txn.source,
        'externalId': txn.external_id,
        'date': txn.date.isoformat() if txn.date else None,
        'type': txn.type,
        'amount': txn.amount,
        'preTaxAmount': txn.pre_tax_amount,
        'taxAmount': txn.tax_amount,
        'products': txn.products or [],
        'customer': txn.customer,
        'paymentMethod': txn.payment_method,
        'supplier': txn.supplier,
        'notes': txn.notes,
        'draft': txn.draft,
        'status': txn.status,
        'platformMetadata': txn.platform_metadata,
        'emailId': txn.email_id,
    }


@router.post("/merge-duplicates")
def merge_duplicates(request: MergeRequest, db: Session = Depends(get_db),
                     api_key: str = Depends(verify_api_key)):
    """Collapse every copy of one external order into the newest row."""
    try:
        survivor = merge_duplicate_transactions(db, request.order_id, request.platform)
        if survivor is None:
            raise NotFoundError('Order', request.order_id)
        return transaction_to_dict(survivor)
    except Exception as e:
        db.rollback()
        raise http_error(e, "Merge duplicates")


@router.post("/merge-duplicates/sweep")
def sweep_duplicates(request: SweepRequest, db: Session = Depends(get_db),
                     api_key: str = Depends(verify_api_key)):
    try:
        return merge_all_duplicates(db, request.platform)
    except Exception as e:
        db.rollback()
        raise http_error(e, "Duplicate sweep")


@router.post("/check-existing")
def check_existing(request: DateAmountRequest, db: Session = Depends(get_db),
                   api_key: str = Depends(verify_api_key)):
    """Transactions on the same day with the same amount. Matches are candidates, not proof."""
    try:
        matches = find_date_amount_matches(db, request.date, request.amount, request.type, request.source)
        return {'exists': bool(matches), 'matches': [transaction_to_dict(t) for t in matches]}
    except Exception as e:
        raise http_error(e, "Check existing")


@router.post("/merge-date-amount")
def merge_by_date_amount(request: DateAmountRequest, db: Session = Depends(get_db),
                         api_key: str = Depends(verify_api_key)):
    try:
        survivor = merge_date_amount_duplicates(
            db, request.date, request.amount, source=request.source or 'manual', type=request.type
        )
        return {'survivor': transaction_to_dict(survivor) if survivor else None}
    except Exception as e:
        db.rollback()
        raise http_error(e, "Merge by date and amount")


@router.post("/{transaction_id}/inventory")
def apply_inventory(transaction_id: int, db: Session = Depends(get_db),
                    api_key: str = Depends(verify_api_key)):
    """Move stock for the catalog products on a transaction. Re-running is harmless."""
    try:
        txn = db.get(Transaction, transaction_id)
        if txn is None:
            raise NotFoundError('Transaction', transaction_id)
        results = apply_transaction_inventory(db, txn)
        db.commit()
        return {'transactionId': transaction_id, 'results': results}
    except Exception as e:
        db.rollback()
        raise http_error(e, "Apply inventory")


@webhooks_router.post("/{platform}")
def platform_webhook(platform: str, payload: Dict[str, Any], db: Session = Depends(get_db),
                     api_key: str = Depends(verify_api_key)):
    try:
        return record_platform_order(db, platform, payload)
    except Exception as e:
        raise http_error(e, "Webhook")
