"""Duplicate transaction detection and merge.

The same external order can land in the ledger several times: webhook retries,
polling syncs and historical id schemes (``shopify_<id>``, payment transaction
ids) each create their own row. Merging keeps the newest row, lets it borrow
optional fields it lacks from the older rows, then deletes the older rows.
"""
import copy
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, func
from sqlalchemy.orm import Session

from shared import Transaction, WebhookEvent, build_transaction
from shared.dates import parse_datetime, utc_day_bounds

logger = logging.getLogger(__name__)

PLATFORMS = ('shopify', 'square')
AMOUNT_TOLERANCE = 0.005


def is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, dict)) and not value:
        return True
    return False


def _order_clauses(order_id: str, platform: str):
    meta_order = Transaction.platform_metadata['orderId'].as_string()
    payment_txn = Transaction.payment_processing['transactionId'].as_string()

    if platform == 'shopify':
        return [
            meta_order == order_id,
            Transaction.shopify_order_id == order_id,
            Transaction.external_id == f'shopify_{order_id}',
            payment_txn == order_id,
        ]
    return [
        meta_order == order_id,
        Transaction.external_id == f'square_{order_id}',
        payment_txn == order_id,
        payment_txn == f'square_{order_id}',
    ]


def find_order_duplicates(db: Session, order_id: str, platform: str) -> List[Transaction]:
    """All rows that represent ``order_id`` on ``platform``, newest first."""
    if platform not in PLATFORMS:
        raise ValueError(f"Unsupported platform: {platform}")
    order_id = str(order_id)
    meta_platform = Transaction.platform_metadata['platform'].as_string()

    return db.query(Transaction).filter(
        or_(*_order_clauses(order_id, platform)),
        or_(Transaction.source == platform, meta_platform == platform),
    ).order_by(
        Transaction.created_at.desc(),
        Transaction.transaction_id.desc(),
    ).all()


def fill_missing_fields(survivor: Transaction, others: List[Transaction]) -> List[str]:
    """Copy mergeable fields the survivor lacks from the first other row that has them."""
    filled = []
    for name in survivor.MERGEABLE_FIELDS:
        if not is_missing(getattr(survivor, name)):
            continue
        for other in others:
            value = getattr(other, name, None)
            if not is_missing(value):
                setattr(survivor, name, copy.deepcopy(value))
                filled.append(name)
                logger.info(f"Merged {name} from transaction {other.transaction_id}")
                break
    return filled


def _merge_group(db: Session, duplicates: List[Transaction], label: str) -> Tuple[Optional[Transaction], int]:
    if len(duplicates) <= 1:
        logger.info(f"No duplicates found for {label}")
        return (duplicates[0] if duplicates else None), 0

    survivor, others = duplicates[0], duplicates[1:]
    logger.info(f"Found {len(duplicates)} transactions for {label}, keeping {survivor.transaction_id}")

    if fill_missing_fields(survivor, others):
        survivor.updated_at = datetime.utcnow()

    ids = [t.transaction_id for t in others]
    db.flush()
    deleted = db.query(Transaction).filter(
        Transaction.transaction_id.in_(ids)
    ).delete(synchronize_session=False)
    for other in others:
        db.expunge(other)
    db.commit()
    db.refresh(survivor)

    logger.info(f"Deleted {deleted} duplicate transactions for {label}: {ids}")
    return survivor, deleted


def merge_duplicate_transactions(db: Session, order_id: str, platform: str) -> Optional[Transaction]:
    """Collapse every row for an external order into the newest one.

    Returns the surviving transaction, or None when the order is unknown.
    Running it again on an already merged order changes nothing.
    """
    duplicates = find_order_duplicates(db, order_id, platform)
    survivor, _ = _merge_group(db, duplicates, f"{platform} order {order_id}")
    return survivor


def find_date_amount_matches(db: Session, day: Any, amount: float, type: str = 'purchase',
                             source: Optional[str] = None) -> List[Transaction]:
    """Transactions on the same UTC day with the same absolute amount, newest first.

    Two genuine purchases of the same amount on the same day are indistinguishable
    here, so callers should treat matches as candidates.
    """
    start, end = utc_day_bounds(day)
    target = abs(float(amount))
    query = db.query(Transaction).filter(
        Transaction.date >= start,
        Transaction.date < end,
        Transaction.type == type,
        func.abs(Transaction.amount) >= target - AMOUNT_TOLERANCE,
        func.abs(Transaction.amount) <= target + AMOUNT_TOLERANCE,
    )
    if source:
        query = query.filter(Transaction.source == source)
    return query.order_by(Transaction.created_at.desc(), Transaction.transaction_id.desc()).all()


def merge_date_amount_duplicates(db: Session, day: Any, amount: float, source: str = 'manual',
                                 type: str = 'purchase') -> Optional[Transaction]:
    duplicates = find_date_amount_matches(db, day, amount, type=type, source=source)
    survivor, _ = _merge_group(db, duplicates, f"{source} {type} {amount} on {day}")
    return survivor


def _order_key(txn: Transaction, platform: str) -> Optional[str]:
    meta = txn.platform_metadata or {}
    if meta.get('orderId'):
        return str(meta['orderId'])
    if platform == 'shopify' and txn.shopify_order_id:
        return str(txn.shopify_order_id)
    prefix = f'{platform}_'
    if txn.external_id and txn.external_id.startswith(prefix):
        return txn.external_id[len(prefix):]
    payment_id = (txn.payment_processing or {}).get('transactionId')
    if payment_id:
        payment_id = str(payment_id)
        return payment_id[len(prefix):] if payment_id.startswith(prefix) else payment_id
    return None


def merge_all_duplicates(db: Session, platform: str) -> Dict[str, Any]:
    """Sweep one platform's transactions and merge every order that has more than one row."""
    if platform not in PLATFORMS:
        raise ValueError(f"Unsupported platform: {platform}")

    groups = defaultdict(int)
    for txn in db.query(Transaction).filter(Transaction.source == platform).all():
        key = _order_key(txn, platform)
        if key:
            groups[key] += 1

    summary = {'platform': platform, 'groups': 0, 'merged': 0, 'deleted': 0, 'errors': 0}
    for order_id, count in groups.items():
        if count <= 1:
            continue
        summary['groups'] += 1
        try:
            duplicates = find_order_duplicates(db, order_id, platform)
            _, deleted = _merge_group(db, duplicates, f"{platform} order {order_id}")
            if deleted:
                summary['merged'] += 1
                summary['deleted'] += deleted
        except Exception as e:
            db.rollback()
            summary['errors'] += 1
            logger.error(f"Error merging {platform} order {order_id}: {e}", exc_info=True)

    logger.info(
        f"Duplicate sweep for {platform}: groups={summary['groups']}, merged={summary['merged']}, "
        f"deleted={summary['deleted']}, errors={summary['errors']}"
    )
    return summary


def record_platform_order(db: Session, platform: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Store an order pushed by a platform webhook, then merge it with earlier copies.

    Deliveries are tracked per (platform, orderId, topic); a delivery that already
    completed is acknowledged without touching the ledger.
    """
    if platform not in PLATFORMS:
        raise ValueError(f"Unsupported platform: {platform}")
    order_id = str(payload.get('orderId') or '').strip()
    if not order_id:
        raise ValueError("orderId is required")
    if payload.get('amount') is None:
        raise ValueError("amount is required")
    topic = payload.get('topic') or 'orders/create'

    event = db.query(WebhookEvent).filter(
        WebhookEvent.platform == platform,
        WebhookEvent.order_id == order_id,
        WebhookEvent.topic == topic,
    ).first()
    if event and event.status == 'completed':
        logger.info(f"Webhook {platform}/{topic} for order {order_id} already processed")
        return {'status': 'duplicate', 'transactionId': event.transaction_id}

    if event is None:
        event = WebhookEvent(platform=platform, order_id=order_id, topic=topic, attempt_count=0)
        db.add(event)
    event.status = 'processing'
    event.attempt_count = (event.attempt_count or 0) + 1
    event.last_attempt = datetime.utcnow()
    event.payload = payload
    db.commit()

    try:
        txn = build_transaction(
            platform,
            external_id=f'{platform}_{order_id}',
            date=parse_datetime(payload.get('date')) or datetime.utcnow(),
            type=payload.get('type') or 'sale',
            amount=float(payload['amount']),
            products=payload.get('products'),
            line_items=payload.get('lineItems'),
            pre_tax_amount=payload.get('preTaxAmount'),
            tax_amount=payload.get('taxAmount'),
            is_taxable=payload.get('isTaxable'),
            customer=payload.get('customer'),
            email=payload.get('email'),
            payment_method=payload.get('paymentMethod'),
            tip=payload.get('tip'),
            status=payload.get('status') or 'completed',
            payment_processing=payload.get('paymentProcessing'),
            platform_metadata={'platform': platform, 'orderId': order_id, 'syncStatus': 'synced'},
        )
        if platform == 'shopify':
            txn.shopify_order_id = order_id
        db.add(txn)
        db.commit()

        survivor = merge_duplicate_transactions(db, order_id, platform)
        event.status = 'completed'
        event.transaction_id = survivor.transaction_id
        event.error = None
        db.commit()
    except Exception as e:
        db.rollback()
        event.status = 'failed'
        event.error = str(e)
        db.commit()
        logger.error(f"Webhook {platform}/{topic} for order {order_id} failed: {e}")
        raise

    return {'status': 'processed', 'transactionId': survivor.transaction_id}
