"""Inventory ledger - stock movements per transaction and audits against the stock counter.

``Product.stock`` is the authoritative counter. Every movement is also written to
``inventory_changes`` so the counter can be audited (``calculate_inventory_from_history``)
and, on explicit request only, reset to the ledger total.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from shared import InventoryChange, Product, Transaction, NotFoundError

logger = logging.getLogger(__name__)

CHANGE_TYPE_FOR_TRANSACTION = {
    'sale': 'sale',
    'purchase': 'expense',
    'refund': 'adjustment',
}


def calculate_inventory_from_history(db: Session, product_id: int) -> Dict[str, Any]:
    """Read-only audit of one product's counter against its ledger."""
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError('Product', product_id)

    purchases = db.query(func.coalesce(func.sum(InventoryChange.quantity_change), 0)).filter(
        InventoryChange.product_id == product_id,
        InventoryChange.quantity_change > 0,
    ).scalar()
    sales = db.query(func.coalesce(func.sum(InventoryChange.quantity_change), 0)).filter(
        InventoryChange.product_id == product_id,
        InventoryChange.quantity_change < 0,
    ).scalar()

    total_purchases = int(purchases or 0)
    total_sales = abs(int(sales or 0))
    calculated = total_purchases - total_sales
    current = product.stock or 0

    return {
        'productId': product.product_id,
        'productName': product.name,
        'currentStock': current,
        'calculatedStock': calculated,
        'difference': calculated - current,
        'totalPurchases': total_purchases,
        'totalSales': total_sales,
        'lastUpdated': (product.updated_at or datetime.utcnow()).isoformat(),
    }


def reconcile_all_inventory(db: Session, supplier: Optional[str] = None) -> Dict[str, Any]:
    """Audit every (optionally one supplier's) product. Never writes."""
    query = db.query(Product.product_id)
    if supplier:
        query = query.filter(Product.supplier == supplier)

    results = []
    errors = 0
    for (product_id,) in query.order_by(Product.product_id).all():
        try:
            results.append(calculate_inventory_from_history(db, product_id))
        except Exception as e:
            errors += 1
            logger.error(f"Error reconciling product {product_id}: {e}")

    drifted = [r for r in results if r['difference'] != 0]
    logger.info(f"Inventory audit: {len(results)} products, {len(drifted)} with drift, {errors} errors")
    return {
        'processed': len(results),
        'discrepancies': len(drifted),
        'errors': errors,
        'results': results,
    }


def update_inventory_to_calculated(db: Session, product_id: int, calculated_stock: int) -> Dict[str, Any]:
    """Explicitly overwrite the stock counter with a ledger total, never below zero."""
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError('Product', product_id)

    old_stock = product.stock or 0
    product.stock = max(0, int(calculated_stock))
    db.commit()
    logger.info(f"Product {product_id}: stock reset {old_stock} -> {product.stock}")
    return {'productId': product_id, 'oldStock': old_stock, 'newStock': product.stock}


def create_manual_adjustment(db: Session, product_id: int, adjustment: int, reason: str,
                             user_id: Optional[str] = None) -> InventoryChange:
    """Append an adjustment to the ledger. The stock counter is left alone."""
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError('Product', product_id)
    if not int(adjustment):
        raise ValueError("Adjustment must be non-zero")

    notes = reason or ''
    if user_id:
        notes = f"{notes} (by user {user_id})"

    change = InventoryChange(
        transaction_id=None,
        product_id=product_id,
        product_name=product.name,
        quantity_change=int(adjustment),
        change_type='adjustment',
        source='manual-adjustment',
        notes=notes,
        timestamp=datetime.utcnow(),
    )
    db.add(change)
    db.commit()
    logger.info(f"Product {product_id}: manual adjustment {adjustment:+d} ({notes})")
    return change


def _line_product_id(line: Dict[str, Any]) -> Optional[int]:
    value = line.get('productId')
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def apply_transaction_inventory(db: Session, transaction: Transaction) -> List[Dict[str, Any]]:
    """Move stock for each catalog product on a transaction and log the movement.

    Sales decrement (never below zero), purchases increment. A (transaction, product)
    pair that is already in the ledger is skipped, so re-running is harmless.
    """
    if transaction.type not in ('sale', 'purchase'):
        return []

    sign = -1 if transaction.type == 'sale' else 1
    change_type = CHANGE_TYPE_FOR_TRANSACTION[transaction.type]
    results = []

    # one ledger row per product, several lines can resolve to the same one
    quantities: Dict[int, int] = {}
    names: Dict[int, str] = {}
    for line in transaction.products or []:
        product_id = _line_product_id(line)
        quantity = int(line.get('quantity') or 0)
        name = line.get('name') or ''
        if product_id is None or quantity <= 0:
            logger.warning(f"Transaction {transaction.transaction_id}: skipping line {name!r} without product or quantity")
            continue
        quantities[product_id] = quantities.get(product_id, 0) + quantity
        names.setdefault(product_id, name)

    for product_id, quantity in quantities.items():
        name = names[product_id]

        already = db.query(InventoryChange).filter(
            InventoryChange.transaction_id == transaction.transaction_id,
            InventoryChange.product_id == product_id,
        ).first()
        if already:
            logger.info(f"Inventory already recorded for transaction {transaction.transaction_id}, product {product_id}")
            results.append({'productId': product_id, 'productName': name, 'success': True, 'changeRecorded': False})
            continue

        product = db.get(Product, product_id)
        if product is None:
            results.append({'productId': product_id, 'productName': name, 'success': False,
                            'error': 'Product not found'})
            continue

        old_stock = product.stock or 0
        new_stock = max(0, old_stock + sign * quantity)
        product.stock = new_stock
        db.add(InventoryChange(
            transaction_id=transaction.transaction_id,
            product_id=product_id,
            product_name=product.name,
            quantity_change=sign * quantity,
            change_type=change_type,
            source=transaction.source,
            timestamp=datetime.utcnow(),
        ))
        results.append({
            'productId': product_id,
            'productName': product.name,
            'oldStock': old_stock,
            'newStock': new_stock,
            'quantityChange': sign * quantity,
            'success': True,
            'changeRecorded': True,
        })
        logger.info(f"Product {product.name}: {old_stock} -> {new_stock} ({sign * quantity:+d})")

    db.flush()
    return results
