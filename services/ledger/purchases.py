"""Purchase transactions created from parsed supplier invoices."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from shared import GmailTransaction, InvoiceEmail, Product, Supplier, build_transaction
from services.ledger.inventory import apply_transaction_inventory

logger = logging.getLogger(__name__)


def unit_cost_for(product: Product, line: Dict[str, Any]) -> Optional[float]:
    """Cost per unit for a purchased line.

    The catalog's last purchase price (or average cost) wins over whatever the
    invoice printed; the invoice line total is only used for a product with no
    cost yet.
    """
    if product.last_purchase_price:
        return float(product.last_purchase_price)
    if product.average_cost:
        return float(product.average_cost)
    line_total = line.get('invoiceLineTotal')
    quantity = int(line.get('quantity') or 0)
    if line_total is not None and quantity > 0:
        return round(float(line_total) / quantity, 4)
    return None


def create_purchase_from_invoice(db: Session, invoice_email: InvoiceEmail, supplier: Optional[Supplier],
                                 fields: Dict[str, Any], lines: List[Dict[str, Any]]) -> GmailTransaction:
    """Record a purchase for a parsed invoice email, with cost history and stock increases.

    ``lines`` carry ``name``, ``quantity``, optional ``invoiceLineTotal`` and, once
    resolved, ``productId``. Unresolved lines are kept on the transaction but
    do not touch the catalog.
    """
    order_number = fields.get('orderNumber')
    products = []
    for line in lines:
        entry = {
            'name': line['name'],
            'quantity': int(line.get('quantity') or 1),
            'productId': line.get('productId'),
        }
        product = db.get(Product, line['productId']) if line.get('productId') else None
        if product is not None:
            entry['name'] = product.name
            entry['invoiceName'] = line['name']
            cost = unit_cost_for(product, line)
            if cost is not None:
                entry['unitPrice'] = cost
                entry['totalPrice'] = round(cost * entry['quantity'], 2)
                product.record_cost(cost, entry['quantity'], source='wholesale',
                                    reference=order_number or invoice_email.email_id)
        products.append(entry)

    transaction = build_transaction(
        'gmail',
        date=invoice_email.date or datetime.utcnow(),
        type='purchase',
        amount=float(fields['total']),
        pre_tax_amount=fields.get('subtotal'),
        tax_amount=fields.get('tax'),
        products=products,
        supplier=supplier.name if supplier else None,
        notes=f"Order #{order_number}" if order_number else None,
        email_id=invoice_email.email_id,
        invoice_email_id=invoice_email.invoice_email_id,
        draft=False,
        status='completed',
    )
    db.add(transaction)
    db.flush()

    apply_transaction_inventory(db, transaction)

    invoice_email.status = 'processed'
    invoice_email.transaction_id = transaction.transaction_id
    invoice_email.amount = float(fields['total'])
    invoice_email.invoice_number = order_number
    invoice_email.processed_at = datetime.utcnow()

    logger.info(
        f"Invoice email {invoice_email.email_id}: purchase {transaction.transaction_id} "
        f"for {fields['total']} with {len(products)} lines"
    )
    return transaction
