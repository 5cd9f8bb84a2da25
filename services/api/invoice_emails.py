"""Invoice email endpoints - review queue and manual processing."""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from shared import get_db, InvoiceEmail, NotFoundError
from services.api.deps import verify_api_key, http_error
from services.extractor.worker import process_invoice_email

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoice-emails", tags=["invoice-emails"])

EMAIL_STATUSES = ('pending', 'processed', 'ignored')


class StatusUpdate(BaseModel):
    status: str


class ProcessRequest(BaseModel):
    force_ai: bool = False
    force: bool = False


def invoice_email_to_dict(email: InvoiceEmail) -> Dict[str, Any]:
    return {
        'id': email.invoice_email_id,
        'emailId': email.email_id,
        'date': email.date.isoformat() if email.date else None,
        'subject': email.subject,
        'from': email.sender,
        'status': email.status,
        'supplierId': email.supplier_id,
        'supplierName': email.supplier.name if email.supplier else None,
        'amount': email.amount,
        'invoiceNumber': email.invoice_number,
        'transactionId': email.transaction_id,
        'parseMethod': email.parse_method,
        'parseErrors': email.parse_errors,
    }


@router.get("")
def list_invoice_emails(
    status: Optional[str] = Query(None),
    supplier_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    query = db.query(InvoiceEmail)
    if status:
        query = query.filter(InvoiceEmail.status == status)
    if supplier_id is not None:
        query = query.filter(InvoiceEmail.supplier_id == supplier_id)
    emails = query.order_by(InvoiceEmail.date.desc(), InvoiceEmail.invoice_email_id.desc()).limit(limit).all()
    return [invoice_email_to_dict(e) for e in emails]


@router.patch("/{invoice_email_id}/status")
def update_invoice_email_status(invoice_email_id: int, request: StatusUpdate, db: Session = Depends(get_db),
                                api_key: str = Depends(verify_api_key)):
    try:
        if request.status not in EMAIL_STATUSES:
            raise ValueError(f"Status must be one of {', '.join(EMAIL_STATUSES)}")
        email = db.get(InvoiceEmail, invoice_email_id)
        if email is None:
            raise NotFoundError('Invoice email', invoice_email_id)
        email.status = request.status
        db.commit()
        return invoice_email_to_dict(email)
    except Exception as e:
        db.rollback()
        raise http_error(e, "Status update")


@router.post("/{invoice_email_id}/process")
def process_email(invoice_email_id: int, request: Optional[ProcessRequest] = None, db: Session = Depends(get_db),
                  api_key: str = Depends(verify_api_key)):
    """Run one email through extraction and record its purchase."""
    request = request or ProcessRequest()
    try:
        return process_invoice_email(db, invoice_email_id, force_ai=request.force_ai, force=request.force)
    except Exception as e:
        db.rollback()
        raise http_error(e, "Invoice processing")
