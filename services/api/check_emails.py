"""Email check endpoint - pulls supplier invoices and Amex alerts from Gmail on demand."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from services.api.deps import verify_api_key, http_error
from services.ingestion.main import check_emails_internal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/check-emails", tags=["sync"])


class CheckEmailsRequest(BaseModel):
    """Request model for the email check endpoint."""
    since_days: Optional[int] = None  # overrides the last successful sync time


@router.post("")
def check_emails(request: Optional[CheckEmailsRequest] = None, api_key: str = Depends(verify_api_key)):
    """Check Gmail for new supplier invoices and Amex purchase alerts.

    Without ``since_days`` each check resumes from its last successful sync.
    """
    since_days = request.since_days if request else None
    try:
        result = check_emails_internal(since_days=since_days)
        logger.info(f"Email check: {result['emails_processed']} new items")
        return result
    except Exception as e:
        raise http_error(e, "Email check")
