"""Shared API dependencies - API key check and error translation."""
import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from shared import settings, NotFoundError
from services.extractor.patterns import MalformedRuleError

logger = logging.getLogger(__name__)

security = HTTPBearer()


def verify_api_key(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify API key from header."""
    if credentials.credentials != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return credentials.credentials


def http_error(e: Exception, action: str) -> HTTPException:
    """Map a service exception onto the HTTP status the routes report."""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, MalformedRuleError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    logger.error(f"{action} failed: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=f"{action} failed: {str(e)}")
