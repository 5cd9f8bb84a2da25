"""Smart mapping endpoints."""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from shared import get_db
from services.api.deps import verify_api_key, http_error
from services.reconciler.smart_mapping import (
    DEFAULT_MAX_RESULTS, MappingTypes, SmartMappingService, mapping_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/smart-mappings", tags=["smart-mappings"])


class MappingRequest(BaseModel):
    mapping_type: str
    source: str
    target: str
    target_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@router.post("")
def record_mapping(request: MappingRequest, db: Session = Depends(get_db),
                   api_key: str = Depends(verify_api_key)):
    try:
        mapping = SmartMappingService(db).create_or_update_mapping(
            request.mapping_type, request.source, request.target, request.target_id, request.metadata
        )
        db.commit()
        return mapping_to_dict(mapping)
    except Exception as e:
        db.rollback()
        raise http_error(e, "Record mapping")


@router.get("/suggest")
def suggest_mappings(
    source: str = Query(...),
    mapping_type: str = Query(MappingTypes.PRODUCT_NAMES),
    max_results: int = Query(DEFAULT_MAX_RESULTS, ge=1, le=50),
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    mappings = SmartMappingService(db).suggest_mappings(mapping_type, source, max_results)
    return [mapping_to_dict(m) for m in mappings]


@router.get("/auto-confirmed")
def auto_confirmed_mappings(
    mapping_type: str = Query(MappingTypes.PRODUCT_NAMES),
    confidence_threshold: Optional[float] = Query(None),
    min_usage_count: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    return SmartMappingService(db).get_auto_confirmed_product_mappings(
        confidence_threshold, min_usage_count, mapping_type
    )


@router.get("")
def list_mappings(
    mapping_type: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    return [mapping_to_dict(m) for m in SmartMappingService(db).list_mappings(mapping_type, limit)]


@router.delete("/{mapping_id}")
def delete_mapping(mapping_id: int, db: Session = Depends(get_db), api_key: str = Depends(verify_api_key)):
    try:
        SmartMappingService(db).delete_mapping(mapping_id)
        db.commit()
        return {'deleted': mapping_id}
    except Exception as e:
        db.rollback()
        raise http_error(e, "Delete mapping")
