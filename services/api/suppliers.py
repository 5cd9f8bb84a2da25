"""Supplier endpoints - parsing rules, AI training samples and invoice parsing."""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from shared import get_db, Supplier, NotFoundError
from services.api.deps import verify_api_key, http_error
from services.extractor.ai_parser import (
    add_training_sample, normalize_ai_result, parse_invoice_email, training_samples,
)
from services.extractor.patterns import PatternExtractor, dry_run_parsing_config, validate_parsing_config

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/suppliers", tags=["suppliers"])
ai_router = APIRouter(prefix="/ai", tags=["ai"])


class SupplierCreate(BaseModel):
    name: str
    aliases: List[str] = []
    invoice_email: Optional[str] = None
    invoice_subject_pattern: Optional[str] = None
    sku_prefix: Optional[str] = None
    email_parsing: Optional[Dict[str, Any]] = None


class ParsingConfigUpdate(BaseModel):
    email_parsing: Dict[str, Any]


class TrainingSampleRequest(BaseModel):
    prompt: str
    result: Dict[str, Any]
    max_samples: Optional[int] = None


class PatternTestRequest(BaseModel):
    body: str
    email_parsing: Optional[Dict[str, Any]] = None


class ParseInvoiceRequest(BaseModel):
    body: str
    supplier_id: Optional[int] = None


def supplier_to_dict(supplier: Supplier) -> Dict[str, Any]:
    training = supplier.ai_training or {}
    return {
        'id': supplier.supplier_id,
        'name': supplier.name,
        'aliases': supplier.aliases or [],
        'invoiceEmail': supplier.invoice_email,
        'invoiceSubjectPattern': supplier.invoice_subject_pattern,
        'skuPrefix': supplier.sku_prefix,
        'emailParsing': supplier.email_parsing or {},
        'aiTrainingSamples': len(training.get('samples') or []),
    }


def _get_supplier(db: Session, supplier_id: int) -> Supplier:
    supplier = db.get(Supplier, supplier_id)
    if supplier is None:
        raise NotFoundError('Supplier', supplier_id)
    return supplier


def _check_parsing_config(config: Optional[Dict[str, Any]]):
    errors = validate_parsing_config(config)
    if errors:
        raise HTTPException(status_code=422, detail={'message': 'Invalid parsing rules', 'errors': errors})


@router.post("")
def create_supplier(request: SupplierCreate, db: Session = Depends(get_db),
                    api_key: str = Depends(verify_api_key)):
    try:
        _check_parsing_config(request.email_parsing)
        if db.query(Supplier).filter(Supplier.name == request.name).first():
            raise ValueError(f"Supplier {request.name!r} already exists")
        supplier = Supplier(
            name=request.name,
            aliases=request.aliases,
            invoice_email=request.invoice_email,
            invoice_subject_pattern=request.invoice_subject_pattern,
            sku_prefix=request.sku_prefix,
            email_parsing=request.email_parsing or {},
            ai_training={},
        )
        db.add(supplier)
        db.commit()
        return supplier_to_dict(supplier)
    except Exception as e:
        db.rollback()
        raise http_error(e, "Create supplier")


@router.get("/{supplier_id}")
def get_supplier(supplier_id: int, db: Session = Depends(get_db), api_key: str = Depends(verify_api_key)):
    try:
        return supplier_to_dict(_get_supplier(db, supplier_id))
    except Exception as e:
        raise http_error(e, "Get supplier")


@router.put("/{supplier_id}/email-parsing")
def update_parsing_config(supplier_id: int, request: ParsingConfigUpdate, db: Session = Depends(get_db),
                          api_key: str = Depends(verify_api_key)):
    """Replace a supplier's parsing rules. Rules that do not compile are rejected with 422."""
    try:
        supplier = _get_supplier(db, supplier_id)
        _check_parsing_config(request.email_parsing)
        supplier.email_parsing = request.email_parsing
        db.commit()
        logger.info(f"Supplier {supplier_id}: parsing rules updated")
        return supplier_to_dict(supplier)
    except Exception as e:
        db.rollback()
        raise http_error(e, "Update parsing rules")


@router.post("/{supplier_id}/test-patterns")
def test_patterns(supplier_id: int, request: PatternTestRequest, db: Session = Depends(get_db),
                  api_key: str = Depends(verify_api_key)):
    """Dry-run parsing rules (the stored ones unless others are given) against a sample body."""
    try:
        supplier = _get_supplier(db, supplier_id)
        config = request.email_parsing if request.email_parsing is not None else supplier.email_parsing
        _check_parsing_config(config)
        return dry_run_parsing_config(request.body, config)
    except Exception as e:
        raise http_error(e, "Pattern test")


@router.post("/{supplier_id}/ai-training")
def add_ai_training_sample(supplier_id: int, request: TrainingSampleRequest, db: Session = Depends(get_db),
                           api_key: str = Depends(verify_api_key)):
    try:
        supplier = _get_supplier(db, supplier_id)
        count = add_training_sample(supplier, request.prompt, request.result, request.max_samples)
        db.commit()
        return {'supplierId': supplier_id, 'samples': count}
    except Exception as e:
        db.rollback()
        raise http_error(e, "Add training sample")


@ai_router.post("/parse-invoice")
def parse_invoice(request: ParseInvoiceRequest, db: Session = Depends(get_db),
                  api_key: str = Depends(verify_api_key)):
    """Parse an invoice body with the LLM, using the supplier's samples as examples.

    The body is trimmed the way the pipeline trims it: head dropped, then the
    supplier's content bounds applied.
    """
    try:
        supplier = None
        if request.supplier_id is not None:
            supplier = _get_supplier(db, request.supplier_id)
        examples = training_samples(supplier) if supplier else []
        text = PatternExtractor(supplier.email_parsing if supplier else None).prepare(request.body)
        data = parse_invoice_email(text, examples)
        return {'raw': data, 'parsed': normalize_ai_result(data)}
    except Exception as e:
        raise http_error(e, "AI parse")
