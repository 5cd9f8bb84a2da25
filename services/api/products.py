"""Product endpoints - supplier aliases, name resolution and inventory audits."""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from shared import get_db
from services.api.deps import verify_api_key, http_error
from services.ledger.inventory import (
    calculate_inventory_from_history,
    create_manual_adjustment,
    reconcile_all_inventory,
    update_inventory_to_calculated,
)
from services.reconciler.worker import (
    ProductResolver,
    confirm_product_match,
    find_product_by_alias,
    register_supplier_alias,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/products", tags=["products"])
inventory_router = APIRouter(prefix="/inventory", tags=["inventory"])


class AliasRequest(BaseModel):
    supplier_id: int
    name_in_invoice: str


class ResolveRequest(BaseModel):
    names: List[str]
    supplier_id: Optional[int] = None


class ConfirmMatchRequest(BaseModel):
    name_in_invoice: str
    supplier_id: Optional[int] = None


class ApplyCalculatedRequest(BaseModel):
    calculated_stock: Optional[int] = None


class AdjustmentRequest(BaseModel):
    adjustment: int
    reason: str
    user_id: Optional[str] = None


@router.post("/{product_id}/aliases")
def add_supplier_alias(product_id: int, request: AliasRequest, db: Session = Depends(get_db),
                       api_key: str = Depends(verify_api_key)):
    try:
        added = register_supplier_alias(db, product_id, request.supplier_id, request.name_in_invoice)
        return {'productId': product_id, 'added': added}
    except Exception as e:
        db.rollback()
        raise http_error(e, "Alias registration")


@router.get("/by-alias")
def get_product_by_alias(supplier_id: int = Query(...), name: str = Query(...), db: Session = Depends(get_db),
                         api_key: str = Depends(verify_api_key)):
    product = find_product_by_alias(db, supplier_id, name)
    if product is None:
        return {'found': False, 'product': None}
    return {'found': True, 'product': {'id': product.product_id, 'name': product.name, 'sku': product.sku}}


@router.post("/resolve")
def resolve_products(request: ResolveRequest, db: Session = Depends(get_db),
                     api_key: str = Depends(verify_api_key)):
    """Resolve invoice product names to catalog products, with suggestions for the rest."""
    try:
        resolver = ProductResolver(db)
        return [resolver.resolve(name, request.supplier_id).to_dict() for name in request.names]
    except Exception as e:
        raise http_error(e, "Product resolution")


@router.post("/{product_id}/confirm-match")
def confirm_match(product_id: int, request: ConfirmMatchRequest, db: Session = Depends(get_db),
                  api_key: str = Depends(verify_api_key)):
    try:
        return confirm_product_match(db, request.name_in_invoice, product_id, request.supplier_id)
    except Exception as e:
        db.rollback()
        raise http_error(e, "Confirm match")


@router.get("/{product_id}/inventory")
def audit_product_inventory(product_id: int, db: Session = Depends(get_db),
                            api_key: str = Depends(verify_api_key)):
    try:
        return calculate_inventory_from_history(db, product_id)
    except Exception as e:
        raise http_error(e, "Inventory audit")


@router.post("/{product_id}/inventory/apply-calculated")
def apply_calculated_inventory(product_id: int, request: Optional[ApplyCalculatedRequest] = None,
                               db: Session = Depends(get_db), api_key: str = Depends(verify_api_key)):
    """Overwrite the stock counter with the ledger total (or an explicit value)."""
    try:
        calculated = request.calculated_stock if request else None
        if calculated is None:
            calculated = calculate_inventory_from_history(db, product_id)['calculatedStock']
        return update_inventory_to_calculated(db, product_id, calculated)
    except Exception as e:
        db.rollback()
        raise http_error(e, "Apply calculated inventory")


@router.post("/{product_id}/inventory/adjustments")
def add_inventory_adjustment(product_id: int, request: AdjustmentRequest, db: Session = Depends(get_db),
                             api_key: str = Depends(verify_api_key)):
    try:
        change = create_manual_adjustment(db, product_id, request.adjustment, request.reason, request.user_id)
        return {
            'id': change.change_id,
            'productId': change.product_id,
            'quantityChange': change.quantity_change,
            'notes': change.notes,
        }
    except Exception as e:
        db.rollback()
        raise http_error(e, "Inventory adjustment")


@inventory_router.post("/reconcile")
def reconcile_inventory(supplier: Optional[str] = Query(None), db: Session = Depends(get_db),
                        api_key: str = Depends(verify_api_key)):
    try:
        return reconcile_all_inventory(db, supplier)
    except Exception as e:
        raise http_error(e, "Inventory reconciliation")
