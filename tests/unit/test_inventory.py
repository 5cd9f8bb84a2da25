"""Unit tests for the inventory ledger."""
from datetime import datetime

import pytest

from shared import NotFoundError
from shared.models import InventoryChange, build_transaction
from services.ledger.inventory import (
    apply_transaction_inventory,
    calculate_inventory_from_history,
    create_manual_adjustment,
    reconcile_all_inventory,
    update_inventory_to_calculated,
)


def add_order(db, type, product, quantity, source="square"):
    txn = build_transaction(
        source,
        date=datetime(2026, 4, 1, 12, 0),
        type=type,
        amount=10.0 * quantity,
        products=[{"productId": product.product_id, "name": product.name, "quantity": quantity}],
    )
    db.add(txn)
    db.commit()
    return txn


class TestApplyTransactionInventory:
    """Test stock movements from transactions."""

    def test_sale_decrements_stock(self, db_session, sample_product):
        txn = add_order(db_session, "sale", sample_product, 3)

        results = apply_transaction_inventory(db_session, txn)
        db_session.commit()

        assert results[0]["oldStock"] == 10
        assert results[0]["newStock"] == 7
        assert sample_product.stock == 7
        change = db_session.query(InventoryChange).one()
        assert change.quantity_change == -3
        assert change.change_type == "sale"

    def test_purchase_increments_stock(self, db_session, sample_product):
        txn = add_order(db_session, "purchase", sample_product, 5, source="gmail")

        apply_transaction_inventory(db_session, txn)
        db_session.commit()

        assert sample_product.stock == 15
        assert db_session.query(InventoryChange).one().change_type == "expense"

    def test_stock_never_negative(self, db_session, sample_product):
        txn = add_order(db_session, "sale", sample_product, 25)

        apply_transaction_inventory(db_session, txn)
        db_session.commit()

        assert sample_product.stock == 0

    def test_reapplying_is_harmless(self, db_session, sample_product):
        txn = add_order(db_session, "sale", sample_product, 2)

        apply_transaction_inventory(db_session, txn)
        results = apply_transaction_inventory(db_session, txn)
        db_session.commit()

        assert results[0]["changeRecorded"] is False
        assert sample_product.stock == 8
        assert db_session.query(InventoryChange).count() == 1

    def test_lines_for_same_product_are_combined(self, db_session, sample_product):
        db_session.autoflush = False
        txn = build_transaction("gmail", date=datetime(2026, 4, 1), type="purchase", amount=60.0, products=[
            {"productId": sample_product.product_id, "name": "Salmon Treats", "quantity": 4},
            {"productId": sample_product.product_id, "name": "SLMN TREATS 4OZ", "quantity": 2},
        ])
        db_session.add(txn)
        db_session.commit()

        results = apply_transaction_inventory(db_session, txn)
        db_session.commit()

        assert len(results) == 1
        assert results[0]["quantityChange"] == 6
        assert sample_product.stock == 16
        assert [c.quantity_change for c in db_session.query(InventoryChange).all()] == [6]

    def test_lines_without_product_are_skipped(self, db_session, sample_product):
        txn = build_transaction("square", date=datetime(2026, 4, 1), type="sale", amount=5.0,
                                products=[{"name": "Custom engraving", "quantity": 1}])
        db_session.add(txn)
        db_session.commit()

        assert apply_transaction_inventory(db_session, txn) == []

    def test_refunds_do_not_move_stock(self, db_session, sample_product):
        txn = add_order(db_session, "refund", sample_product, 1)
        assert apply_transaction_inventory(db_session, txn) == []


class TestInventoryAudit:
    """Test audits of the counter against the ledger."""

    def test_calculate_from_history(self, db_session, sample_product):
        apply_transaction_inventory(db_session, add_order(db_session, "purchase", sample_product, 12, source="gmail"))
        apply_transaction_inventory(db_session, add_order(db_session, "sale", sample_product, 4))
        db_session.commit()

        audit = calculate_inventory_from_history(db_session, sample_product.product_id)

        assert audit["totalPurchases"] == 12
        assert audit["totalSales"] == 4
        assert audit["calculatedStock"] == 8
        assert audit["currentStock"] == 18
        assert audit["difference"] == -10

    def test_audit_does_not_write(self, db_session, sample_product):
        calculate_inventory_from_history(db_session, sample_product.product_id)
        db_session.commit()
        assert sample_product.stock == 10

    def test_reconcile_all(self, db_session, sample_product):
        summary = reconcile_all_inventory(db_session)

        assert summary["processed"] == 1
        assert summary["discrepancies"] == 1
        assert summary["results"][0]["difference"] == -10

    def test_reconcile_by_supplier(self, db_session, sample_product):
        assert reconcile_all_inventory(db_session, supplier="Someone Else")["processed"] == 0

    def test_update_to_calculated_clamps(self, db_session, sample_product):
        result = update_inventory_to_calculated(db_session, sample_product.product_id, -4)

        assert result == {"productId": sample_product.product_id, "oldStock": 10, "newStock": 0}
        assert sample_product.stock == 0

    def test_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            calculate_inventory_from_history(db_session, 4242)


class TestManualAdjustment:
    """Test operator adjustments."""

    def test_adjustment_is_ledger_only(self, db_session, sample_product):
        change = create_manual_adjustment(db_session, sample_product.product_id, -2, "Damaged in storage", "u-17")

        assert change.change_type == "adjustment"
        assert change.source == "manual-adjustment"
        assert change.notes == "Damaged in storage (by user u-17)"
        assert change.transaction_id is None
        assert sample_product.stock == 10
        assert calculate_inventory_from_history(db_session, sample_product.product_id)["totalSales"] == 2

    def test_zero_adjustment_rejected(self, db_session, sample_product):
        with pytest.raises(ValueError):
            create_manual_adjustment(db_session, sample_product.product_id, 0, "nothing")
