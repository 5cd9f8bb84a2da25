"""Integration tests for the invoice email pipeline."""
from unittest.mock import Mock

import pytest

from shared import NotFoundError
from shared.models import GmailTransaction, InventoryChange, InvoiceEmail, Transaction
from services.extractor.providers import ProviderError, ProviderErrorKind
from services.extractor.worker import process_extraction_job, process_invoice_email
from services.ledger.purchases import create_purchase_from_invoice

BARE_EMAIL = """<html><body>
<h2>Order Summary</h2>
<p>Your order from Barkside is on its way.</p>
<p>Thank you for your order!</p>
</body></html>"""


def ai_parser(result=None, error=None):
    parser = Mock()
    if error is not None:
        parser.parse.side_effect = error
    else:
        parser.parse.return_value = result
    return parser


@pytest.fixture
def bare_invoice_email(db_session, sample_supplier):
    email = InvoiceEmail(
        email_id="gmail-msg-2",
        subject="Order Confirmation #10046",
        sender="orders@barkside.example",
        body=BARE_EMAIL,
        status="pending",
    )
    db_session.add(email)
    db_session.commit()
    return email


class TestPatternPipeline:
    """Test emails fully handled by the supplier's patterns."""

    def test_creates_purchase(self, db_session, sample_invoice_email, sample_product):
        parser = ai_parser({})

        summary = process_invoice_email(db_session, sample_invoice_email.invoice_email_id, parser=parser)

        assert summary["status"] == "processed"
        assert summary["method"] == "pattern"
        parser.parse.assert_not_called()

        txn = db_session.get(Transaction, summary["transaction_id"])
        assert isinstance(txn, GmailTransaction)
        assert txn.type == "purchase"
        assert txn.amount == 63.7
        assert txn.supplier == "Barkside Wholesale"
        assert txn.notes == "Order #10045"
        assert txn.email_id == "gmail-msg-1"

        assert sample_invoice_email.status == "processed"
        assert sample_invoice_email.transaction_id == txn.transaction_id
        assert sample_invoice_email.invoice_number == "10045"
        assert sample_invoice_email.parse_method == "pattern"

    def test_resolved_lines_move_stock_and_cost(self, db_session, sample_invoice_email, sample_product):
        summary = process_invoice_email(db_session, sample_invoice_email.invoice_email_id, parser=ai_parser({}))

        assert sample_product.stock == 14
        assert sample_product.last_purchase_price == 5.0
        assert sample_product.cost_history[-1]["reference"] == "10045"
        change = db_session.query(InventoryChange).one()
        assert change.product_id == sample_product.product_id
        assert change.quantity_change == 4

        lines = db_session.get(Transaction, summary["transaction_id"]).products
        assert lines[0]["productId"] == sample_product.product_id
        assert lines[0]["totalPrice"] == 20.0
        assert lines[1] == {"name": "Rope Tug Toy", "quantity": 1, "productId": None}
        assert [u["name"] for u in summary["unresolved"]] == ["Rope Tug Toy"]

    def test_already_recorded_is_skipped(self, db_session, sample_invoice_email):
        existing = GmailTransaction(date=sample_invoice_email.created_at, type="purchase", amount=63.7,
                                    email_id="gmail-msg-1")
        db_session.add(existing)
        db_session.commit()

        summary = process_invoice_email(db_session, sample_invoice_email.invoice_email_id, parser=ai_parser({}))

        assert summary["status"] == "skipped"
        assert summary["transaction_id"] == existing.transaction_id
        assert sample_invoice_email.status == "processed"
        assert db_session.query(Transaction).count() == 1

    def test_processed_email_is_skipped(self, db_session, sample_invoice_email):
        sample_invoice_email.status = "ignored"
        db_session.commit()

        summary = process_invoice_email(db_session, sample_invoice_email.invoice_email_id)
        assert summary == {"status": "skipped", "invoice_email_id": sample_invoice_email.invoice_email_id,
                           "reason": "ignored"}

    def test_unknown_email(self, db_session):
        with pytest.raises(NotFoundError):
            process_invoice_email(db_session, 12345)

    def test_two_lines_for_one_product(self, db_session, sample_invoice_email, sample_product):
        db_session.autoflush = False
        lines = [
            {"name": "Salmon Treats", "quantity": 4, "invoiceLineTotal": 20.0, "productId": sample_product.product_id},
            {"name": "Salmon Treats Bulk", "quantity": 2, "invoiceLineTotal": 10.0,
             "productId": sample_product.product_id},
        ]

        txn = create_purchase_from_invoice(db_session, sample_invoice_email, sample_invoice_email.supplier,
                                           {"total": 30.0, "orderNumber": "10045"}, lines)
        db_session.commit()

        assert sample_product.stock == 16
        assert sample_product.total_purchased == 6
        changes = db_session.query(InventoryChange).filter(InventoryChange.transaction_id == txn.transaction_id)
        assert [c.quantity_change for c in changes] == [6]


class TestAIFallback:
    """Test emails the patterns cannot fully read."""

    def test_ai_fills_missing_fields(self, db_session, bare_invoice_email, sample_product):
        parser = ai_parser({
            "orderNumber": "10046",
            "orderTotal": "$30.00",
            "subtotal": "25.00",
            "products": [{"name": "Salmon Treats", "quantity": 2, "lineTotal": "25.00"}],
        })

        summary = process_invoice_email(db_session, bare_invoice_email.invoice_email_id, parser=parser)

        assert summary["status"] == "processed"
        assert summary["method"] == "ai"
        assert bare_invoice_email.supplier_id is not None
        assert db_session.get(Transaction, summary["transaction_id"]).amount == 30.0
        assert sample_product.stock == 12

        text = parser.parse.call_args.args[0]
        assert "Order Summary" in text
        assert parser.parse.call_args.args[1] == []

    def test_nothing_found_leaves_email_pending(self, db_session, bare_invoice_email):
        summary = process_invoice_email(db_session, bare_invoice_email.invoice_email_id, parser=ai_parser({}))

        assert summary["status"] == "incomplete"
        assert bare_invoice_email.status == "pending"
        assert db_session.query(Transaction).count() == 0

    def test_ai_error_is_recorded(self, db_session, bare_invoice_email):
        error = ProviderError(ProviderErrorKind.QUOTA, "quota exhausted", provider="openai")

        summary = process_invoice_email(db_session, bare_invoice_email.invoice_email_id,
                                        parser=ai_parser(error=error))

        assert summary["status"] == "incomplete"
        assert bare_invoice_email.parse_errors["ai"] == "quota exhausted"

    def test_force_ai_keeps_pattern_values(self, db_session, sample_invoice_email):
        parser = ai_parser({"orderNumber": "WRONG", "orderTotal": "1.00", "products": []})

        summary = process_invoice_email(db_session, sample_invoice_email.invoice_email_id,
                                        parser=parser, force_ai=True)

        assert summary["method"] == "pattern+ai"
        assert summary["fields"]["orderNumber"] == "10045"
        assert summary["fields"]["total"] == 63.7


class TestExtractionJob:
    """Test the queue job wrapper."""

    def test_job_success(self, db_session, sample_invoice_email):
        job = {"invoice_email_id": sample_invoice_email.invoice_email_id}
        assert process_extraction_job(job, db_session, parser=ai_parser({})) is True

    def test_job_failure_is_contained(self, db_session):
        assert process_extraction_job({"invoice_email_id": 999}, db_session, parser=ai_parser({})) is False
