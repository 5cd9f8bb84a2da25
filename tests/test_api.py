"""Tests for the operations API."""
from datetime import datetime
from unittest.mock import patch

from shared.models import build_transaction

API_HEADERS = {"Authorization": "Bearer dev-api-key"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_requires_api_key(client):
    assert client.get("/suppliers/1").status_code in (401, 403)
    response = client.get("/suppliers/1", headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401


class TestSupplierRoutes:
    """Test supplier and parsing rule endpoints."""

    def test_create_supplier(self, client, sample_parsing_config):
        response = client.post("/suppliers", headers=API_HEADERS, json={
            "name": "Paws Direct",
            "invoice_email": "billing@pawsdirect.example",
            "invoice_subject_pattern": "Invoice",
            "email_parsing": sample_parsing_config,
        })

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Paws Direct"
        assert data["emailParsing"]["total"]["transform"] == "parseFloat"

    def test_duplicate_name(self, client, sample_supplier):
        response = client.post("/suppliers", headers=API_HEADERS, json={"name": "Barkside Wholesale"})
        assert response.status_code == 400

    def test_bad_rules_rejected(self, client):
        response = client.post("/suppliers", headers=API_HEADERS, json={
            "name": "Broken Rules Co",
            "email_parsing": {"total": {"pattern": "Total: ($[", "flags": "i"}},
        })

        assert response.status_code == 422
        assert "total" in response.json()["detail"]["errors"]

    def test_unknown_supplier(self, client):
        assert client.get("/suppliers/999", headers=API_HEADERS).status_code == 404

    def test_pattern_dry_run(self, client, sample_supplier, sample_invoice_html):
        response = client.post(f"/suppliers/{sample_supplier.supplier_id}/test-patterns",
                               headers=API_HEADERS, json={"body": sample_invoice_html})

        assert response.status_code == 200
        report = response.json()
        assert report["fields"]["total"]["value"] == 63.7
        assert len(report["products"]) == 2

    def test_training_sample(self, client, sample_supplier):
        response = client.post(f"/suppliers/{sample_supplier.supplier_id}/ai-training", headers=API_HEADERS,
                               json={"prompt": "email text", "result": {"orderTotal": "9.99"}})

        assert response.status_code == 200
        assert response.json() == {"supplierId": sample_supplier.supplier_id, "samples": 1}

    def test_ai_parse_invoice(self, client):
        parsed = {"orderNumber": "55", "orderTotal": "12.00", "products": []}
        with patch("services.api.suppliers.parse_invoice_email", return_value=parsed):
            response = client.post("/ai/parse-invoice", headers=API_HEADERS, json={"body": "invoice"})

        assert response.status_code == 200
        assert response.json()["parsed"]["fields"] == {"orderNumber": "55", "total": 12.0}

    def test_ai_parse_invoice_trims_body(self, client, sample_supplier, sample_invoice_html):
        parsed = {"orderTotal": "63.70", "products": []}
        with patch("services.api.suppliers.parse_invoice_email", return_value=parsed) as parse:
            response = client.post("/ai/parse-invoice", headers=API_HEADERS,
                                   json={"body": sample_invoice_html, "supplier_id": sample_supplier.supplier_id})

        assert response.status_code == 200
        text = parse.call_args.args[0]
        assert text.startswith("Order Summary")
        assert text.endswith("Thank you")
        assert "$999.99" not in text
        assert "Hi Daydreamers" not in text
        assert "unrelated footer" not in text
        assert parse.call_args.args[1] == []

    def test_ai_parse_invoice_drops_head_without_supplier(self, client, sample_invoice_html):
        with patch("services.api.suppliers.parse_invoice_email", return_value={}) as parse:
            client.post("/ai/parse-invoice", headers=API_HEADERS, json={"body": sample_invoice_html})

        text = parse.call_args.args[0]
        assert "$999.99" not in text
        assert "Hi Daydreamers" in text


class TestInvoiceEmailRoutes:
    """Test the invoice email queue."""

    def test_list_and_process(self, client, sample_invoice_email, sample_product):
        listed = client.get("/invoice-emails?status=pending", headers=API_HEADERS).json()
        assert [e["emailId"] for e in listed] == ["gmail-msg-1"]

        response = client.post(f"/invoice-emails/{sample_invoice_email.invoice_email_id}/process",
                               headers=API_HEADERS)

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert client.get("/invoice-emails?status=pending", headers=API_HEADERS).json() == []

    def test_invalid_status(self, client, sample_invoice_email):
        response = client.patch(f"/invoice-emails/{sample_invoice_email.invoice_email_id}/status",
                                headers=API_HEADERS, json={"status": "archived"})
        assert response.status_code == 400

    def test_ignore_email(self, client, sample_invoice_email):
        response = client.patch(f"/invoice-emails/{sample_invoice_email.invoice_email_id}/status",
                                headers=API_HEADERS, json={"status": "ignored"})
        assert response.json()["status"] == "ignored"


class TestProductRoutes:
    """Test alias, resolution and inventory endpoints."""

    def test_alias_round_trip(self, client, sample_supplier, sample_product):
        response = client.post(f"/products/{sample_product.product_id}/aliases", headers=API_HEADERS,
                               json={"supplier_id": sample_supplier.supplier_id, "name_in_invoice": "SLMN TRT"})
        assert response.json() == {"productId": sample_product.product_id, "added": True}

        found = client.get("/products/by-alias", headers=API_HEADERS,
                           params={"supplier_id": sample_supplier.supplier_id, "name": "slmn trt"}).json()
        assert found["found"] is True
        assert found["product"]["sku"] == "BRK-001"

    def test_alias_unknown_product(self, client, sample_supplier):
        response = client.post("/products/999/aliases", headers=API_HEADERS,
                               json={"supplier_id": sample_supplier.supplier_id, "name_in_invoice": "x"})
        assert response.status_code == 404

    def test_resolve(self, client, sample_product):
        response = client.post("/products/resolve", headers=API_HEADERS,
                               json={"names": ["Salmon Treats", "Catnip Mouse"]})

        results = response.json()
        assert results[0]["productId"] == sample_product.product_id
        assert results[1]["productId"] is None

    def test_inventory_audit_and_apply(self, client, sample_product):
        audit = client.get(f"/products/{sample_product.product_id}/inventory", headers=API_HEADERS).json()
        assert audit["difference"] == -10

        response = client.post(f"/products/{sample_product.product_id}/inventory/apply-calculated",
                               headers=API_HEADERS)
        assert response.json()["newStock"] == 0

    def test_adjustment(self, client, sample_product):
        response = client.post(f"/products/{sample_product.product_id}/inventory/adjustments", headers=API_HEADERS,
                               json={"adjustment": 3, "reason": "Recount", "user_id": "ops"})

        assert response.status_code == 200
        assert response.json()["notes"] == "Recount (by user ops)"

        response = client.post(f"/products/{sample_product.product_id}/inventory/adjustments", headers=API_HEADERS,
                               json={"adjustment": 0, "reason": "Recount"})
        assert response.status_code == 400

    def test_reconcile(self, client, sample_product):
        response = client.post("/inventory/reconcile", headers=API_HEADERS)
        assert response.json()["processed"] == 1


class TestSmartMappingRoutes:
    """Test smart mapping endpoints."""

    def test_record_and_suggest(self, client):
        body = {"mapping_type": "product_names", "source": "Salmon Bites", "target": "Salmon Treats", "target_id": "1"}
        created = client.post("/smart-mappings", headers=API_HEADERS, json=body).json()
        assert created["source"] == "salmon bites"

        suggestions = client.get("/smart-mappings/suggest", headers=API_HEADERS,
                                 params={"source": "salmon chews"}).json()
        assert [s["target"] for s in suggestions] == ["Salmon Treats"]

        response = client.delete(f"/smart-mappings/{created['id']}", headers=API_HEADERS)
        assert response.json() == {"deleted": created["id"]}
        assert client.get("/smart-mappings", headers=API_HEADERS).json() == []

    def test_unknown_type(self, client):
        body = {"mapping_type": "colors", "source": "red", "target": "Red"}
        assert client.post("/smart-mappings", headers=API_HEADERS, json=body).status_code == 400

    def test_delete_missing(self, client):
        assert client.delete("/smart-mappings/999", headers=API_HEADERS).status_code == 404


class TestTransactionRoutes:
    """Test merge, inventory and webhook endpoints."""

    def test_merge_unknown_order(self, client):
        response = client.post("/transactions/merge-duplicates", headers=API_HEADERS,
                               json={"order_id": "none", "platform": "shopify"})
        assert response.status_code == 404

    def test_webhook_then_merge(self, client, db_session):
        payload = {"orderId": "8001", "amount": 30.0, "customer": "Dee"}
        response = client.post("/webhooks/shopify", headers=API_HEADERS, json=payload)
        assert response.json()["status"] == "processed"

        response = client.post("/transactions/merge-duplicates", headers=API_HEADERS,
                               json={"order_id": "8001", "platform": "shopify"})
        assert response.status_code == 200
        assert response.json()["customer"] == "Dee"

    def test_webhook_invalid(self, client):
        response = client.post("/webhooks/etsy", headers=API_HEADERS, json={"orderId": "1", "amount": 1.0})
        assert response.status_code == 400

    def test_check_existing(self, client, db_session):
        txn = build_transaction("manual", date=datetime(2026, 5, 2, 10), type="purchase",
                                amount=19.5)
        db_session.add(txn)
        db_session.commit()

        response = client.post("/transactions/check-existing", headers=API_HEADERS,
                               json={"date": "2026-05-02", "amount": 19.5})
        data = response.json()
        assert data["exists"] is True
        assert data["matches"][0]["id"] == txn.transaction_id

    def test_apply_inventory(self, client, db_session, sample_product):
        txn = build_transaction("square", date=datetime(2026, 5, 2), type="sale", amount=16.0,
                                products=[{"productId": sample_product.product_id, "quantity": 1}])
        db_session.add(txn)
        db_session.commit()

        response = client.post(f"/transactions/{txn.transaction_id}/inventory", headers=API_HEADERS)

        assert response.json()["results"][0]["newStock"] == 9
        assert client.post("/transactions/999/inventory", headers=API_HEADERS).status_code == 404


def test_check_emails(client):
    result = {"emails_processed": 2, "supplier": {}, "amex": {}}
    with patch("services.api.check_emails.check_emails_internal", return_value=result) as check:
        response = client.post("/check-emails", headers=API_HEADERS, json={"since_days": 3})

    assert response.status_code == 200
    assert response.json()["emails_processed"] == 2
    check.assert_called_once_with(since_days=3)


def test_scheduler_status(client):
    response = client.get("/scheduler/status", headers=API_HEADERS)

    assert response.status_code == 200
    assert response.json()["status"] == "stopped"


def test_scheduled_check_records_result():
    from services.api import scheduler

    result = {
        "emails_processed": 3,
        "supplier": {"processed": 2, "errors": 0},
        "amex": {"processed": 1, "errors": 1},
    }
    with patch("services.ingestion.main.check_emails_internal", return_value=result):
        scheduler.check_emails_job()

    status = scheduler.get_scheduler_status()
    assert status["last_result"] == {"supplierEmails": 2, "amexTransactions": 1, "errors": 1}
    assert status["last_run"] is not None
    assert status["is_running"] is False
