"""Unit tests for product and supplier resolution."""
from unittest.mock import Mock

import pytest
from sqlalchemy.orm.exc import StaleDataError

from shared import NotFoundError
from shared.models import Product, Supplier
from services.reconciler.smart_mapping import SmartMappingService
from services.reconciler.worker import (
    ProductResolver,
    confirm_product_match,
    find_product_by_alias,
    match_supplier_for_email,
    register_supplier_alias,
)


@pytest.fixture
def rope_toy(db_session):
    product = Product(base_name="Rope Tug Toy", variant_name="Default", sku="BRK-002", stock=5)
    db_session.add(product)
    db_session.commit()
    return product


class TestProductResolver:
    """Test invoice name resolution order."""

    def test_exact_name(self, db_session, sample_product):
        resolution = ProductResolver(db_session).resolve("salmon treats")

        assert resolution.resolved
        assert resolution.product_id == sample_product.product_id
        assert resolution.method == "exact"

    def test_fuzzy_auto_match(self, db_session, sample_product):
        resolution = ProductResolver(db_session).resolve("Salmon Treat")

        assert resolution.product_id == sample_product.product_id
        assert resolution.method == "fuzzy"
        assert resolution.score >= 90

    def test_fuzzy_suggestions_only(self, db_session, sample_product, rope_toy):
        """Between the suggestion and auto-match scores the name stays unresolved."""
        resolution = ProductResolver(db_session).resolve("Rope Tug Toy Blue")

        assert not resolution.resolved
        assert 60 <= resolution.score < 90
        assert resolution.suggestions[0]["productId"] == rope_toy.product_id

    def test_no_match(self, db_session, sample_product):
        resolution = ProductResolver(db_session).resolve("Catnip Mouse")

        assert not resolution.resolved
        assert resolution.suggestions == []

    def test_supplier_alias_wins(self, db_session, sample_supplier, sample_product, rope_toy):
        rope_toy.supplier_aliases = [{"supplierId": sample_supplier.supplier_id, "nameInInvoice": "SLMN TRT 4OZ"}]
        db_session.commit()

        resolution = ProductResolver(db_session).resolve("slmn trt 4oz", sample_supplier.supplier_id)
        assert resolution.product_id == rope_toy.product_id
        assert resolution.method == "alias"

        # aliases are scoped to their supplier
        assert ProductResolver(db_session).resolve("slmn trt 4oz", None).method != "alias"

    def test_auto_confirmed_mapping(self, db_session, sample_product):
        mappings = SmartMappingService(db_session)
        for _ in range(3):
            mappings.record_email_product_mapping("BS SALMON 4OZ PK", sample_product.name, sample_product.product_id)
        db_session.commit()

        resolution = ProductResolver(db_session).resolve("BS Salmon 4oz pk")
        assert resolution.product_id == sample_product.product_id
        assert resolution.method == "mapping"

    def test_unconfirmed_mapping_is_ignored(self, db_session, sample_product, rope_toy):
        SmartMappingService(db_session).record_email_product_mapping("mystery item", rope_toy.name, rope_toy.product_id)
        db_session.commit()

        assert not ProductResolver(db_session).resolve("mystery item").resolved


class TestSupplierAliases:
    """Test alias registration and lookup."""

    def test_register_and_find(self, db_session, sample_supplier, sample_product):
        assert register_supplier_alias(db_session, sample_product.product_id, sample_supplier.supplier_id,
                                       "Salmon Trts 4oz") is True
        assert register_supplier_alias(db_session, sample_product.product_id, sample_supplier.supplier_id,
                                       "salmon trts 4OZ") is False

        found = find_product_by_alias(db_session, sample_supplier.supplier_id, "SALMON TRTS 4OZ")
        assert found.product_id == sample_product.product_id
        assert len(found.supplier_aliases) == 1
        assert find_product_by_alias(db_session, sample_supplier.supplier_id + 1, "Salmon Trts 4oz") is None

    def test_register_bumps_version(self, db_session, sample_supplier, sample_product):
        version = sample_product.version_id
        register_supplier_alias(db_session, sample_product.product_id, sample_supplier.supplier_id, "Salmon 4oz")
        assert sample_product.version_id == version + 1

    def test_missing_product_or_supplier(self, db_session, sample_supplier, sample_product):
        with pytest.raises(NotFoundError):
            register_supplier_alias(db_session, 9999, sample_supplier.supplier_id, "x")
        with pytest.raises(NotFoundError):
            register_supplier_alias(db_session, sample_product.product_id, 9999, "x")

    def test_empty_alias_rejected(self, db_session, sample_supplier, sample_product):
        with pytest.raises(ValueError):
            register_supplier_alias(db_session, sample_product.product_id, sample_supplier.supplier_id, "  ")

    def test_concurrent_write_is_retried(self, db_session, sample_supplier, sample_product, monkeypatch):
        commit = Mock(side_effect=[StaleDataError("row changed"), None])
        monkeypatch.setattr(db_session, "commit", commit)

        added = register_supplier_alias(db_session, sample_product.product_id, sample_supplier.supplier_id, "Salmon 4oz")

        assert added is True
        assert commit.call_count == 2

    def test_retry_gives_up(self, db_session, sample_supplier, sample_product, monkeypatch):
        monkeypatch.setattr(db_session, "commit", Mock(side_effect=StaleDataError("row changed")))

        with pytest.raises(StaleDataError):
            register_supplier_alias(db_session, sample_product.product_id, sample_supplier.supplier_id, "Salmon 4oz")

    def test_confirm_product_match(self, db_session, sample_supplier, sample_product):
        result = confirm_product_match(db_session, "SLMN TREATS", sample_product.product_id, sample_supplier.supplier_id)

        assert result["aliasAdded"] is True
        assert result["mappingUsageCount"] == 1
        assert sample_product.has_alias(sample_supplier.supplier_id, "slmn treats")

        result = confirm_product_match(db_session, "SLMN TREATS", sample_product.product_id, sample_supplier.supplier_id)
        assert result["aliasAdded"] is False
        assert result["mappingUsageCount"] == 2


class TestSupplierForEmail:
    """Test supplier detection for incoming emails."""

    def test_sender_and_subject(self, db_session, sample_supplier):
        supplier = match_supplier_for_email(db_session, "Barkside <Orders@Barkside.example>", "Order Confirmation #77")
        assert supplier.supplier_id == sample_supplier.supplier_id

    def test_subject_mismatch(self, db_session, sample_supplier):
        assert match_supplier_for_email(db_session, "orders@barkside.example", "Spring newsletter") is None

    def test_learned_sender_mapping(self, db_session, sample_supplier):
        SmartMappingService(db_session).record_email_supplier_mapping("deals@barkside-outlet.example", sample_supplier.name)
        db_session.commit()

        supplier = match_supplier_for_email(db_session, "Outlet <deals@barkside-outlet.example>", "Your receipt")
        assert supplier.supplier_id == sample_supplier.supplier_id

    def test_unknown_sender(self, db_session, sample_supplier):
        assert match_supplier_for_email(db_session, "someone@else.example", "Order Confirmation") is None

    def test_blank_invoice_email_matches_nobody(self, db_session, sample_supplier):
        db_session.add(Supplier(name="No Address Pets", invoice_email="  ", invoice_subject_pattern="Order"))
        db_session.commit()

        assert match_supplier_for_email(db_session, "someone@else.example", "Order Confirmation") is None
        supplier = match_supplier_for_email(db_session, "orders@barkside.example", "Order Confirmation #9")
        assert supplier.supplier_id == sample_supplier.supplier_id


class TestProductNames:
    """Test derived product names."""

    def test_variant_suffix(self, db_session):
        product = Product(base_name="Harness", variant_name="Large")
        db_session.add(product)
        db_session.commit()
        assert product.name == "Harness - Large"

        product.variant_name = "Default"
        db_session.commit()
        assert product.name == "Harness"
