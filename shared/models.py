"""SQLAlchemy models for suppliers, products, transactions and the inventory ledger."""
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, TIMESTAMP, JSON, ForeignKey,
    UniqueConstraint, Index, event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from shared.config import Base

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

DEFAULT_VARIANT = "Default"


class Supplier(Base):
    __tablename__ = "suppliers"

    supplier_id = Column(Integer, primary_key=True)
    name = Column(Text, nullable=False, unique=True)
    aliases = Column(JSONType, default=list)
    invoice_email = Column(Text)
    invoice_subject_pattern = Column(Text)
    sku_prefix = Column(String(16), unique=True)
    email_parsing = Column(JSONType, default=dict)
    ai_training = Column(JSONType, default=dict)
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())


class InvoiceEmail(Base):
    __tablename__ = "invoice_emails"

    invoice_email_id = Column(Integer, primary_key=True)
    email_id = Column(Text, nullable=False, unique=True)
    date = Column(TIMESTAMP)
    subject = Column(Text)
    sender = Column(Text)
    body = Column(Text)
    amount = Column(Float)
    invoice_number = Column(Text)
    status = Column(String(16), nullable=False, default="pending")  # pending | processed | ignored
    supplier_id = Column(Integer, ForeignKey("suppliers.supplier_id", ondelete="SET NULL"))
    transaction_id = Column(Integer, ForeignKey("transactions.transaction_id", ondelete="SET NULL"))
    parse_method = Column(String(16))
    parse_errors = Column(JSONType)
    processed_at = Column(TIMESTAMP)
    created_at = Column(TIMESTAMP, server_default=func.now())

    supplier = relationship("Supplier")


def compose_product_name(base_name: str, variant_name: Optional[str]) -> str:
    """Display name is the base name, suffixed with the variant unless it is the default one."""
    base = (base_name or "").strip()
    variant = (variant_name or "").strip()
    if not variant or variant == DEFAULT_VARIANT:
        return base
    return f"{base} - {variant}"


class Product(Base):
    __tablename__ = "products"

    product_id = Column(Integer, primary_key=True)
    name = Column(Text, nullable=False, index=True)
    base_name = Column(Text, nullable=False)
    variant_name = Column(Text, default=DEFAULT_VARIANT)
    sku = Column(Text, unique=True)
    category = Column(Text)
    supplier = Column(Text)
    price = Column(Float, default=0.0)
    stock = Column(Integer, nullable=False, default=0)
    minimum_stock = Column(Integer, default=0)
    average_cost = Column(Float, nullable=False, default=0.0)
    total_spent = Column(Float, nullable=False, default=0.0)
    total_purchased = Column(Integer, nullable=False, default=0)
    last_purchase_price = Column(Float)
    last_restock_date = Column(TIMESTAMP)
    supplier_aliases = Column(JSONType, default=list)  # [{supplierId, nameInInvoice}]
    cost_history = Column(JSONType, default=list)
    platform_metadata = Column(JSONType, default=list)
    active = Column(Boolean, default=True)
    version_id = Column(Integer, nullable=False)
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def refresh_name(self):
        self.name = compose_product_name(self.base_name, self.variant_name)

    def record_cost(self, cost: float, quantity: int, source: str = "wholesale",
                    reference: Optional[str] = None, date: Optional[datetime] = None) -> dict:
        """Append a cost history entry and recompute the running cost aggregates."""
        when = date or datetime.utcnow()
        entry = {
            "date": when.isoformat(),
            "cost": float(cost),
            "quantity": int(quantity),
            "source": source,
            "reference": reference,
        }
        # JSON columns only track reassignment
        self.cost_history = list(self.cost_history or []) + [entry]
        self.total_spent = round((self.total_spent or 0.0) + float(cost) * int(quantity), 2)
        self.total_purchased = (self.total_purchased or 0) + int(quantity)
        if self.total_purchased > 0:
            self.average_cost = round(self.total_spent / self.total_purchased, 4)
        self.last_purchase_price = float(cost)
        self.last_restock_date = when
        return entry

    def has_alias(self, supplier_id: int, name_in_invoice: str) -> bool:
        wanted = (name_in_invoice or "").strip().lower()
        for alias in self.supplier_aliases or []:
            if alias.get("supplierId") == supplier_id and (alias.get("nameInInvoice") or "").strip().lower() == wanted:
                return True
        return False


@event.listens_for(Product, "before_insert")
@event.listens_for(Product, "before_update")
def _derive_product_name(mapper, connection, target):
    target.refresh_name()


class SmartMapping(Base):
    __tablename__ = "smart_mappings"
    __table_args__ = (
        UniqueConstraint("mapping_type", "source", name="uq_smart_mapping_type_source"),
        Index("ix_smart_mapping_rank", "mapping_type", "score", "usage_count"),
    )

    mapping_id = Column(Integer, primary_key=True)
    mapping_type = Column(String(32), nullable=False)  # product_names | email_supplier | email_product
    source = Column(Text, nullable=False)
    target = Column(Text, nullable=False)
    target_id = Column(Text)
    confidence = Column(Float, nullable=False, default=80.0)
    usage_count = Column(Integer, nullable=False, default=1)
    score = Column(Float, nullable=False, default=80.0)
    last_used = Column(TIMESTAMP)
    meta = Column(JSONType, default=dict)
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())


class Transaction(Base):
    """Ledger entry. Concrete rows are one of the source-specific subclasses below."""
    __tablename__ = "transactions"

    transaction_id = Column(Integer, primary_key=True)
    source = Column(String(16), nullable=False)  # square | shopify | gmail | manual
    external_id = Column(Text, index=True)  # legacy ids such as shopify_<orderId>
    date = Column(TIMESTAMP, nullable=False)
    type = Column(String(16), nullable=False)  # sale | purchase | refund
    amount = Column(Float, nullable=False)
    products = Column(JSONType)
    line_items = Column(JSONType)
    pre_tax_amount = Column(Float)
    tax_amount = Column(Float)
    is_taxable = Column(Boolean)
    draft = Column(Boolean)
    customer = Column(Text)
    email = Column(Text)
    payment_method = Column(Text)
    tip = Column(Float)
    status = Column(String(16), default="completed")  # completed | cancelled | refunded
    platform_metadata = Column(JSONType)  # {platform, orderId, ...}
    shopify_order_id = Column(Text, index=True)
    payment_processing = Column(JSONType)  # {fee, provider, transactionId}
    supplier = Column(Text)
    merchant = Column(Text)
    notes = Column(Text)
    email_id = Column(Text, index=True)
    invoice_email_id = Column(Integer)
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"polymorphic_on": source}

    # Optional fields a surviving duplicate may borrow from the ones being discarded
    MERGEABLE_FIELDS = (
        "platform_metadata", "products", "pre_tax_amount", "is_taxable", "draft",
        "customer", "email", "payment_method", "tip",
    )


class SquareTransaction(Transaction):
    __mapper_args__ = {"polymorphic_identity": "square"}

    MERGEABLE_FIELDS = Transaction.MERGEABLE_FIELDS + ("line_items", "payment_processing", "tax_amount")


class ShopifyTransaction(Transaction):
    __mapper_args__ = {"polymorphic_identity": "shopify"}

    MERGEABLE_FIELDS = Transaction.MERGEABLE_FIELDS + (
        "line_items", "payment_processing", "tax_amount", "shopify_order_id",
    )


class GmailTransaction(Transaction):
    __mapper_args__ = {"polymorphic_identity": "gmail"}

    MERGEABLE_FIELDS = Transaction.MERGEABLE_FIELDS + ("supplier", "merchant", "notes", "invoice_email_id")


class ManualTransaction(Transaction):
    __mapper_args__ = {"polymorphic_identity": "manual"}

    MERGEABLE_FIELDS = Transaction.MERGEABLE_FIELDS + ("supplier", "notes")


TRANSACTION_CLASSES = {
    "square": SquareTransaction,
    "shopify": ShopifyTransaction,
    "gmail": GmailTransaction,
    "manual": ManualTransaction,
}


def build_transaction(source: str, **fields) -> Transaction:
    """Instantiate the transaction subclass for a source name."""
    try:
        cls = TRANSACTION_CLASSES[source]
    except KeyError:
        raise ValueError(f"Unknown transaction source: {source}")
    return cls(**fields)


class InventoryChange(Base):
    __tablename__ = "inventory_changes"
    __table_args__ = (
        UniqueConstraint("transaction_id", "product_id", name="uq_inventory_change_txn_product"),
    )

    change_id = Column(Integer, primary_key=True)
    transaction_id = Column(Integer, ForeignKey("transactions.transaction_id", ondelete="SET NULL"))
    product_id = Column(Integer, ForeignKey("products.product_id", ondelete="CASCADE"), nullable=False, index=True)
    product_name = Column(Text)
    quantity_change = Column(Integer, nullable=False)
    change_type = Column(String(16), nullable=False)  # sale | expense | adjustment
    source = Column(Text)
    notes = Column(Text)
    timestamp = Column(TIMESTAMP, server_default=func.now())


class SyncState(Base):
    __tablename__ = "sync_states"

    sync_id = Column(Integer, primary_key=True)
    source = Column(String(32), nullable=False, unique=True)
    last_successful_sync = Column(TIMESTAMP)
    last_sync_status = Column(String(16))
    last_sync_results = Column(JSONType)
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("platform", "order_id", "topic", name="uq_webhook_event"),
    )

    event_id = Column(Integer, primary_key=True)
    platform = Column(String(16), nullable=False)
    order_id = Column(Text, nullable=False)
    topic = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending | processing | completed | failed
    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt = Column(TIMESTAMP)
    error = Column(Text)
    payload = Column(JSONType)
    transaction_id = Column(Integer, ForeignKey("transactions.transaction_id", ondelete="SET NULL"))
    created_at = Column(TIMESTAMP, server_default=func.now())
