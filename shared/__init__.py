"""Shared utilities and configuration."""
from shared.config import settings, get_db, redis_client, SessionLocal
from shared.errors import NotFoundError
from shared.models import (
    Supplier, InvoiceEmail, Product, SmartMapping, Transaction, SquareTransaction,
    ShopifyTransaction, GmailTransaction, ManualTransaction, InventoryChange,
    SyncState, WebhookEvent, build_transaction, compose_product_name,
)

__all__ = [
    "settings",
    "get_db",
    "SessionLocal",
    "redis_client",
    "NotFoundError",
    "Supplier",
    "InvoiceEmail",
    "Product",
    "SmartMapping",
    "Transaction",
    "SquareTransaction",
    "ShopifyTransaction",
    "GmailTransaction",
    "ManualTransaction",
    "InventoryChange",
    "SyncState",
    "WebhookEvent",
    "build_transaction",
    "compose_product_name",
]
