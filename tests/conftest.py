"""Pytest configuration and fixtures."""
import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("TESTING", "1")

from shared.config import Base, get_db
from shared.models import Supplier, Product, InvoiceEmail

# In-memory sqlite unless a real test database is given
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite://")


@pytest.fixture(scope="session")
def db_engine():
    """Create test database engine."""
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(TEST_DATABASE_URL)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db_session(db_engine):
    """Create test database session; every table is emptied afterwards."""
    Session = sessionmaker(bind=db_engine)
    session = Session()
    yield session
    session.rollback()
    for table in reversed(Base.metadata.sorted_tables):
        session.execute(table.delete())
    session.commit()
    session.close()


@pytest.fixture
def client(db_session):
    """Test client for the API with the test session injected."""
    from fastapi.testclient import TestClient
    from services.api.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def sample_parsing_config():
    """Parsing rules for the sample supplier's order confirmation emails."""
    return {
        "orderNumber": {"pattern": r"Order\s*#\s*(\d+)", "flags": "i"},
        "total": {"pattern": r"Total:\s*\$([\d,]+\.\d{2})", "flags": "", "transform": "parseFloat"},
        "subtotal": {"pattern": r"Subtotal:\s*\$([\d,]+\.\d{2})", "flags": "i", "transform": "parseFloat"},
        "shipping": {"pattern": r"Shipping:\s*\$([\d,]+\.\d{2})", "flags": "i", "transform": "parseFloat"},
        "tax": {"pattern": r"Tax:\s*\$([\d,]+\.\d{2})", "flags": "i", "transform": "parseFloat"},
        "contentBounds": {
            "startPattern": {"pattern": "Order Summary"},
            "endPattern": {"pattern": "Thank you"},
        },
        "products": {
            "containerSelector": "tr.item",
            "nameSelector": "td.name",
            "priceSelector": "td.price",
            "costDiscount": 0.5,
        },
    }


@pytest.fixture
def sample_invoice_html():
    """Order confirmation email body matching ``sample_parsing_config``."""
    return """<html><head><style>.total { color: red } Total: $999.99</style></head>
<body>
<p>Hi Daydreamers, see your order below.</p>
<h2>Order Summary</h2>
<p>Order #10045</p>
<table>
  <tr class="item"><td class="name">Salmon Treats x 4</td><td class="price">$40.00</td></tr>
  <tr class="item"><td class="name">Rope Tug Toy</td><td class="price">$12.50</td></tr>
  <tr class="item"><td class="name">Click here to view your order</td><td class="price"></td></tr>
</table>
<p>Subtotal: $52.50</p>
<p>Shipping: $7.00</p>
<p>Tax: $4.20</p>
<p>Total: $63.70</p>
<p>Thank you for your order!</p>
<p>Total: $1.00 (unrelated footer)</p>
</body></html>"""


@pytest.fixture
def sample_supplier(db_session, sample_parsing_config):
    """Create a sample supplier."""
    supplier = Supplier(
        name="Barkside Wholesale",
        aliases=["Barkside"],
        invoice_email="orders@barkside.example",
        invoice_subject_pattern="Order Confirmation",
        sku_prefix="BRK",
        email_parsing=sample_parsing_config,
        ai_training={},
    )
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture
def sample_product(db_session):
    """Create a sample product."""
    product = Product(
        base_name="Salmon Treats",
        variant_name="Default",
        sku="BRK-001",
        supplier="Barkside Wholesale",
        price=15.99,
        stock=10,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def sample_invoice_email(db_session, sample_supplier, sample_invoice_html):
    """Create a pending invoice email from the sample supplier."""
    email = InvoiceEmail(
        email_id="gmail-msg-1",
        subject="Order Confirmation #10045",
        sender="Barkside <orders@barkside.example>",
        body=sample_invoice_html,
        status="pending",
        supplier_id=sample_supplier.supplier_id,
    )
    db_session.add(email)
    db_session.commit()
    return email
