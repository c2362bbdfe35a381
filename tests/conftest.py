import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")

import json
import base64
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from pos_payments.main import app as fastapi_app
from pos_payments.database import Base
from pos_payments.esewa import EsewaGateway, build_message
from pos_payments.models import Customer, Order, Payment, Table, TableSession, TableStatus
import pos_payments.auth
import pos_payments.routes

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

STORE_ID = "store-1"
TEST_SECRET = "unit-test-secret"


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return EsewaGateway(TEST_SECRET)


@pytest.fixture
def client(monkeypatch, gateway):
    # Every request opens its session from the test database
    monkeypatch.setattr("pos_payments.database.SessionLocal", TestingSessionLocal)
    fastapi_app.dependency_overrides[pos_payments.auth.current_store_id] = lambda: STORE_ID
    fastapi_app.dependency_overrides[pos_payments.routes.get_gateway] = lambda: gateway
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def seed(db):
    """Open an occupied table with a session, a couple of orders and optionally a payment."""

    def _seed(amount="450", status="PENDING", txn="TXN-001", with_session=True, method="ESEWA"):
        table = Table(id="table-1", store_id=STORE_ID, name="T1", status=TableStatus.OCCUPIED)
        session = TableSession(
            id="session-1", store_id=STORE_ID, table_id=table.id, is_active=True,
            total=Decimal("400"), tax=Decimal("52"), service_charge=Decimal("20"),
            discount=Decimal("22"),
        )
        db.add_all([table, session])
        db.add(Order(id="order-1", store_id=STORE_ID, table_id=table.id,
                     session_id=session.id, status="SERVED", total=Decimal("250")))
        db.add(Order(id="order-2", store_id=STORE_ID, table_id=table.id,
                     session_id=session.id, status="PREPARING", total=Decimal("150")))
        payment = None
        if status is not None:
            payment = Payment(
                id="pay-1", store_id=STORE_ID,
                session_id=session.id if with_session else None,
                method=method, amount=Decimal(amount), status=status,
                transaction_uuid=txn,
            )
            db.add(payment)
        db.commit()
        return table, session, payment

    return _seed


@pytest.fixture
def customer(db):
    c = Customer(id="cust-1", store_id=STORE_ID, name="Sita", phone="9800000000")
    db.add(c)
    db.commit()
    return c


@pytest.fixture
def encode_callback(gateway):
    """Package a callback the way eSewa does: signed fields, then base64 JSON."""

    def _encode(signed_field_names="total_amount,transaction_uuid,product_code",
                signature=None, **fields):
        payload = {
            "transaction_code": "000AWEO",
            "status": "COMPLETE",
            "total_amount": "450",
            "transaction_uuid": "TXN-001",
            "product_code": "EPAYTEST",
            **fields,
            "signed_field_names": signed_field_names,
        }
        if signature is None:
            signature = gateway.sign(build_message(signed_field_names.split(","), payload))
        payload["signature"] = signature
        return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")

    return _encode
