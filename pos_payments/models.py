import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Numeric, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from pos_payments.database import Base


def _uuid():
    return str(uuid.uuid4())


def _now():
    return datetime.now(timezone.utc)


class PaymentStatus:
    PENDING = "PENDING"
    PAID = "PAID"
    CREDIT = "CREDIT"

    TERMINAL = (PAID, CREDIT)


class PaymentMethod:
    ESEWA = "ESEWA"
    CASH = "CASH"
    QR = "QR"
    CARD = "CARD"
    CREDIT = "CREDIT"
    BANK_TRANSFER = "BANK_TRANSFER"

    INSTANT = (CASH, QR, CARD, CREDIT, BANK_TRANSFER)


class TableStatus:
    ACTIVE = "ACTIVE"          # free for new guests
    OCCUPIED = "OCCUPIED"


class OrderStatus:
    PENDING = "PENDING"
    PREPARING = "PREPARING"
    READYTOPICK = "READYTOPICK"
    SERVED = "SERVED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    OPEN = (PENDING, PREPARING, READYTOPICK, SERVED)


class LedgerType:
    SALE = "SALE"
    PAYMENT_IN = "PAYMENT_IN"


class Table(Base):
    __tablename__ = "tables"

    id = Column(String, primary_key=True, default=_uuid)
    store_id = Column(String, index=True, nullable=False)
    name = Column(String)
    status = Column(String, default=TableStatus.ACTIVE, nullable=False)


class TableSession(Base):
    __tablename__ = "table_sessions"

    id = Column(String, primary_key=True, default=_uuid)
    store_id = Column(String, index=True)
    table_id = Column(String, ForeignKey("tables.id"), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    started_at = Column(DateTime(timezone=True), default=_now)
    ended_at = Column(DateTime(timezone=True))

    total = Column(Numeric(12, 2), default=0)           # subtotal before tax/charges
    tax = Column(Numeric(12, 2), default=0)
    service_charge = Column(Numeric(12, 2), default=0)
    discount = Column(Numeric(12, 2), default=0)
    grand_total = Column(Numeric(12, 2))

    table = relationship("Table")
    orders = relationship("Order", back_populates="session")
    payment = relationship("Payment", back_populates="session", uselist=False)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=_uuid)
    store_id = Column(String, index=True)
    table_id = Column(String, ForeignKey("tables.id"))
    session_id = Column(String, ForeignKey("table_sessions.id"), index=True)
    status = Column(String, default=OrderStatus.PENDING, nullable=False)
    total = Column(Numeric(12, 2), default=0)
    customer_id = Column(String, ForeignKey("customers.id"))
    payment_id = Column(String, ForeignKey("payments.id"))

    session = relationship("TableSession", back_populates="orders")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=_uuid)
    store_id = Column(String, index=True)
    session_id = Column(String, ForeignKey("table_sessions.id"), unique=True, index=True)
    method = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String, default=PaymentStatus.PENDING, nullable=False)  # PENDING | PAID | CREDIT
    transaction_uuid = Column(String, unique=True)
    created_at = Column(DateTime(timezone=True), default=_now)
    paid_at = Column(DateTime(timezone=True))

    session = relationship("TableSession", back_populates="payment")


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String, primary_key=True, default=_uuid)
    store_id = Column(String, index=True)
    name = Column(String)
    phone = Column(String)
    loyalty_points = Column(Integer, default=0, nullable=False)


class CustomerLedger(Base):
    __tablename__ = "customer_ledgers"

    id = Column(String, primary_key=True, default=_uuid)
    customer_id = Column(String, ForeignKey("customers.id"), index=True, nullable=False)
    txn_no = Column(String, nullable=False)
    type = Column(String, nullable=False)              # SALE | PAYMENT_IN
    amount = Column(Numeric(12, 2), nullable=False)
    closing_balance = Column(Numeric(12, 2), nullable=False)
    reference_id = Column(String)
    remarks = Column(String)
    created_at = Column(DateTime(timezone=True), default=_now)
