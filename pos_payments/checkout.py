import time
import uuid
import logging

from pos_payments.models import Payment, PaymentMethod, PaymentStatus, TableSession
from pos_payments.settlement import to_money, finalize_session_transaction

logger = logging.getLogger(__name__)


class CheckoutError(Exception):
    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def new_transaction_uuid() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4()}"


def find_active_session(db, store_id, session_id=None, table_id=None):
    session = db.get(TableSession, session_id) if session_id else None
    if session is None and table_id:
        session = db.query(TableSession).filter_by(table_id=table_id, is_active=True).first()

    if session is None or not session.is_active:
        raise CheckoutError("Active session not found. Please ensure an order exists.")
    if session.store_id and session.store_id != store_id:
        raise CheckoutError("Unauthorized access to this session", status_code=401)
    return session


def _upsert_payment(db, session, store_id, method, amount, transaction_uuid=None):
    payment = db.query(Payment).filter_by(session_id=session.id).first()
    if payment is None:
        payment = Payment(session_id=session.id)
        db.add(payment)
    payment.store_id = store_id
    payment.method = method
    payment.amount = to_money(amount)
    payment.status = PaymentStatus.PENDING
    payment.transaction_uuid = transaction_uuid
    return payment


def start_esewa_checkout(db, store_id, session, amount, subtotal, tax, service_charge, discount):
    """Open (or reopen) the session's pending eSewa payment."""
    existing = db.query(Payment).filter_by(session_id=session.id).first()
    if existing is not None and existing.status in PaymentStatus.TERMINAL:
        raise CheckoutError("This session is already paid.")

    # Breakdown is kept on the session so the callback can settle with it.
    session.total = to_money(subtotal)
    session.tax = to_money(tax)
    session.service_charge = to_money(service_charge)
    session.discount = to_money(discount)

    payment = _upsert_payment(
        db, session, store_id, PaymentMethod.ESEWA, amount, transaction_uuid=new_transaction_uuid()
    )
    db.commit()
    logger.info("eSewa checkout %s opened for session %s", payment.transaction_uuid, session.id)
    return payment


def settle_instant_checkout(db, store_id, session, method, amount, subtotal, tax, service_charge,
                            discount, customer_id=None, table_id=None):
    if method == PaymentMethod.CREDIT and not customer_id:
        raise CheckoutError("Customer is required for credit payments")

    existing = db.query(Payment).filter_by(session_id=session.id).first()
    if existing is not None and existing.status in PaymentStatus.TERMINAL:
        raise CheckoutError("This session is already paid.")

    # committed by the finalizer, or rolled back with it
    payment = _upsert_payment(db, session, store_id, method, amount)
    db.flush()

    settled = finalize_session_transaction(
        db,
        session_id=session.id,
        table_id=table_id or session.table_id,
        amount=amount,
        subtotal=subtotal,
        tax=tax,
        service_charge=service_charge,
        discount=discount,
        payment_id=payment.id,
        customer_id=customer_id,
        payment_method=method,
    )
    if not settled:
        raise CheckoutError("This session is already paid.")
    return payment
