import time
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_FLOOR

from sqlalchemy.exc import SQLAlchemyError

from pos_payments.models import (
    Customer,
    CustomerLedger,
    LedgerType,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Table,
    TableSession,
    TableStatus,
)

logger = logging.getLogger(__name__)

LOYALTY_UNIT = Decimal("100")


class SettlementError(Exception):
    """The settlement transaction failed and was rolled back."""


def to_money(value) -> Decimal:
    return Decimal(str(value or 0))


def _txn_no(prefix: str, session_id: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{session_id[:4]}"


def _record_customer_sale(db, customer_id, session_id, table_id, payment_id, amount, payment_method):
    customer = db.get(Customer, customer_id)
    if customer is None:
        raise SettlementError(f"Customer {customer_id} not found")

    customer.loyalty_points = (customer.loyalty_points or 0) + int(
        (amount / LOYALTY_UNIT).to_integral_value(rounding=ROUND_FLOOR)
    )

    last = (
        db.query(CustomerLedger)
        .filter_by(customer_id=customer_id)
        .order_by(CustomerLedger.created_at.desc())
        .first()
    )
    balance = to_money(last.closing_balance if last else 0) + amount

    # A sale raises what the customer owes; a payment brings it back down.
    db.add(CustomerLedger(
        customer_id=customer_id,
        txn_no=_txn_no("SALE", session_id),
        type=LedgerType.SALE,
        amount=amount,
        closing_balance=balance,
        reference_id=session_id,
        remarks=f"Table Checkout - {table_id} ({payment_method})",
    ))
    if payment_method != PaymentMethod.CREDIT:
        db.add(CustomerLedger(
            customer_id=customer_id,
            txn_no=_txn_no("PAY", session_id),
            type=LedgerType.PAYMENT_IN,
            amount=amount,
            closing_balance=balance - amount,
            reference_id=payment_id,
            remarks=f"Payment for Table Checkout ({payment_method})",
        ))


def finalize_session_transaction(
    db,
    *,
    session_id: str,
    table_id: str,
    amount,
    subtotal,
    tax,
    service_charge,
    discount,
    payment_id: str,
    customer_id: str = None,
    payment_method: str = PaymentMethod.ESEWA,
) -> bool:
    """
    Settle a table session against a payment in a single transaction.

    The payment is claimed with a conditional update, so of two concurrent
    settlements for the same payment exactly one proceeds; the other rolls
    back and returns False. Returns True when this call settled the session.
    Database failures roll back everything and raise SettlementError.
    """
    amount = to_money(amount)
    now = datetime.now(timezone.utc)
    final_status = PaymentStatus.CREDIT if payment_method == PaymentMethod.CREDIT else PaymentStatus.PAID

    try:
        claimed = (
            db.query(Payment)
            .filter(Payment.id == payment_id, Payment.status.notin_(PaymentStatus.TERMINAL))
            .update({"status": final_status, "paid_at": now}, synchronize_session=False)
        )
        if not claimed:
            db.rollback()
            logger.info("Payment %s already settled, skipping", payment_id)
            return False

        order_link = {
            "status": OrderStatus.COMPLETED,
            "customer_id": customer_id,
            "payment_id": payment_id,
        }
        db.query(Order).filter(Order.session_id == session_id).update(
            order_link, synchronize_session=False
        )
        # Orders placed on the table without a session (manual entries)
        if table_id:
            db.query(Order).filter(
                Order.table_id == table_id,
                Order.session_id.is_(None),
                Order.status.in_(OrderStatus.OPEN),
            ).update({**order_link, "session_id": session_id}, synchronize_session=False)

        session = db.get(TableSession, session_id)
        if session is None:
            raise SettlementError(f"Session {session_id} not found")
        session.is_active = False
        session.ended_at = now
        session.total = to_money(subtotal)
        session.tax = to_money(tax)
        session.service_charge = to_money(service_charge)
        session.discount = to_money(discount)
        session.grand_total = amount

        table = db.get(Table, table_id) if table_id else None
        if table is not None:
            table.status = TableStatus.ACTIVE

        if customer_id:
            _record_customer_sale(db, customer_id, session_id, table_id, payment_id, amount, payment_method)

        db.commit()
    except SettlementError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Settlement of payment %s failed", payment_id)
        raise SettlementError(str(exc)) from exc

    logger.info("Payment %s settled session %s (%s %s)", payment_id, session_id, payment_method, amount)
    return True
