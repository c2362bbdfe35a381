"""
eSewa callback handling as an explicit state machine.

    INITIATED -> CALLBACK_RECEIVED -> VERIFIED -> SETTLED
                                   -> REJECTED
                                   -> IGNORED

Each transition is its own function so the guards can be exercised without
the HTTP layer. Only ``settle`` writes to the database.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pos_payments.esewa import parse_amount
from pos_payments.models import Payment, PaymentStatus
from pos_payments.settlement import finalize_session_transaction

logger = logging.getLogger(__name__)

GATEWAY_COMPLETE = "COMPLETE"

INVALID_PAYLOAD = "invalid payload"
PAYMENT_NOT_FOUND = "payment not found"
NO_SESSION = "no session associated"
PAYMENT_MISMATCH = "payment mismatch"
ALREADY_SETTLED = "already settled"


class CallbackState(str, Enum):
    INITIATED = "INITIATED"
    CALLBACK_RECEIVED = "CALLBACK_RECEIVED"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    SETTLED = "SETTLED"
    IGNORED = "IGNORED"


@dataclass
class CallbackContext:
    encoded_data: str
    payment_id: str
    state: CallbackState = CallbackState.INITIATED
    payload: Optional[dict] = None
    payment: Optional[Payment] = None
    reason: Optional[str] = None


@dataclass
class CallbackResult:
    state: CallbackState
    reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state in (CallbackState.SETTLED, CallbackState.IGNORED)


def receive(encoded_data: str, payment_id: str) -> CallbackContext:
    return CallbackContext(
        encoded_data=encoded_data,
        payment_id=payment_id,
        state=CallbackState.CALLBACK_RECEIVED,
    )


def evaluate(payload: Optional[dict], payment: Optional[Payment]):
    """Decide where a received callback goes next. Returns ``(state, reason)``."""
    if payload is None or payload.get("status") != GATEWAY_COMPLETE:
        return CallbackState.REJECTED, INVALID_PAYLOAD
    if payment is None:
        return CallbackState.REJECTED, PAYMENT_NOT_FOUND
    if payment.status in PaymentStatus.TERMINAL:
        return CallbackState.IGNORED, ALREADY_SETTLED
    if payment.session is None:
        return CallbackState.REJECTED, NO_SESSION

    # The payment is picked by id; the signed payload only has to agree with it.
    if payload.get("transaction_uuid") != payment.transaction_uuid:
        return CallbackState.REJECTED, PAYMENT_MISMATCH
    paid = parse_amount(payload.get("total_amount"))
    if paid is None or paid != parse_amount(payment.amount):
        return CallbackState.REJECTED, PAYMENT_MISMATCH

    return CallbackState.VERIFIED, None


def settle(db, ctx: CallbackContext) -> CallbackContext:
    if ctx.state is not CallbackState.VERIFIED:
        raise ValueError(f"Cannot settle a callback in state {ctx.state.value}")

    payment = ctx.payment
    session = payment.session
    settled = finalize_session_transaction(
        db,
        session_id=session.id,
        table_id=session.table_id,
        amount=payment.amount,
        subtotal=session.total,
        tax=session.tax,
        service_charge=session.service_charge,
        discount=session.discount,
        payment_id=payment.id,
        payment_method=payment.method,
    )
    if settled:
        ctx.state = CallbackState.SETTLED
    else:
        # lost the race to a concurrent delivery of the same callback
        ctx.state, ctx.reason = CallbackState.IGNORED, ALREADY_SETTLED
    return ctx


def handle_callback(db, gateway, encoded_data, payment_id) -> CallbackResult:
    """
    Verify a gateway callback and settle its payment at most once.

    SettlementError from the finalizer propagates to the caller; every other
    outcome is a CallbackResult.
    """
    ctx = receive(encoded_data, payment_id)

    ctx.payload = gateway.verify(encoded_data)
    ctx.payment = db.get(Payment, payment_id) if payment_id and ctx.payload is not None else None
    ctx.state, ctx.reason = evaluate(ctx.payload, ctx.payment)

    if ctx.state is CallbackState.VERIFIED:
        ctx = settle(db, ctx)

    if ctx.state is CallbackState.REJECTED:
        logger.warning("eSewa callback for payment %s rejected: %s", payment_id, ctx.reason)
    else:
        logger.info("eSewa callback for payment %s: %s", payment_id, ctx.state.value)
    return CallbackResult(ctx.state, ctx.reason)
