import os
import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from pos_payments.auth import current_store_id
from pos_payments.callback import NO_SESSION, handle_callback
from pos_payments.checkout import (
    CheckoutError,
    find_active_session,
    settle_instant_checkout,
    start_esewa_checkout,
)
from pos_payments.database import session_scope
from pos_payments.esewa import EsewaGateway, format_amount
from pos_payments.models import Payment, PaymentMethod, PaymentStatus
from pos_payments.settlement import SettlementError

logger = logging.getLogger(__name__)

router = APIRouter()

_gateway = None


def get_gateway() -> EsewaGateway:
    global _gateway
    if _gateway is None:
        _gateway = EsewaGateway.from_env()
    return _gateway


def _app_url() -> str:
    return os.getenv("APP_URL", "http://localhost:3000").rstrip("/")


def _redirect_urls(payment_id: str) -> dict:
    return {
        "success_url": f"{_app_url()}/payment/success?pid={payment_id}",
        "failure_url": f"{_app_url()}/payment/failure",
    }


class VerifyRequest(BaseModel):
    encodedData: str
    paymentId: str


class CheckoutRequest(BaseModel):
    paymentMethod: str
    amount: Decimal
    tableId: Optional[str] = None
    sessionId: Optional[str] = None
    customerId: Optional[str] = None
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    serviceCharge: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")


@router.get("/payment/details")
def payment_details(id: Optional[str] = None, gateway: EsewaGateway = Depends(get_gateway)):
    if not id:
        return {"success": False}

    with session_scope() as db:
        payment = db.get(Payment, id)
        if not payment or payment.status in PaymentStatus.TERMINAL or not payment.transaction_uuid:
            return {"success": False, "message": "Invalid or Paid"}

        config = gateway.generate(payment.amount, payment.transaction_uuid)
        return {
            "success": True,
            "esewaConfig": {
                **config,
                "amount": format_amount(payment.amount),
                "transaction_uuid": payment.transaction_uuid,
                **_redirect_urls(payment.id),
            },
        }


@router.post("/payment/verify")
def verify_payment(request: VerifyRequest, gateway: EsewaGateway = Depends(get_gateway)):
    with session_scope() as db:
        try:
            result = handle_callback(db, gateway, request.encodedData, request.paymentId)
        except SettlementError:
            return JSONResponse(
                status_code=500,
                content={"success": False, "message": "Settlement failed"},
            )
        except SQLAlchemyError:
            db.rollback()
            logger.exception("eSewa callback for payment %s failed", request.paymentId)
            return JSONResponse(
                status_code=500,
                content={"success": False, "message": "Internal Server Error"},
            )

    if result.success:
        return {"success": True}
    status_code = 400 if result.reason == NO_SESSION else 200
    return JSONResponse(status_code=status_code, content={"success": False, "message": result.reason})


@router.get("/payment/status")
def payment_status(id: Optional[str] = None):
    if not id:
        return {"success": False}

    with session_scope() as db:
        payment = db.get(Payment, id)
        return {"success": True, "status": payment.status if payment else None}


@router.post("/checkout")
def checkout(request: CheckoutRequest, store_id: str = Depends(current_store_id)):
    method = request.paymentMethod
    if method != PaymentMethod.ESEWA and method not in PaymentMethod.INSTANT:
        return JSONResponse(status_code=400, content={"success": False, "message": "Invalid Payment Method"})

    breakdown = {
        "amount": request.amount,
        "subtotal": request.subtotal,
        "tax": request.tax,
        "service_charge": request.serviceCharge,
        "discount": request.discount,
    }

    with session_scope() as db:
        try:
            session = find_active_session(db, store_id, request.sessionId, request.tableId)

            if method == PaymentMethod.ESEWA:
                payment = start_esewa_checkout(db, store_id, session, **breakdown)
                return {
                    "success": True,
                    "isPending": True,
                    "paymentId": payment.id,
                    "config": {
                        "amount": format_amount(payment.amount),
                        "transaction_uuid": payment.transaction_uuid,
                        **_redirect_urls(payment.id),
                    },
                }

            settle_instant_checkout(
                db, store_id, session, method,
                customer_id=request.customerId, table_id=request.tableId, **breakdown
            )
        except CheckoutError as exc:
            return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})
        except SettlementError:
            return JSONResponse(status_code=500, content={"success": False, "message": "Internal Server Error"})
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Checkout of session %s failed", request.sessionId or request.tableId)
            return JSONResponse(status_code=500, content={"success": False, "message": "Internal Server Error"})

    message = "Saved as Credit" if method == PaymentMethod.CREDIT else "Payment completed"
    return {"success": True, "message": message}
