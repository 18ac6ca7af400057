from fastapi import APIRouter, Depends, Request, Header
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from typing import Optional

from checkout_service.api.deps import get_user_id, require_admin, get_ledger, get_settlement
from checkout_service.application.orders import OrderLedger
from checkout_service.application.settlement import SettlementProcessor
from checkout_service.application.schemas import (
    InitializePaymentRequest, RefundRequest, OrderRead, OrderSummaryRead,
)
from checkout_service.domain.models import PaymentStatus

router = APIRouter(prefix="/payments", tags=["payments"])

def _order_json(order) -> dict:
    return OrderRead.model_validate(order).model_dump(mode="json")

@router.post("/initialize")
def initialize_payment(
    payload: InitializePaymentRequest,
    user_id: int = Depends(get_user_id),
    settlement: SettlementProcessor = Depends(get_settlement),
):
    data = settlement.initialize_payment(payload.order_id, user_id, payload.email)
    return {"success": True, "message": "Payment initialized successfully", "data": data}

@router.get("/verify/{reference}")
def verify_payment(
    reference: str,
    user_id: int = Depends(get_user_id),
    settlement: SettlementProcessor = Depends(get_settlement),
):
    result = settlement.verify_payment(reference, user_id=user_id)
    order = result.order
    if result.outcome == "success" and order.payment_status == PaymentStatus.COMPLETED.value:
        message = "Payment verified successfully" if result.applied else "Payment already processed"
        return {"success": True, "message": message, "data": _order_json(order)}
    if result.outcome == "failed" and order.payment_status == PaymentStatus.FAILED.value:
        return JSONResponse(status_code=400, content={
            "success": False,
            "message": "Payment failed",
            "data": {"order": _order_json(order), "reason": result.reason or order.timeline[-1].note},
        })
    return JSONResponse(status_code=409, content={
        "success": False,
        "message": result.reason or "Payment outcome could not be applied",
        "data": {"order": _order_json(order)},
    })

@router.post("/webhook")
async def payment_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(None),
    x_signature: Optional[str] = Header(None),
    settlement: SettlementProcessor = Depends(get_settlement),
):
    """Gateway notifications. Answers 200 for every authenticated event."""
    raw_body = await request.body()
    return await run_in_threadpool(
        settlement.handle_webhook, raw_body, x_paystack_signature or x_signature
    )

@router.post("/{order_id}/refund", dependencies=[Depends(require_admin)])
def initiate_refund(
    order_id: int, payload: RefundRequest, settlement: SettlementProcessor = Depends(get_settlement)
):
    result = settlement.initiate_refund(order_id, payload.amount, payload.reason)
    body = {
        "success": True,
        "refunded": result.refunded,
        "message": result.message,
        "data": _order_json(result.order),
    }
    if result.instructions:
        body["instructions"] = result.instructions
    return body

@router.get("/history", response_model=list[OrderSummaryRead])
def payment_history(user_id: int = Depends(get_user_id), ledger: OrderLedger = Depends(get_ledger)):
    return ledger.list_for_user(user_id)
