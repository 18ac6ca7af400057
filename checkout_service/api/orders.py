from fastapi import APIRouter, Depends

from checkout_service.api.deps import get_user_id, require_admin, get_checkout, get_ledger, get_settlement
from checkout_service.application.checkout import CheckoutCoordinator
from checkout_service.application.orders import OrderLedger
from checkout_service.application.settlement import SettlementProcessor
from checkout_service.application.schemas import (
    CheckoutRequest, OrderRead, OrderSummaryRead, StatusUpdate, CancelRequest,
)
from checkout_service.domain.models import OrderStatus

router = APIRouter(prefix="/orders", tags=["orders"])

@router.post("/", response_model=OrderRead, status_code=201)
def create_order(
    payload: CheckoutRequest,
    user_id: int = Depends(get_user_id),
    checkout: CheckoutCoordinator = Depends(get_checkout),
):
    """Checkout: reserve the cart's stock and create a pending order."""
    return checkout.create_order(user_id, payload.shipping_address)

@router.get("/", response_model=list[OrderSummaryRead])
def list_orders(user_id: int = Depends(get_user_id), ledger: OrderLedger = Depends(get_ledger)):
    return ledger.list_for_user(user_id)

@router.get("/admin/stats", dependencies=[Depends(require_admin)])
def order_stats(ledger: OrderLedger = Depends(get_ledger)):
    return {"success": True, "data": ledger.stats()}

@router.get("/admin/all", response_model=list[OrderSummaryRead], dependencies=[Depends(require_admin)])
def list_all_orders(ledger: OrderLedger = Depends(get_ledger)):
    return ledger.list_all()

@router.get("/number/{order_number}", response_model=OrderRead)
def get_order_by_number(
    order_number: str, user_id: int = Depends(get_user_id), ledger: OrderLedger = Depends(get_ledger)
):
    return ledger.get_by_number(order_number, user_id=user_id)

@router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, user_id: int = Depends(get_user_id), ledger: OrderLedger = Depends(get_ledger)):
    return ledger.get(order_id, user_id=user_id)

@router.post("/{order_id}/cancel", response_model=OrderRead)
def cancel_order(
    order_id: int,
    payload: CancelRequest,
    user_id: int = Depends(get_user_id),
    settlement: SettlementProcessor = Depends(get_settlement),
):
    """Buyer cancellation; only pending orders, reservations are released."""
    return settlement.cancel_order(order_id, payload.reason, user_id=user_id)

@router.patch("/{order_id}/status", response_model=OrderRead, dependencies=[Depends(require_admin)])
def update_order_status(
    order_id: int,
    payload: StatusUpdate,
    ledger: OrderLedger = Depends(get_ledger),
    settlement: SettlementProcessor = Depends(get_settlement),
):
    if payload.status == OrderStatus.CANCELLED:
        return settlement.cancel_order(order_id, payload.note or "Order cancelled by admin")
    return ledger.update_status(order_id, payload.status, payload.note)
