from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session
from typing import Optional

from checkout_service.infrastructure.db import get_db
from checkout_service.infrastructure.paystack import PaystackClient, get_gateway
from checkout_service.application.checkout import CheckoutCoordinator
from checkout_service.application.orders import OrderLedger
from checkout_service.application.inventory import InventoryStore
from checkout_service.application.settlement import SettlementProcessor

# Identity is established by the upstream API gateway, which forwards the
# authenticated buyer id and role as headers.

def get_user_id(x_user_id: Optional[int] = Header(None)) -> int:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="User not authenticated")
    return x_user_id

def require_admin(x_user_role: Optional[str] = Header(None)) -> None:
    if (x_user_role or "").lower() != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")

def get_checkout(db: Session = Depends(get_db)) -> CheckoutCoordinator:
    return CheckoutCoordinator(db)

def get_ledger(db: Session = Depends(get_db)) -> OrderLedger:
    return OrderLedger(db)

def get_inventory(db: Session = Depends(get_db)) -> InventoryStore:
    return InventoryStore(db)

def get_settlement(
    db: Session = Depends(get_db), gateway: PaystackClient = Depends(get_gateway)
) -> SettlementProcessor:
    return SettlementProcessor(db, gateway)
