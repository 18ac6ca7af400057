from fastapi import APIRouter, Depends, HTTPException

from checkout_service.api.deps import require_admin, get_inventory
from checkout_service.application.inventory import InventoryStore
from checkout_service.application.schemas import InventoryRead, RestockRequest

router = APIRouter(prefix="/inventory", tags=["inventory"])

@router.get("/low-stock", response_model=list[InventoryRead], dependencies=[Depends(require_admin)])
def low_stock(inventory: InventoryStore = Depends(get_inventory)):
    return inventory.find_low_stock()

@router.get("/{product_id}", response_model=InventoryRead)
def get_stock(product_id: int, inventory: InventoryStore = Depends(get_inventory)):
    record = inventory.get(product_id)
    if not record:
        raise HTTPException(status_code=404, detail="Inventory not found")
    return record

@router.post("/{product_id}/restock", response_model=InventoryRead, dependencies=[Depends(require_admin)])
def restock(product_id: int, payload: RestockRequest, inventory: InventoryStore = Depends(get_inventory)):
    record = inventory.restock(product_id, payload.quantity)
    inventory.db.commit()
    return record
