"""
Shop Routes — Items priced in points and synchronous purchases.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ledger.database import get_db
from ledger.routes.deps import current_user_id
from ledger.schemas.schemas import ShopPurchaseRequest, ShopPurchaseResponse
from ledger.services.shop_service import ShopService
from ledger.utils.rate_limiter import rate_limit

router = APIRouter(prefix="/api/shop", tags=["Shop"])


@router.get("/items")
def list_items(db: Session = Depends(get_db)):
    return {
        "success": True,
        "items": [
            {
                "id": item.id,
                "name": item.name,
                "description": item.description or "",
                "type": item.type,
                "priceCoins": item.price_coins,
                "stock": item.stock,
                "soldCount": item.sold_count,
            }
            for item in ShopService(db).list_items()
        ],
    }


@router.get("/purchases")
def list_purchases(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return {
        "success": True,
        "purchases": [
            {
                "id": p.id,
                "itemId": p.item_id,
                "transactionId": p.transaction_id,
                "purchasedAt": p.purchased_at.isoformat() if p.purchased_at else None,
            }
            for p in ShopService(db).purchases(user_id)
        ],
    }


@router.post("/purchase", response_model=ShopPurchaseResponse)
def purchase_item(
    payload: ShopPurchaseRequest,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    _throttle: bool = Depends(rate_limit(requests=20, window=60, scope="shop")),
):
    service = ShopService(db)
    purchase = service.purchase(user_id, payload.item_id)
    return ShopPurchaseResponse(
        purchaseId=purchase.id,
        itemId=purchase.item_id,
        balance=service.ledger.balance(user_id),
    )
