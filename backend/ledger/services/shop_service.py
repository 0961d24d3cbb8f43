"""
Shop Service — points-priced purchases.

A purchase is one transaction: debit, conditional stock decrement and the
purchase row either all commit or all roll back. Nothing here goes through
the payment order state machine.
"""
from typing import List, Optional

from sqlalchemy.orm import Session

from ledger.database import atomic
from ledger.exceptions import AlreadyOwned, ItemNotFound, OutOfStock
from ledger.models.shop import ShopItem, UserPurchase, UNLIMITED_STOCK, COLLECTIBLE_TYPES
from ledger.services.audit_service import AuditService
from ledger.services.points_ledger import PointsLedger
from ledger.services.risk_engine import AuditAction
from ledger.utils.logger import get_logger, log_event

logger = get_logger(__name__)


class ShopService:
    def __init__(self, db: Session, audit: Optional[AuditService] = None):
        self.db = db
        self.audit = audit or AuditService()
        self.ledger = PointsLedger(db, audit=self.audit)

    def list_items(self) -> List[ShopItem]:
        return (
            self.db.query(ShopItem)
            .filter(ShopItem.is_active.is_(True))
            .order_by(ShopItem.price_coins.asc(), ShopItem.id.asc())
            .all()
        )

    def purchases(self, user_id: int) -> List[UserPurchase]:
        return (
            self.db.query(UserPurchase)
            .filter(UserPurchase.user_id == user_id)
            .order_by(UserPurchase.id.desc())
            .all()
        )

    def _owns(self, user_id: int, item_id: int) -> bool:
        return (
            self.db.query(UserPurchase.id)
            .filter(UserPurchase.user_id == user_id, UserPurchase.item_id == item_id)
            .first()
            is not None
        )

    def purchase(self, user_id: int, item_id: int) -> UserPurchase:
        """Buy one unit of ``item_id`` with points.

        Raises:
            ItemNotFound, AlreadyOwned, InsufficientBalance, OutOfStock.
        """
        with atomic(self.db):
            item = (
                self.db.query(ShopItem)
                .filter(ShopItem.id == item_id, ShopItem.is_active.is_(True))
                .first()
            )
            if item is None:
                raise ItemNotFound(f"shop item {item_id} not found")
            collectible = item.type in COLLECTIBLE_TYPES
            if collectible and self._owns(user_id, item_id):
                raise AlreadyOwned(f"user {user_id} already owns item {item_id}")
            if item.stock != UNLIMITED_STOCK and item.stock <= 0:
                raise OutOfStock(f"shop item {item_id} is sold out")

            tx = self.ledger.debit(
                user_id, item.price_coins,
                source="shop",
                description=f"Shop purchase: {item.name}",
                reference_type="shop_item",
                reference_id=str(item.id),
            )

            stock_query = self.db.query(ShopItem).filter(ShopItem.id == item.id)
            if item.stock != UNLIMITED_STOCK:
                stock_query = stock_query.filter(ShopItem.stock > 0)
                values = {ShopItem.stock: ShopItem.stock - 1, ShopItem.sold_count: ShopItem.sold_count + 1}
            else:
                values = {ShopItem.sold_count: ShopItem.sold_count + 1}
            if not stock_query.update(values, synchronize_session=False):
                raise OutOfStock(f"shop item {item_id} sold out")

            # Re-checked under the write lock taken by the debit.
            if collectible and self._owns(user_id, item_id):
                raise AlreadyOwned(f"user {user_id} already owns item {item_id}")

            purchase = UserPurchase(user_id=user_id, item_id=item.id, transaction_id=tx.id)
            self.db.add(purchase)
            self.db.flush()

            self.audit.log(
                AuditAction.SHOP_PURCHASE,
                user_id=user_id,
                actor=f"user:{user_id}",
                target_type="shop_item",
                target_id=item.id,
                new_value={"purchase_id": purchase.id, "price": item.price_coins},
                metadata={"transaction_id": tx.id, "item_type": item.type},
                defer_to=self.db,
            )

        log_event(logger, "shop.purchase", user_id=user_id, item_id=item_id, price=item.price_coins)
        return purchase
