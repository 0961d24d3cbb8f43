"""
Shop Models — points-priced items and the purchases made with them.
"""
from sqlalchemy import Column, String, Integer, DateTime, Boolean, ForeignKey

from ledger.database import Base
from ledger.utils.clock import utcnow

UNLIMITED_STOCK = -1
COLLECTIBLE_TYPES = ("avatar_frame", "badge", "theme")


class ShopItem(Base):
    __tablename__ = "shop_items"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    name = Column(String(128), nullable=False)
    description = Column(String(512), default="")
    type = Column(String(32), nullable=False)          # avatar_frame | badge | theme | consumable
    price_coins = Column(Integer, nullable=False)
    stock = Column(Integer, nullable=False, default=UNLIMITED_STOCK)
    sold_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)


class UserPurchase(Base):
    __tablename__ = "user_purchases"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("shop_items.id"), nullable=False)
    transaction_id = Column(Integer, ForeignKey("points_transactions.id"), nullable=True)
    purchased_at = Column(DateTime, default=utcnow)
