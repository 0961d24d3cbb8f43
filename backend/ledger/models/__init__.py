from ledger.models.user import User
from ledger.models.order import PaymentOrder
from ledger.models.points import DailyClaim, PointsTransaction
from ledger.models.subscription import Subscription
from ledger.models.tier import MembershipTier
from ledger.models.shop import ShopItem, UserPurchase
from ledger.models.audit import AuditLog

__all__ = [
    "User", "PaymentOrder", "PointsTransaction", "DailyClaim", "Subscription",
    "MembershipTier", "ShopItem", "UserPurchase", "AuditLog",
]
