from ledger.services.risk_engine import RiskEngine, AuditAction
from ledger.services.audit_service import AuditService
from ledger.services.replay_guard import NonceRegistry
from ledger.services.tier_service import TierCatalog, TierPrivileges
from ledger.services.points_ledger import PointsLedger
from ledger.services.order_service import OrderService
from ledger.services.subscription_service import SubscriptionService
from ledger.services.entitlement_service import EntitlementOrchestrator
from ledger.services.callback_service import PaymentCallbackService
from ledger.services.shop_service import ShopService
from ledger.services.mock_gateway import MockGateway

__all__ = [
    "RiskEngine", "AuditAction", "AuditService", "NonceRegistry",
    "TierCatalog", "TierPrivileges", "PointsLedger", "OrderService",
    "SubscriptionService", "EntitlementOrchestrator", "PaymentCallbackService",
    "ShopService", "MockGateway",
]
