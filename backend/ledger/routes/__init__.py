from ledger.routes.payment import router as payment_router
from ledger.routes.wallet import router as wallet_router
from ledger.routes.subscription import router as subscription_router
from ledger.routes.shop import router as shop_router
from ledger.routes.admin import router as admin_router

__all__ = ["payment_router", "wallet_router", "subscription_router", "shop_router", "admin_router"]
