"""
Entitlement Orchestrator — turns settled orders into points or memberships.

The order transition and the entitlement it unlocks commit together: if the
credit or the subscription write fails, the order stays ``pending`` and the
gateway's retry gets another chance.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ledger.config import Settings, get_settings
from ledger.database import atomic
from ledger.exceptions import (
    InvalidInput, LedgerError, StoreUnavailable, SubscriptionNotFound,
    UnsupportedProduct,
)
from ledger.models.order import PaymentOrder, ORDER_PAID
from ledger.models.points import TX_REFUND
from ledger.services.audit_service import AuditService
from ledger.services.order_service import OrderService
from ledger.services.points_ledger import PointsLedger
from ledger.services.risk_engine import AuditAction
from ledger.services.subscription_service import SubscriptionService
from ledger.services.tier_service import TierCatalog
from ledger.utils.clock import utcnow
from ledger.utils.logger import get_logger, log_event
from ledger.utils.validators import parse_subscription_product, require_positive_int

logger = get_logger(__name__)


@dataclass
class Settlement:
    order: PaymentOrder
    granted: Optional[dict] = None


def coins_for(order: PaymentOrder) -> int:
    if not str(order.product_id).isdigit():
        raise InvalidInput(f"malformed coins product id: {order.product_id!r}")
    return require_positive_int(int(order.product_id), field="coins")


class EntitlementOrchestrator:
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        catalog: Optional[TierCatalog] = None,
        audit: Optional[AuditService] = None,
        clock: Callable[[], datetime] = utcnow,
        orders: Optional[OrderService] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = audit or AuditService()
        self.clock = clock
        self.orders = orders or OrderService(db, settings=self.settings, audit=self.audit, clock=clock)
        self.ledger = PointsLedger(db, audit=self.audit)
        self.subscriptions = SubscriptionService(
            db, catalog=catalog, audit=self.audit, settings=self.settings, clock=clock,
        )

    def settle(
        self,
        order_no: str,
        trade_no: Optional[str],
        amount,
        outcome: str,
        ip_address: Optional[str] = None,
    ) -> Settlement:
        """Apply a verified callback and grant what was bought, in one transaction."""
        try:
            with atomic(self.db):
                order = self.orders.apply_callback(order_no, trade_no, amount, outcome, ip_address=ip_address)
                granted = self._dispatch(order) if order.status == ORDER_PAID else None
        except LedgerError as exc:
            owner_id = None
            if not isinstance(exc, StoreUnavailable):
                owner_id = self.db.query(PaymentOrder.user_id).filter(PaymentOrder.order_no == order_no).scalar()
            self.audit.log(
                AuditAction.PAYMENT_REJECTED,
                user_id=owner_id,
                actor="gateway",
                target_type="order",
                target_id=order_no,
                ip_address=ip_address,
                metadata={"error": exc.code, "detail": exc.message, "trade_no": trade_no or ""},
            )
            log_event(logger, "settlement.rejected", level=logging.WARNING, order_no=order_no, error=exc.code)
            raise

        log_event(logger, "settlement.done", order_no=order_no, status=order.status)
        return Settlement(order=order, granted=granted)

    def _dispatch(self, order: PaymentOrder) -> dict:
        if order.product_type == "coins":
            coins = coins_for(order)
            tx = self.ledger.credit(
                order.user_id, coins,
                source="purchase",
                description=order.product_name or f"Recharge {coins}",
                reference_type="order",
                reference_id=order.order_no,
            )
            granted = {"type": "coins", "coins": coins, "balance": tx.balance_after}
        elif order.product_type == "subscription":
            tier_id, period = parse_subscription_product(order.product_id)
            sub = self.subscriptions.create_or_activate(
                order.user_id, tier_id, period, order_no=order.order_no, now=self.clock(),
            )
            granted = {
                "type": "subscription",
                "tier_id": sub.tier_id,
                "period": sub.period,
                "end_date": sub.end_date.isoformat(),
            }
        else:
            raise UnsupportedProduct(f"{order.product_type} orders are not settled by callback")

        self.audit.log(
            AuditAction.ENTITLEMENT_GRANTED,
            user_id=order.user_id,
            target_type="order",
            target_id=order.order_no,
            new_value=granted,
            defer_to=self.db,
        )
        return granted

    def refund_order(self, order_no: str, reason: str = "", actor: str = "admin") -> Settlement:
        """Mark a paid order refunded and take back what it granted.

        Coins are clawed back with a debit, which fails with
        ``InsufficientBalance`` if they were already spent. Subscriptions stop
        auto-renewing; the paid period is left to run out.
        """
        with atomic(self.db):
            order = self.orders.mark_refunded(order_no, reason=reason, actor=actor)
            reverted = None
            if order.product_type == "coins":
                coins = coins_for(order)
                tx = self.ledger.debit(
                    order.user_id, coins,
                    source="order_refund",
                    description=f"Refund of {order.order_no}",
                    reference_type="order",
                    reference_id=order.order_no,
                    tx_type=TX_REFUND,
                )
                reverted = {"type": "coins", "coins": coins, "balance": tx.balance_after}
            elif order.product_type == "subscription":
                try:
                    sub = self.subscriptions.cancel(
                        order.user_id, reason=f"order {order.order_no} refunded", actor=actor,
                    )
                    reverted = {"type": "subscription", "subscription_id": sub.id, "auto_renew": False}
                except SubscriptionNotFound:
                    reverted = {"type": "subscription", "subscription_id": None}
        log_event(logger, "settlement.refunded", order_no=order_no, reverted=reverted)
        return Settlement(order=order, granted=reverted)
