"""
Order Lifecycle Manager — creates payment orders and moves them through
their states.

    pending ──► paid ──► refunded
       │
       ├──► failed
       ├──► cancelled
       └──► expired

Every transition is one conditional UPDATE guarded on the expected source
state, so concurrent callbacks, cancels and sweeps resolve to exactly one
winner without in-process locks.
"""
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, List, Optional
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger.config import Settings, get_settings
from ledger.database import atomic, in_atomic
from ledger.exceptions import (
    AlreadyTerminal, AmountMismatch, InvalidInput, InvalidSignature,
    OrderExpired, OrderNotFound, ReplayDetected, StoreUnavailable, UserNotFound,
)
from ledger.models.order import (
    PaymentOrder, ORDER_PENDING, ORDER_PAID, ORDER_FAILED,
    ORDER_CANCELLED, ORDER_EXPIRED, ORDER_REFUNDED,
)
from ledger.models.user import User
from ledger.services.audit_service import AuditService
from ledger.services.risk_engine import AuditAction
from ledger.utils.clock import utcnow
from ledger.utils.logger import get_logger, log_event
from ledger.utils.signing import SignatureGuard, generate_nonce
from ledger.utils.validators import (
    parse_minor_units, require_positive_int, validate_order_no, validate_product_type,
)

logger = get_logger(__name__)

ORDER_STATE_MACHINE: Dict[str, FrozenSet[str]] = {
    ORDER_PENDING: frozenset({ORDER_PAID, ORDER_FAILED, ORDER_CANCELLED, ORDER_EXPIRED}),
    ORDER_PAID: frozenset({ORDER_REFUNDED}),
    ORDER_FAILED: frozenset(),
    ORDER_CANCELLED: frozenset(),
    ORDER_EXPIRED: frozenset(),
    ORDER_REFUNDED: frozenset(),
}

OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"

MAX_ORDER_NO_ATTEMPTS = 3
_ORDER_NO_ALPHABET = string.ascii_uppercase + string.digits


def can_transition(current: str, target: str) -> bool:
    return target in ORDER_STATE_MACHINE.get(current, frozenset())


def is_terminal(status: str) -> bool:
    return not ORDER_STATE_MACHINE.get(status)


def generate_order_no(now: Optional[datetime] = None) -> str:
    """``ORD`` + UTC ``YYYYMMDDHHMMSS`` + 6 random uppercase characters."""
    now = now or utcnow()
    suffix = "".join(secrets.choice(_ORDER_NO_ALPHABET) for _ in range(6))
    return f"ORD{now.strftime('%Y%m%d%H%M%S')}{suffix}"


def order_to_dict(order: PaymentOrder) -> dict:
    return {
        "orderNo": order.order_no,
        "userId": order.user_id,
        "amount": order.amount,
        "currency": order.currency,
        "productType": order.product_type,
        "productId": order.product_id,
        "productName": order.product_name or "",
        "status": order.status,
        "tradeNo": order.trade_no,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "expiresAt": order.expires_at.isoformat() if order.expires_at else None,
        "paidAt": order.paid_at.isoformat() if order.paid_at else None,
    }


@dataclass
class CreatedOrder:
    order: PaymentOrder
    pay_url: str


class OrderService:
    """Owns ``PaymentOrder`` rows. Other services never write them directly."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        audit: Optional[AuditService] = None,
        clock: Callable[[], datetime] = utcnow,
        request_guard: Optional[SignatureGuard] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = audit or AuditService()
        self.clock = clock
        self._request_guard = request_guard

    @property
    def request_guard(self) -> SignatureGuard:
        # Built lazily so read-only callers work without a configured secret.
        if self._request_guard is None:
            self._request_guard = SignatureGuard(
                self.settings.PAYMENT_SECRET,
                self.settings.REQUEST_SIGNATURE_WINDOW_SECONDS,
                clock=self.clock,
            )
        return self._request_guard

    # ─── Creation ────────────────────────────────────────────────────

    def create_order(
        self,
        user_id: int,
        amount: int,
        product_type: str,
        product_id: str,
        product_name: str = "",
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CreatedOrder:
        require_positive_int(amount)
        product_type = validate_product_type(product_type)
        product_id = str(product_id or "").strip()
        if not product_id:
            raise InvalidInput("product_id is required")
        if self.db.query(User.id).filter(User.id == user_id).first() is None:
            raise UserNotFound(f"user {user_id} not found")

        for attempt in range(1, MAX_ORDER_NO_ATTEMPTS + 1):
            try:
                order = self._insert_order(user_id, amount, product_type, product_id,
                                           product_name, client_ip, user_agent)
                break
            except StoreUnavailable as exc:
                collided = isinstance(exc.__cause__, IntegrityError)
                if not collided or attempt == MAX_ORDER_NO_ATTEMPTS or in_atomic(self.db):
                    raise
                log_event(logger, "order.number_collision", level=logging.WARNING, attempt=attempt)

        log_event(logger, "order.create", order_no=order.order_no, user_id=user_id,
                  amount=amount, product_type=product_type, product_id=product_id)
        return CreatedOrder(order=order, pay_url=self.build_pay_url(order))

    def _insert_order(self, user_id, amount, product_type, product_id,
                      product_name, client_ip, user_agent) -> PaymentOrder:
        now = self.clock()
        with atomic(self.db):
            order = PaymentOrder(
                order_no=generate_order_no(now),
                user_id=user_id,
                amount=amount,
                currency=self.settings.ORDER_CURRENCY,
                payment_method="mock",
                product_type=product_type,
                product_id=product_id,
                product_name=(product_name or "")[:128],
                status=ORDER_PENDING,
                nonce=generate_nonce(),
                client_ip=client_ip,
                user_agent=(user_agent or "")[:256] or None,
                created_at=now,
                expires_at=now + timedelta(minutes=self.settings.ORDER_TTL_MINUTES),
                updated_at=now,
            )
            self.db.add(order)
            self.db.flush()
            self.audit.log(
                AuditAction.ORDER_CREATED,
                user_id=user_id,
                actor=f"user:{user_id}",
                target_type="order",
                target_id=order.order_no,
                new_value={"status": ORDER_PENDING, "amount": amount},
                ip_address=client_ip,
                user_agent=user_agent,
                metadata={"product_type": product_type, "product_id": product_id},
                defer_to=self.db,
            )
        return order

    def build_pay_url(self, order: PaymentOrder) -> str:
        signed = self.request_guard.sign(self._pay_payload(order), nonce=order.nonce)
        query = urlencode({
            "orderNo": order.order_no,
            "nonce": signed.nonce,
            "ts": signed.timestamp,
            "sig": signed.signature,
        })
        return f"{self.settings.PAY_BASE_URL}?{query}"

    @staticmethod
    def _pay_payload(order: PaymentOrder) -> dict:
        return {"order_no": order.order_no, "amount": order.amount, "user_id": order.user_id}

    def verify_pay_request(self, order_no: str, nonce: str, ts, sig: str) -> PaymentOrder:
        """Check a payUrl round-trip; returns the order it points at."""
        order = self.get(order_no)
        if not nonce or nonce != order.nonce:
            raise InvalidSignature("pay link nonce does not belong to the order")
        self.request_guard.verify(self._pay_payload(order), nonce, ts, sig)
        return order

    # ─── Transitions ─────────────────────────────────────────────────

    def apply_callback(
        self,
        order_no: str,
        trade_no: Optional[str],
        confirmed_amount,
        outcome: str,
        ip_address: Optional[str] = None,
    ) -> PaymentOrder:
        """Settle a pending order from a verified gateway confirmation.

        Raises:
            OrderNotFound, AlreadyTerminal, OrderExpired, AmountMismatch,
            ReplayDetected (trade number already used by another order).
        """
        outcome = (outcome or "").strip().lower()
        if outcome not in (OUTCOME_SUCCESS, OUTCOME_FAILED):
            raise InvalidInput(f"unknown payment outcome: {outcome!r}")
        now = self.clock()

        with atomic(self.db):
            order = self.get(order_no)
            if order.status != ORDER_PENDING:
                raise AlreadyTerminal(f"order {order_no} is {order.status}")
            if now > order.expires_at:
                raise OrderExpired(f"order {order_no} expired at {order.expires_at.isoformat()}")

            if outcome == OUTCOME_SUCCESS:
                paid = parse_minor_units(confirmed_amount)
                if paid != order.amount:
                    raise AmountMismatch(f"order {order_no}: expected {order.amount}, got {paid}")
                trade_no = str(trade_no or "").strip()
                if not trade_no:
                    raise InvalidInput("trade_no is required for a successful payment")
                reused = (
                    self.db.query(PaymentOrder.id)
                    .filter(PaymentOrder.trade_no == trade_no, PaymentOrder.id != order.id)
                    .first()
                )
                if reused:
                    raise ReplayDetected(f"trade_no {trade_no} already settled another order")
                target = ORDER_PAID
                values = {
                    PaymentOrder.status: ORDER_PAID,
                    PaymentOrder.trade_no: trade_no,
                    PaymentOrder.paid_at: now,
                    PaymentOrder.updated_at: now,
                }
            else:
                target = ORDER_FAILED
                values = {PaymentOrder.status: ORDER_FAILED, PaymentOrder.updated_at: now}

            try:
                updated = (
                    self.db.query(PaymentOrder)
                    .filter(
                        PaymentOrder.id == order.id,
                        PaymentOrder.status == ORDER_PENDING,
                        PaymentOrder.expires_at >= now,
                    )
                    .update(values, synchronize_session=False)
                )
            except IntegrityError as exc:
                raise ReplayDetected(f"trade_no {trade_no} already settled another order") from exc
            if not updated:
                self.db.refresh(order)
                if order.status != ORDER_PENDING:
                    raise AlreadyTerminal(f"order {order_no} is {order.status}")
                raise OrderExpired(f"order {order_no} has expired")
            self.db.refresh(order)

            self.audit.log(
                AuditAction.PAYMENT_SUCCESS if target == ORDER_PAID else AuditAction.PAYMENT_FAILED,
                user_id=order.user_id,
                actor="gateway",
                target_type="order",
                target_id=order.order_no,
                old_value={"status": ORDER_PENDING},
                new_value={"status": target, "trade_no": order.trade_no},
                ip_address=ip_address,
                metadata={"amount": order.amount, "product_type": order.product_type},
                defer_to=self.db,
            )

        log_event(logger, "order.callback_applied", order_no=order_no, status=target,
                  trade_no=order.trade_no)
        return order

    def cancel(
        self,
        order_no: str,
        user_id: Optional[int] = None,
        reason: str = "",
        actor: Optional[str] = None,
    ) -> PaymentOrder:
        now = self.clock()
        with atomic(self.db):
            order = self.get(order_no)
            if user_id is not None and order.user_id != user_id:
                raise OrderNotFound(f"order {order_no} not found")
            self._transition(order, ORDER_PENDING, {
                PaymentOrder.status: ORDER_CANCELLED,
                PaymentOrder.updated_at: now,
            })
            self.audit.log(
                AuditAction.ORDER_CANCELLED,
                user_id=order.user_id,
                actor=actor or (f"user:{user_id}" if user_id is not None else "system"),
                target_type="order",
                target_id=order.order_no,
                old_value={"status": ORDER_PENDING},
                new_value={"status": ORDER_CANCELLED},
                metadata={"reason": reason or ""},
                defer_to=self.db,
            )
        log_event(logger, "order.cancel", order_no=order_no, reason=reason or "-")
        return order

    def mark_refunded(self, order_no: str, reason: str = "", actor: str = "admin") -> PaymentOrder:
        now = self.clock()
        with atomic(self.db):
            order = self.get(order_no)
            self._transition(order, ORDER_PAID, {
                PaymentOrder.status: ORDER_REFUNDED,
                PaymentOrder.updated_at: now,
            })
            self.audit.log(
                AuditAction.ORDER_REFUNDED,
                user_id=order.user_id,
                actor=actor,
                target_type="order",
                target_id=order.order_no,
                old_value={"status": ORDER_PAID},
                new_value={"status": ORDER_REFUNDED},
                metadata={"reason": reason or "", "amount": order.amount},
                defer_to=self.db,
            )
        log_event(logger, "order.refund", order_no=order_no, reason=reason or "-")
        return order

    def _transition(self, order: PaymentOrder, expected: str, values: dict) -> None:
        target = values[PaymentOrder.status]
        if not can_transition(order.status, target):
            raise AlreadyTerminal(f"order {order.order_no} cannot move {order.status} -> {target}")
        updated = (
            self.db.query(PaymentOrder)
            .filter(PaymentOrder.id == order.id, PaymentOrder.status == expected)
            .update(values, synchronize_session=False)
        )
        if not updated:
            self.db.refresh(order)
            raise AlreadyTerminal(f"order {order.order_no} is {order.status}")
        self.db.refresh(order)

    def expire_stale_orders(self, now: Optional[datetime] = None) -> int:
        """Expire every pending order past its deadline. Safe to re-run."""
        now = now or self.clock()
        expired = 0
        with atomic(self.db):
            candidates = (
                self.db.query(PaymentOrder.id, PaymentOrder.order_no, PaymentOrder.user_id)
                .filter(PaymentOrder.status == ORDER_PENDING, PaymentOrder.expires_at < now)
                .all()
            )
            for order_id, order_no, user_id in candidates:
                # Only the sweep that flips the row audits it.
                updated = (
                    self.db.query(PaymentOrder)
                    .filter(PaymentOrder.id == order_id, PaymentOrder.status == ORDER_PENDING)
                    .update({PaymentOrder.status: ORDER_EXPIRED, PaymentOrder.updated_at: now},
                            synchronize_session=False)
                )
                if updated:
                    expired += 1
                    self.audit.log(
                        AuditAction.ORDER_EXPIRED,
                        user_id=user_id,
                        target_type="order",
                        target_id=order_no,
                        old_value={"status": ORDER_PENDING},
                        new_value={"status": ORDER_EXPIRED},
                        defer_to=self.db,
                    )
        if expired:
            log_event(logger, "order.expire_sweep", expired=expired)
        return expired

    # ─── Queries ─────────────────────────────────────────────────────

    def get(self, order_no: str) -> PaymentOrder:
        if not validate_order_no(order_no):
            raise OrderNotFound(f"order {order_no} not found")
        order = (
            self.db.query(PaymentOrder)
            .filter(PaymentOrder.order_no == order_no.strip())
            .populate_existing()
            .first()
        )
        if order is None:
            raise OrderNotFound(f"order {order_no} not found")
        return order

    def list_for_user(
        self,
        user_id: int,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[PaymentOrder]:
        query = self.db.query(PaymentOrder).filter(PaymentOrder.user_id == user_id)
        if status:
            query = query.filter(PaymentOrder.status == status)
        return query.order_by(PaymentOrder.id.desc()).offset(offset).limit(limit).all()
