"""
Payment Callback Processor — gateway confirmations, checked in order:

    1. source IP allow-list (production only)
    2. required fields present
    3. HMAC signature inside the callback window
    4. nonce never seen before (released again when settlement fails retryably)
    5. settlement (order transition + entitlement, one transaction)

Every security rejection is audited immediately; callers only ever see the
generic public message of the raised error.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Mapping, Optional

from sqlalchemy.orm import Session

from ledger.config import Settings, get_settings
from ledger.exceptions import (
    AlreadyTerminal, CallbackForbidden, ConcurrentModification, InvalidInput,
    InvalidSignature, ReplayDetected, SignatureExpired, StoreUnavailable,
)
from ledger.models.order import ORDER_FAILED, ORDER_PAID
from ledger.services.audit_service import AuditService
from ledger.services.entitlement_service import EntitlementOrchestrator
from ledger.services.order_service import OUTCOME_SUCCESS
from ledger.services.replay_guard import NonceRegistry
from ledger.services.risk_engine import AuditAction
from ledger.services.tier_service import TierCatalog
from ledger.utils.clock import utcnow
from ledger.utils.logger import get_logger, log_event
from ledger.utils.signing import SignatureGuard
from ledger.utils.ttl_store import TTLStore, get_ttl_store

logger = get_logger(__name__)

REQUIRED_FIELDS = ("order_no", "trade_no", "amount", "status", "timestamp", "nonce", "sign")


@dataclass
class CallbackResult:
    order_no: str
    status: str
    duplicate: bool = False
    granted: Optional[dict] = field(default=None)


class PaymentCallbackService:
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        store: Optional[TTLStore] = None,
        audit: Optional[AuditService] = None,
        catalog: Optional[TierCatalog] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = audit or AuditService()
        self.guard = SignatureGuard(
            self.settings.callback_secret,
            self.settings.CALLBACK_SIGNATURE_WINDOW_SECONDS,
            clock=clock,
        )
        self.nonces = NonceRegistry(
            store or get_ttl_store(),
            self.settings.NONCE_TTL_SECONDS,
            min_window_seconds=self.settings.CALLBACK_SIGNATURE_WINDOW_SECONDS,
        )
        self.orchestrator = EntitlementOrchestrator(
            db, settings=self.settings, catalog=catalog, audit=self.audit, clock=clock,
        )

    def is_ip_allowed(self, ip: Optional[str]) -> bool:
        if not self.settings.is_production:
            return True
        allowed = [part.strip() for part in self.settings.PAYMENT_CALLBACK_IPS.split(",") if part.strip()]
        if not allowed:
            logger.warning("PAYMENT_CALLBACK_IPS is empty; accepting callback from %s", ip)
            return True
        return ip in allowed

    def process(self, params: Mapping[str, object], client_ip: Optional[str] = None,
                internal: bool = False) -> CallbackResult:
        """Verify and settle one callback.

        Args:
            params: Raw callback fields (form or JSON body).
            client_ip: Source address, checked against the allow-list.
            internal: Set by the in-process mock gateway; skips the IP check only.
        """
        params = {str(k): "" if v is None else str(v).strip() for k, v in params.items()}
        order_no = params.get("order_no", "")

        if not internal and not self.is_ip_allowed(client_ip):
            self._reject(AuditAction.CALLBACK_IP_REJECTED, order_no, client_ip, "ip not allowed")
            raise CallbackForbidden(f"callback from {client_ip} is not allowed")

        missing = [name for name in REQUIRED_FIELDS if not params.get(name)]
        if missing:
            raise InvalidInput(f"callback missing fields: {', '.join(missing)}")

        try:
            self.guard.verify_callback(params)
        except SignatureExpired:
            self._reject(AuditAction.SIGNATURE_EXPIRED, order_no, client_ip, "timestamp outside window")
            raise
        except InvalidSignature:
            self._reject(AuditAction.SIGNATURE_INVALID, order_no, client_ip, "signature mismatch")
            raise

        try:
            self.nonces.consume(params["nonce"], scope="callback")
        except ReplayDetected:
            self._reject(AuditAction.REPLAY_DETECTED, order_no, client_ip, "nonce reused")
            raise

        try:
            settlement = self.orchestrator.settle(
                order_no, params["trade_no"], params["amount"], params["status"], ip_address=client_ip,
            )
        except AlreadyTerminal:
            duplicate = self._as_duplicate(params)
            if duplicate is None:
                raise
            return duplicate
        except (StoreUnavailable, ConcurrentModification):
            # Nothing was settled; let the gateway retry with the same nonce.
            self.nonces.release(params["nonce"], scope="callback")
            log_event(logger, "callback.settle_failed", level=logging.WARNING, order_no=order_no)
            raise

        return CallbackResult(order_no=order_no, status=settlement.order.status, granted=settlement.granted)

    def _as_duplicate(self, params: Mapping[str, str]) -> Optional[CallbackResult]:
        """A gateway retry for an order already in the outcome it reports is a no-op."""
        order = self.orchestrator.orders.get(params["order_no"])
        target = ORDER_PAID if params["status"].lower() == OUTCOME_SUCCESS else ORDER_FAILED
        if order.status != target:
            return None
        if target == ORDER_PAID and order.trade_no != params["trade_no"]:
            return None
        log_event(logger, "callback.duplicate", order_no=order.order_no, status=order.status)
        return CallbackResult(order_no=order.order_no, status=order.status, duplicate=True)

    def _reject(self, action: str, order_no: str, client_ip: Optional[str], reason: str) -> None:
        log_event(logger, "callback.rejected", level=logging.WARNING,
                  action=action, order_no=order_no or "-", ip=client_ip or "-")
        self.audit.log(
            action,
            actor="gateway",
            target_type="order",
            target_id=order_no or None,
            ip_address=client_ip,
            metadata={"reason": reason},
        )
