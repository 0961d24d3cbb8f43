"""
Sweeper — background expiry of stale orders and lapsed subscriptions.

Each pass is a handful of conditional bulk updates, so overlapping passes
(several workers, or a manual admin sweep) are harmless.
"""
import threading
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ledger.config import get_settings
from ledger.database import SessionLocal
from ledger.services.order_service import OrderService
from ledger.services.subscription_service import SubscriptionService
from ledger.utils.clock import utcnow
from ledger.utils.logger import get_logger, log_event, trace_ctx

logger = get_logger(__name__)

MIN_INTERVAL_SECONDS = 60


def sweep_once(db: Session, now: Optional[datetime] = None) -> dict:
    """Run one pass against ``db``; returns per-step counts."""
    now = now or utcnow()
    orders_expired = OrderService(db).expire_stale_orders(now)
    subscriptions = SubscriptionService(db)
    subscriptions_expired = subscriptions.expire_due(now)

    notices = 0
    for sub in subscriptions.due_for_notification(now):
        # Delivery belongs to the notification service; this only records the hand-off.
        log_event(logger, "subscription.renewal_notice", user_id=sub.user_id,
                  subscription_id=sub.id, end_date=sub.end_date.isoformat(),
                  auto_renew=bool(sub.auto_renew))
        if subscriptions.mark_notified(sub.id):
            notices += 1

    return {
        "orders_expired": orders_expired,
        "subscriptions_expired": subscriptions_expired,
        "renewal_notices": notices,
    }


class SweepWorker:
    """Daemon thread calling ``sweep_once`` every ``interval`` seconds."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 interval: Optional[int] = None):
        configured = interval or get_settings().SWEEP_INTERVAL_SECONDS
        self.interval = max(MIN_INTERVAL_SECONDS, int(configured))
        self._session_factory = session_factory
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_pass(self) -> Optional[dict]:
        with trace_ctx():
            db = self._session_factory()
            try:
                log_event(logger, "sweep.start", interval=self.interval)
                result = sweep_once(db)
                log_event(logger, "sweep.complete", **result)
                return result
            except Exception:
                logger.exception("sweep pass failed")
                return None
            finally:
                db.close()

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_pass()
            self._stop.wait(self.interval)

    def start(self) -> threading.Thread:
        if self._thread is None or not self._thread.is_alive():
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name="ledger-sweeper", daemon=True)
            self._thread.start()
        return self._thread

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
