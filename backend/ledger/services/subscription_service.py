"""
Subscription Engine — activation, renewal, upgrade, cancellation and expiry.

A user holds at most one ``active`` subscription (partial unique index).
Renewals and upgrades are compare-and-swap updates on the row that was read,
so two settlements racing on the same user cannot both extend from the same
``end_date``: the loser gets ``ConcurrentModification`` and the gateway
retries.
"""
import calendar
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger.config import Settings, get_settings
from ledger.database import atomic
from ledger.exceptions import ConcurrentModification, SubscriptionNotFound
from ledger.models.subscription import Subscription, SUB_ACTIVE, SUB_EXPIRED
from ledger.services.audit_service import AuditService
from ledger.services.risk_engine import AuditAction
from ledger.services.tier_service import TierCatalog, TierInfo
from ledger.utils.clock import utcnow
from ledger.utils.logger import get_logger, log_event
from ledger.utils.validators import validate_period

logger = get_logger(__name__)

PERIOD_MONTHS = {"monthly": 1, "quarterly": 3, "yearly": 12}


def add_months(dt: datetime, months: int) -> datetime:
    """Calendar-month addition; the day is clamped to the target month's end."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def add_period(base: datetime, period: str) -> datetime:
    return add_months(base, PERIOD_MONTHS[validate_period(period)])


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _snapshot(sub: Subscription) -> dict:
    return {
        "tier_id": sub.tier_id,
        "period": sub.period,
        "status": sub.status,
        "start_date": _iso(sub.start_date),
        "end_date": _iso(sub.end_date),
        "auto_renew": bool(sub.auto_renew),
    }


class SubscriptionService:
    def __init__(
        self,
        db: Session,
        catalog: Optional[TierCatalog] = None,
        audit: Optional[AuditService] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.catalog = catalog or TierCatalog.load(db)
        self.audit = audit or AuditService()
        self.settings = settings or get_settings()
        self.clock = clock

    def _notify_at(self, end_date: datetime) -> datetime:
        return end_date - timedelta(days=self.settings.RENEWAL_NOTICE_DAYS)

    def _active_row(self, user_id: int) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status == SUB_ACTIVE)
            .first()
        )

    # ─── Activation / renewal / upgrade ──────────────────────────────

    def create_or_activate(
        self,
        user_id: int,
        tier_id: int,
        period: str,
        order_no: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Grant ``period`` of ``tier_id`` to the user.

        No active row: a new subscription starting now.
        Active row of the same or a higher rank: renewal, extended from its
        current end date (the existing tier is kept).
        Active row of a lower rank: upgrade, restarting now; the unused
        lower-tier time is forfeited.
        """
        period = validate_period(period)
        tier = self.catalog.require(tier_id)
        now = now or self.clock()

        with atomic(self.db):
            self._expire_user_stale(user_id, now)
            existing = self._active_row(user_id)

            if existing is None:
                sub = self._insert(user_id, tier, period, now, order_no)
                action, old = AuditAction.SUBSCRIPTION_ACTIVATED, None
            elif tier.rank > self.catalog.rank(existing.tier_id):
                old = _snapshot(existing)
                end = add_period(now, period)
                sub = self._swap(existing, {
                    Subscription.tier_id: tier.id,
                    Subscription.period: period,
                    Subscription.start_date: now,
                    Subscription.end_date: end,
                    Subscription.auto_renew: True,
                    Subscription.cancelled_at: None,
                    Subscription.cancel_reason: None,
                    Subscription.next_notify_at: self._notify_at(end),
                    Subscription.order_no: order_no,
                })
                action = AuditAction.SUBSCRIPTION_UPGRADED
            else:
                old = _snapshot(existing)
                end = add_period(existing.end_date, period)
                # Paying for another period turns auto-renewal back on.
                sub = self._swap(existing, {
                    Subscription.period: period,
                    Subscription.end_date: end,
                    Subscription.auto_renew: True,
                    Subscription.cancelled_at: None,
                    Subscription.cancel_reason: None,
                    Subscription.next_notify_at: self._notify_at(end),
                    Subscription.order_no: order_no,
                })
                action = AuditAction.SUBSCRIPTION_RENEWED

            self.audit.log(
                action,
                user_id=user_id,
                target_type="subscription",
                target_id=sub.id,
                old_value=old,
                new_value=_snapshot(sub),
                metadata={"order_no": order_no, "requested_tier": tier.name, "period": period},
                defer_to=self.db,
            )

        log_event(logger, "subscription.grant", user_id=user_id, action=action,
                  tier_id=sub.tier_id, end_date=_iso(sub.end_date), order_no=order_no)
        return sub

    def _insert(self, user_id, tier: TierInfo, period, now, order_no) -> Subscription:
        end = add_period(now, period)
        sub = Subscription(
            user_id=user_id,
            tier_id=tier.id,
            period=period,
            status=SUB_ACTIVE,
            start_date=now,
            end_date=end,
            auto_renew=True,
            next_notify_at=self._notify_at(end),
            order_no=order_no,
        )
        self.db.add(sub)
        try:
            self.db.flush()
        except IntegrityError as exc:
            # Another settlement activated a subscription for this user first.
            raise ConcurrentModification(f"user {user_id} already has an active subscription") from exc
        return sub

    def _swap(self, existing: Subscription, values: dict) -> Subscription:
        updated = (
            self.db.query(Subscription)
            .filter(
                Subscription.id == existing.id,
                Subscription.status == SUB_ACTIVE,
                Subscription.tier_id == existing.tier_id,
                Subscription.end_date == existing.end_date,
            )
            .update(values, synchronize_session=False)
        )
        if not updated:
            raise ConcurrentModification(f"subscription {existing.id} changed concurrently")
        self.db.refresh(existing)
        return existing

    def _expire_user_stale(self, user_id: int, now: datetime) -> int:
        return self._expire_lapsed(now, Subscription.user_id == user_id)

    def _expire_lapsed(self, now: datetime, *criteria) -> int:
        """Expire lapsed active rows one at a time; only the sweep that flips a row audits it."""
        expired = 0
        candidates = (
            self.db.query(Subscription.id, Subscription.user_id, Subscription.end_date)
            .filter(Subscription.status == SUB_ACTIVE, Subscription.end_date < now, *criteria)
            .all()
        )
        for sub_id, user_id, end_date in candidates:
            updated = (
                self.db.query(Subscription)
                .filter(
                    Subscription.id == sub_id,
                    Subscription.status == SUB_ACTIVE,
                    Subscription.end_date < now,
                )
                .update({Subscription.status: SUB_EXPIRED}, synchronize_session=False)
            )
            if updated:
                expired += 1
                self.audit.log(
                    AuditAction.SUBSCRIPTION_EXPIRED,
                    user_id=user_id,
                    target_type="subscription",
                    target_id=sub_id,
                    old_value={"status": SUB_ACTIVE},
                    new_value={"status": SUB_EXPIRED, "end_date": _iso(end_date)},
                    defer_to=self.db,
                )
        return expired

    # ─── Cancel / resume ─────────────────────────────────────────────

    def cancel(self, user_id: int, reason: str = "", actor: Optional[str] = None) -> Subscription:
        """Stop auto-renewal; the paid period keeps running until ``end_date``."""
        now = self.clock()
        with atomic(self.db):
            sub = self._active_row(user_id)
            if sub is None or sub.end_date < now:
                raise SubscriptionNotFound(f"user {user_id} has no active subscription")
            old = _snapshot(sub)
            updated = (
                self.db.query(Subscription)
                .filter(Subscription.id == sub.id, Subscription.status == SUB_ACTIVE)
                .update({
                    Subscription.auto_renew: False,
                    Subscription.cancelled_at: now,
                    Subscription.cancel_reason: (reason or "")[:256] or None,
                }, synchronize_session=False)
            )
            if not updated:
                raise SubscriptionNotFound(f"user {user_id} has no active subscription")
            self.db.refresh(sub)
            self.audit.log(
                AuditAction.SUBSCRIPTION_CANCELLED,
                user_id=user_id,
                actor=actor or f"user:{user_id}",
                target_type="subscription",
                target_id=sub.id,
                old_value=old,
                new_value=_snapshot(sub),
                metadata={"reason": reason or ""},
                defer_to=self.db,
            )
        return sub

    def resume(self, user_id: int) -> Subscription:
        now = self.clock()
        with atomic(self.db):
            sub = self._active_row(user_id)
            if sub is None or sub.end_date < now:
                raise SubscriptionNotFound(f"user {user_id} has no active subscription")
            old = _snapshot(sub)
            (
                self.db.query(Subscription)
                .filter(Subscription.id == sub.id, Subscription.status == SUB_ACTIVE)
                .update({
                    Subscription.auto_renew: True,
                    Subscription.cancelled_at: None,
                    Subscription.cancel_reason: None,
                }, synchronize_session=False)
            )
            self.db.refresh(sub)
            self.audit.log(
                AuditAction.SUBSCRIPTION_RESUMED,
                user_id=user_id,
                actor=f"user:{user_id}",
                target_type="subscription",
                target_id=sub.id,
                old_value=old,
                new_value=_snapshot(sub),
                defer_to=self.db,
            )
        return sub

    # ─── Expiry sweep ────────────────────────────────────────────────

    def expire_due(self, now: Optional[datetime] = None) -> int:
        """Move every lapsed active subscription to ``expired``. Safe to re-run."""
        now = now or self.clock()
        with atomic(self.db):
            expired = self._expire_lapsed(now)
        if expired:
            log_event(logger, "subscription.expire_sweep", expired=expired)
        return expired

    # ─── Entitlement reads ───────────────────────────────────────────

    def current(self, user_id: int, now: Optional[datetime] = None) -> Optional[Subscription]:
        now = now or self.clock()
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.status == SUB_ACTIVE,
                Subscription.end_date >= now,
            )
            .first()
        )

    def current_tier(self, user_id: int, now: Optional[datetime] = None) -> TierInfo:
        """Highest-ranked active and unexpired tier; the free tier otherwise."""
        now = now or self.clock()
        rows = (
            self.db.query(Subscription.tier_id)
            .filter(
                Subscription.user_id == user_id,
                Subscription.status == SUB_ACTIVE,
                Subscription.end_date >= now,
            )
            .all()
        )
        tiers = [self.catalog.get(tier_id) for (tier_id,) in rows]
        tiers = [t for t in tiers if t is not None and t.is_active]
        if not tiers:
            return self.catalog.free
        return max(tiers, key=lambda t: t.rank)

    def has_privilege(self, user_id: int, name: str) -> bool:
        return bool(self.privilege_value(user_id, name, False))

    def privilege_value(self, user_id: int, name: str, default: Any = None) -> Any:
        privileges = self.current_tier(user_id).privileges
        return getattr(privileges, name, default) if name in type(privileges).model_fields else default

    def history(self, user_id: int, limit: int = 20) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.id.desc())
            .limit(limit)
            .all()
        )

    # ─── Renewal notices ─────────────────────────────────────────────

    def due_for_notification(self, now: Optional[datetime] = None) -> List[Subscription]:
        now = now or self.clock()
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SUB_ACTIVE,
                Subscription.next_notify_at.isnot(None),
                Subscription.next_notify_at <= now,
            )
            .order_by(Subscription.next_notify_at.asc())
            .all()
        )

    def mark_notified(self, subscription_id: int) -> bool:
        with atomic(self.db):
            updated = (
                self.db.query(Subscription)
                .filter(Subscription.id == subscription_id, Subscription.next_notify_at.isnot(None))
                .update({Subscription.next_notify_at: None}, synchronize_session=False)
            )
        return bool(updated)
