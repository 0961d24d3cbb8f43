"""
Points Ledger — the only writer of user balances.

Every balance change is a single conditional UPDATE plus one appended
``PointsTransaction`` row in the same transaction. Debits carry the
``points >= amount`` guard in the WHERE clause, so two concurrent debits can
never drive a balance negative no matter how requests interleave.
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterator, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger.database import atomic
from ledger.exceptions import AlreadyClaimed, InsufficientBalance, InvalidInput, UserNotFound
from ledger.models.points import DailyClaim, PointsTransaction, TX_EARN, TX_GIFT, TX_REFUND, TX_SPEND
from ledger.models.user import User
from ledger.services.audit_service import AuditService
from ledger.services.risk_engine import AuditAction
from ledger.utils.clock import utcnow
from ledger.utils.logger import get_logger, log_event
from ledger.utils.validators import require_positive_int

logger = get_logger(__name__)


@dataclass(frozen=True)
class RechargePackage:
    id: str
    coins: int
    bonus: int
    price: int          # minor units
    label: str

    @property
    def total_coins(self) -> int:
        return self.coins + self.bonus


RECHARGE_PACKAGES = (
    RechargePackage("pkg_6", 60, 0, 600, "6 CNY"),
    RechargePackage("pkg_12", 130, 10, 1200, "12 CNY"),
    RechargePackage("pkg_30", 350, 50, 3000, "30 CNY"),
    RechargePackage("pkg_68", 880, 120, 6800, "68 CNY"),
    RechargePackage("pkg_128", 1680, 300, 12800, "128 CNY"),
    RechargePackage("pkg_328", 4280, 900, 32800, "328 CNY"),
    RechargePackage("pkg_648", 8880, 2000, 64800, "648 CNY"),
)


_CREDIT_ACTIONS = {
    TX_GIFT: AuditAction.POINTS_GIFT,
    TX_REFUND: AuditAction.POINTS_REFUND,
}


def find_package(package_id: str) -> RechargePackage:
    for package in RECHARGE_PACKAGES:
        if package.id == package_id:
            return package
    raise InvalidInput(f"unknown recharge package: {package_id!r}")


class PointsLedger:
    """Credits and debits against one session; composes into outer ``atomic`` blocks."""

    def __init__(self, db: Session, audit: Optional[AuditService] = None):
        self.db = db
        self.audit = audit or AuditService()

    # ─── Mutations ───────────────────────────────────────────────────

    def credit(
        self,
        user_id: int,
        amount: int,
        source: str,
        description: str = "",
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        tx_type: str = TX_EARN,
        operator_id: Optional[int] = None,
    ) -> PointsTransaction:
        require_positive_int(amount)
        with atomic(self.db):
            updated = (
                self.db.query(User)
                .filter(User.id == user_id)
                .update({User.points: User.points + amount}, synchronize_session=False)
            )
            if not updated:
                raise UserNotFound(f"user {user_id} not found")
            tx = self._append(user_id, amount, tx_type, source, description,
                              reference_type, reference_id, operator_id)
            self._audit_change(tx, _CREDIT_ACTIONS.get(tx_type, AuditAction.POINTS_CREDIT))
        log_event(logger, "points.credit", user_id=user_id, amount=amount, source=source,
                  balance=tx.balance_after)
        return tx

    def debit(
        self,
        user_id: int,
        amount: int,
        source: str,
        description: str = "",
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        tx_type: str = TX_SPEND,
        operator_id: Optional[int] = None,
    ) -> PointsTransaction:
        require_positive_int(amount)
        with atomic(self.db):
            updated = (
                self.db.query(User)
                .filter(User.id == user_id, User.points >= amount)
                .update({User.points: User.points - amount}, synchronize_session=False)
            )
            if not updated:
                if self.db.query(User.id).filter(User.id == user_id).first() is None:
                    raise UserNotFound(f"user {user_id} not found")
                raise InsufficientBalance(f"user {user_id} cannot cover {amount} points")
            tx = self._append(user_id, -amount, tx_type, source, description,
                              reference_type, reference_id, operator_id)
            self._audit_change(tx, AuditAction.POINTS_DEBIT)
        log_event(logger, "points.debit", user_id=user_id, amount=amount, source=source,
                  balance=tx.balance_after)
        return tx

    def refund(self, user_id: int, amount: int, original_reference_id: str,
               description: str = "") -> PointsTransaction:
        return self.credit(
            user_id, amount,
            source="refund",
            description=description or f"Refund for {original_reference_id}",
            reference_type="transaction",
            reference_id=str(original_reference_id),
            tx_type=TX_REFUND,
        )

    def gift(self, user_id: int, amount: int, operator_id: Optional[int], reason: str) -> PointsTransaction:
        if not (reason or "").strip():
            raise InvalidInput("gift reason is required")
        return self.credit(
            user_id, amount,
            source="admin",
            description=reason.strip(),
            tx_type=TX_GIFT,
            operator_id=operator_id,
        )

    def claim_daily_reward(self, user_id: int, base: int, multiplier: float = 1.0,
                           today: Optional[date] = None) -> PointsTransaction:
        """Credit the once-a-day login reward, ``floor(base * multiplier)`` points.

        The ``(user_id, claim_date)`` unique key settles concurrent claims: the
        losing insert fails and nothing is credited for it.
        """
        require_positive_int(base)
        reward = int(base * multiplier)
        if reward <= 0:
            raise InvalidInput(f"daily reward multiplier must be positive, got {multiplier}")
        today = today or utcnow().date()
        with atomic(self.db):
            self.balance(user_id)  # 404 before the claim row can hit a foreign key
            claim = DailyClaim(user_id=user_id, claim_date=today, coins=reward)
            self.db.add(claim)
            try:
                self.db.flush()
            except IntegrityError as exc:
                raise AlreadyClaimed(f"user {user_id} already claimed the reward for {today}") from exc
            tx = self.credit(
                user_id, reward,
                source="daily_login",
                description=f"Daily login reward +{reward}",
                reference_type="daily_claim",
                reference_id=today.isoformat(),
            )
            claim.transaction_id = tx.id
        log_event(logger, "points.daily_reward", user_id=user_id, coins=reward, day=today.isoformat())
        return tx

    def _append(self, user_id, signed_amount, tx_type, source, description,
                reference_type, reference_id, operator_id) -> PointsTransaction:
        # Read back inside the same transaction, after the conditional update.
        balance_after = self.db.query(User.points).filter(User.id == user_id).scalar()
        tx = PointsTransaction(
            user_id=user_id,
            amount=signed_amount,
            type=tx_type,
            source=source,
            reference_type=reference_type,
            reference_id=None if reference_id is None else str(reference_id),
            balance_before=balance_after - signed_amount,
            balance_after=balance_after,
            description=(description or "")[:256],
            operator_id=operator_id,
        )
        self.db.add(tx)
        self.db.flush()
        return tx

    def _audit_change(self, tx: PointsTransaction, action: str) -> None:
        self.audit.log(
            action,
            user_id=tx.user_id,
            actor=f"admin:{tx.operator_id}" if tx.operator_id else "system",
            target_type="points_transaction",
            target_id=tx.id,
            old_value={"balance": tx.balance_before},
            new_value={"balance": tx.balance_after},
            metadata={"amount": tx.amount, "source": tx.source,
                      "reference_type": tx.reference_type, "reference_id": tx.reference_id},
            defer_to=self.db,
        )

    # ─── Queries ─────────────────────────────────────────────────────

    def balance(self, user_id: int) -> int:
        points = self.db.query(User.points).filter(User.id == user_id).scalar()
        if points is None:
            raise UserNotFound(f"user {user_id} not found")
        return points

    def history(self, user_id: int, limit: int = 20, offset: int = 0) -> Iterator[PointsTransaction]:
        """Newest first; rows are streamed rather than loaded in one list."""
        return iter(
            self.db.query(PointsTransaction)
            .filter(PointsTransaction.user_id == user_id)
            .order_by(PointsTransaction.id.desc())
            .offset(offset)
            .limit(limit)
            .yield_per(min(max(limit, 1), 100))
        )

    def iter_history(self, user_id: int, page_size: int = 100) -> Iterator[PointsTransaction]:
        """Walk the whole history newest first, one keyset page at a time.

        Each call starts a fresh walk.
        """
        last_id = None
        while True:
            query = self.db.query(PointsTransaction).filter(PointsTransaction.user_id == user_id)
            if last_id is not None:
                query = query.filter(PointsTransaction.id < last_id)
            page = query.order_by(PointsTransaction.id.desc()).limit(page_size).all()
            if not page:
                return
            yield from page
            last_id = page[-1].id

    def reconcile(self, user_id: int) -> dict:
        """Compare the stored balance with the sum of its transaction amounts."""
        balance = self.balance(user_id)
        ledger_sum = (
            self.db.query(func.coalesce(func.sum(PointsTransaction.amount), 0))
            .filter(PointsTransaction.user_id == user_id)
            .scalar()
        )
        consistent = int(ledger_sum) == balance
        if not consistent:
            log_event(logger, "points.reconcile_mismatch", level=logging.ERROR,
                      user_id=user_id, balance=balance, ledger_sum=ledger_sum)
        return {
            "user_id": user_id,
            "balance": balance,
            "ledger_sum": int(ledger_sum),
            "consistent": consistent,
        }
