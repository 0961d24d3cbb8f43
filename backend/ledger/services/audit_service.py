"""
Audit Service — Manages the immutable, hash-chained audit trail.

Audit writes are best-effort: they run in their own session so a failed
insert can never roll back (or block) the business transaction, and errors
are logged and swallowed. Entries recorded from inside an ``atomic`` block
are written only once that block commits.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledger.database import SessionLocal, on_commit
from ledger.models.audit import AuditLog
from ledger.services.risk_engine import RiskEngine
from ledger.utils.clock import utcnow
from ledger.utils.hashing import generate_chain_hash
from ledger.utils.logger import get_logger, log_event

logger = get_logger(__name__)


class AuditService:
    """Creates tamper-evident audit log entries with per-user hash chaining."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def log(
        self,
        action: str,
        user_id: Optional[int] = None,
        actor: str = "system",
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        old_value: Any = None,
        new_value: Any = None,
        risk_level: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict] = None,
        defer_to: Optional[Session] = None,
    ) -> None:
        """Record an audit entry.

        Args:
            action: Action kind (see ``AuditAction``).
            user_id: User the entry concerns; also selects the hash chain.
            actor: Who caused it (``user:<id>``, ``gateway``, ``admin``, ``system``).
            old_value / new_value: Before/after snapshots where applicable.
            risk_level: Overrides the fixed classification when given.
            defer_to: Business session; when inside ``atomic`` the write waits
                for its commit and is dropped on rollback.
        """
        entry = {
            "user_id": user_id,
            "actor": actor,
            "action": action,
            "target_type": target_type,
            "target_id": None if target_id is None else str(target_id),
            "old_value": old_value,
            "new_value": new_value,
            "risk_level": risk_level or RiskEngine.classify(action),
            "ip_address": ip_address,
            "user_agent": (user_agent or "")[:256] or None,
            "log_metadata": metadata or {},
        }
        if defer_to is not None:
            on_commit(defer_to, lambda: self._write(entry))
        else:
            self._write(entry)

    def _write(self, entry: Dict) -> Optional[AuditLog]:
        db = None
        try:
            db = self._session_factory()
            last_entry = (
                db.query(AuditLog)
                .filter(AuditLog.user_id.is_(None) if entry["user_id"] is None
                        else AuditLog.user_id == entry["user_id"])
                .order_by(AuditLog.id.desc())
                .first()
            )
            previous_hash = last_entry.payload_hash if last_entry else ""
            timestamp = utcnow()

            record = AuditLog(
                **entry,
                previous_hash=previous_hash,
                payload_hash=generate_chain_hash({**entry, "timestamp": timestamp.isoformat()}, previous_hash),
                timestamp=timestamp,
            )
            db.add(record)
            db.commit()
            if RiskEngine.requires_review(entry["risk_level"]):
                log_event(logger, "audit.review_required", level=logging.WARNING,
                          action=entry["action"], user_id=entry["user_id"], target_id=entry["target_id"])
            return record
        except SQLAlchemyError:
            logger.exception("audit write failed | action=%s | user_id=%s", entry["action"], entry["user_id"])
            if db is not None:
                db.rollback()
            return None
        finally:
            if db is not None:
                db.close()

    # ─── Queries ─────────────────────────────────────────────────────

    @staticmethod
    def get_trail(db: Session, user_id: Optional[int], limit: int = 50, offset: int = 0) -> List[AuditLog]:
        """Audit trail for a user, newest first."""
        query = db.query(AuditLog)
        query = query.filter(AuditLog.user_id.is_(None) if user_id is None else AuditLog.user_id == user_id)
        return query.order_by(AuditLog.id.desc()).offset(offset).limit(limit).all()

    @staticmethod
    def get_high_risk(db: Session, limit: int = 100) -> List[AuditLog]:
        return (
            db.query(AuditLog)
            .filter(AuditLog.risk_level == "high")
            .order_by(AuditLog.id.desc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def verify_chain(db: Session, user_id: Optional[int]) -> dict:
        """Verify the integrity of the audit chain for a user.

        Returns:
            dict with 'valid' (bool), 'total_entries', and 'broken_at' (if invalid).
        """
        query = db.query(AuditLog)
        query = query.filter(AuditLog.user_id.is_(None) if user_id is None else AuditLog.user_id == user_id)
        entries = query.order_by(AuditLog.id.asc()).all()

        if not entries:
            return {"valid": True, "total_entries": 0, "broken_at": None}

        for i, entry in enumerate(entries):
            expected_prev = entries[i - 1].payload_hash if i > 0 else ""
            recomputed = generate_chain_hash(
                {
                    "user_id": entry.user_id,
                    "actor": entry.actor,
                    "action": entry.action,
                    "target_type": entry.target_type,
                    "target_id": entry.target_id,
                    "old_value": entry.old_value,
                    "new_value": entry.new_value,
                    "risk_level": entry.risk_level,
                    "ip_address": entry.ip_address,
                    "user_agent": entry.user_agent,
                    "log_metadata": entry.log_metadata or {},
                    "timestamp": entry.timestamp.isoformat(),
                },
                entry.previous_hash or "",
            )
            if entry.previous_hash != expected_prev or entry.payload_hash != recomputed:
                return {
                    "valid": False,
                    "total_entries": len(entries),
                    "broken_at": entry.id,
                    "message": f"Chain broken at entry {entry.id} ({entry.action})",
                }

        return {"valid": True, "total_entries": len(entries), "broken_at": None}
