"""
Admin Routes — Audit trail access, manual corrections and maintenance sweeps.
All endpoints require the ``X-Admin-Token`` header.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ledger.database import get_db
from ledger.jobs.sweeper import sweep_once
from ledger.routes.deps import require_admin
from ledger.schemas.schemas import AuditEntryResponse, GiftRequest, RefundRequest
from ledger.services.audit_service import AuditService
from ledger.services.entitlement_service import EntitlementOrchestrator
from ledger.services.order_service import order_to_dict
from ledger.services.points_ledger import PointsLedger

router = APIRouter(prefix="/api/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


@router.get("/audit/high-risk", response_model=list[AuditEntryResponse])
def get_high_risk(limit: int = Query(100, ge=1, le=500), db: Session = Depends(get_db)):
    """Most recent high-risk entries across all users."""
    return AuditService.get_high_risk(db, limit=limit)


@router.get("/audit/system", response_model=list[AuditEntryResponse])
def get_system_trail(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """Entries not tied to a user (e.g. rejected callbacks for unknown orders)."""
    return AuditService.get_trail(db, None, limit=limit, offset=offset)


@router.get("/audit/{user_id}", response_model=list[AuditEntryResponse])
def get_audit_trail(
    user_id: int,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """Get the audit trail for a user, newest first."""
    return AuditService.get_trail(db, user_id, limit=limit, offset=offset)


@router.get("/audit/{user_id}/verify")
def verify_audit_chain(user_id: int, db: Session = Depends(get_db)):
    """Verify the integrity of the audit hash chain for a user."""
    return AuditService.verify_chain(db, user_id)


@router.post("/gift")
def gift_points(payload: GiftRequest, db: Session = Depends(get_db)):
    tx = PointsLedger(db).gift(payload.user_id, payload.amount, payload.operator_id, payload.reason)
    return {"success": True, "transactionId": tx.id, "balance": tx.balance_after}


@router.post("/orders/{order_no}/refund")
def refund_order(order_no: str, payload: RefundRequest, db: Session = Depends(get_db)):
    settlement = EntitlementOrchestrator(db).refund_order(order_no, reason=payload.reason)
    return {"success": True, "order": order_to_dict(settlement.order), "reverted": settlement.granted}


@router.post("/sweep")
def run_sweep(db: Session = Depends(get_db)):
    """Run one expiry pass now (same work as the background sweeper)."""
    return {"success": True, **sweep_once(db)}


@router.get("/reconcile/{user_id}")
def reconcile_user(user_id: int, db: Session = Depends(get_db)):
    return {"success": True, **PointsLedger(db).reconcile(user_id)}
