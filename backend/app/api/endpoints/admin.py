from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.security import CurrentUser, require_admin
from app.models.credit_ledger import CreditLedger
from app.models.purchase import CreditPurchase, PurchaseStatus
from app.schemas.billing import CompensatingGrantRequest, PurchaseResponse, ReconcileResponse, TopUpResponse
from app.services.credits_engine import topup_personal, topup_team_wallet
from app.services.purchases import reconcile_pending_purchases


router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/admin/credits/grant", response_model=TopUpResponse)
def compensating_grant(
    body: CompensatingGrantRequest,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
):
    if bool(body.user_id) == bool(body.team_id):
        raise HTTPException(status_code=400, detail="Provide exactly one of user_id or team_id")
    ref = (body.reference or "").strip()
    reference = f"admin_grant:{ref}" if ref else None
    if body.team_id:
        result = topup_team_wallet(db, body.team_id, body.amount, reference, source="admin_grant", actor_id=admin.id)
    else:
        result = topup_personal(db, body.user_id, body.amount, reference, source="admin_grant", actor_id=admin.id)
    return TopUpResponse(applied=result.applied, reference=result.reference, amount=result.amount, code=result.code)


@router.get("/admin/purchases/pending", response_model=list[PurchaseResponse])
def pending_purchases(db: Session = Depends(get_db)):
    return (
        db.query(CreditPurchase)
        .filter(CreditPurchase.status == PurchaseStatus.PENDING.value)
        .order_by(CreditPurchase.created_at.asc())
        .limit(200)
        .all()
    )


@router.post("/admin/purchases/reconcile", response_model=ReconcileResponse)
def reconcile(db: Session = Depends(get_db)):
    summary = reconcile_pending_purchases(db)
    return ReconcileResponse(
        completed=summary.completed,
        expired=summary.expired,
        pending=summary.pending,
        errors=summary.errors,
    )


@router.get("/admin/ledger")
def ledger_entries(
    user_id: str | None = None,
    team_id: str | None = None,
    limit: int = 100,
    db: Session = Depends(get_db),
) -> dict:
    q = db.query(CreditLedger)
    if user_id:
        q = q.filter(CreditLedger.user_id == user_id)
    if team_id:
        q = q.filter(CreditLedger.team_id == team_id)
    rows = q.order_by(CreditLedger.id.desc()).limit(max(1, min(int(limit), 500))).all()
    return {
        "entries": [
            {
                "id": e.id,
                "account_kind": e.account_kind,
                "event_type": e.event_type,
                "delta": e.delta,
                "user_id": e.user_id,
                "team_id": e.team_id,
                "membership_id": e.membership_id,
                "actor_id": e.actor_id,
                "source": e.source,
                "reference": e.reference,
                "created_at": e.created_at.isoformat() if e.created_at else None,
            }
            for e in rows
        ]
    }
