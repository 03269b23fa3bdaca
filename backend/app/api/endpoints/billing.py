from __future__ import annotations

import json

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.database import get_db
from app.core.security import CurrentUser, get_current_user
from app.schemas.billing import CheckoutSessionRequest, CheckoutSessionResponse
from app.services import lemonsqueezy, purchases


router = APIRouter()


@router.post("/billing/checkout/session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    body: CheckoutSessionRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    result = purchases.start_checkout(
        db,
        user_id=current_user.id,
        email=(current_user.email or None),
        product_key=body.product_key,
        quantity=body.quantity,
        team_id=body.team_id,
    )
    return CheckoutSessionResponse(
        url=result.url,
        product_key=result.product_key,
        credits=result.credits,
        reference=result.reference,
    )


@router.post("/billing/webhook")
async def lemonsqueezy_webhook(request: Request, db: Session = Depends(get_db)) -> dict:
    raw_body = await request.body()
    if not lemonsqueezy.verify_webhook_signature(raw_body, request.headers.get("x-signature")):
        raise HTTPException(status_code=400, detail="Invalid signature")
    try:
        payload = json.loads(raw_body or b"{}") or {}
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    event_name = (request.headers.get("x-event-name") or "") or str((payload.get("meta") or {}).get("event_name") or "")
    outcome = await run_in_threadpool(purchases.handle_webhook_event, db, event_name.strip(), payload)
    return {"received": True, "outcome": outcome}
