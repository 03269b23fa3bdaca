from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.security import create_access_token
from app.models.user import User
from app.schemas.billing import ProductResponse
from app.schemas.team import AcceptInviteRequest, AcceptInviteResponse
from app.services.invitations import accept_invitation
from app.services.purchases import PRODUCT_CATALOG


router = APIRouter()


@router.get("/billing/products", response_model=list[ProductResponse])
def list_products():
    return [
        ProductResponse(
            key=p.key,
            name=p.name,
            credits=p.credits,
            price_usd=p.price_usd,
            subscription=p.subscription,
            per_unit=p.per_unit,
        )
        for p in PRODUCT_CATALOG.values()
    ]


@router.post("/teams/invites/accept", response_model=AcceptInviteResponse)
def accept_invite(body: AcceptInviteRequest, db: Session = Depends(get_db)):
    result = accept_invitation(db, body.token, name=body.name, password=body.password)
    access_token = None
    # Only a signup through the invite gets a session; existing users log in normally.
    if result.user_id and body.password and not result.already_accepted:
        user = db.query(User).filter(User.id == result.user_id).first()
        if user is not None:
            access_token = create_access_token(user.id, user.email)
    return AcceptInviteResponse(
        requires_signup=result.requires_signup,
        email=result.email,
        team_id=result.team_id,
        role=result.role,
        user_id=result.user_id,
        already_accepted=result.already_accepted,
        access_token=access_token,
    )
