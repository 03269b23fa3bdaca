from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.security import CurrentUser, get_current_user
from app.models.user import User
from app.schemas.billing import CreditsResponse, PurchaseResponse
from app.schemas.team import TeamSummaryResponse
from app.services.credits_engine import get_personal_balance
from app.services.purchases import list_purchases_for_user
from app.services.teams import list_teams_for_user


router = APIRouter(dependencies=[Depends(get_current_user)])


class MeResponse(BaseModel):
    id: str
    email: str
    role: str
    name: str | None = None
    credits_balance: int
    teams: list[TeamSummaryResponse]


@router.get("/me", response_model=MeResponse)
def me(db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    user = db.query(User).filter(User.id == current_user.id).first()
    teams = [
        TeamSummaryResponse(
            team_id=s.team_id,
            name=s.name,
            role=s.role,
            wallet=s.wallet,
            allocated=s.allocated,
            used=s.used,
            remaining=s.remaining,
        )
        for s in list_teams_for_user(db, current_user.id)
    ]
    return MeResponse(
        id=current_user.id,
        email=current_user.email,
        role=current_user.role,
        name=(user.name if user else None),
        credits_balance=get_personal_balance(db, current_user.id),
        teams=teams,
    )


@router.get("/credits", response_model=CreditsResponse)
def my_credits(db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    purchases = list_purchases_for_user(db, current_user.id)
    return CreditsResponse(
        balance=get_personal_balance(db, current_user.id),
        purchases=[PurchaseResponse.model_validate(p) for p in purchases],
    )
