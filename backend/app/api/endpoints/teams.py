from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.security import CurrentUser, get_current_user
from app.schemas.team import (
    AllocateRequest,
    InviteCreate,
    InviteResponse,
    MemberCreditsResponse,
    MemberResponse,
    MyTeamCreditsResponse,
    ReinviteRequest,
    RemovalResponse,
    RoleChangeRequest,
    TeamCreate,
    TeamListResponse,
    TeamResponse,
    TeamSummaryResponse,
    WalletResponse,
    WalletTransferRequest,
)
from app.services import credits_engine, invitations, teams
from app.services.team_roles import TeamRole, get_membership, get_team, resolve_role


router = APIRouter(dependencies=[Depends(get_current_user)])


def _member_out(m) -> MemberResponse:
    return MemberResponse(
        user_id=m.user_id,
        role=m.role,
        status=m.status,
        allocated=int(m.allocated or 0),
        used=int(m.used or 0),
        remaining=m.remaining,
        joined_at=m.joined_at,
    )


@router.post("/teams", response_model=TeamResponse)
def create_team(body: TeamCreate, db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    return teams.create_team(db, current_user.id, body.name, body.description)


@router.get("/teams", response_model=TeamListResponse)
def list_my_teams(db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    summaries = teams.list_teams_for_user(db, current_user.id)
    return TeamListResponse(
        teams=[
            TeamSummaryResponse(
                team_id=s.team_id,
                name=s.name,
                role=s.role,
                wallet=s.wallet,
                allocated=s.allocated,
                used=s.used,
                remaining=s.remaining,
            )
            for s in summaries
        ]
    )


@router.delete("/teams/{team_id}", response_model=TeamResponse)
def delete_team(team_id: str, db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    return teams.delete_team(db, team_id, current_user.id)


@router.get("/teams/{team_id}/credits", response_model=MyTeamCreditsResponse)
def my_team_credits(team_id: str, db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    team = get_team(db, team_id)
    role = resolve_role(db, team, current_user.id)
    if role == TeamRole.OWNER:
        return MyTeamCreditsResponse(team_id=team.id, role=role.value, wallet=int(team.wallet or 0))
    m = get_membership(db, team.id, current_user.id)
    return MyTeamCreditsResponse(
        team_id=team.id,
        role=role.value,
        wallet=int(team.wallet or 0) if role == TeamRole.ADMIN else None,
        allocated=int(m.allocated or 0),
        used=int(m.used or 0),
        remaining=m.remaining,
    )


@router.get("/teams/{team_id}/members", response_model=list[MemberResponse])
def list_members(team_id: str, db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    return [_member_out(m) for m in teams.list_members(db, team_id, current_user.id)]


@router.delete("/teams/{team_id}/members/{user_id}", response_model=RemovalResponse)
def remove_member(
    team_id: str,
    user_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    reclaimed = teams.remove_member(db, team_id, current_user.id, user_id)
    return RemovalResponse(team_id=team_id, user_id=user_id, reclaimed=reclaimed)


@router.post("/teams/{team_id}/leave", response_model=RemovalResponse)
def leave_team(team_id: str, db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    reclaimed = teams.leave_team(db, team_id, current_user.id)
    return RemovalResponse(team_id=team_id, user_id=current_user.id, reclaimed=reclaimed)


@router.patch("/teams/{team_id}/members/{user_id}/role", response_model=MemberResponse)
def change_member_role(
    team_id: str,
    user_id: str,
    body: RoleChangeRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    return _member_out(teams.change_member_role(db, team_id, current_user.id, user_id, body.role))


@router.post("/teams/{team_id}/allocations", response_model=MemberCreditsResponse)
def allocate_credits(
    team_id: str,
    body: AllocateRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    mc = credits_engine.allocate_to_member(db, current_user.id, team_id, body.user_id, body.amount)
    return MemberCreditsResponse(
        team_id=mc.team_id,
        user_id=mc.user_id,
        role=mc.role,
        allocated=mc.allocated,
        used=mc.used,
        remaining=mc.remaining,
    )


@router.post("/teams/{team_id}/wallet/transfer", response_model=WalletResponse)
def transfer_to_wallet(
    team_id: str,
    body: WalletTransferRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    result = credits_engine.transfer_personal_to_team(db, current_user.id, team_id, body.amount)
    return WalletResponse(team_id=team_id, wallet=result.wallet, balance=result.balance)


@router.get("/teams/{team_id}/invites", response_model=list[InviteResponse])
def list_invites(team_id: str, db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    return invitations.list_invitations(db, team_id, current_user.id)


@router.post("/teams/{team_id}/invites", response_model=InviteResponse)
def invite_member(
    team_id: str,
    body: InviteCreate,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    return invitations.issue_invitation(db, current_user.id, team_id, body.email, body.role)


@router.post("/teams/{team_id}/invites/resend", response_model=InviteResponse)
def resend_invite(
    team_id: str,
    body: ReinviteRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    return invitations.reinvite(db, current_user.id, team_id, body.email)
