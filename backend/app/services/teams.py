from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from app.core.database import run_in_transaction
from app.core.errors import ConcurrentUpdate, ForbiddenRoleCombination, LedgerError, NotAMember, NotTeamOwner
from app.models.team import MembershipStatus, Team, TeamMembership
from app.services.credits_engine import apply_reclaim, utcnow
from app.services.team_roles import (
    TeamRole,
    ensure_can_assign,
    ensure_can_remove,
    get_membership,
    get_team,
    parse_role,
    resolve_role,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TeamSummary:
    team_id: str
    name: str
    role: str
    wallet: int | None
    allocated: int | None
    used: int | None

    @property
    def remaining(self) -> int | None:
        if self.allocated is None:
            return None
        return max(self.allocated - (self.used or 0), 0)


def create_team(db: Session, owner_id: str, name: str, description: str | None = None) -> Team:
    name = (name or "").strip()
    if not name:
        raise LedgerError("Team name is required")
    team = Team(name=name, description=(description or "").strip() or None, owner_id=owner_id, wallet=0)

    def work() -> Team:
        db.add(team)
        db.flush()
        return team

    run_in_transaction(db, work)
    db.refresh(team)
    logger.info("teams.create.ok team_id=%s owner_id=%s", team.id, owner_id)
    return team


def list_teams_for_user(db: Session, user_id: str) -> list[TeamSummary]:
    out: list[TeamSummary] = []
    owned = (
        db.query(Team)
        .filter(Team.owner_id == user_id, Team.deleted_at.is_(None))
        .order_by(Team.created_at.asc())
        .all()
    )
    for t in owned:
        out.append(
            TeamSummary(team_id=t.id, name=t.name, role=TeamRole.OWNER.value, wallet=int(t.wallet or 0), allocated=None, used=None)
        )

    rows = (
        db.query(TeamMembership, Team)
        .join(Team, Team.id == TeamMembership.team_id)
        .filter(
            TeamMembership.user_id == user_id,
            TeamMembership.status == MembershipStatus.ACTIVE.value,
            Team.deleted_at.is_(None),
            Team.owner_id != user_id,
        )
        .order_by(TeamMembership.joined_at.asc())
        .all()
    )
    for m, t in rows:
        role = parse_role(m.role)
        out.append(
            TeamSummary(
                team_id=t.id,
                name=t.name,
                role=role.value,
                wallet=int(t.wallet or 0) if role == TeamRole.ADMIN else None,
                allocated=int(m.allocated or 0),
                used=int(m.used or 0),
            )
        )
    return out


def list_members(db: Session, team_id: str, actor_id: str) -> list[TeamMembership]:
    team = get_team(db, team_id)
    resolve_role(db, team, actor_id)
    return (
        db.query(TeamMembership)
        .filter(TeamMembership.team_id == team.id, TeamMembership.status == MembershipStatus.ACTIVE.value)
        .order_by(TeamMembership.joined_at.asc())
        .all()
    )


def activate_membership(db: Session, team: Team, user_id: str, role: TeamRole, *, now: datetime | None = None) -> TeamMembership:
    """Create the membership or bring a removed one back.

    Reactivation keeps ``used`` and sets ``allocated`` to it, so the member
    starts again with nothing spendable. Does not commit.
    """
    now = now or utcnow()
    existing = get_membership(db, team.id, user_id, active_only=False)
    if existing is None:
        membership = TeamMembership(
            team_id=team.id,
            user_id=user_id,
            role=role.value,
            status=MembershipStatus.ACTIVE.value,
            allocated=0,
            used=0,
            joined_at=now,
        )
        db.add(membership)
        db.flush()
        return membership

    if existing.status == MembershipStatus.ACTIVE.value:
        if existing.role != role.value:
            existing.role = role.value
            db.flush()
        return existing

    rows = (
        db.query(TeamMembership)
        .filter(TeamMembership.id == existing.id, TeamMembership.status == MembershipStatus.REMOVED.value)
        .update(
            {
                TeamMembership.status: MembershipStatus.ACTIVE.value,
                TeamMembership.role: role.value,
                TeamMembership.allocated: TeamMembership.used,
                TeamMembership.removed_at: None,
                TeamMembership.joined_at: now,
            },
            synchronize_session=False,
        )
    )
    if rows != 1:
        raise ConcurrentUpdate(f"membership {existing.id} changed during reactivation")
    db.refresh(existing)
    logger.info("teams.membership.reactivated team_id=%s user_id=%s", team.id, user_id)
    return existing


def remove_member(db: Session, team_id: str, actor_id: str, member_user_id: str, *, now: datetime | None = None) -> int:
    """Remove a member (or leave, when actor and member match); returns credits reclaimed."""

    def work() -> int:
        team = get_team(db, team_id)
        if member_user_id == team.owner_id:
            raise ForbiddenRoleCombination("The team owner cannot be removed from the team")
        actor_role = resolve_role(db, team, actor_id)
        membership = get_membership(db, team.id, member_user_id)
        if membership is not None:
            ensure_can_remove(actor_id, actor_role, member_user_id, parse_role(membership.role))
        return apply_reclaim(db, team, member_user_id, actor_id=actor_id, now=now)

    reclaimed = run_in_transaction(db, work)
    logger.info(
        "teams.member.removed team_id=%s member=%s actor=%s reclaimed=%s",
        team_id,
        member_user_id,
        actor_id,
        reclaimed,
    )
    return reclaimed


def leave_team(db: Session, team_id: str, user_id: str, *, now: datetime | None = None) -> int:
    return remove_member(db, team_id, user_id, user_id, now=now)


def change_member_role(db: Session, team_id: str, actor_id: str, member_user_id: str, role: str) -> TeamMembership:
    new_role = parse_role(role)

    def work() -> TeamMembership:
        team = get_team(db, team_id)
        actor_role = resolve_role(db, team, actor_id)
        membership = get_membership(db, team.id, member_user_id)
        if member_user_id == team.owner_id:
            raise ForbiddenRoleCombination("The team owner's role cannot be changed")
        if membership is None:
            raise NotAMember(team_id=team.id, user_id=member_user_id)
        ensure_can_assign(actor_role, parse_role(membership.role))
        ensure_can_assign(actor_role, new_role)
        rows = (
            db.query(TeamMembership)
            .filter(TeamMembership.id == membership.id, TeamMembership.status == MembershipStatus.ACTIVE.value)
            .update({TeamMembership.role: new_role.value}, synchronize_session=False)
        )
        if rows != 1:
            raise ConcurrentUpdate(f"membership {membership.id} changed during role update")
        db.refresh(membership)
        return membership

    membership = run_in_transaction(db, work)
    logger.info("teams.member.role_changed team_id=%s member=%s role=%s", team_id, member_user_id, new_role.value)
    return membership


def delete_team(db: Session, team_id: str, actor_id: str, *, now: datetime | None = None) -> Team:
    now = now or utcnow()

    def work() -> Team:
        team = get_team(db, team_id)
        if team.owner_id != actor_id:
            raise NotTeamOwner("Only the team owner can delete the team")
        rows = (
            db.query(Team)
            .filter(Team.id == team.id, Team.deleted_at.is_(None))
            .update({Team.deleted_at: now}, synchronize_session=False)
        )
        if rows != 1:
            raise ConcurrentUpdate(f"team {team.id} changed during delete")
        db.refresh(team)
        return team

    team = run_in_transaction(db, work)
    logger.info("teams.delete.ok team_id=%s wallet=%s", team.id, team.wallet)
    return team
