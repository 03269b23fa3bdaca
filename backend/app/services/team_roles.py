from __future__ import annotations

import enum

from sqlalchemy.orm import Session

from app.core.errors import AccountNotFound, ForbiddenRoleCombination, NotAMember, TeamDeleted
from app.models.team import MembershipStatus, Team, TeamMembership


class TeamRole(str, enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    AGENT = "agent"
    PHOTOGRAPHER = "photographer"
    MEMBER = "member"


class AllocationSource(str, enum.Enum):
    TEAM_WALLET = "team_wallet"
    OWN_ALLOCATION = "own_allocation"


ASSIGNABLE_ROLES: dict[TeamRole, frozenset[TeamRole]] = {
    TeamRole.OWNER: frozenset({TeamRole.ADMIN, TeamRole.AGENT, TeamRole.PHOTOGRAPHER, TeamRole.MEMBER}),
    TeamRole.ADMIN: frozenset({TeamRole.AGENT, TeamRole.PHOTOGRAPHER, TeamRole.MEMBER}),
    TeamRole.AGENT: frozenset({TeamRole.PHOTOGRAPHER}),
    TeamRole.PHOTOGRAPHER: frozenset(),
    TeamRole.MEMBER: frozenset(),
}


def parse_role(value: str | TeamRole) -> TeamRole:
    if isinstance(value, TeamRole):
        return value
    try:
        return TeamRole(str(value or "").strip().lower())
    except ValueError:
        raise ForbiddenRoleCombination(f"Unknown team role: {value}")


def get_team(db: Session, team_id: str, *, allow_deleted: bool = False) -> Team:
    team = db.query(Team).filter(Team.id == team_id).first()
    if team is None:
        raise AccountNotFound("Team not found", team_id=team_id)
    if team.deleted_at is not None and not allow_deleted:
        raise TeamDeleted(team_id=team_id)
    return team


def get_membership(db: Session, team_id: str, user_id: str, *, active_only: bool = True) -> TeamMembership | None:
    q = db.query(TeamMembership).filter(TeamMembership.team_id == team_id, TeamMembership.user_id == user_id)
    if active_only:
        q = q.filter(TeamMembership.status == MembershipStatus.ACTIVE.value)
    return q.first()


def resolve_role(db: Session, team: Team, user_id: str) -> TeamRole:
    if team.owner_id == user_id:
        return TeamRole.OWNER
    membership = get_membership(db, team.id, user_id)
    if membership is None:
        raise NotAMember(team_id=team.id, user_id=user_id)
    return parse_role(membership.role)


def can_assign(actor_role: TeamRole, role: TeamRole) -> bool:
    return role in ASSIGNABLE_ROLES.get(actor_role, frozenset())


def ensure_can_assign(actor_role: TeamRole, role: TeamRole) -> None:
    if not can_assign(actor_role, role):
        raise ForbiddenRoleCombination(
            f"A team {actor_role.value} cannot assign the {role.value} role",
            actor_role=actor_role.value,
            role=role.value,
        )


def allocation_source(actor_role: TeamRole, target_role: TeamRole) -> AllocationSource:
    if actor_role in (TeamRole.OWNER, TeamRole.ADMIN):
        return AllocationSource.TEAM_WALLET
    if actor_role == TeamRole.AGENT and target_role == TeamRole.PHOTOGRAPHER:
        return AllocationSource.OWN_ALLOCATION
    if actor_role == TeamRole.AGENT:
        raise ForbiddenRoleCombination(
            "Agents can only allocate credits to photographers",
            actor_role=actor_role.value,
            target_role=target_role.value,
        )
    raise ForbiddenRoleCombination(
        "You are not allowed to allocate credits",
        actor_role=actor_role.value,
        target_role=target_role.value,
    )


def ensure_can_remove(actor_id: str, actor_role: TeamRole, member_user_id: str, member_role: TeamRole) -> None:
    if actor_id == member_user_id:
        return
    if actor_role == TeamRole.OWNER or can_assign(actor_role, member_role):
        return
    raise ForbiddenRoleCombination(
        f"A team {actor_role.value} cannot remove a {member_role.value}",
        actor_role=actor_role.value,
        role=member_role.value,
    )
