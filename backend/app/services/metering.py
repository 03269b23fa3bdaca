from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from app.services.credits_engine import MemberAllocation, Payer, PersonalAccount, TeamWallet, deduct_credit
from app.services.team_roles import TeamRole, get_membership, get_team, parse_role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PayerResolution:
    payer: Payer
    role: TeamRole | None = None

    @property
    def kind(self) -> str:
        if isinstance(self.payer, TeamWallet):
            return "team_wallet"
        if isinstance(self.payer, MemberAllocation):
            return "member_allocation"
        return "personal"


@dataclass(frozen=True)
class MeteredCharge:
    resolution: PayerResolution
    amount: int
    remaining: int


def charge_for_generation(db: Session, user_id: str, team_id: str | None = None) -> PayerResolution:
    """Decide who pays for a generation requested by ``user_id``.

    Team owner pays from the wallet, an active member from their allocation,
    anyone else (or no team) from the personal balance.
    """
    if not team_id:
        return PayerResolution(payer=PersonalAccount(user_id))

    team = get_team(db, team_id)
    if team.owner_id == user_id:
        return PayerResolution(payer=TeamWallet(team.id), role=TeamRole.OWNER)
    membership = get_membership(db, team.id, user_id)
    if membership is not None:
        return PayerResolution(payer=MemberAllocation(team.id, user_id), role=parse_role(membership.role))
    return PayerResolution(payer=PersonalAccount(user_id))


def meter_generation(
    db: Session,
    user_id: str,
    team_id: str | None = None,
    *,
    amount: Any = 1,
    reference: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> MeteredCharge:
    """Resolve the payer and reserve credits; callers run the paid work only after this returns."""
    resolution = charge_for_generation(db, user_id, team_id)
    remaining = deduct_credit(
        db,
        resolution.payer,
        amount,
        actor_id=user_id,
        source="generation",
        reference=reference,
        metadata=metadata,
    )
    logger.info("metering.charge.ok user_id=%s kind=%s remaining=%s", user_id, resolution.kind, remaining)
    return MeteredCharge(resolution=resolution, amount=int(amount), remaining=remaining)
