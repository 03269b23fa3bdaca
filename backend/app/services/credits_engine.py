from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.database import run_in_transaction
from app.core.errors import (
    DUPLICATE_PURCHASE_REFERENCE,
    AccountNotFound,
    ConcurrentUpdate,
    InsufficientCredits,
    InvalidAmount,
    LedgerError,
    NotAMember,
    NotTeamOwner,
    TeamDeleted,
)
from app.models.credit_account import UserCreditBalance
from app.models.credit_ledger import AccountKind, CreditLedger, LedgerEventType
from app.models.purchase import CreditPurchase, PurchaseFor, PurchaseStatus
from app.models.team import MembershipStatus, Team, TeamMembership
from app.models.user import User
from app.services.team_roles import AllocationSource, allocation_source, get_membership, get_team, parse_role, resolve_role

logger = logging.getLogger(__name__)

# Largest value every balance column can hold (32-bit signed INTEGER).
MAX_CREDIT_AMOUNT = 2**31 - 1


@dataclass(frozen=True)
class PersonalAccount:
    user_id: str


@dataclass(frozen=True)
class TeamWallet:
    team_id: str


@dataclass(frozen=True)
class MemberAllocation:
    team_id: str
    user_id: str


Payer = Union[PersonalAccount, TeamWallet, MemberAllocation]


@dataclass(frozen=True)
class TopUpResult:
    applied: bool
    reference: str
    amount: int
    code: str | None = None


@dataclass(frozen=True)
class TransferResult:
    balance: int
    wallet: int


@dataclass(frozen=True)
class MemberCredits:
    team_id: str
    user_id: str
    role: str
    allocated: int
    used: int

    @property
    def remaining(self) -> int:
        return max(self.allocated - self.used, 0)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise InvalidAmount(amount=str(amount))
    if isinstance(amount, float):
        if not math.isfinite(amount) or not amount.is_integer():
            raise InvalidAmount(amount=str(amount))
        amount = int(amount)
    if amount <= 0 or amount > MAX_CREDIT_AMOUNT:
        raise InvalidAmount(amount=amount)
    return int(amount)


def _record(db: Session, **fields: Any) -> CreditLedger:
    for key in ("account_kind", "event_type"):
        value = fields.get(key)
        if value is not None and hasattr(value, "value"):
            fields[key] = value.value
    entry = CreditLedger(**fields)
    db.add(entry)
    return entry


def _personal_balance(db: Session, user_id: str) -> int:
    acct = db.query(UserCreditBalance).populate_existing().filter(UserCreditBalance.user_id == user_id).first()
    return int(acct.balance or 0) if acct else 0


def _team_wallet(db: Session, team_id: str) -> int:
    team = db.query(Team).populate_existing().filter(Team.id == team_id).first()
    return int(team.wallet or 0) if team else 0


def _member_snapshot(db: Session, membership_id: int) -> MemberCredits:
    m = db.query(TeamMembership).populate_existing().filter(TeamMembership.id == membership_id).one()
    return MemberCredits(
        team_id=m.team_id,
        user_id=m.user_id,
        role=m.role,
        allocated=int(m.allocated or 0),
        used=int(m.used or 0),
    )


def _require_user(db: Session, user_id: str) -> None:
    if db.query(User.id).filter(User.id == user_id).first() is None:
        raise AccountNotFound("User not found", user_id=user_id)


def get_or_create_credit_account(db: Session, user_id: str) -> UserCreditBalance:
    acct = db.query(UserCreditBalance).filter(UserCreditBalance.user_id == user_id).first()
    if acct is None:
        acct = UserCreditBalance(user_id=user_id, balance=0)
        db.add(acct)
        db.commit()
        db.refresh(acct)
    return acct


def get_personal_balance(db: Session, user_id: str) -> int:
    """Display snapshot; may lag a concurrently committing deduction."""
    return _personal_balance(db, user_id)


def _debit_personal(db: Session, user_id: str, amount: int) -> None:
    rows = (
        db.query(UserCreditBalance)
        .filter(UserCreditBalance.user_id == user_id, UserCreditBalance.balance >= amount)
        .update({UserCreditBalance.balance: UserCreditBalance.balance - amount}, synchronize_session=False)
    )
    if rows == 1:
        return
    _require_user(db, user_id)
    raise InsufficientCredits(available=_personal_balance(db, user_id), requested=amount)


def _credit_personal(db: Session, user_id: str, amount: int) -> None:
    rows = (
        db.query(UserCreditBalance)
        .filter(UserCreditBalance.user_id == user_id)
        .update({UserCreditBalance.balance: UserCreditBalance.balance + amount}, synchronize_session=False)
    )
    if rows == 1:
        return
    db.add(UserCreditBalance(user_id=user_id, balance=amount))
    db.flush()


def _debit_team_wallet(db: Session, team_id: str, amount: int) -> None:
    rows = (
        db.query(Team)
        .filter(Team.id == team_id, Team.deleted_at.is_(None), Team.wallet >= amount)
        .update({Team.wallet: Team.wallet - amount}, synchronize_session=False)
    )
    if rows == 1:
        return
    get_team(db, team_id)
    raise InsufficientCredits("Low credits, please buy more credits", available=_team_wallet(db, team_id), requested=amount)


def _credit_team_wallet(db: Session, team_id: str, amount: int) -> None:
    rows = (
        db.query(Team)
        .filter(Team.id == team_id, Team.deleted_at.is_(None))
        .update({Team.wallet: Team.wallet + amount}, synchronize_session=False)
    )
    if rows != 1:
        get_team(db, team_id)
        raise ConcurrentUpdate(f"team {team_id} wallet was not credited")


def _debit_member_allocation(db: Session, team_id: str, user_id: str, amount: int, *, field: str) -> None:
    column = TeamMembership.used if field == "used" else TeamMembership.allocated
    new_value = column + amount if field == "used" else column - amount
    live_team = select(Team.id).where(Team.id == team_id, Team.deleted_at.is_(None))
    rows = (
        db.query(TeamMembership)
        .filter(
            TeamMembership.team_id == team_id,
            TeamMembership.user_id == user_id,
            TeamMembership.status == MembershipStatus.ACTIVE.value,
            (TeamMembership.allocated - TeamMembership.used) >= amount,
            TeamMembership.team_id.in_(live_team),
        )
        .update({column: new_value}, synchronize_session=False)
    )
    if rows == 1:
        return
    get_team(db, team_id)
    membership = get_membership(db, team_id, user_id)
    if membership is None:
        raise AccountNotFound("Team membership not found", team_id=team_id, user_id=user_id)
    db.refresh(membership)
    raise InsufficientCredits(
        "Insufficient allocated credits",
        available=membership.remaining,
        requested=amount,
    )


def deduct_credit(
    db: Session,
    payer: Payer,
    amount: Any = 1,
    *,
    actor_id: str | None = None,
    source: str = "generation",
    reference: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> int:
    """Atomically spend ``amount`` from ``payer`` and return what is left."""
    amount = validate_amount(amount)

    def work() -> int:
        if isinstance(payer, PersonalAccount):
            _debit_personal(db, payer.user_id, amount)
            _record(
                db,
                account_kind=AccountKind.PERSONAL,
                event_type=LedgerEventType.SPEND,
                delta=-amount,
                user_id=payer.user_id,
                actor_id=actor_id or payer.user_id,
                source=source,
                reference=reference,
                event_metadata=metadata,
            )
            return _personal_balance(db, payer.user_id)

        if isinstance(payer, TeamWallet):
            _debit_team_wallet(db, payer.team_id, amount)
            _record(
                db,
                account_kind=AccountKind.TEAM_WALLET,
                event_type=LedgerEventType.SPEND,
                delta=-amount,
                team_id=payer.team_id,
                user_id=actor_id,
                actor_id=actor_id,
                source=source,
                reference=reference,
                event_metadata=metadata,
            )
            return _team_wallet(db, payer.team_id)

        if isinstance(payer, MemberAllocation):
            _debit_member_allocation(db, payer.team_id, payer.user_id, amount, field="used")
            membership = get_membership(db, payer.team_id, payer.user_id)
            _record(
                db,
                account_kind=AccountKind.MEMBER_ALLOCATION,
                event_type=LedgerEventType.SPEND,
                delta=-amount,
                team_id=payer.team_id,
                user_id=payer.user_id,
                membership_id=membership.id if membership else None,
                actor_id=actor_id or payer.user_id,
                source=source,
                reference=reference,
                event_metadata=metadata,
            )
            return _member_snapshot(db, membership.id).remaining

        raise TypeError(f"unsupported payer: {payer!r}")

    remaining = run_in_transaction(db, work)
    logger.info("credits.deduct.ok payer=%s amount=%s remaining=%s", payer, amount, remaining)
    return remaining


def _normalize_reference(reference: str | None) -> str:
    ref = str(reference or "").strip()
    if not ref:
        raise LedgerError("A payment reference is required")
    return ref


def _apply_purchase(
    db: Session,
    *,
    purchase_for: PurchaseFor,
    user_id: str | None,
    team_id: str | None,
    amount: int,
    reference: str,
    source: str,
    actor_id: str | None,
    product_key: str | None,
    price_usd: float | None,
    provider: str | None,
    provider_order_id: str | None,
    now: datetime,
) -> TopUpResult:
    if purchase_for == PurchaseFor.TEAM:
        get_team(db, team_id)
    else:
        _require_user(db, user_id)

    existing = db.query(CreditPurchase).filter(CreditPurchase.reference == reference).first()
    if existing is not None:
        if existing.status == PurchaseStatus.COMPLETED.value:
            return TopUpResult(applied=False, reference=reference, amount=0, code=DUPLICATE_PURCHASE_REFERENCE)
        if (existing.team_id or None) != (team_id or None) or (
            purchase_for == PurchaseFor.INDIVIDUAL and existing.user_id != user_id
        ):
            raise LedgerError("Payment reference belongs to another account", reference=reference)
        values: dict[Any, Any] = {
            CreditPurchase.status: PurchaseStatus.COMPLETED.value,
            CreditPurchase.completed_at: now,
            CreditPurchase.amount: amount,
        }
        if provider_order_id:
            values[CreditPurchase.provider_order_id] = provider_order_id
        rows = (
            db.query(CreditPurchase)
            .filter(CreditPurchase.id == existing.id, CreditPurchase.status != PurchaseStatus.COMPLETED.value)
            .update(values, synchronize_session=False)
        )
        if rows != 1:
            return TopUpResult(applied=False, reference=reference, amount=0, code=DUPLICATE_PURCHASE_REFERENCE)
    else:
        db.add(
            CreditPurchase(
                purchase_for=purchase_for.value,
                user_id=user_id,
                team_id=team_id,
                product_key=product_key,
                amount=amount,
                price_usd=price_usd,
                status=PurchaseStatus.COMPLETED.value,
                reference=reference,
                provider=provider,
                provider_order_id=provider_order_id,
                completed_at=now,
            )
        )
        db.flush()

    if purchase_for == PurchaseFor.TEAM:
        _credit_team_wallet(db, team_id, amount)
        kind = AccountKind.TEAM_WALLET
    else:
        _credit_personal(db, user_id, amount)
        kind = AccountKind.PERSONAL
    _record(
        db,
        account_kind=kind,
        event_type=LedgerEventType.TOPUP,
        delta=amount,
        user_id=user_id,
        team_id=team_id,
        actor_id=actor_id,
        source=source,
        reference=reference,
    )
    return TopUpResult(applied=True, reference=reference, amount=amount)


def _top_up(db: Session, *, purchase_for: PurchaseFor, amount: Any, reference: str | None, **kwargs: Any) -> TopUpResult:
    amount = validate_amount(amount)
    reference = _normalize_reference(reference)
    now = kwargs.pop("now", None) or utcnow()
    try:
        result = run_in_transaction(
            db,
            lambda: _apply_purchase(
                db,
                purchase_for=purchase_for,
                amount=amount,
                reference=reference,
                now=now,
                **kwargs,
            ),
        )
    except IntegrityError:
        # A concurrent delivery of the same reference committed first.
        existing = db.query(CreditPurchase).filter(CreditPurchase.reference == reference).first()
        if existing is None or existing.status != PurchaseStatus.COMPLETED.value:
            raise
        result = TopUpResult(applied=False, reference=reference, amount=0, code=DUPLICATE_PURCHASE_REFERENCE)
    if result.applied:
        logger.info("credits.topup.ok for=%s reference=%s amount=%s", purchase_for.value, reference, amount)
    else:
        logger.info("credits.topup.duplicate for=%s reference=%s", purchase_for.value, reference)
    return result


def topup_personal(
    db: Session,
    user_id: str,
    amount: Any,
    reference: str | None,
    *,
    source: str = "purchase",
    actor_id: str | None = None,
    product_key: str | None = None,
    price_usd: float | None = None,
    provider: str | None = None,
    provider_order_id: str | None = None,
    now: datetime | None = None,
) -> TopUpResult:
    return _top_up(
        db,
        purchase_for=PurchaseFor.INDIVIDUAL,
        amount=amount,
        reference=reference,
        user_id=user_id,
        team_id=None,
        source=source,
        actor_id=actor_id,
        product_key=product_key,
        price_usd=price_usd,
        provider=provider,
        provider_order_id=provider_order_id,
        now=now,
    )


def topup_team_wallet(
    db: Session,
    team_id: str,
    amount: Any,
    reference: str | None,
    *,
    user_id: str | None = None,
    source: str = "purchase",
    actor_id: str | None = None,
    product_key: str | None = None,
    price_usd: float | None = None,
    provider: str | None = None,
    provider_order_id: str | None = None,
    now: datetime | None = None,
) -> TopUpResult:
    return _top_up(
        db,
        purchase_for=PurchaseFor.TEAM,
        amount=amount,
        reference=reference,
        user_id=user_id,
        team_id=team_id,
        source=source,
        actor_id=actor_id,
        product_key=product_key,
        price_usd=price_usd,
        provider=provider,
        provider_order_id=provider_order_id,
        now=now,
    )


def transfer_personal_to_team(db: Session, user_id: str, team_id: str, amount: Any) -> TransferResult:
    amount = validate_amount(amount)

    def work() -> TransferResult:
        team = get_team(db, team_id)
        if team.owner_id != user_id:
            raise NotTeamOwner("Only the team owner can transfer credits to the team wallet")
        _debit_personal(db, user_id, amount)
        _record(
            db,
            account_kind=AccountKind.PERSONAL,
            event_type=LedgerEventType.TRANSFER_OUT,
            delta=-amount,
            user_id=user_id,
            team_id=team_id,
            actor_id=user_id,
            source="transfer",
        )
        _credit_team_wallet(db, team_id, amount)
        _record(
            db,
            account_kind=AccountKind.TEAM_WALLET,
            event_type=LedgerEventType.TRANSFER_IN,
            delta=amount,
            user_id=user_id,
            team_id=team_id,
            actor_id=user_id,
            source="transfer",
        )
        return TransferResult(balance=_personal_balance(db, user_id), wallet=_team_wallet(db, team_id))

    result = run_in_transaction(db, work)
    logger.info("credits.transfer.ok user_id=%s team_id=%s amount=%s", user_id, team_id, amount)
    return result


def allocate_to_member(db: Session, allocator_id: str, team_id: str, target_user_id: str, amount: Any) -> MemberCredits:
    amount = validate_amount(amount)

    def work() -> MemberCredits:
        team = get_team(db, team_id)
        actor_role = resolve_role(db, team, allocator_id)
        target = get_membership(db, team.id, target_user_id)
        if target is None:
            raise NotAMember(f"Member {target_user_id} not found in team", team_id=team.id, user_id=target_user_id)
        source = allocation_source(actor_role, parse_role(target.role))

        if source == AllocationSource.TEAM_WALLET:
            _debit_team_wallet(db, team.id, amount)
            _record(
                db,
                account_kind=AccountKind.TEAM_WALLET,
                event_type=LedgerEventType.ALLOCATE_OUT,
                delta=-amount,
                team_id=team.id,
                user_id=target_user_id,
                actor_id=allocator_id,
                source="allocation",
            )
        else:
            _debit_member_allocation(db, team.id, allocator_id, amount, field="allocated")
            agent = get_membership(db, team.id, allocator_id)
            _record(
                db,
                account_kind=AccountKind.MEMBER_ALLOCATION,
                event_type=LedgerEventType.ALLOCATE_OUT,
                delta=-amount,
                team_id=team.id,
                user_id=allocator_id,
                membership_id=agent.id if agent else None,
                actor_id=allocator_id,
                source="allocation",
            )

        rows = (
            db.query(TeamMembership)
            .filter(TeamMembership.id == target.id, TeamMembership.status == MembershipStatus.ACTIVE.value)
            .update({TeamMembership.allocated: TeamMembership.allocated + amount}, synchronize_session=False)
        )
        if rows != 1:
            raise ConcurrentUpdate(f"membership {target.id} changed during allocation")
        _record(
            db,
            account_kind=AccountKind.MEMBER_ALLOCATION,
            event_type=LedgerEventType.ALLOCATE_IN,
            delta=amount,
            team_id=team.id,
            user_id=target_user_id,
            membership_id=target.id,
            actor_id=allocator_id,
            source=source.value,
        )
        return _member_snapshot(db, target.id)

    result = run_in_transaction(db, work)
    logger.info(
        "credits.allocate.ok team_id=%s allocator=%s target=%s amount=%s",
        team_id,
        allocator_id,
        target_user_id,
        amount,
    )
    return result


def apply_reclaim(
    db: Session,
    team: Team,
    member_user_id: str,
    *,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> int:
    """Return unused allocation to the wallet and mark the membership removed.

    Does not commit; callers run it inside ``run_in_transaction`` together with
    whatever else belongs to the removal.
    """
    now = now or utcnow()
    membership = (
        db.query(TeamMembership)
        .populate_existing()
        .with_for_update()
        .filter(
            TeamMembership.team_id == team.id,
            TeamMembership.user_id == member_user_id,
            TeamMembership.status == MembershipStatus.ACTIVE.value,
        )
        .first()
    )
    if membership is None:
        raise NotAMember("No such member exists in the team", team_id=team.id, user_id=member_user_id)

    allocated = int(membership.allocated or 0)
    used = int(membership.used or 0)
    reclaimed = max(allocated - used, 0)
    rows = (
        db.query(TeamMembership)
        .filter(
            TeamMembership.id == membership.id,
            TeamMembership.status == MembershipStatus.ACTIVE.value,
            TeamMembership.allocated == allocated,
            TeamMembership.used == used,
        )
        .update(
            {
                TeamMembership.status: MembershipStatus.REMOVED.value,
                TeamMembership.removed_at: now,
                TeamMembership.allocated: allocated - reclaimed,
            },
            synchronize_session=False,
        )
    )
    if rows != 1:
        raise ConcurrentUpdate(f"membership {membership.id} changed during removal")

    if reclaimed > 0:
        _credit_team_wallet(db, team.id, reclaimed)
        _record(
            db,
            account_kind=AccountKind.TEAM_WALLET,
            event_type=LedgerEventType.RECLAIM,
            delta=reclaimed,
            team_id=team.id,
            user_id=member_user_id,
            membership_id=membership.id,
            actor_id=actor_id,
            source="removal",
        )
    return reclaimed


def reclaim_on_removal(
    db: Session,
    team_id: str,
    member_user_id: str,
    *,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> int:
    def work() -> int:
        team = get_team(db, team_id)
        return apply_reclaim(db, team, member_user_id, actor_id=actor_id, now=now)

    reclaimed = run_in_transaction(db, work)
    logger.info("credits.reclaim.ok team_id=%s user_id=%s reclaimed=%s", team_id, member_user_id, reclaimed)
    return reclaimed
