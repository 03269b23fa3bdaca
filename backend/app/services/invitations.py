from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

import jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.database import run_in_transaction
from app.core.errors import (
    AccountNotFound,
    ConcurrentUpdate,
    InvalidToken,
    InviteDeliveryFailed,
    InviteExpired,
    LedgerError,
    MemberExists,
)
from app.core.security import encode_token, hash_password
from app.core.settings import settings
from app.models.credit_account import UserCreditBalance
from app.models.invitation import InviteStatus, TeamInvite
from app.models.user import User
from app.services import mailer
from app.services.credits_engine import as_utc, utcnow
from app.services.team_roles import ensure_can_assign, get_membership, get_team, parse_role, resolve_role
from app.services.teams import activate_membership

logger = logging.getLogger(__name__)

INVITE_TOKEN_TYPE = "TEAM_INVITE"


@dataclass(frozen=True)
class AcceptResult:
    requires_signup: bool
    email: str
    team_id: str
    role: str
    user_id: str | None = None
    already_accepted: bool = False


def _normalize_email(value: str) -> str:
    email = str(value or "").strip().lower()
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise LedgerError("Invalid email address", email=value)
    return email


def build_invite_token(*, email: str, team_id: str, role: str, invited_by: str, now: datetime) -> str:
    return encode_token(
        {
            "email": email,
            "team_id": team_id,
            "role": role,
            "invited_by": invited_by,
            "type": INVITE_TOKEN_TYPE,
            "jti": secrets.token_hex(16),
            "iat": now,
            "exp": now + timedelta(days=settings.invite_token_ttl_days),
        }
    )


def decode_invite_token(token: str) -> dict:
    """Checks signature and type only; expiry is decided by the invitation row."""
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"verify_exp": False, "require": ["exp"]},
        )
    except jwt.PyJWTError:
        raise InvalidToken()
    if claims.get("type") != INVITE_TOKEN_TYPE:
        raise InvalidToken()
    return dict(claims)


def _find_user_by_email(db: Session, email: str) -> User | None:
    return db.query(User).filter(User.email == email).first()


def issue_invitation(
    db: Session,
    inviter_id: str,
    team_id: str,
    email: str,
    role: str,
    *,
    reminder: bool = False,
    now: datetime | None = None,
) -> TeamInvite:
    """Create or overwrite the (team, email) invitation and mail it.

    Delivery failure leaves the row FAILED and raises ``InviteDeliveryFailed``;
    resending goes through another issue.
    """
    email = _normalize_email(email)
    invited_role = parse_role(role)
    now = now or utcnow()
    team_name = ""
    inviter_name = ""

    def work() -> TeamInvite:
        nonlocal team_name, inviter_name
        team = get_team(db, team_id)
        actor_role = resolve_role(db, team, inviter_id)
        ensure_can_assign(actor_role, invited_role)

        existing_user = _find_user_by_email(db, email)
        if existing_user is not None:
            if existing_user.id == team.owner_id or get_membership(db, team.id, existing_user.id) is not None:
                raise MemberExists(email=email, team_id=team.id)

        token = build_invite_token(email=email, team_id=team.id, role=invited_role.value, invited_by=inviter_id, now=now)
        expires_at = now + timedelta(hours=settings.invite_expiry_hours)
        invite = db.query(TeamInvite).filter(TeamInvite.team_id == team.id, TeamInvite.email == email).first()
        if invite is None:
            invite = TeamInvite(team_id=team.id, email=email)
            db.add(invite)
        invite.role = invited_role.value
        invite.invited_by_user_id = inviter_id
        invite.token = token
        invite.status = InviteStatus.PENDING.value
        invite.expires_at = expires_at
        invite.accepted_at = None
        invite.accepted_by_user_id = None
        db.flush()

        inviter = db.query(User).filter(User.id == inviter_id).first()
        team_name = team.name
        inviter_name = (inviter.name or inviter.email) if inviter else "A teammate"
        return invite

    try:
        invite = run_in_transaction(db, work)
    except IntegrityError:
        # A concurrent first issue for the same address inserted the row; overwrite it.
        logger.info("invites.issue.race team_id=%s", team_id)
        invite = run_in_transaction(db, work)
    invite_id = invite.id
    token = invite.token
    logger.info("invites.issue.ok invite_id=%s team_id=%s role=%s reminder=%s", invite_id, team_id, invited_role.value, reminder)

    sent = mailer.send_invitation_email(
        email=email,
        team_name=team_name,
        inviter_name=inviter_name,
        role=invited_role.value,
        token=token,
        reminder=reminder,
    )
    if not sent:
        def mark_failed() -> int:
            return (
                db.query(TeamInvite)
                .filter(
                    TeamInvite.id == invite_id,
                    TeamInvite.token == token,
                    TeamInvite.status == InviteStatus.PENDING.value,
                )
                .update({TeamInvite.status: InviteStatus.FAILED.value}, synchronize_session=False)
            )

        run_in_transaction(db, mark_failed)
        logger.warning("invites.delivery.failed invite_id=%s team_id=%s", invite_id, team_id)
        raise InviteDeliveryFailed(email=email)

    db.refresh(invite)
    return invite


def reinvite(db: Session, inviter_id: str, team_id: str, email: str, *, now: datetime | None = None) -> TeamInvite:
    normalized = _normalize_email(email)
    invite = db.query(TeamInvite).filter(TeamInvite.team_id == team_id, TeamInvite.email == normalized).first()
    if invite is None:
        raise AccountNotFound("Invitation not found", team_id=team_id, email=normalized)
    return issue_invitation(db, inviter_id, team_id, normalized, invite.role, reminder=True, now=now)


def accept_invitation(
    db: Session,
    token: str,
    *,
    name: str | None = None,
    password: str | None = None,
    now: datetime | None = None,
) -> AcceptResult:
    claims = decode_invite_token(token)
    now = now or utcnow()

    def work() -> AcceptResult | None:
        invite = db.query(TeamInvite).populate_existing().filter(TeamInvite.token == token).first()
        if invite is None:
            raise InvalidToken()
        if invite.status == InviteStatus.ACCEPTED.value:
            return AcceptResult(
                requires_signup=False,
                email=invite.email,
                team_id=invite.team_id,
                role=invite.role,
                user_id=invite.accepted_by_user_id,
                already_accepted=True,
            )
        if invite.status == InviteStatus.FAILED.value:
            raise InviteExpired()

        token_exp = claims.get("exp")
        token_expired = isinstance(token_exp, (int, float)) and now.timestamp() > float(token_exp)
        if token_expired or now > as_utc(invite.expires_at):
            db.query(TeamInvite).filter(
                TeamInvite.id == invite.id,
                TeamInvite.status == InviteStatus.PENDING.value,
            ).update({TeamInvite.status: InviteStatus.FAILED.value}, synchronize_session=False)
            return None

        team = get_team(db, invite.team_id)
        user = _find_user_by_email(db, invite.email)
        if user is None:
            if not (name or "").strip() or not password:
                return AcceptResult(requires_signup=True, email=invite.email, team_id=team.id, role=invite.role)
            user = User(email=invite.email, name=name.strip(), password_hash=hash_password(password), auth_provider="local")
            db.add(user)
            db.flush()
            db.add(UserCreditBalance(user_id=user.id, balance=0))
        if user.id == team.owner_id:
            raise MemberExists(email=invite.email, team_id=team.id)

        activate_membership(db, team, user.id, parse_role(invite.role), now=now)
        rows = (
            db.query(TeamInvite)
            .filter(
                TeamInvite.id == invite.id,
                TeamInvite.token == token,
                TeamInvite.status == InviteStatus.PENDING.value,
            )
            .update(
                {
                    TeamInvite.status: InviteStatus.ACCEPTED.value,
                    TeamInvite.accepted_at: now,
                    TeamInvite.accepted_by_user_id: user.id,
                },
                synchronize_session=False,
            )
        )
        if rows != 1:
            raise ConcurrentUpdate(f"invite {invite.id} changed during accept")
        return AcceptResult(requires_signup=False, email=invite.email, team_id=team.id, role=invite.role, user_id=user.id)

    result = run_in_transaction(db, work)
    if result is None:
        logger.info("invites.accept.expired team_id=%s", claims.get("team_id"))
        raise InviteExpired()
    if result.requires_signup:
        logger.info("invites.accept.requires_signup team_id=%s", result.team_id)
    elif not result.already_accepted:
        logger.info("invites.accept.ok team_id=%s user_id=%s role=%s", result.team_id, result.user_id, result.role)
    return result


def list_invitations(db: Session, team_id: str, actor_id: str) -> list[TeamInvite]:
    team = get_team(db, team_id)
    resolve_role(db, team, actor_id)
    return (
        db.query(TeamInvite)
        .filter(TeamInvite.team_id == team.id)
        .order_by(TeamInvite.created_at.desc())
        .all()
    )


def sweep_expired_invitations(db: Session, *, now: datetime | None = None) -> int:
    now = now or utcnow()

    def work() -> int:
        return (
            db.query(TeamInvite)
            .filter(
                TeamInvite.status == InviteStatus.PENDING.value,
                TeamInvite.expires_at < now,
            )
            .update({TeamInvite.status: InviteStatus.FAILED.value}, synchronize_session=False)
        )

    swept = run_in_transaction(db, work)
    if swept:
        logger.info("invites.sweep.ok failed=%s", swept)
    return swept
