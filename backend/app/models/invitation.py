import enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from app.core.database import Base


class InviteStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    FAILED = "failed"


class TeamInvite(Base):
    __tablename__ = "team_invites"
    __table_args__ = (UniqueConstraint("team_id", "email", name="uq_team_invites_team_email"),)

    id = Column(Integer, primary_key=True, index=True)
    team_id = Column(String, ForeignKey("teams.id"), index=True, nullable=False)
    email = Column(String, index=True, nullable=False)
    role = Column(String, nullable=False)
    invited_by_user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    token = Column(String, unique=True, index=True, nullable=False)
    status = Column(String, index=True, nullable=False, default=InviteStatus.PENDING.value)
    expires_at = Column(DateTime(timezone=True), index=True, nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    accepted_by_user_id = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
