import enum
from uuid import uuid4

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.database import Base


class MembershipStatus(str, enum.Enum):
    ACTIVE = "active"
    REMOVED = "removed"


class Team(Base):
    __tablename__ = "teams"
    __table_args__ = (CheckConstraint("wallet >= 0", name="ck_teams_wallet_non_negative"),)

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid4()))
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    owner_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    wallet = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    memberships = relationship("TeamMembership", back_populates="team")

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class TeamMembership(Base):
    __tablename__ = "team_membership"
    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_team_membership_team_user"),
        CheckConstraint("used >= 0 AND used <= allocated", name="ck_team_membership_used_within_allocated"),
    )

    id = Column(Integer, primary_key=True, index=True)
    team_id = Column(String, ForeignKey("teams.id"), index=True, nullable=False)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    role = Column(String, nullable=False)
    status = Column(String, index=True, nullable=False, default=MembershipStatus.ACTIVE.value)
    allocated = Column(Integer, nullable=False, default=0)
    used = Column(Integer, nullable=False, default=0)
    joined_at = Column(DateTime(timezone=True), server_default=func.now())
    removed_at = Column(DateTime(timezone=True), nullable=True)

    team = relationship("Team", back_populates="memberships")

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE.value

    @property
    def remaining(self) -> int:
        return max(int(self.allocated or 0) - int(self.used or 0), 0)
