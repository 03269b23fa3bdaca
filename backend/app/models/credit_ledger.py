import enum

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from app.core.database import Base


class AccountKind(str, enum.Enum):
    PERSONAL = "personal"
    TEAM_WALLET = "team_wallet"
    MEMBER_ALLOCATION = "member_allocation"


class LedgerEventType(str, enum.Enum):
    SPEND = "spend"
    TOPUP = "topup"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"
    ALLOCATE_OUT = "allocate_out"
    ALLOCATE_IN = "allocate_in"
    RECLAIM = "reclaim"


class CreditLedger(Base):
    """Append-only record of every credit movement.

    Rows with ``event_type == "spend"`` are the usage records: one per
    deduction, naming the account the spend was attributed to.
    """

    __tablename__ = "credit_ledger"

    id = Column(Integer, primary_key=True, index=True)
    account_kind = Column(String, index=True, nullable=False)
    event_type = Column(String, index=True, nullable=False)
    delta = Column(Integer, nullable=False)
    user_id = Column(String, index=True, nullable=True)
    team_id = Column(String, index=True, nullable=True)
    membership_id = Column(Integer, index=True, nullable=True)
    actor_id = Column(String, index=True, nullable=True)
    source = Column(String, index=True, nullable=True)
    reference = Column(String, index=True, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    event_metadata = Column("metadata", JSON, nullable=True)
