from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from app.core.database import Base


class UserCreditBalance(Base):
    __tablename__ = "user_credit_balance"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_user_credit_balance_non_negative"),)

    user_id = Column(String, ForeignKey("users.id"), primary_key=True, index=True)
    balance = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
