import enum

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.sql import func

from app.core.database import Base


class PurchaseFor(str, enum.Enum):
    INDIVIDUAL = "individual"
    TEAM = "team"


class PurchaseStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class CreditPurchase(Base):
    __tablename__ = "credit_purchases"

    id = Column(Integer, primary_key=True, index=True)
    purchase_for = Column(String, index=True, nullable=False)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=True)
    team_id = Column(String, ForeignKey("teams.id"), index=True, nullable=True)
    product_key = Column(String, index=True, nullable=True)
    amount = Column(Integer, nullable=False)
    price_usd = Column(Float, nullable=True)
    status = Column(String, index=True, nullable=False, default=PurchaseStatus.PENDING.value)
    reference = Column(String, unique=True, index=True, nullable=False)
    provider = Column(String, index=True, nullable=True)
    provider_order_id = Column(String, unique=True, index=True, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
