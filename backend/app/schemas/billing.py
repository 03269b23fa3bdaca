from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel


class ProductResponse(BaseModel):
    key: str
    name: str
    credits: int
    price_usd: float
    subscription: bool
    per_unit: bool


class CheckoutSessionRequest(BaseModel):
    product_key: str
    quantity: Union[int, float] = 1
    team_id: Optional[str] = None


class CheckoutSessionResponse(BaseModel):
    url: str
    product_key: str
    credits: int
    reference: Optional[str] = None


class PurchaseResponse(BaseModel):
    id: int
    purchase_for: str
    team_id: Optional[str] = None
    product_key: Optional[str] = None
    amount: int
    price_usd: Optional[float] = None
    status: str
    reference: str
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CreditsResponse(BaseModel):
    balance: int
    purchases: List[PurchaseResponse]


class CompensatingGrantRequest(BaseModel):
    amount: Union[int, float]
    reference: str
    user_id: Optional[str] = None
    team_id: Optional[str] = None
    reason: Optional[str] = None


class TopUpResponse(BaseModel):
    applied: bool
    reference: str
    amount: int
    code: Optional[str] = None


class ReconcileResponse(BaseModel):
    completed: int
    expired: int
    pending: int
    errors: List[str]
