from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, Field


class TeamCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = None


class TeamResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    owner_id: str
    wallet: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TeamSummaryResponse(BaseModel):
    team_id: str
    name: str
    role: str
    wallet: Optional[int] = None
    allocated: Optional[int] = None
    used: Optional[int] = None
    remaining: Optional[int] = None


class MemberResponse(BaseModel):
    user_id: str
    role: str
    status: str
    allocated: int
    used: int
    remaining: int
    joined_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InviteCreate(BaseModel):
    email: str
    role: str


class ReinviteRequest(BaseModel):
    email: str


class InviteResponse(BaseModel):
    id: int
    team_id: str
    email: str
    role: str
    status: str
    expires_at: datetime
    accepted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AcceptInviteRequest(BaseModel):
    token: str
    name: Optional[str] = None
    password: Optional[str] = Field(default=None, min_length=8)


class AcceptInviteResponse(BaseModel):
    requires_signup: bool
    email: str
    team_id: str
    role: str
    user_id: Optional[str] = None
    already_accepted: bool = False
    access_token: Optional[str] = None


# Whole-number checks happen in the credits engine so callers get INVALID_AMOUNT.
class AllocateRequest(BaseModel):
    user_id: str
    amount: Union[int, float]


class WalletTransferRequest(BaseModel):
    amount: Union[int, float]


class RoleChangeRequest(BaseModel):
    role: str


class MemberCreditsResponse(BaseModel):
    team_id: str
    user_id: str
    role: str
    allocated: int
    used: int
    remaining: int


class WalletResponse(BaseModel):
    team_id: str
    wallet: int
    balance: Optional[int] = None


class RemovalResponse(BaseModel):
    team_id: str
    user_id: str
    reclaimed: int


class MyTeamCreditsResponse(BaseModel):
    team_id: str
    role: str
    wallet: Optional[int] = None
    allocated: Optional[int] = None
    used: Optional[int] = None
    remaining: Optional[int] = None


class TeamListResponse(BaseModel):
    teams: List[TeamSummaryResponse]
