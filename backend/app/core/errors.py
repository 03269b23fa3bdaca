from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.logging_config import get_request_id

logger = logging.getLogger(__name__)


class ConcurrentUpdate(Exception):
    """A row changed between the locking read and the conditional write."""


class LedgerError(Exception):
    code = "LEDGER_ERROR"
    status_code = 400
    default_message = "Request could not be completed"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidAmount(LedgerError):
    code = "INVALID_AMOUNT"
    status_code = 400
    default_message = "Credits must be a positive whole number"


class InsufficientCredits(LedgerError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 403
    default_message = "Insufficient credits, please top up"


class AccountNotFound(LedgerError):
    code = "ACCOUNT_NOT_FOUND"
    status_code = 404
    default_message = "Account not found"


class TeamDeleted(LedgerError):
    code = "TEAM_DELETED"
    status_code = 410
    default_message = "Team has been deleted"


class NotTeamOwner(LedgerError):
    code = "NOT_TEAM_OWNER"
    status_code = 403
    default_message = "Only the team owner can do this"


class NotAMember(LedgerError):
    code = "NOT_A_MEMBER"
    status_code = 403
    default_message = "User is not a member of this team"


class ForbiddenRoleCombination(LedgerError):
    code = "FORBIDDEN_ROLE_COMBINATION"
    status_code = 403
    default_message = "Your team role does not allow this action"


class InvalidToken(LedgerError):
    code = "INVALID_TOKEN"
    status_code = 400
    default_message = "Invalid invitation token"


class InviteExpired(LedgerError):
    code = "INVITE_EXPIRED"
    status_code = 410
    default_message = "Invitation has expired"


class MemberExists(LedgerError):
    code = "MEMBER_EXISTS"
    status_code = 409
    default_message = "User is already a team member"


class InviteDeliveryFailed(LedgerError):
    code = "INVITE_DELIVERY_FAILED"
    status_code = 502
    default_message = "Failed to send invitation email"


class UnknownProduct(LedgerError):
    code = "UNKNOWN_PRODUCT"
    status_code = 400
    default_message = "Unknown product"


class PaymentProviderError(LedgerError):
    code = "PAYMENT_PROVIDER_ERROR"
    status_code = 502
    default_message = "Payment provider request failed"


class PaymentNotConfigured(LedgerError):
    code = "PAYMENT_NOT_CONFIGURED"
    status_code = 500
    default_message = "Lemon Squeezy is not configured"


# Reported in results, never raised: a repeated payment reference is a no-op.
DUPLICATE_PURCHASE_REFERENCE = "DUPLICATE_PURCHASE_REFERENCE"


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    request_id = get_request_id()
    body = exc.to_dict()
    if request_id:
        body["request_id"] = request_id
    logger.info("api.ledger_error code=%s path=%s", exc.code, request.url.path)
    return JSONResponse(status_code=exc.status_code, content=body)
