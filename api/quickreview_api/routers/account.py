"""Sign-in and self-service account deletion."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from quickreview_api.dependencies import (
    CounterStoreDep,
    CurrentUserDep,
    IdentityDep,
    ProcessorDep,
    SessionDep,
    SettingsDep,
    TokenManagerDep,
)
from quickreview_api.middleware.rate_limit import rate_limited
from quickreview_api.services.account_service import AccountService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["account"])


class SignInRequest(BaseModel):
    """Request body for ``POST /auth/session``."""

    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(..., min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    display_name: str | None = Field(None, alias="displayName", max_length=200)


class DeleteAccountRequest(BaseModel):
    """Request body for ``DELETE /account``."""

    model_config = ConfigDict(populate_by_name=True)

    confirm_email: str | None = Field(None, alias="confirmEmail")


@router.post(
    "/auth/session",
    dependencies=[Depends(rate_limited("signin", "Too many sign-in attempts. Please try again later."))],
)
async def sign_in(
    body: SignInRequest,
    _identity: IdentityDep,
    session: SessionDep,
    settings: SettingsDep,
    processor: ProcessorDep,
    counter_store: CounterStoreDep,
    tokens: TokenManagerDep,
) -> dict[str, Any]:
    """Create or recover the account for *email* and issue a session token."""
    service = AccountService(session, settings, processor, counter_store)
    result = await service.sign_in(body.email, body.display_name)
    return {
        "token": tokens.generate_token(result.user.id, result.user.email),
        "userId": result.user.id,
        "email": result.user.email,
        "tier": result.user.tier,
        "created": result.created,
        "recovered": result.recovered,
    }


@router.delete("/account")
async def delete_account(
    body: DeleteAccountRequest,
    user: CurrentUserDep,
    session: SessionDep,
    settings: SettingsDep,
    processor: ProcessorDep,
    counter_store: CounterStoreDep,
) -> dict[str, Any]:
    """Schedule the caller's account for deletion after the retention window."""
    service = AccountService(session, settings, processor, counter_store)
    message = await service.delete_account(user.id, body.confirm_email)
    return {"success": True, "message": message}
