"""AI allowance endpoints: balance view, ensure, and admin overrides."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter

from cherish_api.dependencies import SessionDep, TokenRoleDep, UserDep
from cherish_api.schemas import AllowanceView, CreditSettingsBody, EnsureAllowanceRequest, SetAllowanceRequest
from cherish_api.services.allowance_service import AllowanceService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/allowance", tags=["allowance"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("", response_model=AllowanceView)
async def get_allowance(session: SessionDep, user_id: UserDep) -> dict[str, Any]:
    """Current period balance, creating the period on first use this month."""
    return await AllowanceService(session, user_id).balance_view()


@router.post("/ensure")
async def ensure_allowance(
    body: EnsureAllowanceRequest,
    session: SessionDep,
    user_id: UserDep,
    token_role: TokenRoleDep,
) -> dict[str, Any]:
    service = AllowanceService(session, user_id, token_role)
    return await service.ensure(user_id=body.user_id, batch_init=body.batch_init)


@admin_router.put("/allowance/{target_user_id}", response_model=AllowanceView)
async def set_allowance(
    target_user_id: str,
    body: SetAllowanceRequest,
    session: SessionDep,
    user_id: UserDep,
) -> dict[str, Any]:
    """Overwrite a user's current-period granted and used tokens."""
    return await AllowanceService(session, user_id).set_allowance(
        target_user_id, body.tokens_granted, body.tokens_used
    )


@admin_router.get("/credit-settings")
async def get_credit_settings(session: SessionDep, user_id: UserDep) -> dict[str, int]:
    return await AllowanceService(session, user_id).get_credit_settings()


@admin_router.put("/credit-settings")
async def update_credit_settings(body: CreditSettingsBody, session: SessionDep, user_id: UserDep) -> dict[str, int]:
    return await AllowanceService(session, user_id).update_credit_settings(body.model_dump(exclude_none=True))
