"""Allowance endpoints' service layer: balance view, ensure and admin overrides.

Admin checks read the plan role from ``user_roles``; the JWT ``role``
claim only distinguishes trusted service callers (``service_role``).
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cherish_engine.allowance.engine import AllowanceEngine
from cherish_engine.allowance.ledger import (
    SETTING_CREDITS_FREE,
    SETTING_CREDITS_PREMIUM,
    SETTING_TOKENS_PER_CREDIT,
    PlanRole,
    is_premium,
)
from cherish_engine.errors import ForbiddenError
from cherish_engine.state.repository import UserRoleRepository

logger = logging.getLogger(__name__)

SERVICE_ROLE_CLAIM = "service_role"


class AllowanceService:
    """Allowance operations on behalf of one authenticated caller.

    Parameters
    ----------
    session:
        Request-scoped async session.
    user_id:
        The caller's user id (JWT ``sub``).
    token_role:
        The JWT ``role`` claim, if any.
    """

    def __init__(self, session: AsyncSession, user_id: str, token_role: str | None = None) -> None:
        self._session = session
        self._user_id = user_id
        self._token_role = token_role
        self._engine = AllowanceEngine(session)
        self._roles = UserRoleRepository(session)

    async def _role(self, user_id: str) -> str:
        return await self._roles.get_role(user_id) or PlanRole.FREE.value

    async def _require_admin(self) -> None:
        if await self._role(self._user_id) != PlanRole.ADMIN.value:
            raise ForbiddenError("Admin role required")

    async def balance_view(self, user_id: str | None = None) -> dict[str, Any]:
        target = user_id or self._user_id
        period, balance = await self._engine.get_balance(target)
        role = await self._role(target)
        return {
            "period_id": period.id,
            "period_start": period.period_start,
            "period_end": period.period_end,
            "source": period.source,
            "role": role,
            "ai_enabled": is_premium(role),
            "tokens_granted": balance.tokens_granted,
            "tokens_used": balance.tokens_used,
            "tokens_remaining": balance.remaining_tokens,
            "tokens_per_credit": balance.tokens_per_credit,
            "credits_granted": balance.credits_granted,
            "credits_used": balance.credits_used,
            "credits_remaining": balance.remaining_credits,
            "plan_base_credits": balance.plan_base_credits,
            "rollover_credits": balance.rollover_credits,
            "low_balance": balance.low_balance,
        }

    async def ensure(self, *, user_id: str | None = None, batch_init: bool = False) -> dict[str, Any]:
        """Ensure a current period for the caller, another user, or everyone.

        ``batch_init`` is open to admins and service callers; ensuring on
        behalf of another user is admin only.
        """
        if batch_init:
            if self._token_role != SERVICE_ROLE_CLAIM:
                await self._require_admin()
            return {"success": True, **await self._engine.ensure_all()}

        target = self._user_id
        if user_id and user_id != self._user_id:
            await self._require_admin()
            target = user_id

        period = await self._engine.ensure_period(target)
        return {"success": True, "period_id": period.id, "user_id": target}

    async def set_allowance(self, user_id: str, tokens_granted: int, tokens_used: int) -> dict[str, Any]:
        await self._require_admin()
        await self._engine.set_allowance(user_id, tokens_granted, tokens_used, admin_id=self._user_id)
        return await self.balance_view(user_id)

    async def get_credit_settings(self) -> dict[str, int]:
        await self._require_admin()
        settings = await self._engine.load_settings()
        return {
            SETTING_TOKENS_PER_CREDIT: settings.tokens_per_credit,
            SETTING_CREDITS_FREE: settings.credits_free_per_month,
            SETTING_CREDITS_PREMIUM: settings.credits_premium_per_month,
        }

    async def update_credit_settings(self, values: dict[str, int]) -> dict[str, int]:
        await self._require_admin()
        await self._engine.update_settings(values, updated_by=self._user_id)
        return await self.get_credit_settings()
