"""AI allowance engine: lazy period creation, gating, usage charging and overrides.

Usage::

    engine = AllowanceEngine(session)
    allowed, reason = await engine.check_credits(user_id)
    ...call the model...
    await engine.record_usage(user_id, key, prompt_tokens, completion_tokens, "suggest_activity")

Concurrency is delegated to the database: the unique ``(user_id,
period_start)`` constraint makes period creation race-safe and the unique
``(user_id, idempotency_key)`` pair makes charging exactly-once.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cherish_engine.allowance.ledger import (
    SETTING_CREDITS_FREE,
    SETTING_CREDITS_PREMIUM,
    SETTING_TOKENS_PER_CREDIT,
    Balance,
    CreditSettings,
    credits_for_tokens,
    is_premium,
    monthly_credits_for,
    period_bounds,
    period_source_for,
    rollover_tokens,
)
from cherish_engine.errors import AllowanceDeniedError, NotFoundError, ValidationError
from cherish_engine.state.repository import (
    AllowanceRepository,
    CreditSettingsRepository,
    UsageEventRepository,
    UserRoleRepository,
)
from cherish_engine.state.tables import AllowancePeriodTable

logger = logging.getLogger(__name__)

ADMIN_ADJUSTMENT_FEATURE = "admin_balance_adjustment"

_SETTING_KEYS = (SETTING_TOKENS_PER_CREDIT, SETTING_CREDITS_FREE, SETTING_CREDITS_PREMIUM)


class AllowanceEngine:
    """Per-user token/credit accounting over monthly billing periods.

    Parameters
    ----------
    session:
        Active async session.  The engine flushes but never commits.
    clock:
        Optional callable returning the current time, for tests.
    """

    def __init__(self, session: AsyncSession, *, clock: Any = None) -> None:
        self._session = session
        self._clock = clock or (lambda: datetime.now(UTC))
        self._roles = UserRoleRepository(session)
        self._settings_repo = CreditSettingsRepository(session)

    # -- Settings ------------------------------------------------------------

    async def load_settings(self) -> CreditSettings:
        return CreditSettings.from_mapping(await self._settings_repo.get_all())

    async def update_settings(self, values: dict[str, int], *, updated_by: str) -> CreditSettings:
        """Overwrite one or more global settings and return the effective result."""
        unknown = set(values) - set(_SETTING_KEYS)
        if unknown:
            raise ValidationError(f"Unknown credit settings: {sorted(unknown)}")
        if values.get(SETTING_TOKENS_PER_CREDIT, 1) <= 0:
            raise ValidationError("tokens_per_credit must be positive")
        for key, value in values.items():
            if value < 0:
                raise ValidationError(f"{key} must not be negative")
            await self._settings_repo.set(key, value, updated_by=updated_by)
        logger.info("Credit settings updated by %s: %s", updated_by, sorted(values))
        return await self.load_settings()

    # -- Periods -------------------------------------------------------------

    async def ensure_period(self, user_id: str, *, now: datetime | None = None) -> AllowancePeriodTable:
        """Return the user's period for *now*, creating it (with rollover) if needed.

        Safe to call concurrently: the insert is ``ON CONFLICT DO NOTHING`` on
        ``(user_id, period_start)`` and every caller re-reads the stored row.
        """
        now = now or self._clock()
        repo = AllowanceRepository(self._session, user_id)

        existing = await repo.get_active(now)
        if existing is not None:
            return existing

        settings = await self.load_settings()
        role = await self._roles.get_role(user_id)
        period_start, period_end = period_bounds(now)

        base = monthly_credits_for(role, settings) * settings.tokens_per_credit
        previous = await repo.get_latest_ended_before(period_start)
        carried = 0
        if previous is not None:
            carried = rollover_tokens(previous.tokens_granted, previous.tokens_used, base)

        created = await repo.insert_if_absent(
            {
                "period_start": period_start,
                "period_end": period_end,
                "tokens_granted": base + carried,
                "base_tokens": base,
                "rollover_tokens": carried,
                "source": period_source_for(role),
                "metadata_json": {
                    "base_tokens": base,
                    "rollover_tokens": carried,
                    "user_role": role or "free",
                },
            }
        )
        if created:
            if previous is not None:
                await repo.close(previous.id, now)
            logger.info(
                "Allowance period created user=%s start=%s base=%d rollover=%d",
                user_id,
                period_start.date().isoformat(),
                base,
                carried,
            )

        period = await repo.get_by_start(period_start)
        if period is None:  # pragma: no cover - insert or conflict guarantees a row
            raise RuntimeError(f"Allowance period for {user_id} vanished after insert")
        return period

    async def get_balance(self, user_id: str) -> tuple[AllowancePeriodTable, Balance]:
        period = await self.ensure_period(user_id)
        settings = await self.load_settings()
        return period, _balance_of(period, settings)

    # -- Gate ----------------------------------------------------------------

    async def check_credits(self, user_id: str) -> tuple[bool, str | None]:
        """Return ``(allowed, reason)``; ``reason`` is set only when denied."""
        role = await self._roles.get_role(user_id)
        if not is_premium(role):
            return False, "AI features require a Pro plan"

        _, balance = await self.get_balance(user_id)
        if balance.remaining_credits <= 0:
            return False, "No AI credits remaining for this billing period"
        return True, None

    async def require_credits(self, user_id: str) -> None:
        """Raise :class:`AllowanceDeniedError` unless :meth:`check_credits` allows."""
        allowed, reason = await self.check_credits(user_id)
        if not allowed:
            raise AllowanceDeniedError(reason or "AI usage not allowed")

    # -- Charging ------------------------------------------------------------

    async def record_usage(
        self,
        user_id: str,
        idempotency_key: str,
        prompt_tokens: int,
        completion_tokens: int,
        feature: str,
        *,
        model: str | None = None,
        provider: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Charge one AI call against the current period.

        Returns ``True`` if the call was charged, ``False`` if *idempotency_key*
        had already been recorded (a retried call is a silent no-op).
        """
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")
        if prompt_tokens < 0 or completion_tokens < 0:
            raise ValidationError("token counts must not be negative")

        period = await self.ensure_period(user_id)
        settings = await self.load_settings()
        total = prompt_tokens + completion_tokens

        inserted = await UsageEventRepository(self._session, user_id).insert_once(
            idempotency_key=idempotency_key,
            feature=feature,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            credits_charged=credits_for_tokens(total, settings.tokens_per_credit),
            model=model,
            provider=provider,
            details={"period_id": period.id, **(metadata or {})},
        )
        if not inserted:
            logger.info("Duplicate usage event ignored user=%s key=%s", user_id, idempotency_key)
            return False

        await AllowanceRepository(self._session, user_id).add_tokens_used(period.id, total)
        logger.info("Usage recorded user=%s feature=%s tokens=%d", user_id, feature, total)
        return True

    # -- Admin ---------------------------------------------------------------

    async def set_allowance(
        self,
        user_id: str,
        tokens_granted: int,
        tokens_used: int,
        *,
        admin_id: str,
    ) -> AllowancePeriodTable:
        """Overwrite the current period's granted/used tokens and audit the change.

        No upper bound is enforced; ``tokens_used`` may exceed ``tokens_granted``.
        """
        if tokens_granted < 0 or tokens_used < 0:
            raise ValidationError("token values must not be negative")

        repo = AllowanceRepository(self._session, user_id)
        period = await self.ensure_period(user_id)
        previous_granted, previous_used = period.tokens_granted, period.tokens_used

        await repo.overwrite(period.id, tokens_granted, tokens_used)

        stamp = int(self._clock().timestamp() * 1000)
        await UsageEventRepository(self._session, user_id).insert_once(
            idempotency_key=f"admin_adjustment_{period.id}_{stamp}",
            feature=ADMIN_ADJUSTMENT_FEATURE,
            prompt_tokens=0,
            completion_tokens=0,
            credits_charged=0.0,
            details={
                "admin_id": admin_id,
                "period_id": period.id,
                "previous_granted": previous_granted,
                "previous_used": previous_used,
                "new_granted": tokens_granted,
                "new_used": tokens_used,
                "granted_delta": tokens_granted - previous_granted,
                "used_delta": tokens_used - previous_used,
            },
        )
        logger.info(
            "Allowance overridden user=%s by admin=%s granted %d->%d used %d->%d",
            user_id,
            admin_id,
            previous_granted,
            tokens_granted,
            previous_used,
            tokens_used,
        )

        refreshed = await repo.get_by_start(period.period_start)
        if refreshed is None:
            raise NotFoundError(f"Allowance period for {user_id} not found")
        return refreshed

    async def ensure_all(self) -> dict[str, int]:
        """Ensure a current period for every known user.

        Per-user failures are logged and counted; they do not stop the batch.
        """
        processed = 0
        failed = 0
        for user_id in await self._roles.list_user_ids():
            try:
                async with self._session.begin_nested():
                    await self.ensure_period(user_id)
                processed += 1
            except Exception:
                failed += 1
                logger.exception("Failed to ensure allowance for user=%s", user_id)
        logger.info("Batch allowance init processed=%d failed=%d", processed, failed)
        return {"processed": processed, "failed": failed}


def _balance_of(period: AllowancePeriodTable, settings: CreditSettings) -> Balance:
    return Balance(
        tokens_granted=period.tokens_granted,
        tokens_used=period.tokens_used,
        tokens_per_credit=settings.tokens_per_credit,
        base_tokens=period.base_tokens,
        rollover_tokens=period.rollover_tokens,
    )
