"""Pure allowance arithmetic: billing periods, plan bases, rollover and balances.

Nothing here touches the database, which keeps the rules easy to test in
isolation and lets the engine and the API balance view share them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

# ---------------------------------------------------------------------------
# Configuration defaults
# ---------------------------------------------------------------------------

DEFAULT_TOKENS_PER_CREDIT = 200
DEFAULT_CREDITS_FREE_PER_MONTH = 0
DEFAULT_CREDITS_PREMIUM_PER_MONTH = 1500

SETTING_TOKENS_PER_CREDIT = "tokens_per_credit"
SETTING_CREDITS_FREE = "credits_free_per_month"
SETTING_CREDITS_PREMIUM = "credits_premium_per_month"

# Fraction of the period's credit capacity under which a warning is shown.
LOW_BALANCE_RATIO = 0.15


class PlanRole(str, Enum):
    """Plan role as stored in ``user_roles``."""

    FREE = "free"
    PRO = "pro"
    PRO_GIFT = "pro_gift"
    ADMIN = "admin"


PREMIUM_ROLES: frozenset[str] = frozenset({PlanRole.PRO.value, PlanRole.PRO_GIFT.value, PlanRole.ADMIN.value})


@dataclass(frozen=True)
class CreditSettings:
    """Global conversion ratio and monthly credit allotments."""

    tokens_per_credit: int = DEFAULT_TOKENS_PER_CREDIT
    credits_free_per_month: int = DEFAULT_CREDITS_FREE_PER_MONTH
    credits_premium_per_month: int = DEFAULT_CREDITS_PREMIUM_PER_MONTH

    @classmethod
    def from_mapping(cls, raw: dict[str, int]) -> CreditSettings:
        """Build settings from stored key/value rows, falling back to defaults."""
        tpc = raw.get(SETTING_TOKENS_PER_CREDIT, DEFAULT_TOKENS_PER_CREDIT)
        if tpc <= 0:
            raise ValueError(f"{SETTING_TOKENS_PER_CREDIT} must be positive, got {tpc}")
        return cls(
            tokens_per_credit=tpc,
            credits_free_per_month=max(0, raw.get(SETTING_CREDITS_FREE, DEFAULT_CREDITS_FREE_PER_MONTH)),
            credits_premium_per_month=max(0, raw.get(SETTING_CREDITS_PREMIUM, DEFAULT_CREDITS_PREMIUM_PER_MONTH)),
        )


def is_premium(role: str | None) -> bool:
    return role in PREMIUM_ROLES


def monthly_credits_for(role: str | None, settings: CreditSettings) -> int:
    """Plan base credits for *role*."""
    if is_premium(role):
        return settings.credits_premium_per_month
    return settings.credits_free_per_month


def period_source_for(role: str | None) -> str:
    """Allowance ``source`` label: ``gift``, ``premium`` or ``free``."""
    if role == PlanRole.PRO_GIFT.value:
        return "gift"
    if is_premium(role):
        return "premium"
    return "free"


def period_bounds(now: datetime) -> tuple[datetime, datetime]:
    """Return the UTC calendar-month ``[start, end)`` containing *now*."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    now = now.astimezone(UTC)
    start = datetime(now.year, now.month, 1, tzinfo=UTC)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=UTC)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=UTC)
    return start, end


def rollover_tokens(previous_granted: int, previous_used: int, base_tokens: int) -> int:
    """Unused tokens carried into the next period, capped at the plan base.

    Negative balances (possible after an admin override) carry nothing.
    """
    remaining = previous_granted - previous_used
    return max(0, min(remaining, base_tokens))


# ---------------------------------------------------------------------------
# Balance view
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Balance:
    """Derived read-only view of one allowance period.

    ``remaining_tokens`` may be negative after an admin override; consumers
    must render it rather than assert on it.
    """

    tokens_granted: int
    tokens_used: int
    tokens_per_credit: int
    base_tokens: int = 0
    rollover_tokens: int = 0

    @property
    def remaining_tokens(self) -> int:
        return self.tokens_granted - self.tokens_used

    @property
    def remaining_credits(self) -> float:
        return self.remaining_tokens / self.tokens_per_credit

    @property
    def credits_granted(self) -> float:
        return self.tokens_granted / self.tokens_per_credit

    @property
    def credits_used(self) -> float:
        return self.tokens_used / self.tokens_per_credit

    @property
    def plan_base_credits(self) -> float:
        return self.base_tokens / self.tokens_per_credit

    @property
    def rollover_credits(self) -> float:
        return self.rollover_tokens / self.tokens_per_credit

    @property
    def low_balance(self) -> bool:
        """True when some credits remain but fewer than 15% of this period's capacity."""
        capacity = self.plan_base_credits + self.rollover_credits
        remaining = self.remaining_credits
        return 0 < remaining < LOW_BALANCE_RATIO * capacity


def credits_for_tokens(tokens: int, tokens_per_credit: int) -> float:
    return round(tokens / tokens_per_credit, 4)
