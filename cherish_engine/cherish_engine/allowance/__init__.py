"""Monthly AI credit allowances: period ledger, gating and usage accounting."""

from cherish_engine.allowance.engine import AllowanceEngine
from cherish_engine.allowance.ledger import Balance, CreditSettings, PlanRole

__all__ = ["AllowanceEngine", "Balance", "CreditSettings", "PlanRole"]
