"""Usage gate — tiered message quotas.

Public API: UsageGate, resolve_tier, and the decision schema types.
"""

from marginalia.usage.gate import UsageGate, is_pro, resolve_tier
from marginalia.usage.schemas import PRO_STATUSES, Plan, Tier, TierName, UsageDecision

__all__ = [
    "UsageGate",
    "is_pro",
    "resolve_tier",
    # Schemas
    "PRO_STATUSES",
    "Plan",
    "Tier",
    "TierName",
    "UsageDecision",
]
