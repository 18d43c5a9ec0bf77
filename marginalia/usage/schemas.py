"""Pydantic DTOs for the usage gate.

UsageDecision is what the chat endpoint consults and what the usage read
endpoint returns; it goes over the wire in camelCase.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

Plan = Literal["free", "pro"]
TierName = Literal["free", "trial", "pro"]

# Subscription states that still count as paid
PRO_STATUSES = frozenset({"active", "trialing", "past_due"})


@dataclass(frozen=True)
class Tier:
    """Resolved quota window for one user at one instant."""

    name: TierName
    window_start: datetime
    limit: int
    code: str  # rejection code when the window is exhausted
    reset_info: str


class UsageDecision(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    plan: Plan
    used: int
    limit: int
    remaining: int
    is_trial: bool = False
    trial_expires_at: str | None = None
    reset_info: str = ""
    subscription_status: str = "none"
    cancel_at_period_end: bool = False
    current_period_end: str | None = None
    has_tool_access: bool = False

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)
