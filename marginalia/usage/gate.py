"""Per-user message quotas.

Three tiers, in precedence order: an active paid subscription, an active
trial, then free. Each tier counts ledger rows inside its own window:

- pro: since the billing cycle anchor (fallback: period end - 30 days)
- trial: since trial start (trial expiry - 30 days)
- free: since UTC midnight today

The count always reflects committed usage at call time. No slot is
reserved, so concurrent turns from one user can overshoot the limit by
the number of in-flight requests minus one. Usage is recorded only after
a successful turn, so failed turns never consume quota.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from marginalia.config import Settings
from marginalia.errors import LimitExceeded
from marginalia.storage.database import Database
from marginalia.storage.models import MessageUsage, UserProfile
from marginalia.usage.schemas import PRO_STATUSES, Tier, UsageDecision

logger = logging.getLogger(__name__)

_MESSAGES = {
    "pro": "You've used all {limit} messages for this billing period.",
    "trial": "You've used all {limit} trial messages for this month.",
    "free": "You've used all {limit} messages for today. Upgrade to Pro for {pro_limit}/month.",
}


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _iso(value: datetime | None) -> str | None:
    value = _as_utc(value)
    return value.isoformat() if value else None


def _format_date(value: datetime) -> str:
    return f"{value:%b} {value.day}, {value.year}"


def is_pro(profile: UserProfile | None) -> bool:
    if profile is None:
        return False
    return profile.plan == "pro" and profile.subscription_status in PRO_STATUSES


def resolve_tier(profile: UserProfile | None, now: datetime, settings: Settings | None = None) -> Tier:
    """Pick the quota window that applies to profile at `now`."""
    settings = settings or Settings()
    window = timedelta(days=settings.billing_window_days)

    if is_pro(profile):
        anchor = _as_utc(profile.billing_cycle_anchor)
        period_end = _as_utc(profile.current_period_end)
        if anchor is not None:
            start = anchor
        elif period_end is not None:
            start = period_end - window
        else:
            start = now
        reset = f"Resets on {_format_date(period_end)}" if period_end else "Resets at next billing cycle"
        return Tier("pro", start, settings.pro_monthly_limit, "MONTHLY_LIMIT_EXCEEDED", reset)

    trial_expires = _as_utc(profile.trial_expires_at) if profile else None
    if trial_expires is not None and trial_expires > now:
        return Tier(
            "trial",
            trial_expires - window,
            settings.trial_monthly_limit,
            "TRIAL_LIMIT_EXCEEDED",
            f"Trial expires {_format_date(trial_expires)}",
        )

    midnight = now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    return Tier("free", midnight, settings.free_daily_limit, "DAILY_LIMIT_EXCEEDED", "Resets daily at midnight UTC")


class UsageGate:
    """Evaluates and records per-user message usage. Never caches decisions."""

    def __init__(self, database: Database, settings: Settings) -> None:
        self._db = database
        self._settings = settings

    async def evaluate(self, user_id: str) -> UsageDecision:
        """Approve a chat turn or raise LimitExceeded.

        Creates a free profile the first time a user is seen.
        """
        async with self._db.session() as session:
            profile = await session.get(UserProfile, user_id)
            if profile is None:
                profile = UserProfile(
                    id=user_id,
                    plan="free",
                    subscription_status="none",
                    cancel_at_period_end=False,
                )
                session.add(profile)
                try:
                    await session.commit()
                    logger.info("Created free profile for user %s", user_id)
                except IntegrityError:
                    # A concurrent first request inserted it; use that row
                    await session.rollback()
                    profile = await session.get(UserProfile, user_id)
                    if profile is None:
                        raise

            decision, tier = await self._decide(session, user_id, profile)

        if decision.used >= decision.limit:
            message = _MESSAGES[tier.name].format(
                limit=decision.limit, pro_limit=self._settings.pro_monthly_limit
            )
            logger.info(
                "User %s over limit (%s %d/%d)", user_id, tier.name, decision.used, decision.limit
            )
            raise LimitExceeded(
                code=tier.code,
                message=message,
                plan=decision.plan,
                used=decision.used,
                limit=decision.limit,
                is_trial=decision.is_trial,
                trial_expires_at=decision.trial_expires_at,
            )
        return decision

    async def current(self, user_id: str) -> UsageDecision:
        """Read-only view of the user's usage. Unknown users get free defaults."""
        async with self._db.session() as session:
            profile = await session.get(UserProfile, user_id)
            if profile is None:
                limit = self._settings.free_daily_limit
                return UsageDecision(
                    plan="free",
                    used=0,
                    limit=limit,
                    remaining=limit,
                    reset_info="Resets daily at midnight UTC",
                    has_tool_access=user_id in self._settings.admin_ids,
                )
            decision, _ = await self._decide(session, user_id, profile)
            return decision

    async def record(self, user_id: str, project_id: UUID | None = None) -> None:
        """Append one ledger row for a completed turn."""
        async with self._db.session() as session:
            session.add(MessageUsage(
                user_id=user_id,
                project_id=project_id,
                created_at=datetime.now(UTC),
            ))
            await session.commit()

    async def has_tool_access(self, user_id: str) -> bool:
        """Admins and active pro subscribers may use external tool servers."""
        if user_id in self._settings.admin_ids:
            return True
        async with self._db.session() as session:
            profile = await session.get(UserProfile, user_id)
        return is_pro(profile)

    async def _decide(self, session, user_id: str, profile: UserProfile) -> tuple[UsageDecision, Tier]:
        """Count usage in the tier window resolved once at `now`."""
        now = datetime.now(UTC)
        tier = resolve_tier(profile, now, self._settings)
        used = await self._count_since(session, user_id, tier.window_start)
        decision = UsageDecision(
            plan=profile.plan,
            used=used,
            limit=tier.limit,
            remaining=max(tier.limit - used, 0),
            is_trial=tier.name == "trial",
            trial_expires_at=_iso(profile.trial_expires_at),
            reset_info=tier.reset_info,
            subscription_status=profile.subscription_status,
            cancel_at_period_end=profile.cancel_at_period_end,
            current_period_end=_iso(profile.current_period_end),
            has_tool_access=user_id in self._settings.admin_ids or is_pro(profile),
        )
        return decision, tier

    @staticmethod
    async def _count_since(session, user_id: str, since: datetime) -> int:
        result = await session.execute(
            select(func.count(MessageUsage.id)).where(
                MessageUsage.user_id == user_id,
                MessageUsage.created_at >= since,
            )
        )
        return result.scalar_one()
