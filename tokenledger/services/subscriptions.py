"""
Subscriptions - Whether a user currently holds an active or trialing plan.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import ColumnElement, and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.db.models import Subscription
from tokenledger.models.api import SubscriptionStatus


def _utc_now() -> datetime:
    return datetime.now(UTC)


def is_subscription_active(subscription: Subscription, now: datetime | None = None) -> bool:
    """Active, or trialing with a trial that has not ended yet."""
    now = now or _utc_now()
    if subscription.status == SubscriptionStatus.ACTIVE.value:
        return True
    return (
        subscription.status == SubscriptionStatus.TRIALING.value
        and subscription.trial_ends_at is not None
        and subscription.trial_ends_at > now
    )


def active_subscription_clause(now: datetime) -> ColumnElement[bool]:
    """SQL form of is_subscription_active."""
    return or_(
        Subscription.status == SubscriptionStatus.ACTIVE.value,
        and_(
            Subscription.status == SubscriptionStatus.TRIALING.value,
            Subscription.trial_ends_at > now,
        ),
    )


class SubscriptionService:
    """Read-only subscription lookups."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_active_subscription(self, user_id: UUID) -> Subscription | None:
        """Most recent subscription that is currently active, if any."""
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id, active_subscription_clause(_utc_now()))
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def has_active_subscription(self, user_id: UUID) -> bool:
        """True when the user has an active or still-trialing subscription."""
        return await self.get_active_subscription(user_id) is not None

    async def has_premium_access(self, user_id: UUID) -> bool:
        """Active subscription on a plan that unlocks premium models."""
        subscription = await self.get_active_subscription(user_id)
        if subscription is None or subscription.plan is None:
            return False
        return bool(subscription.plan.premium_models_access)

    async def active_subscriber_ids(self) -> set[UUID]:
        """Ids of every user with an active subscription right now."""
        stmt = select(Subscription.user_id).where(active_subscription_clause(_utc_now()))
        result = await self.session.execute(stmt)
        return set(result.scalars().all())
