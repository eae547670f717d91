"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    ARRAY,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    Owns the four token buckets. Identity and credentials live with the auth
    service; only what the ledger needs is mirrored here.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="user")

    # Token buckets
    registration_token: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    free_token: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    subscription_token: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    addons_token: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("registration_token >= 0", name="ck_registration_token_non_negative"),
        CheckConstraint("free_token >= 0", name="ck_free_token_non_negative"),
        CheckConstraint("subscription_token >= 0", name="ck_subscription_token_non_negative"),
        CheckConstraint("addons_token >= 0", name="ck_addons_token_non_negative"),
        CheckConstraint("role IN ('user', 'admin', 'super_admin')", name="ck_users_role"),
        Index("idx_users_role", "role"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<User(id={self.id}, email={self.email}, sub={self.subscription_token}, "
            f"addons={self.addons_token}, free={self.free_token}, "
            f"registration={self.registration_token})>"
        )


class Plan(Base):
    """ORM model for plans table."""

    __tablename__ = "plans"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    interval: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly")
    tokens_per_cycle: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    stripe_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    premium_models_access: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_plan_price_non_negative"),
        CheckConstraint("interval IN ('monthly', 'yearly')", name="ck_plan_interval"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Plan(id={self.id}, name={self.name}, premium={self.premium_models_access})>"


class Subscription(Base):
    """ORM model for subscriptions table."""

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("plans.id", ondelete="SET NULL"), nullable=True
    )
    plan: Mapped["Plan | None"] = relationship("Plan", lazy="selectin")

    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'trialing', 'canceled', 'past_due', 'unpaid')",
            name="ck_subscription_status",
        ),
        Index("idx_subscriptions_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Subscription(id={self.id}, user_id={self.user_id}, status={self.status})>"


class Purchase(Base):
    """
    ORM model for purchases table.

    Every credit to a bucket leaves a purchase row, including manual top-ups
    (amount 0) so the audit trail has one source.
    """

    __tablename__ = "purchases"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    session_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    tokens: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tokens_awarded: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="purchase")
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("tokens > 0", name="ck_purchase_tokens_positive"),
        CheckConstraint("amount >= 0", name="ck_purchase_amount_non_negative"),
        Index("idx_purchases_user_created", "user_id", "created_at"),
        Index("idx_purchases_type", "type"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Purchase(id={self.id}, user_id={self.user_id}, type={self.type}, "
            f"tokens={self.tokens})>"
        )


class TokenUsage(Base):
    """
    ORM model for token_usages table.

    Immutable ledger of AI usage deductions.
    """

    __tablename__ = "token_usages"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    feature: Mapped[str] = mapped_column(String(255), nullable=False)
    model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    analysis_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    token_type: Mapped[str] = mapped_column(String(30), nullable=False)
    input_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("tokens_used > 0", name="ck_usage_tokens_used_positive"),
        CheckConstraint("input_tokens >= 0", name="ck_usage_input_non_negative"),
        CheckConstraint("output_tokens >= 0", name="ck_usage_output_non_negative"),
        Index("idx_token_usages_user_timestamp", "user_id", "timestamp"),
        Index("idx_token_usages_feature", "feature"),
        Index("idx_token_usages_model", "model"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<TokenUsage(id={self.id}, user_id={self.user_id}, feature={self.feature}, "
            f"tokens_used={self.tokens_used})>"
        )


class TokenHistory(Base):
    """ORM model for token_histories table - running balance audit trail."""

    __tablename__ = "token_histories"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_token_history_amount_positive"),
        CheckConstraint("action IN ('credited', 'debited')", name="ck_token_history_action"),
        CheckConstraint("balance_after >= 0", name="ck_token_history_balance_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<TokenHistory(id={self.id}, action={self.action}, amount={self.amount})>"


class ManualTokenAddition(Base):
    """ORM model for manual_token_additions table - admin top-up audit."""

    __tablename__ = "manual_token_additions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    admin_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    admin_name: Mapped[str] = mapped_column(String(255), nullable=False)
    token_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    token_type: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    purchase_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("purchases.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("token_amount > 0", name="ck_manual_addition_amount_positive"),
        CheckConstraint(
            "token_type IN ('subscription_token', 'addons_token')",
            name="ck_manual_addition_token_type",
        ),
        Index("idx_manual_additions_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ManualTokenAddition(id={self.id}, user_id={self.user_id}, "
            f"token_amount={self.token_amount}, token_type={self.token_type})>"
        )


class History(Base):
    """ORM model for histories table - persisted AI interactions."""

    __tablename__ = "histories"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    chart_urls: Mapped[list[str]] = mapped_column(ARRAY(Text), nullable=False, default=list)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_histories_user_type", "user_id", "type"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<History(id={self.id}, user_id={self.user_id}, type={self.type})>"


class ChatMessage(Base):
    """ORM model for chat_messages table - both sides of an AI chat exchange."""

    __tablename__ = "chat_messages"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    history_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("histories.id", ondelete="SET NULL"), nullable=True
    )
    sender: Mapped[str] = mapped_column(String(10), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("sender IN ('user', 'ai')", name="ck_chat_message_sender"),
    )


class KnowledgeBase(Base):
    """ORM model for knowledge_bases table - educator reference entries."""

    __tablename__ = "knowledge_bases"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    source: Mapped[str | None] = mapped_column(String(255), nullable=True)
    topic: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    skill_level: Mapped[str | None] = mapped_column(String(50), nullable=True)
    related_keywords: Mapped[list[str]] = mapped_column(
        ARRAY(String), nullable=False, default=list
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<KnowledgeBase(id={self.id}, title={self.title})>"
