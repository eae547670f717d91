"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from tokenledger.models.api import (
    AnalysisType,
    PurchaseStatus,
    PurchaseType,
    SortDirection,
    TokenBucket,
    UsageSortField,
)


@dataclass(frozen=True)
class BalanceSnapshot:
    """Immutable per-bucket token balances at a point in time."""

    registration_token: int = 0
    free_token: int = 0
    subscription_token: int = 0
    addons_token: int = 0

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        for bucket in TokenBucket:
            value = self.amount(bucket)
            if value < 0:
                raise ValueError(f"{bucket.value} cannot be negative: {value}")

    @property
    def total(self) -> int:
        """Sum over all four buckets."""
        return (
            self.registration_token + self.free_token + self.subscription_token + self.addons_token
        )

    def amount(self, bucket: TokenBucket) -> int:
        """Balance of a single bucket."""
        return int(getattr(self, bucket.value))


@dataclass(frozen=True)
class DeductionPlan:
    """How a cost is drained from the buckets. Amounts always sum to cost."""

    cost: int
    registration_token: int = 0
    free_token: int = 0
    subscription_token: int = 0
    addons_token: int = 0

    def __post_init__(self) -> None:
        """Validate that the plan covers the cost exactly."""
        if self.cost <= 0:
            raise ValueError(f"Deduction cost must be positive: {self.cost}")
        taken = (
            self.registration_token + self.free_token + self.subscription_token + self.addons_token
        )
        if taken != self.cost:
            raise ValueError(f"Deduction plan takes {taken}, cost is {self.cost}")

    def amount(self, bucket: TokenBucket) -> int:
        """Tokens taken from a single bucket."""
        return int(getattr(self, bucket.value))

    @property
    def buckets_used(self) -> list[TokenBucket]:
        """Buckets this plan touches, in drain order."""
        return [bucket for bucket in TokenBucket if self.amount(bucket) > 0]

    @property
    def bucket_label(self) -> str:
        """Single bucket name, or 'mixed' when more than one bucket is drained."""
        used = self.buckets_used
        return used[0].value if len(used) == 1 else "mixed"


@dataclass(frozen=True)
class UsageSlice:
    """Portion of a usage charge billed to exactly one bucket."""

    bucket: TokenBucket
    cost: int
    input_tokens: int
    output_tokens: int
    feature_suffix: str = ""

    def __post_init__(self) -> None:
        """Validate slice constraints."""
        if self.cost <= 0:
            raise ValueError(f"Slice cost must be positive: {self.cost}")
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("Slice token counts cannot be negative")


@dataclass(frozen=True)
class DeductionIntent:
    """Domain model for a deduction before persistence - immutable intent."""

    user_id: UUID
    amount: int
    reason: str = "usage"
    model: str | None = None
    analysis_type: AnalysisType | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None

    def __post_init__(self) -> None:
        """Validate deduction constraints."""
        if self.amount <= 0:
            raise ValueError(f"Deduction amount must be positive: {self.amount}")
        if not self.reason:
            raise ValueError("Reason cannot be empty")


@dataclass(frozen=True)
class UsageCharge:
    """An AI call to be billed across subscription and addon tokens."""

    user_id: UUID
    cost: int
    feature: str
    model: str
    analysis_type: AnalysisType
    input_tokens: int
    output_tokens: int

    def __post_init__(self) -> None:
        """Validate usage charge constraints."""
        if self.cost <= 0:
            raise ValueError(f"Usage cost must be positive: {self.cost}")
        if not self.feature:
            raise ValueError("Feature cannot be empty")
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("Token counts cannot be negative")


@dataclass(frozen=True)
class DeductionResult:
    """Outcome of a committed deduction."""

    user_id: UUID
    plan: DeductionPlan
    usage_ids: tuple[UUID, ...]
    balances_after: BalanceSnapshot


@dataclass(frozen=True)
class UsageChargeResult:
    """Outcome of a committed usage charge."""

    user_id: UUID
    cost: int
    slices: tuple[UsageSlice, ...]
    usage_ids: tuple[UUID, ...]
    balances_after: BalanceSnapshot

    @property
    def split(self) -> bool:
        """True when the charge spanned more than one bucket."""
        return len(self.slices) > 1


@dataclass(frozen=True)
class CreditIntent:
    """Domain model for a token credit before persistence - immutable intent."""

    user_id: UUID
    amount: int
    bucket: TokenBucket = TokenBucket.ADDONS
    purchase_type: PurchaseType = PurchaseType.PURCHASE
    price_id: str | None = None
    amount_paid: Decimal = Decimal("0")
    currency: str = "usd"
    status: PurchaseStatus = PurchaseStatus.COMPLETED
    customer_email: str | None = None
    session_id: str | None = None
    description: str | None = None
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate credit constraints."""
        if self.amount <= 0:
            raise ValueError(f"Credit amount must be positive: {self.amount}")
        if self.amount_paid < 0:
            raise ValueError(f"Amount paid cannot be negative: {self.amount_paid}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")


@dataclass(frozen=True)
class CreditResult:
    """Outcome of a committed credit."""

    user_id: UUID
    bucket: TokenBucket
    amount: int
    purchase_id: UUID
    balances_after: BalanceSnapshot


@dataclass(frozen=True)
class ManualAdditionData:
    """Immutable manual top-up audit record."""

    addition_id: UUID
    user_id: UUID
    admin_id: UUID
    admin_name: str
    token_amount: int
    token_type: TokenBucket
    reason: str
    purchase_id: UUID | None
    created_at: datetime


@dataclass(frozen=True)
class MonthlyAllocationResult:
    """Counts from one monthly allocation run."""

    amount: int
    free_resets: int
    subscription_resets: int

    @property
    def users_updated(self) -> int:
        """Every user gets exactly one reset."""
        return self.free_resets + self.subscription_resets


@dataclass(frozen=True)
class ManualAdditionFilters:
    """Filters for the manual top-up audit listing."""

    user_id: UUID | None = None
    admin_id: UUID | None = None
    token_type: TokenBucket | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None


@dataclass(frozen=True)
class UsageReportFilters:
    """Filters, ordering and paging for a token usage report."""

    user_id: UUID | None = None
    feature: str | None = None
    model: str | None = None
    analysis_type: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    sort_by: UsageSortField = UsageSortField.TIMESTAMP
    direction: SortDirection = SortDirection.DESC
    page: int = 1
    per_page: int = 15

    def __post_init__(self) -> None:
        """Validate paging constraints."""
        if self.page < 1:
            raise ValueError(f"Page must be >= 1: {self.page}")
        if not 1 <= self.per_page <= 100:
            raise ValueError(f"per_page must be between 1 and 100: {self.per_page}")


@dataclass(frozen=True)
class UsageStatsData:
    """Aggregates over a filtered usage set."""

    total_input_tokens: int
    total_output_tokens: int
    total_tokens_used: int
    average_input_tokens: float
    average_output_tokens: float
    total_records: int


@dataclass(frozen=True)
class BreakdownEntry:
    """Share of one category in a user's usage."""

    category: str
    count: int
    percentage: int
    color: str


@dataclass(frozen=True)
class ModelRate:
    """Provider price for a model, input and output separately."""

    input: Decimal
    output: Decimal


@dataclass(frozen=True)
class CostBreakdown:
    """USD cost of a call, rounded to 6 decimal places."""

    model: str
    input_cost: Decimal
    output_cost: Decimal
    raw_cost: Decimal
    total_cost: Decimal


@dataclass(frozen=True)
class TokenEstimate:
    """Assumed token counts when the real ones are not known yet."""

    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class CatalogModel:
    """Model offered in the model picker."""

    id: str
    name: str
    description: str
    premium: bool
    beta: bool
    has_vision: bool
    structured_output: bool


@dataclass(frozen=True)
class TokenPackage:
    """Purchasable token bundle tied to a Stripe price."""

    id: str
    name: str
    tokens: int
    price: Decimal
    original_value: Decimal
    savings: str
    description: str
    price_id: str


@dataclass(frozen=True)
class Completion:
    """A successful chat completion from the AI provider."""

    model: str
    content: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


@dataclass(frozen=True)
class EducatorAnswer:
    """Outcome of one AI educator question."""

    answer: str
    model: str
    keywords: tuple[str, ...]
    knowledge_base_used: bool
    tokens_charged: int
    balances_after: BalanceSnapshot


@dataclass(frozen=True)
class ChatReply:
    """Outcome of one assistant chat message."""

    reply: str
    model: str
    prompt_tokens: int | None
    completion_tokens: int | None
    tokens_charged: int
    balances_after: BalanceSnapshot


@dataclass(frozen=True)
class ChartAnalysis:
    """Outcome of one chart image analysis."""

    analysis: dict[str, Any]
    model: str
    history_id: UUID
    tokens_charged: int
    balances_after: BalanceSnapshot


@dataclass(frozen=True)
class EducatorTurn:
    """One message of an educator conversation."""

    id: str
    content: str
    sender: str
    timestamp: datetime


@dataclass(frozen=True)
class Page:
    """Paging arithmetic shared by list endpoints."""

    total: int
    per_page: int
    current_page: int
    items: tuple = field(default_factory=tuple)

    @property
    def last_page(self) -> int:
        """Ceiling of total over per_page, at least 1."""
        return max(1, -(-self.total // self.per_page))
