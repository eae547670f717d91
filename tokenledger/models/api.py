"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


class TokenBucket(str, Enum):
    """The four balance buckets, in drain priority order."""

    REGISTRATION = "registration_token"
    FREE = "free_token"
    SUBSCRIPTION = "subscription_token"
    ADDONS = "addons_token"


class PurchaseType(str, Enum):
    """Purchase record type."""

    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    ADDON = "addon"
    MANUAL = "manual"
    REGISTRATION = "registration"


class PurchaseStatus(str, Enum):
    """Purchase record status."""

    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


class TokenAction(str, Enum):
    """Direction of a token history entry."""

    CREDITED = "credited"
    DEBITED = "debited"


class UserRole(str, Enum):
    """User role enumeration."""

    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class SubscriptionStatus(str, Enum):
    """Subscription status enumeration."""

    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"


class AnalysisType(str, Enum):
    """Kind of AI call a usage row was billed for."""

    VISION = "vision"
    TEXT = "text"


class HistoryType(str, Enum):
    """Kind of persisted AI interaction."""

    CHART_ANALYSIS = "chart_analysis"
    EA_GENERATION = "ea_generation"
    AI_EDUCATOR = "ai_educator"


class CostProvider(str, Enum):
    """Pricing table family used for a cost calculation."""

    OPENROUTER = "openrouter"
    GEMINI = "gemini"


class SortDirection(str, Enum):
    """Sort direction."""

    ASC = "asc"
    DESC = "desc"


class UsageSortField(str, Enum):
    """Columns a token usage report may be sorted by."""

    TIMESTAMP = "timestamp"
    TOKENS_USED = "tokens_used"
    INPUT_TOKENS = "input_tokens"
    OUTPUT_TOKENS = "output_tokens"
    MODEL = "model"
    FEATURE = "feature"


# Buckets an admin may top up by hand
MANUAL_BUCKETS = (TokenBucket.SUBSCRIPTION, TokenBucket.ADDONS)


# ============================================================================
# Shared Models
# ============================================================================


class TokenBalances(BaseModel):
    """Per-bucket balances plus their total."""

    registration_token: int
    free_token: int
    subscription_token: int
    addons_token: int
    total: int


class Pagination(BaseModel):
    """Page metadata for list responses."""

    total: int
    per_page: int
    current_page: int
    last_page: int


# ============================================================================
# Balance & Package Models
# ============================================================================


class TokenBalanceResponse(BaseModel):
    """GET /v1/tokens/balance response."""

    success: bool = True
    balances: TokenBalances


class TokenPackageItem(BaseModel):
    """A purchasable token bundle."""

    id: str
    name: str
    tokens: int
    price: float
    original_value: float
    savings: str
    description: str
    price_id: str


class TokenPackagesResponse(BaseModel):
    """GET /v1/tokens/packages response."""

    success: bool = True
    packages: list[TokenPackageItem]


# ============================================================================
# Purchase History Models
# ============================================================================


class PurchaseItem(BaseModel):
    """Single purchase record."""

    id: UUID
    session_id: str
    price_id: str | None
    amount: float
    currency: str
    tokens: int
    status: PurchaseStatus
    type: PurchaseType
    description: str | None
    expires_at: datetime | None
    created_at: datetime


class PurchaseHistoryResponse(BaseModel):
    """GET /v1/tokens/history response."""

    success: bool = True
    purchases: list[PurchaseItem]
    pagination: Pagination


# ============================================================================
# Deduction Models
# ============================================================================


class DeductTokensRequest(BaseModel):
    """POST /v1/tokens/deduct request body."""

    user_id: UUID
    amount: int = Field(..., ge=1, le=100_000_000)
    reason: str = Field("usage", min_length=1, max_length=255)
    model: str | None = Field(None, max_length=255)
    analysis_type: AnalysisType | None = None
    input_tokens: int | None = Field(None, ge=0)
    output_tokens: int | None = Field(None, ge=0)


class BucketAmounts(BaseModel):
    """Tokens taken from each bucket by one deduction."""

    registration_token: int = 0
    free_token: int = 0
    subscription_token: int = 0
    addons_token: int = 0


class DeductTokensResponse(BaseModel):
    """POST /v1/tokens/deduct response."""

    success: bool = True
    deducted: int
    bucket_used: str
    amounts: BucketAmounts
    balances: TokenBalances


# ============================================================================
# Manual Token Addition Models
# ============================================================================


class ManualTokenAdditionRequest(BaseModel):
    """POST /v1/tokens/manually-add request body."""

    user_id: UUID
    token_amount: int = Field(..., ge=1, le=100_000_000)
    token_type: TokenBucket
    reason: str = Field(..., min_length=1, max_length=255)

    @field_validator("token_type")
    @classmethod
    def validate_token_type(cls, v: TokenBucket) -> TokenBucket:
        """Only subscription and addon buckets accept manual top-ups."""
        if v not in MANUAL_BUCKETS:
            allowed = ", ".join(b.value for b in MANUAL_BUCKETS)
            raise ValueError(f"token_type must be one of: {allowed}")
        return v


class ManualTokenAdditionItem(BaseModel):
    """Audit record of a manual top-up."""

    id: UUID
    user_id: UUID
    admin_id: UUID
    admin_name: str
    token_amount: int
    token_type: TokenBucket
    reason: str
    purchase_id: UUID | None
    created_at: datetime


class ManualTokenAdditionResponse(BaseModel):
    """POST /v1/tokens/manually-add response."""

    success: bool = True
    message: str
    addition: ManualTokenAdditionItem
    balances: TokenBalances


class ManualTokenAdditionListResponse(BaseModel):
    """GET /v1/admin/manual-token-additions response."""

    success: bool = True
    additions: list[ManualTokenAdditionItem]
    pagination: Pagination


# ============================================================================
# Monthly Allocation Models
# ============================================================================


class MonthlyAllocationRequest(BaseModel):
    """POST /v1/admin/tokens/monthly-allocation request body."""

    amount: int | None = Field(None, ge=0, le=100_000_000)


class MonthlyAllocationResponse(BaseModel):
    """POST /v1/admin/tokens/monthly-allocation response."""

    success: bool = True
    amount: int
    users_updated: int
    free_resets: int
    subscription_resets: int


# ============================================================================
# Usage Report Models
# ============================================================================


class TokenUsageItem(BaseModel):
    """Single token usage row."""

    id: UUID
    user_id: UUID
    feature: str
    model: str | None
    analysis_type: str | None
    input_tokens: int
    output_tokens: int
    tokens_used: int
    total_tokens: int
    timestamp: datetime


class UsageStats(BaseModel):
    """Aggregates over the filtered usage rows."""

    total_input_tokens: int
    total_output_tokens: int
    total_tokens_used: int
    average_input_tokens: float
    average_output_tokens: float
    total_records: int


class TokenUsageReportResponse(BaseModel):
    """GET /v1/tokens/usage response."""

    success: bool = True
    data: list[TokenUsageItem]
    stats: UsageStats
    pagination: Pagination


class UsageBreakdownItem(BaseModel):
    """Share of one feature category in a user's usage."""

    category: str
    count: int
    percentage: int
    color: str


class UsageBreakdownResponse(BaseModel):
    """GET /v1/usage/breakdown response."""

    success: bool = True
    total: int
    breakdown: list[UsageBreakdownItem]


# ============================================================================
# Model Catalog & Pricing Models
# ============================================================================


class ModelInfo(BaseModel):
    """Selectable AI model."""

    id: str
    name: str
    description: str
    premium: bool
    credit_cost: int
    beta: bool
    has_vision: bool
    structured_output: bool


class ModelListResponse(BaseModel):
    """GET /v1/models response."""

    success: bool = True
    premium_access: bool
    models: list[ModelInfo]


class ModelCostRequest(BaseModel):
    """POST /v1/models/cost request body."""

    model: str = Field(..., min_length=1, max_length=255)
    is_analysis: bool = False


class ModelCostResponse(BaseModel):
    """POST /v1/models/cost response."""

    success: bool = True
    model: str
    credit_cost: int


class CostCalculationRequest(BaseModel):
    """POST /v1/pricing/calculate request body."""

    provider: CostProvider = CostProvider.OPENROUTER
    model: str = Field(..., min_length=1, max_length=255)
    input_tokens: int = Field(..., ge=0, le=10_000_000)
    output_tokens: int = Field(..., ge=0, le=10_000_000)
    usage_multiplier: float = Field(1.0, gt=0, le=100)

    @model_validator(mode="after")
    def validate_multiplier_scope(self) -> "CostCalculationRequest":
        """Gemini pricing is flat; a multiplier there is a caller bug."""
        if self.provider == CostProvider.GEMINI and self.usage_multiplier != 1.0:
            raise ValueError("usage_multiplier is not supported for gemini pricing")
        return self


class CostCalculationResponse(BaseModel):
    """POST /v1/pricing/calculate response."""

    success: bool = True
    model: str
    input_cost: float
    output_cost: float
    raw_cost: float
    total_cost: float
    token_cost: int | None


# ============================================================================
# AI Educator Models
# ============================================================================


class EducatorQuestionRequest(BaseModel):
    """POST /v1/ai/educator request body."""

    question: str = Field(..., min_length=1, max_length=4000)
    last_message: str | None = Field(None, max_length=8000)

    @field_validator("question")
    @classmethod
    def validate_question(cls, v: str) -> str:
        """Reject whitespace-only questions."""
        if not v.strip():
            raise ValueError("question cannot be blank")
        return v.strip()


class EducatorAnswerResponse(BaseModel):
    """POST /v1/ai/educator response."""

    success: bool = True
    answer: str
    model: str
    keywords: list[str]
    knowledge_base_used: bool
    tokens_charged: int
    balances: TokenBalances


class EducatorMessage(BaseModel):
    """One side of an educator exchange."""

    id: str
    content: str
    sender: Literal["user", "ai"]
    timestamp: datetime


class EducatorHistoryResponse(BaseModel):
    """GET /v1/ai/educator/history response."""

    success: bool = True
    data: list[EducatorMessage]


# ============================================================================
# AI Chat & Chart Analysis Models
# ============================================================================

DEFAULT_VISION_MODEL = "qwen/qwen2.5-vl-72b-instruct:free"


class ChatTurn(BaseModel):
    """One message of an assistant conversation, in OpenAI chat format."""

    role: Literal["system", "user", "assistant"]
    content: str | list[dict[str, Any]]

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str | list[dict[str, Any]]) -> str | list[dict[str, Any]]:
        """Messages must say something."""
        if isinstance(v, str) and not v.strip():
            raise ValueError("content cannot be blank")
        if isinstance(v, list) and not v:
            raise ValueError("content cannot be empty")
        return v


class ChatRequest(BaseModel):
    """POST /v1/ai/chat request body."""

    messages: list[ChatTurn] = Field(..., min_length=1, max_length=100)
    model: str = Field(DEFAULT_VISION_MODEL, min_length=1, max_length=255)
    history_id: UUID | None = Field(None, description="Analysis this conversation is about")


class ChatResponse(BaseModel):
    """POST /v1/ai/chat response."""

    success: bool = True
    reply: str
    model: str
    prompt_tokens: int | None
    completion_tokens: int | None
    tokens_charged: int
    balances: TokenBalances


class ChartAnalysisRequest(BaseModel):
    """POST /v1/ai/chart-analysis request body."""

    images: list[str] = Field(
        ..., min_length=1, max_length=10, description="Chart images as data URIs or https URLs"
    )
    model: str = Field(DEFAULT_VISION_MODEL, min_length=1, max_length=255)
    preview: bool = Field(False, description="On-demand chart preview, billed with a surcharge")

    @field_validator("images")
    @classmethod
    def validate_images(cls, v: list[str]) -> list[str]:
        """Only inline data URIs and web URLs can be sent to the provider."""
        for image in v:
            if not image.startswith(("data:image/", "https://", "http://")):
                raise ValueError("images must be data:image URIs or http(s) URLs")
        return v


class ChartAnalysisResponse(BaseModel):
    """POST /v1/ai/chart-analysis response."""

    success: bool = True
    analysis: dict[str, Any]
    model: str
    history_id: UUID
    tokens_charged: int
    balances: TokenBalances


# ============================================================================
# Health Check & Error Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str


class ErrorResponse(BaseModel):
    """Uniform error envelope for every non-2xx response."""

    success: bool = False
    message: str
    error: str
