"""
API Routes - FastAPI endpoints for balances, usage, models, pricing and AI features.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from tokenledger.api.dependencies import CurrentUser, get_current_user, get_openrouter_client
from tokenledger.db.session import get_read_db, get_write_db
from tokenledger.exceptions import (
    AIProviderError,
    AllModelsFailedError,
    DataIntegrityError,
    InsufficientTokensError,
    SubscriptionRequiredError,
    UnknownModelError,
    UserNotFoundError,
    WriteVerificationError,
)
from tokenledger.models.api import (
    ChartAnalysisRequest,
    ChartAnalysisResponse,
    ChatRequest,
    ChatResponse,
    CostCalculationRequest,
    CostCalculationResponse,
    CostProvider,
    EducatorAnswerResponse,
    EducatorHistoryResponse,
    EducatorMessage,
    EducatorQuestionRequest,
    HealthResponse,
    ModelCostRequest,
    ModelCostResponse,
    ModelInfo,
    ModelListResponse,
    Pagination,
    PurchaseHistoryResponse,
    PurchaseItem,
    PurchaseType,
    SortDirection,
    TokenBalanceResponse,
    TokenBalances,
    TokenPackageItem,
    TokenPackagesResponse,
    TokenUsageItem,
    TokenUsageReportResponse,
    UsageBreakdownItem,
    UsageBreakdownResponse,
    UsageSortField,
    UsageStats,
)
from tokenledger.models.domain import BalanceSnapshot, CatalogModel, Page, UsageReportFilters
from tokenledger.services import model_catalog
from tokenledger.services.chart_analysis import ChartAnalysisService
from tokenledger.services.chat import ChatService
from tokenledger.services.educator import EducatorService, educator_history
from tokenledger.services.ledger import TokenLedgerService
from tokenledger.services.openrouter import OpenRouterClient
from tokenledger.services.packages import list_packages
from tokenledger.services.pricing import (
    CHART_ANALYSIS_RATES,
    calculate_cost,
    calculate_gemini_cost,
    catalog_token_cost,
    chart_preview_cost,
    token_cost,
)
from tokenledger.services.subscriptions import SubscriptionService
from tokenledger.services.usage import UsageAnalyticsService

logger = get_logger(__name__)

router = APIRouter()


def to_token_balances(snapshot: BalanceSnapshot) -> TokenBalances:
    """Convert a domain balance snapshot into the API shape."""
    return TokenBalances(
        registration_token=snapshot.registration_token,
        free_token=snapshot.free_token,
        subscription_token=snapshot.subscription_token,
        addons_token=snapshot.addons_token,
        total=snapshot.total,
    )


def to_pagination(page: Page) -> Pagination:
    """Convert a domain page into pagination metadata."""
    return Pagination(
        total=page.total,
        per_page=page.per_page,
        current_page=page.current_page,
        last_page=page.last_page,
    )


def _model_info(model: CatalogModel) -> ModelInfo:
    return ModelInfo(
        id=model.id,
        name=model.name,
        description=model.description,
        premium=model.premium,
        credit_cost=model_catalog.credit_cost(model),
        beta=model.beta,
        has_vision=model.has_vision,
        structured_output=model.structured_output,
    )


# ============================================================================
# Balance, Packages & Purchase History
# ============================================================================


@router.get("/v1/tokens/balance", response_model=TokenBalanceResponse)
async def get_token_balance(
    db: AsyncSession = Depends(get_read_db),
    user: CurrentUser = Depends(get_current_user),
) -> TokenBalanceResponse:
    """Current per-bucket balances of the caller. Read-only - uses replica."""
    snapshot = await TokenLedgerService(db).get_balances(user.user_id)
    return TokenBalanceResponse(balances=to_token_balances(snapshot))


@router.get("/v1/tokens/packages", response_model=TokenPackagesResponse)
async def get_token_packages(
    user: CurrentUser = Depends(get_current_user),
) -> TokenPackagesResponse:
    """Purchasable token bundles."""
    return TokenPackagesResponse(
        packages=[
            TokenPackageItem(
                id=package.id,
                name=package.name,
                tokens=package.tokens,
                price=float(package.price),
                original_value=float(package.original_value),
                savings=package.savings,
                description=package.description,
                price_id=package.price_id,
            )
            for package in list_packages()
        ]
    )


@router.get("/v1/tokens/history", response_model=PurchaseHistoryResponse)
async def get_purchase_history(
    type: str = Query("all", description="Purchase type, or 'all'"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_read_db),
    user: CurrentUser = Depends(get_current_user),
) -> PurchaseHistoryResponse:
    """The caller's purchases, newest first."""
    purchase_type: PurchaseType | None = None
    if type != "all":
        try:
            purchase_type = PurchaseType(type)
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Unknown purchase type: {type}",
            ) from exc

    result = await TokenLedgerService(db).list_purchases(user.user_id, purchase_type, page, limit)
    return PurchaseHistoryResponse(
        purchases=[
            PurchaseItem(
                id=purchase.id,
                session_id=purchase.session_id,
                price_id=purchase.price_id,
                amount=float(purchase.amount),
                currency=purchase.currency,
                tokens=purchase.tokens,
                status=purchase.status,
                type=purchase.type,
                description=purchase.description,
                expires_at=purchase.expires_at,
                created_at=purchase.created_at,
            )
            for purchase in result.items
        ],
        pagination=to_pagination(result),
    )


# ============================================================================
# Usage Reporting
# ============================================================================


@router.get("/v1/tokens/usage", response_model=TokenUsageReportResponse)
async def get_token_usage(
    user_id: UUID | None = Query(None, description="Admins only: narrow to one user"),
    feature: str | None = Query(None, max_length=255),
    model: str | None = Query(None, max_length=255),
    analysis_type: str | None = Query(None, max_length=50),
    from_date: datetime | None = Query(None),
    to_date: datetime | None = Query(None),
    sort_by: UsageSortField = Query(UsageSortField.TIMESTAMP),
    direction: SortDirection = Query(SortDirection.DESC),
    page: int = Query(1, ge=1),
    per_page: int = Query(15, ge=1, le=100),
    db: AsyncSession = Depends(get_read_db),
    user: CurrentUser = Depends(get_current_user),
) -> TokenUsageReportResponse:
    """
    Token usage rows with aggregate stats.

    Admins see every user's usage; everyone else only their own.
    """
    filters = UsageReportFilters(
        user_id=user_id,
        feature=feature,
        model=model,
        analysis_type=analysis_type,
        from_date=from_date,
        to_date=to_date,
        sort_by=sort_by,
        direction=direction,
        page=page,
        per_page=per_page,
    )
    rows, stats = await UsageAnalyticsService(db).token_usage_report(
        user.user_id, user.is_admin, filters
    )
    paging = Page(total=stats.total_records, per_page=per_page, current_page=page)

    return TokenUsageReportResponse(
        data=[
            TokenUsageItem(
                id=row.id,
                user_id=row.user_id,
                feature=row.feature,
                model=row.model,
                analysis_type=row.analysis_type,
                input_tokens=row.input_tokens,
                output_tokens=row.output_tokens,
                tokens_used=row.tokens_used,
                total_tokens=row.total_tokens,
                timestamp=row.timestamp,
            )
            for row in rows
        ],
        stats=UsageStats(
            total_input_tokens=stats.total_input_tokens,
            total_output_tokens=stats.total_output_tokens,
            total_tokens_used=stats.total_tokens_used,
            average_input_tokens=stats.average_input_tokens,
            average_output_tokens=stats.average_output_tokens,
            total_records=stats.total_records,
        ),
        pagination=to_pagination(paging),
    )


@router.get("/v1/usage/breakdown", response_model=UsageBreakdownResponse)
async def get_usage_breakdown(
    db: AsyncSession = Depends(get_read_db),
    user: CurrentUser = Depends(get_current_user),
) -> UsageBreakdownResponse:
    """Share of chart analysis, EA generation and chat in the caller's activity."""
    total, breakdown = await UsageAnalyticsService(db).usage_breakdown(user.user_id)
    return UsageBreakdownResponse(
        total=total,
        breakdown=[
            UsageBreakdownItem(
                category=entry.category,
                count=entry.count,
                percentage=entry.percentage,
                color=entry.color,
            )
            for entry in breakdown
        ],
    )


# ============================================================================
# Model Catalog & Pricing
# ============================================================================


@router.get("/v1/models", response_model=ModelListResponse)
async def list_models(
    db: AsyncSession = Depends(get_read_db),
    user: CurrentUser = Depends(get_current_user),
) -> ModelListResponse:
    """Models the caller may pick; premium ones need a premium plan."""
    premium_access = await SubscriptionService(db).has_premium_access(user.user_id)
    return ModelListResponse(
        premium_access=premium_access,
        models=[_model_info(m) for m in model_catalog.available_models(premium_access)],
    )


@router.get("/v1/models/image-compatible", response_model=ModelListResponse)
async def list_image_compatible_models(
    db: AsyncSession = Depends(get_read_db),
    user: CurrentUser = Depends(get_current_user),
) -> ModelListResponse:
    """Pickable models that can analyse a chart image."""
    premium_access = await SubscriptionService(db).has_premium_access(user.user_id)
    return ModelListResponse(
        premium_access=premium_access,
        models=[_model_info(m) for m in model_catalog.image_compatible_models(premium_access)],
    )


@router.post("/v1/models/cost", response_model=ModelCostResponse)
async def get_model_cost(
    request: ModelCostRequest,
    user: CurrentUser = Depends(get_current_user),
) -> ModelCostResponse:
    """Estimated credits for one chat message or one analysis with a model."""
    return ModelCostResponse(
        model=request.model,
        credit_cost=catalog_token_cost(request.model, is_analysis=request.is_analysis),
    )


@router.post("/v1/pricing/calculate", response_model=CostCalculationResponse)
async def calculate_pricing(
    request: CostCalculationRequest,
    user: CurrentUser = Depends(get_current_user),
) -> CostCalculationResponse:
    """
    USD cost breakdown for a call.

    OpenRouter models also report the credit cost; Gemini pricing is USD only.
    """
    try:
        if request.provider == CostProvider.GEMINI:
            breakdown = calculate_gemini_cost(
                request.model, request.input_tokens, request.output_tokens
            )
            credits = None
        else:
            breakdown = calculate_cost(
                CHART_ANALYSIS_RATES,
                request.model,
                request.input_tokens,
                request.output_tokens,
                usage_multiplier=request.usage_multiplier,
            )
            credits = token_cost(
                CHART_ANALYSIS_RATES,
                request.model,
                request.input_tokens,
                request.output_tokens,
                usage_multiplier=request.usage_multiplier,
            )
    except UnknownModelError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown model: {exc.model}",
        ) from exc

    return CostCalculationResponse(
        model=breakdown.model,
        input_cost=float(breakdown.input_cost),
        output_cost=float(breakdown.output_cost),
        raw_cost=float(breakdown.raw_cost),
        total_cost=float(breakdown.total_cost),
        token_cost=credits,
    )


@router.get("/v1/pricing/chart-preview/{model}", response_model=ModelCostResponse)
async def get_chart_preview_cost(
    model: str,
    user: CurrentUser = Depends(get_current_user),
) -> ModelCostResponse:
    """Credits for an on-demand chart analysis with the preview surcharge."""
    return ModelCostResponse(model=model, credit_cost=chart_preview_cost(model))


# ============================================================================
# AI Educator
# ============================================================================


@router.post("/v1/ai/educator", response_model=EducatorAnswerResponse)
async def ask_educator(
    request: EducatorQuestionRequest,
    db: AsyncSession = Depends(get_write_db),
    client: OpenRouterClient = Depends(get_openrouter_client),
    user: CurrentUser = Depends(get_current_user),
) -> EducatorAnswerResponse:
    """
    Answer a forex question and charge the caller for it.

    Write operation - requires primary database.
    """
    service = EducatorService(db, client)
    try:
        answer = await service.ask(user.user_id, request.question, request.last_message)

    except InsufficientTokensError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Insufficient tokens. Available: {exc.available}, Required: {exc.required}",
        ) from exc

    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc

    except AllModelsFailedError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="All AI models are currently unavailable",
        ) from exc

    except AIProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=exc.message,
        ) from exc

    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return EducatorAnswerResponse(
        answer=answer.answer,
        model=answer.model,
        keywords=list(answer.keywords),
        knowledge_base_used=answer.knowledge_base_used,
        tokens_charged=answer.tokens_charged,
        balances=to_token_balances(answer.balances_after),
    )


@router.get("/v1/ai/educator/history", response_model=EducatorHistoryResponse)
async def get_educator_history(
    db: AsyncSession = Depends(get_read_db),
    user: CurrentUser = Depends(get_current_user),
) -> EducatorHistoryResponse:
    """Past educator exchanges of the caller. Read-only - uses replica."""
    turns = await educator_history(db, user.user_id)
    return EducatorHistoryResponse(
        data=[
            EducatorMessage(
                id=turn.id, content=turn.content, sender=turn.sender, timestamp=turn.timestamp
            )
            for turn in turns
        ]
    )


# ============================================================================
# AI Chat & Chart Analysis
# ============================================================================


@router.post("/v1/ai/chat", response_model=ChatResponse)
async def send_chat_message(
    request: ChatRequest,
    db: AsyncSession = Depends(get_write_db),
    client: OpenRouterClient = Depends(get_openrouter_client),
    user: CurrentUser = Depends(get_current_user),
) -> ChatResponse:
    """
    Reply to a subscriber's chat message and charge the caller for it.

    Write operation - requires primary database.
    """
    service = ChatService(db, client)
    try:
        reply = await service.send(
            user.user_id,
            [turn.model_dump() for turn in request.messages],
            model=request.model,
            history_id=request.history_id,
        )

    except SubscriptionRequiredError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(exc),
        ) from exc

    except InsufficientTokensError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Insufficient tokens. Available: {exc.available}, Required: {exc.required}",
        ) from exc

    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc

    except AllModelsFailedError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="All AI models are currently unavailable",
        ) from exc

    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return ChatResponse(
        reply=reply.reply,
        model=reply.model,
        prompt_tokens=reply.prompt_tokens,
        completion_tokens=reply.completion_tokens,
        tokens_charged=reply.tokens_charged,
        balances=to_token_balances(reply.balances_after),
    )


@router.post("/v1/ai/chart-analysis", response_model=ChartAnalysisResponse)
async def analyze_chart(
    request: ChartAnalysisRequest,
    db: AsyncSession = Depends(get_write_db),
    client: OpenRouterClient = Depends(get_openrouter_client),
    user: CurrentUser = Depends(get_current_user),
) -> ChartAnalysisResponse:
    """
    Analyze chart images and charge the caller for the analysis.

    Write operation - requires primary database.
    """
    service = ChartAnalysisService(db, client)
    try:
        result = await service.analyze(
            user.user_id, request.images, request.model, preview=request.preview
        )

    except InsufficientTokensError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Insufficient tokens. Available: {exc.available}, Required: {exc.required}",
        ) from exc

    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc

    except AllModelsFailedError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="All AI models are currently unavailable",
        ) from exc

    except AIProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=exc.message,
        ) from exc

    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return ChartAnalysisResponse(
        analysis=result.analysis,
        model=result.model,
        history_id=result.history_id,
        tokens_charged=result.tokens_charged,
        balances=to_token_balances(result.balances_after),
    )


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database disconnected",
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
