"""
Admin API Routes - Deductions, manual top-ups and monthly allocation.

All endpoints require a bearer token whose user has the admin or super_admin role.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from tokenledger.api.dependencies import CurrentUser, require_admin
from tokenledger.api.routes import to_pagination, to_token_balances
from tokenledger.db.session import get_read_db, get_write_db
from tokenledger.exceptions import (
    DataIntegrityError,
    InsufficientTokensError,
    InvalidBucketError,
    UserNotFoundError,
    WriteVerificationError,
)
from tokenledger.models.api import (
    BucketAmounts,
    DeductTokensRequest,
    DeductTokensResponse,
    ManualTokenAdditionItem,
    ManualTokenAdditionListResponse,
    ManualTokenAdditionRequest,
    ManualTokenAdditionResponse,
    MonthlyAllocationRequest,
    MonthlyAllocationResponse,
    TokenBucket,
)
from tokenledger.models.domain import DeductionIntent, ManualAdditionData, ManualAdditionFilters
from tokenledger.services.ledger import TokenLedgerService

logger = get_logger(__name__)

router = APIRouter()


def _addition_item(addition: ManualAdditionData) -> ManualTokenAdditionItem:
    return ManualTokenAdditionItem(
        id=addition.addition_id,
        user_id=addition.user_id,
        admin_id=addition.admin_id,
        admin_name=addition.admin_name,
        token_amount=addition.token_amount,
        token_type=addition.token_type,
        reason=addition.reason,
        purchase_id=addition.purchase_id,
        created_at=addition.created_at,
    )


@router.post("/v1/tokens/deduct", response_model=DeductTokensResponse)
async def deduct_tokens(
    request: DeductTokensRequest,
    db: AsyncSession = Depends(get_write_db),
    admin: CurrentUser = Depends(require_admin),
) -> DeductTokensResponse:
    """
    Deduct tokens from a user in bucket priority order.

    Write operation - requires primary database.
    """
    service = TokenLedgerService(db)
    intent = DeductionIntent(
        user_id=request.user_id,
        amount=request.amount,
        reason=request.reason,
        model=request.model,
        analysis_type=request.analysis_type,
        input_tokens=request.input_tokens,
        output_tokens=request.output_tokens,
    )

    try:
        result = await service.deduct_tokens(intent)

    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc

    except InsufficientTokensError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Insufficient tokens. Available: {exc.available}, Required: {exc.required}",
        ) from exc

    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    plan = result.plan
    return DeductTokensResponse(
        deducted=plan.cost,
        bucket_used=plan.bucket_label,
        amounts=BucketAmounts(
            registration_token=plan.registration_token,
            free_token=plan.free_token,
            subscription_token=plan.subscription_token,
            addons_token=plan.addons_token,
        ),
        balances=to_token_balances(result.balances_after),
    )


@router.post("/v1/tokens/manually-add", response_model=ManualTokenAdditionResponse)
async def add_tokens_manually(
    request: ManualTokenAdditionRequest,
    db: AsyncSession = Depends(get_write_db),
    admin: CurrentUser = Depends(require_admin),
) -> ManualTokenAdditionResponse:
    """Top up a user's subscription or addon tokens by hand."""
    service = TokenLedgerService(db)

    try:
        addition, balances = await service.add_manual_tokens(
            admin_id=admin.user_id,
            admin_name=admin.name,
            user_id=request.user_id,
            amount=request.token_amount,
            bucket=request.token_type,
            reason=request.reason,
        )

    except InvalidBucketError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc

    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc

    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    logger.info(
        "admin_manual_tokens_added",
        admin_id=str(admin.user_id),
        user_id=str(request.user_id),
        amount=request.token_amount,
        bucket=request.token_type.value,
    )
    return ManualTokenAdditionResponse(
        message=f"{request.token_amount} tokens added successfully",
        addition=_addition_item(addition),
        balances=to_token_balances(balances),
    )


@router.get("/v1/admin/manual-token-additions", response_model=ManualTokenAdditionListResponse)
async def list_manual_token_additions(
    user_id: UUID | None = Query(None),
    admin_id: UUID | None = Query(None),
    token_type: TokenBucket | None = Query(None),
    from_date: datetime | None = Query(None),
    to_date: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(15, ge=1, le=100),
    db: AsyncSession = Depends(get_read_db),
    admin: CurrentUser = Depends(require_admin),
) -> ManualTokenAdditionListResponse:
    """Audit listing of manual top-ups, newest first."""
    filters = ManualAdditionFilters(
        user_id=user_id,
        admin_id=admin_id,
        token_type=token_type,
        from_date=from_date,
        to_date=to_date,
    )
    result = await TokenLedgerService(db).list_manual_additions(filters, page, per_page)
    return ManualTokenAdditionListResponse(
        additions=[_addition_item(addition) for addition in result.items],
        pagination=to_pagination(result),
    )


@router.post("/v1/admin/tokens/monthly-allocation", response_model=MonthlyAllocationResponse)
async def allocate_monthly_tokens(
    request: MonthlyAllocationRequest,
    db: AsyncSession = Depends(get_write_db),
    admin: CurrentUser = Depends(require_admin),
) -> MonthlyAllocationResponse:
    """Reset free and subscription tokens for every user."""
    try:
        result = await TokenLedgerService(db).allocate_monthly_tokens(request.amount)
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Monthly allocation failed",
        ) from exc

    logger.info(
        "admin_monthly_allocation",
        admin_id=str(admin.user_id),
        amount=result.amount,
        users_updated=result.users_updated,
    )
    return MonthlyAllocationResponse(
        amount=result.amount,
        users_updated=result.users_updated,
        free_resets=result.free_resets,
        subscription_resets=result.subscription_resets,
    )
