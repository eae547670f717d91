"""
Token Ledger Service - Core balance logic with write verification.

NO DICTIONARIES - All operations use strongly typed domain models.

Every write follows the pattern:
1. Lock the user row (SELECT FOR UPDATE)
2. Plan the change against the locked balances
3. Apply, flush, read back and verify
4. Commit
"""

import time
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.config import settings
from tokenledger.db.models import ManualTokenAddition, Purchase, TokenHistory, TokenUsage, User
from tokenledger.exceptions import (
    DataIntegrityError,
    InsufficientTokensError,
    InvalidBucketError,
    UserNotFoundError,
    WriteVerificationError,
)
from tokenledger.models.api import (
    MANUAL_BUCKETS,
    AnalysisType,
    PurchaseType,
    TokenAction,
    TokenBucket,
)
from tokenledger.models.domain import (
    BalanceSnapshot,
    CreditIntent,
    CreditResult,
    DeductionIntent,
    DeductionPlan,
    DeductionResult,
    ManualAdditionData,
    ManualAdditionFilters,
    MonthlyAllocationResult,
    Page,
    UsageCharge,
    UsageChargeResult,
    UsageSlice,
)
from tokenledger.observability import get_logger, metrics, trace_operation
from tokenledger.services.subscriptions import SubscriptionService

logger = get_logger(__name__)

# Drained first on every charge; they expire or reset, paid tokens don't
PROMOTIONAL_BUCKETS = (TokenBucket.REGISTRATION, TokenBucket.FREE)

DISCREPANCY_THRESHOLD = 10
PROGRESS_LOG_EVERY = 100


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


# ============================================================================
# Pure planning functions
# ============================================================================


def plan_deduction(balances: BalanceSnapshot, cost: int) -> DeductionPlan:
    """
    Drain cost from the buckets in priority order:
    registration -> free -> subscription -> addons.

    Raises:
        ValueError: cost is not positive
        InsufficientTokensError: the four buckets together cannot cover cost
    """
    if cost <= 0:
        raise ValueError(f"Deduction cost must be positive: {cost}")
    if balances.total < cost:
        raise InsufficientTokensError(balances.total, cost)

    taken: dict[str, int] = {}
    remaining = cost
    for bucket in TokenBucket:
        take = min(balances.amount(bucket), remaining)
        taken[bucket.value] = take
        remaining -= take

    return DeductionPlan(cost=cost, **taken)


def plan_usage_split(
    balances: BalanceSnapshot, cost: int, input_tokens: int, output_tokens: int
) -> tuple[UsageSlice, ...]:
    """
    Split an AI usage charge into per-bucket slices.

    Promotional buckets are used up first. What is left is taken from
    subscription tokens if they cover it, else from addon tokens if they
    cover it, else from all subscription tokens plus the rest from addons.
    Token counts are apportioned by each slice's share of the cost, the
    last slice absorbing the truncation, so slices sum exactly to cost,
    input_tokens and output_tokens.

    Raises:
        ValueError: cost is not positive
        InsufficientTokensError: balances cannot cover cost
    """
    if cost <= 0:
        raise ValueError(f"Usage cost must be positive: {cost}")

    pieces: list[tuple[TokenBucket, int]] = []
    remaining = cost

    for bucket in PROMOTIONAL_BUCKETS:
        take = min(balances.amount(bucket), remaining)
        if take > 0:
            pieces.append((bucket, take))
            remaining -= take

    if remaining > 0:
        subscription = balances.subscription_token
        addons = balances.addons_token
        if subscription >= remaining:
            pieces.append((TokenBucket.SUBSCRIPTION, remaining))
        elif addons >= remaining:
            pieces.append((TokenBucket.ADDONS, remaining))
        elif subscription + addons >= remaining:
            if subscription > 0:
                pieces.append((TokenBucket.SUBSCRIPTION, subscription))
            pieces.append((TokenBucket.ADDONS, remaining - subscription))
        else:
            raise InsufficientTokensError(balances.total, cost)

    slices: list[UsageSlice] = []
    input_left = input_tokens
    output_left = output_tokens
    for index, (bucket, amount) in enumerate(pieces):
        is_last = index == len(pieces) - 1
        if is_last:
            slice_input, slice_output = input_left, output_left
        else:
            slice_input = input_tokens * amount // cost
            slice_output = output_tokens * amount // cost
        input_left -= slice_input
        output_left -= slice_output

        if len(pieces) == 1:
            suffix = ""
        else:
            suffix = " (remainder)" if is_last else " (partial)"

        slices.append(
            UsageSlice(
                bucket=bucket,
                cost=amount,
                input_tokens=slice_input,
                output_tokens=slice_output,
                feature_suffix=suffix,
            )
        )

    return tuple(slices)


def infer_model(reason: str) -> str | None:
    """Guess the model from a free-text deduction reason."""
    if "gpt-4" in reason:
        return "gpt-4"
    if "gpt-3" in reason:
        return "gpt-3.5-turbo"
    if "gemini" in reason:
        return "gemini-pro"
    return None


def classify_reason(reason: str) -> tuple[str, AnalysisType | None]:
    """Map a deduction reason to (feature, analysis type)."""
    if "image_analysis" in reason:
        return "image_analysis", AnalysisType.VISION
    if "chat_completion" in reason:
        return "chat_completion", AnalysisType.TEXT
    return reason, None


def estimate_token_split(amount: int) -> tuple[int, int]:
    """Assume 20% input and 80% output when real counts are unknown."""
    return int(amount * 0.2), int(amount * 0.8)


def placeholder_session_id(purchase_type: PurchaseType) -> str:
    """Unique session id for credits that did not come from a checkout session."""
    return f"{purchase_type.value}-{uuid4().hex[:13]}-{int(time.time())}"


class TokenLedgerService:
    """
    Token ledger with row locking and write verification.

    One instance per request; it owns the transaction of the session it is
    given and commits at the end of every write operation.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger service with database session."""
        self.session = session

    async def get_balances(self, user_id: UUID) -> BalanceSnapshot:
        """Current balances; a user we have never seen holds nothing."""
        user = await self._find_user(user_id)
        if user is None:
            return BalanceSnapshot()
        return self._snapshot(user)

    async def deduct_tokens(self, intent: DeductionIntent) -> DeductionResult:
        """
        Deduct tokens in bucket priority order and record one usage row.

        Raises:
            UserNotFoundError: User doesn't exist
            InsufficientTokensError: Total balance below amount
            DataIntegrityError: Balances differ from the plan after write
        """
        start = time.time()
        with trace_operation("ledger.deduct", user_id=intent.user_id, amount=intent.amount):
            user = await self._lock_user_for_update(intent.user_id)
            if user is None:
                metrics.record_deduction(False, {}, time.time() - start, "user_not_found")
                raise UserNotFoundError(intent.user_id)

            before = self._snapshot(user)
            try:
                plan = plan_deduction(before, intent.amount)
            except InsufficientTokensError:
                logger.warning(
                    "insufficient_tokens",
                    user_id=str(intent.user_id),
                    available=before.total,
                    required=intent.amount,
                )
                metrics.record_deduction(False, {}, time.time() - start, "insufficient_tokens")
                raise

            expected = self._apply_debits(user, [(b, plan.amount(b)) for b in plan.buckets_used])

            feature, inferred_type = classify_reason(intent.reason)
            analysis_type = intent.analysis_type or inferred_type
            model = intent.model or infer_model(intent.reason)

            if intent.input_tokens is None or intent.output_tokens is None:
                input_tokens, output_tokens = estimate_token_split(intent.amount)
            else:
                input_tokens, output_tokens = intent.input_tokens, intent.output_tokens

            actual_total = input_tokens + output_tokens
            if abs(actual_total - intent.amount) > DISCREPANCY_THRESHOLD and actual_total > 0:
                logger.warning(
                    "token_count_discrepancy",
                    user_id=str(intent.user_id),
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    actual_total=actual_total,
                    tokens_deducted=intent.amount,
                    difference=actual_total - intent.amount,
                )

            usage = self._add_usage(
                user_id=user.id,
                feature=feature,
                model=model,
                analysis_type=analysis_type,
                token_type=plan.bucket_label,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                tokens_used=intent.amount,
            )
            self._add_history(user.id, intent.amount, TokenAction.DEBITED, intent.reason, expected)

            await self.session.flush()
            await self._verify_balances(user.id, expected)
            await self.session.commit()

        metrics.record_deduction(
            True, {b.value: plan.amount(b) for b in plan.buckets_used}, time.time() - start
        )
        logger.info(
            "tokens_deducted",
            user_id=str(intent.user_id),
            amount=intent.amount,
            bucket_used=plan.bucket_label,
            registration=plan.registration_token,
            free=plan.free_token,
            subscription=plan.subscription_token,
            addons=plan.addons_token,
        )

        return DeductionResult(
            user_id=user.id,
            plan=plan,
            usage_ids=(usage.id,),
            balances_after=expected,
        )

    async def charge_usage(
        self, charge: UsageCharge, records: Sequence[object] = ()
    ) -> UsageChargeResult:
        """
        Bill an AI call, splitting across buckets when one is not enough.

        All slices are written in one transaction under the row lock, so a
        split either fully succeeds or leaves balances untouched. Rows in
        records (the history of the call that is being paid for) are committed
        in that same transaction; if they cannot be written nothing is charged.

        Raises:
            UserNotFoundError: User doesn't exist
            InsufficientTokensError: Balances cannot cover the cost
            DataIntegrityError: Balances differ from the plan after write
        """
        start = time.time()
        with trace_operation("ledger.charge_usage", user_id=charge.user_id, cost=charge.cost):
            user = await self._lock_user_for_update(charge.user_id)
            if user is None:
                metrics.record_deduction(False, {}, time.time() - start, "user_not_found")
                raise UserNotFoundError(charge.user_id)

            before = self._snapshot(user)
            try:
                slices = plan_usage_split(
                    before, charge.cost, charge.input_tokens, charge.output_tokens
                )
            except InsufficientTokensError:
                logger.warning(
                    "insufficient_tokens",
                    user_id=str(charge.user_id),
                    available=before.total,
                    required=charge.cost,
                    feature=charge.feature,
                )
                metrics.record_deduction(False, {}, time.time() - start, "insufficient_tokens")
                raise

            expected = self._apply_debits(user, [(s.bucket, s.cost) for s in slices])

            usage_ids: list[UUID] = []
            for usage_slice in slices:
                usage = self._add_usage(
                    user_id=user.id,
                    feature=f"{charge.feature}{usage_slice.feature_suffix}",
                    model=charge.model,
                    analysis_type=charge.analysis_type,
                    token_type=usage_slice.bucket.value,
                    input_tokens=usage_slice.input_tokens,
                    output_tokens=usage_slice.output_tokens,
                    tokens_used=usage_slice.cost,
                )
                usage_ids.append(usage.id)
            self._add_history(user.id, charge.cost, TokenAction.DEBITED, charge.feature, expected)
            for record in records:
                self.session.add(record)

            try:
                await self.session.flush()
                await self._verify_balances(user.id, expected)
                await self.session.commit()
            except SQLAlchemyError as exc:
                await self.session.rollback()
                logger.error(
                    "usage_charge_failed",
                    user_id=str(charge.user_id),
                    feature=charge.feature,
                    error=str(exc),
                    exc_info=True,
                )
                metrics.record_deduction(False, {}, time.time() - start, "write_failed")
                raise

        amounts: dict[str, int] = {}
        for usage_slice in slices:
            amounts[usage_slice.bucket.value] = (
                amounts.get(usage_slice.bucket.value, 0) + usage_slice.cost
            )
        metrics.record_deduction(True, amounts, time.time() - start)
        if len(slices) > 1:
            metrics.split_deductions_total.inc()
            logger.info(
                "split_token_deduction",
                user_id=str(charge.user_id),
                total_cost=charge.cost,
                **{f"{bucket}_amount": amount for bucket, amount in amounts.items()},
            )
        logger.info(
            "usage_charged",
            user_id=str(charge.user_id),
            feature=charge.feature,
            model=charge.model,
            cost=charge.cost,
            remaining_subscription=expected.subscription_token,
            remaining_addons=expected.addons_token,
        )

        return UsageChargeResult(
            user_id=user.id,
            cost=charge.cost,
            slices=slices,
            usage_ids=tuple(usage_ids),
            balances_after=expected,
        )

    async def credit_tokens(self, intent: CreditIntent) -> CreditResult:
        """
        Add tokens to a bucket and record the purchase behind them.

        Raises:
            UserNotFoundError: User doesn't exist
            DataIntegrityError: Balances differ from the plan after write
        """
        with trace_operation("ledger.credit", user_id=intent.user_id, amount=intent.amount):
            user = await self._lock_user_for_update(intent.user_id)
            if user is None:
                raise UserNotFoundError(intent.user_id)

            purchase, expected = self._apply_credit(user, intent)

            await self.session.flush()
            await self._verify_balances(user.id, expected)
            await self.session.commit()

        metrics.record_credit(intent.bucket.value, intent.purchase_type.value, intent.amount)
        logger.info(
            "tokens_credited",
            user_id=str(intent.user_id),
            bucket=intent.bucket.value,
            amount=intent.amount,
            purchase_type=intent.purchase_type.value,
            purchase_id=str(purchase.id),
        )

        return CreditResult(
            user_id=user.id,
            bucket=intent.bucket,
            amount=intent.amount,
            purchase_id=purchase.id,
            balances_after=expected,
        )

    async def add_manual_tokens(
        self,
        admin_id: UUID,
        admin_name: str,
        user_id: UUID,
        amount: int,
        bucket: TokenBucket,
        reason: str,
    ) -> tuple[ManualAdditionData, BalanceSnapshot]:
        """
        Admin top-up of subscription or addon tokens.

        Writes a zero-amount manual purchase and a ManualTokenAddition that
        points at it, together with the balance change.

        Raises:
            InvalidBucketError: bucket is not subscription or addons
            UserNotFoundError: User doesn't exist
        """
        if bucket not in MANUAL_BUCKETS:
            raise InvalidBucketError(bucket.value, tuple(b.value for b in MANUAL_BUCKETS))

        now_epoch = int(time.time())
        intent = CreditIntent(
            user_id=user_id,
            amount=amount,
            bucket=bucket,
            purchase_type=PurchaseType.MANUAL,
            price_id=f"manual-token-{now_epoch}",
            session_id=placeholder_session_id(PurchaseType.MANUAL),
            description=f"{reason} (Added by: {admin_name})",
        )

        with trace_operation("ledger.manual_addition", user_id=user_id, admin_id=admin_id):
            user = await self._lock_user_for_update(user_id)
            if user is None:
                raise UserNotFoundError(user_id)

            purchase, expected = self._apply_credit(user, intent)

            addition = ManualTokenAddition(
                id=uuid4(),
                user_id=user.id,
                admin_id=admin_id,
                admin_name=admin_name,
                token_amount=amount,
                token_type=bucket.value,
                reason=reason,
                purchase_id=purchase.id,
                created_at=_utc_now(),
            )
            self.session.add(addition)

            await self.session.flush()
            verified_addition = await self.session.get(ManualTokenAddition, addition.id)
            if verified_addition is None:
                raise WriteVerificationError(
                    f"Manual token addition {addition.id} not found after insert"
                )
            await self._verify_balances(user.id, expected)
            await self.session.commit()

        metrics.record_credit(bucket.value, PurchaseType.MANUAL.value, amount)
        logger.info(
            "manual_tokens_added",
            user_id=str(user_id),
            admin_id=str(admin_id),
            bucket=bucket.value,
            amount=amount,
        )

        return self._addition_to_domain(verified_addition), expected

    async def list_manual_additions(
        self, filters: ManualAdditionFilters, page: int = 1, per_page: int = 15
    ) -> Page:
        """Manual top-ups, newest first."""
        stmt = select(ManualTokenAddition)
        if filters.user_id is not None:
            stmt = stmt.where(ManualTokenAddition.user_id == filters.user_id)
        if filters.admin_id is not None:
            stmt = stmt.where(ManualTokenAddition.admin_id == filters.admin_id)
        if filters.token_type is not None:
            stmt = stmt.where(ManualTokenAddition.token_type == filters.token_type.value)
        if filters.from_date is not None:
            stmt = stmt.where(ManualTokenAddition.created_at >= filters.from_date)
        if filters.to_date is not None:
            stmt = stmt.where(ManualTokenAddition.created_at <= filters.to_date)

        total = await self._count(stmt)
        result = await self.session.execute(
            stmt.order_by(ManualTokenAddition.created_at.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        items = tuple(self._addition_to_domain(row) for row in result.scalars().all())
        return Page(total=total, per_page=per_page, current_page=page, items=items)

    async def allocate_monthly_tokens(self, amount: int | None = None) -> MonthlyAllocationResult:
        """
        Reset monthly tokens for every user in one transaction.

        Users without an active subscription get free_token set to amount;
        subscribers get subscription_token set to amount. Nothing rolls over,
        and addon and registration tokens are left alone.
        """
        amount = settings.monthly_token_allocation if amount is None else amount
        if amount < 0:
            raise ValueError(f"Monthly allocation cannot be negative: {amount}")

        free_resets = 0
        subscription_resets = 0

        try:
            subscriber_ids = await SubscriptionService(self.session).active_subscriber_ids()
            result = await self.session.execute(
                select(User).order_by(User.created_at).with_for_update()
            )
            users = result.scalars().all()
            logger.info("monthly_allocation_started", amount=amount, user_count=len(users))

            for index, user in enumerate(users, start=1):
                if user.id in subscriber_ids:
                    user.subscription_token = amount
                    subscription_resets += 1
                else:
                    user.free_token = amount
                    free_resets += 1
                if index % PROGRESS_LOG_EVERY == 0:
                    logger.info("monthly_allocation_progress", processed=index, total=len(users))

            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("monthly_allocation_failed", error=str(exc), exc_info=True)
            raise

        allocation = MonthlyAllocationResult(
            amount=amount, free_resets=free_resets, subscription_resets=subscription_resets
        )
        logger.info(
            "monthly_allocation_complete",
            amount=amount,
            users_updated=allocation.users_updated,
            free_resets=free_resets,
            subscription_resets=subscription_resets,
        )
        return allocation

    async def list_purchases(
        self,
        user_id: UUID,
        purchase_type: PurchaseType | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page:
        """A user's purchases, newest first, optionally of one type."""
        stmt = select(Purchase).where(Purchase.user_id == user_id)
        if purchase_type is not None:
            stmt = stmt.where(Purchase.type == purchase_type.value)

        total = await self._count(stmt)
        result = await self.session.execute(
            stmt.order_by(Purchase.created_at.desc()).offset((page - 1) * limit).limit(limit)
        )
        return Page(
            total=total,
            per_page=limit,
            current_page=page,
            items=tuple(result.scalars().all()),
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_user(self, user_id: UUID) -> User | None:
        """Find user by id."""
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def _lock_user_for_update(self, user_id: UUID) -> User | None:
        """Lock user row for update (SELECT FOR UPDATE)."""
        stmt = select(User).where(User.id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _count(self, stmt) -> int:
        result = await self.session.execute(select(func.count()).select_from(stmt.subquery()))
        return int(result.scalar_one())

    @staticmethod
    def _snapshot(user: User) -> BalanceSnapshot:
        return BalanceSnapshot(
            registration_token=user.registration_token,
            free_token=user.free_token,
            subscription_token=user.subscription_token,
            addons_token=user.addons_token,
        )

    def _apply_debits(
        self, user: User, debits: list[tuple[TokenBucket, int]]
    ) -> BalanceSnapshot:
        """Subtract from the locked user's buckets and return the expected result."""
        for bucket, amount in debits:
            current = getattr(user, bucket.value)
            if amount > current:
                raise DataIntegrityError(
                    f"Planned debit of {amount} exceeds {bucket.value} balance {current}"
                )
            setattr(user, bucket.value, current - amount)
        return self._snapshot(user)

    def _apply_credit(self, user: User, intent: CreditIntent) -> tuple[Purchase, BalanceSnapshot]:
        """Add to the locked user's bucket and stage the purchase and history rows."""
        setattr(user, intent.bucket.value, getattr(user, intent.bucket.value) + intent.amount)
        expected = self._snapshot(user)

        expires_at = intent.expires_at
        if expires_at is None and intent.bucket == TokenBucket.ADDONS:
            expires_at = _utc_now() + timedelta(days=settings.addon_token_validity_days)

        purchase = Purchase(
            id=uuid4(),
            user_id=user.id,
            session_id=intent.session_id or placeholder_session_id(intent.purchase_type),
            price_id=intent.price_id,
            amount=intent.amount_paid,
            currency=intent.currency,
            tokens=intent.amount,
            tokens_awarded=0,
            status=intent.status.value,
            type=intent.purchase_type.value,
            customer_email=intent.customer_email or user.email,
            description=intent.description,
            expires_at=expires_at,
            created_at=_utc_now(),
        )
        self.session.add(purchase)
        self._add_history(
            user.id,
            intent.amount,
            TokenAction.CREDITED,
            intent.description or f"{intent.purchase_type.value} credit",
            expected,
        )
        return purchase, expected

    def _add_usage(
        self,
        user_id: UUID,
        feature: str,
        model: str | None,
        analysis_type: AnalysisType | None,
        token_type: str,
        input_tokens: int,
        output_tokens: int,
        tokens_used: int,
    ) -> TokenUsage:
        usage = TokenUsage(
            id=uuid4(),
            user_id=user_id,
            feature=feature,
            model=model,
            analysis_type=analysis_type.value if analysis_type else None,
            token_type=token_type,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            tokens_used=tokens_used,
            total_tokens=input_tokens + output_tokens,
            timestamp=_utc_now(),
        )
        self.session.add(usage)
        return usage

    def _add_history(
        self,
        user_id: UUID,
        amount: int,
        action: TokenAction,
        reason: str,
        balances_after: BalanceSnapshot,
    ) -> None:
        self.session.add(
            TokenHistory(
                id=uuid4(),
                user_id=user_id,
                amount=amount,
                action=action.value,
                reason=reason[:255],
                balance_after=balances_after.total,
                created_at=_utc_now(),
            )
        )

    async def _verify_balances(self, user_id: UUID, expected: BalanceSnapshot) -> None:
        """Read the user back and compare every bucket with the planned result."""
        verified_user = await self.session.get(User, user_id)
        if verified_user is None:
            raise WriteVerificationError(f"User {user_id} disappeared after update")

        for bucket in TokenBucket:
            actual = getattr(verified_user, bucket.value)
            if actual != expected.amount(bucket):
                raise DataIntegrityError(
                    f"{bucket.value} mismatch: expected {expected.amount(bucket)}, got {actual}"
                )

    @staticmethod
    def _addition_to_domain(addition: ManualTokenAddition) -> ManualAdditionData:
        """Convert ORM manual addition to domain model."""
        return ManualAdditionData(
            addition_id=addition.id,
            user_id=addition.user_id,
            admin_id=addition.admin_id,
            admin_name=addition.admin_name,
            token_amount=addition.token_amount,
            token_type=TokenBucket(addition.token_type),
            reason=addition.reason,
            purchase_id=addition.purchase_id,
            created_at=addition.created_at,
        )
