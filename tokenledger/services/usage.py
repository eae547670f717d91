"""
Usage Analytics - Token usage reports and per-feature usage breakdown.
"""

from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.db.models import ChatMessage, History, TokenUsage
from tokenledger.models.api import HistoryType, SortDirection, UsageSortField
from tokenledger.models.domain import BreakdownEntry, UsageReportFilters, UsageStatsData
from tokenledger.observability import get_logger

logger = get_logger(__name__)

# Only these columns may be sorted on; anything else falls back to timestamp
SORT_COLUMNS = {
    UsageSortField.TIMESTAMP: TokenUsage.timestamp,
    UsageSortField.TOKENS_USED: TokenUsage.tokens_used,
    UsageSortField.INPUT_TOKENS: TokenUsage.input_tokens,
    UsageSortField.OUTPUT_TOKENS: TokenUsage.output_tokens,
    UsageSortField.MODEL: TokenUsage.model,
    UsageSortField.FEATURE: TokenUsage.feature,
}

BREAKDOWN_CATEGORIES = (
    ("AIChartAnalysis", "bg-blue-500"),
    ("EAGenerator", "bg-emerald-500"),
    ("AIChatDiscussion", "bg-purple-500"),
)


def share_percent(count: int, total: int) -> int:
    """Whole-number percentage of total, halves rounded up; 0 when total is 0."""
    if not total:
        return 0
    percent = Decimal(count) * 100 / Decimal(total)
    return int(percent.quantize(Decimal(1), rounding=ROUND_HALF_UP))


class UsageAnalyticsService:
    """Read-only reporting over token_usages, histories and chat_messages."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def token_usage_report(
        self, viewer_id: UUID, is_admin: bool, filters: UsageReportFilters
    ) -> tuple[list[TokenUsage], UsageStatsData]:
        """
        Filtered, sorted, paginated usage rows plus aggregates over the
        whole filtered set.

        Admins see every user's rows, optionally narrowed to filters.user_id.
        Everyone else only ever sees their own rows.
        """
        stmt = self._apply_filters(select(TokenUsage), viewer_id, is_admin, filters)

        subquery = stmt.subquery()
        stats_stmt = select(
            func.count(subquery.c.id),
            func.coalesce(func.sum(subquery.c.input_tokens), 0),
            func.coalesce(func.sum(subquery.c.output_tokens), 0),
            func.coalesce(func.sum(subquery.c.tokens_used), 0),
            func.coalesce(func.avg(subquery.c.input_tokens), 0),
            func.coalesce(func.avg(subquery.c.output_tokens), 0),
        )
        stats_row = (await self.session.execute(stats_stmt)).one()
        stats = UsageStatsData(
            total_records=int(stats_row[0]),
            total_input_tokens=int(stats_row[1]),
            total_output_tokens=int(stats_row[2]),
            total_tokens_used=int(stats_row[3]),
            average_input_tokens=round(float(stats_row[4]), 2),
            average_output_tokens=round(float(stats_row[5]), 2),
        )

        sort_column = SORT_COLUMNS.get(filters.sort_by, TokenUsage.timestamp)
        order = sort_column.asc() if filters.direction == SortDirection.ASC else sort_column.desc()
        result = await self.session.execute(
            stmt.order_by(order)
            .offset((filters.page - 1) * filters.per_page)
            .limit(filters.per_page)
        )
        rows = list(result.scalars().all())

        logger.debug(
            "usage_report_built",
            viewer_id=str(viewer_id),
            is_admin=is_admin,
            total_records=stats.total_records,
            page=filters.page,
        )
        return rows, stats

    async def usage_breakdown(self, user_id: UUID) -> tuple[int, list[BreakdownEntry]]:
        """
        Share of chart analyses, EA generations and chat messages in the
        user's activity. Educator histories count toward the total only.
        """
        history_counts = await self.session.execute(
            select(History.type, func.count(History.id))
            .where(History.user_id == user_id)
            .group_by(History.type)
        )
        by_type = {row[0]: int(row[1]) for row in history_counts.all()}

        chat_count_result = await self.session.execute(
            select(func.count(ChatMessage.id)).where(
                ChatMessage.user_id == user_id, ChatMessage.sender == "user"
            )
        )
        chat_count = int(chat_count_result.scalar_one())

        counts = (
            by_type.get(HistoryType.CHART_ANALYSIS.value, 0),
            by_type.get(HistoryType.EA_GENERATION.value, 0),
            chat_count,
        )
        total = sum(counts) + by_type.get(HistoryType.AI_EDUCATOR.value, 0)

        breakdown = [
            BreakdownEntry(
                category=category,
                count=count,
                percentage=share_percent(count, total),
                color=color,
            )
            for (category, color), count in zip(BREAKDOWN_CATEGORIES, counts, strict=True)
        ]
        return total, breakdown

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    @staticmethod
    def _apply_filters(
        stmt: Select, viewer_id: UUID, is_admin: bool, filters: UsageReportFilters
    ) -> Select:
        if not is_admin:
            stmt = stmt.where(TokenUsage.user_id == viewer_id)
        elif filters.user_id is not None:
            stmt = stmt.where(TokenUsage.user_id == filters.user_id)

        if filters.feature:
            stmt = stmt.where(TokenUsage.feature.ilike(f"%{filters.feature}%"))
        if filters.model:
            stmt = stmt.where(TokenUsage.model == filters.model)
        if filters.analysis_type:
            stmt = stmt.where(TokenUsage.analysis_type == filters.analysis_type)
        if filters.from_date is not None:
            stmt = stmt.where(TokenUsage.timestamp >= filters.from_date)
        if filters.to_date is not None:
            stmt = stmt.where(TokenUsage.timestamp <= filters.to_date)
        return stmt
