"""
AI Chat - Subscriber conversations with a vision model, billed per reply.

Flow for one message:
1. Active subscription required
2. Pre-flight balance check against the estimated analysis cost
3. Chat completion, falling back to the default vision model
4. Re-price on the provider's reported usage
5. Charge, committing both sides of the exchange in the same transaction
"""

import json
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.db.models import ChatMessage, History
from tokenledger.exceptions import InsufficientTokensError, SubscriptionRequiredError
from tokenledger.models.api import DEFAULT_VISION_MODEL, AnalysisType
from tokenledger.models.domain import ChatReply, UsageCharge
from tokenledger.observability import get_logger
from tokenledger.services.ledger import TokenLedgerService
from tokenledger.services.openrouter import OpenRouterClient
from tokenledger.services.pricing import (
    ANALYSIS_ESTIMATE,
    CHART_ANALYSIS_RATES,
    reprice,
    token_cost,
)
from tokenledger.services.subscriptions import SubscriptionService

logger = get_logger(__name__)

CHAT_FEATURE = "chat_completion"
CHAT_MAX_TOKENS = 4000


def message_text(content: str | list[dict[str, Any]]) -> str:
    """Storable text of a message; multi-part content is kept as JSON."""
    if isinstance(content, str):
        return content
    return json.dumps(content)


class ChatService:
    """Sends subscriber chat messages to the AI provider and bills the replies."""

    def __init__(self, session: AsyncSession, client: OpenRouterClient) -> None:
        self.session = session
        self.client = client
        self.ledger = TokenLedgerService(session)
        self.subscriptions = SubscriptionService(session)

    async def send(
        self,
        user_id: UUID,
        messages: list[dict[str, Any]],
        model: str = DEFAULT_VISION_MODEL,
        history_id: UUID | None = None,
    ) -> ChatReply:
        """
        Answer the last message of a conversation.

        Raises:
            SubscriptionRequiredError: no active or trialing subscription
            InsufficientTokensError: balances below the estimated cost (no AI call made)
            AllModelsFailedError: neither the requested nor the default model answered
        """
        if not await self.subscriptions.has_active_subscription(user_id):
            logger.warning("chat_subscription_required", user_id=str(user_id))
            raise SubscriptionRequiredError(user_id)

        estimated_cost = token_cost(
            CHART_ANALYSIS_RATES,
            model,
            ANALYSIS_ESTIMATE.input_tokens,
            ANALYSIS_ESTIMATE.output_tokens,
        )
        balances = await self.ledger.get_balances(user_id)
        if balances.total < estimated_cost:
            logger.warning(
                "chat_insufficient_tokens",
                user_id=str(user_id),
                available=balances.total,
                required=estimated_cost,
            )
            raise InsufficientTokensError(balances.total, estimated_cost)

        models = [model] if model == DEFAULT_VISION_MODEL else [model, DEFAULT_VISION_MODEL]
        completion = await self.client.complete_with_fallback(
            messages, models, max_tokens=CHAT_MAX_TOKENS
        )

        history_id = await self._owned_history_id(user_id, history_id)
        cost = reprice(
            CHART_ANALYSIS_RATES,
            completion.model,
            estimated_cost,
            completion.prompt_tokens,
            completion.completion_tokens,
        )
        records = [
            ChatMessage(
                id=uuid4(),
                user_id=user_id,
                history_id=history_id,
                sender="user",
                text=message_text(messages[-1]["content"]),
            ),
            ChatMessage(
                id=uuid4(),
                user_id=user_id,
                history_id=history_id,
                sender="ai",
                text=completion.content,
            ),
        ]
        charge = await self.ledger.charge_usage(
            UsageCharge(
                user_id=user_id,
                cost=cost,
                feature=CHAT_FEATURE,
                model=completion.model,
                analysis_type=AnalysisType.TEXT,
                input_tokens=(
                    completion.prompt_tokens
                    if completion.prompt_tokens is not None
                    else ANALYSIS_ESTIMATE.input_tokens
                ),
                output_tokens=(
                    completion.completion_tokens
                    if completion.completion_tokens is not None
                    else ANALYSIS_ESTIMATE.output_tokens
                ),
            ),
            records,
        )

        logger.info(
            "chat_replied",
            user_id=str(user_id),
            model=completion.model,
            estimated_cost=estimated_cost,
            tokens_charged=cost,
        )

        return ChatReply(
            reply=completion.content,
            model=completion.model,
            prompt_tokens=completion.prompt_tokens,
            completion_tokens=completion.completion_tokens,
            tokens_charged=cost,
            balances_after=charge.balances_after,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _owned_history_id(self, user_id: UUID, history_id: UUID | None) -> UUID | None:
        """history_id when it names one of the user's own records, else None."""
        if history_id is None:
            return None
        history = await self.session.get(History, history_id)
        if history is None or history.user_id != user_id:
            logger.warning(
                "chat_history_link_dropped", user_id=str(user_id), history_id=str(history_id)
            )
            return None
        return history_id
