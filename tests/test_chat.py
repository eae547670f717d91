"""
Tests for AI chat.
"""

from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from tokenledger.db.models import ChatMessage, History
from tokenledger.exceptions import (
    AllModelsFailedError,
    InsufficientTokensError,
    SubscriptionRequiredError,
)
from tokenledger.models.api import DEFAULT_VISION_MODEL, AnalysisType, TokenBucket
from tokenledger.models.domain import (
    BalanceSnapshot,
    Completion,
    UsageChargeResult,
    UsageSlice,
)
from tokenledger.services.chat import CHAT_FEATURE, ChatService, message_text


def _charge_result(user_id, cost: int) -> UsageChargeResult:
    return UsageChargeResult(
        user_id=user_id,
        cost=cost,
        slices=(
            UsageSlice(bucket=TokenBucket.ADDONS, cost=cost, input_tokens=1, output_tokens=1),
        ),
        usage_ids=(uuid4(),),
        balances_after=BalanceSnapshot(addons_token=5000 - cost),
    )


@pytest.fixture
def ai_client() -> AsyncMock:
    """OpenRouter client mock."""
    return AsyncMock()


@pytest.fixture
def chat(db_session: AsyncMock, ai_client: AsyncMock) -> ChatService:
    """ChatService with mocked session and AI client."""
    return ChatService(db_session, ai_client)


MESSAGES = [
    {"role": "user", "content": "Is EURUSD bullish?"},
    {"role": "assistant", "content": "Above 1.08 it is."},
    {"role": "user", "content": "What about GBPUSD?"},
]


class TestMessageText:
    """Tests for message_text."""

    def test_plain_text(self) -> None:
        """Strings are stored as is."""
        assert message_text("hello") == "hello"

    def test_multi_part_content(self) -> None:
        """Parts are stored as JSON."""
        parts = [{"type": "text", "text": "Look at this"}]

        assert message_text(parts) == '[{"type": "text", "text": "Look at this"}]'


class TestSend:
    """Tests for ChatService.send."""

    async def test_subscription_required(self, chat: ChatService, ai_client: AsyncMock) -> None:
        """Non-subscribers are refused before any balance check or AI call."""
        with (
            patch.object(
                chat.subscriptions,
                "has_active_subscription",
                new_callable=AsyncMock,
                return_value=False,
            ),
            patch.object(chat.ledger, "get_balances", new_callable=AsyncMock) as mock_balances,
            pytest.raises(SubscriptionRequiredError),
        ):
            await chat.send(uuid4(), MESSAGES)

        mock_balances.assert_not_awaited()
        ai_client.complete_with_fallback.assert_not_awaited()

    async def test_insufficient_tokens(self, chat: ChatService, ai_client: AsyncMock) -> None:
        """Balances below the estimate stop before the AI call."""
        with (
            patch.object(
                chat.subscriptions,
                "has_active_subscription",
                new_callable=AsyncMock,
                return_value=True,
            ),
            patch.object(
                chat.ledger,
                "get_balances",
                new_callable=AsyncMock,
                return_value=BalanceSnapshot(free_token=100),
            ),
            pytest.raises(InsufficientTokensError) as exc_info,
        ):
            await chat.send(uuid4(), MESSAGES)

        assert exc_info.value.available == 100
        assert exc_info.value.required == 2335
        ai_client.complete_with_fallback.assert_not_awaited()

    async def test_reply_billed_with_both_messages(
        self, chat: ChatService, ai_client: AsyncMock
    ) -> None:
        """Both sides of the exchange are committed with the charge."""
        user_id = uuid4()
        ai_client.complete_with_fallback = AsyncMock(
            return_value=Completion(model=DEFAULT_VISION_MODEL, content="GBPUSD is ranging.")
        )

        with (
            patch.object(
                chat.subscriptions,
                "has_active_subscription",
                new_callable=AsyncMock,
                return_value=True,
            ),
            patch.object(
                chat.ledger,
                "get_balances",
                new_callable=AsyncMock,
                return_value=BalanceSnapshot(addons_token=5000),
            ),
            patch.object(
                chat.ledger,
                "charge_usage",
                new_callable=AsyncMock,
                return_value=_charge_result(user_id, 2335),
            ) as mock_charge,
        ):
            reply = await chat.send(user_id, MESSAGES)

        assert reply.reply == "GBPUSD is ranging."
        assert reply.tokens_charged == 2335
        assert reply.balances_after.total == 2665

        charge, records = mock_charge.call_args.args
        assert charge.feature == CHAT_FEATURE
        assert charge.analysis_type == AnalysisType.TEXT
        assert charge.cost == 2335
        assert (charge.input_tokens, charge.output_tokens) == (1000, 2000)
        assert [r.sender for r in records] == ["user", "ai"]
        assert [r.text for r in records] == ["What about GBPUSD?", "GBPUSD is ranging."]
        assert all(isinstance(r, ChatMessage) and r.user_id == user_id for r in records)
        assert all(r.history_id is None for r in records)

        models = ai_client.complete_with_fallback.call_args.args[1]
        assert models == [DEFAULT_VISION_MODEL]

    async def test_reported_usage_reprices(self, chat: ChatService, ai_client: AsyncMock) -> None:
        """A priced model is charged on its reported token counts."""
        user_id = uuid4()
        ai_client.complete_with_fallback = AsyncMock(
            return_value=Completion(
                model="gpt-4o", content="Sure.", prompt_tokens=500, completion_tokens=1000
            )
        )

        with (
            patch.object(
                chat.subscriptions,
                "has_active_subscription",
                new_callable=AsyncMock,
                return_value=True,
            ),
            patch.object(
                chat.ledger,
                "get_balances",
                new_callable=AsyncMock,
                return_value=BalanceSnapshot(addons_token=5000),
            ),
            patch.object(
                chat.ledger,
                "charge_usage",
                new_callable=AsyncMock,
                return_value=_charge_result(user_id, 117),
            ) as mock_charge,
        ):
            reply = await chat.send(user_id, MESSAGES, model="gpt-4o")

        charge = mock_charge.call_args.args[0]
        assert charge.cost == 117
        assert (charge.input_tokens, charge.output_tokens) == (500, 1000)
        assert reply.tokens_charged == 117
        assert ai_client.complete_with_fallback.call_args.args[1] == [
            "gpt-4o",
            DEFAULT_VISION_MODEL,
        ]

    async def test_foreign_history_link_dropped(
        self, chat: ChatService, ai_client: AsyncMock, db_session: AsyncMock
    ) -> None:
        """Messages are not attached to another user's history."""
        user_id = uuid4()
        history = MagicMock(spec=History)
        history.user_id = uuid4()
        db_session.get = AsyncMock(return_value=history)
        ai_client.complete_with_fallback = AsyncMock(
            return_value=Completion(model=DEFAULT_VISION_MODEL, content="Ok.")
        )

        with (
            patch.object(
                chat.subscriptions,
                "has_active_subscription",
                new_callable=AsyncMock,
                return_value=True,
            ),
            patch.object(
                chat.ledger,
                "get_balances",
                new_callable=AsyncMock,
                return_value=BalanceSnapshot(addons_token=5000),
            ),
            patch.object(
                chat.ledger,
                "charge_usage",
                new_callable=AsyncMock,
                return_value=_charge_result(user_id, 2335),
            ) as mock_charge,
        ):
            await chat.send(user_id, MESSAGES, history_id=uuid4())

        records = mock_charge.call_args.args[1]
        assert all(r.history_id is None for r in records)

    async def test_own_history_link_kept(
        self, chat: ChatService, ai_client: AsyncMock, db_session: AsyncMock
    ) -> None:
        """Messages are attached to the user's own history record."""
        user_id = uuid4()
        history_id = uuid4()
        history = MagicMock(spec=History)
        history.user_id = user_id
        db_session.get = AsyncMock(return_value=history)
        ai_client.complete_with_fallback = AsyncMock(
            return_value=Completion(model=DEFAULT_VISION_MODEL, content="Ok.")
        )

        with (
            patch.object(
                chat.subscriptions,
                "has_active_subscription",
                new_callable=AsyncMock,
                return_value=True,
            ),
            patch.object(
                chat.ledger,
                "get_balances",
                new_callable=AsyncMock,
                return_value=BalanceSnapshot(addons_token=5000),
            ),
            patch.object(
                chat.ledger,
                "charge_usage",
                new_callable=AsyncMock,
                return_value=_charge_result(user_id, 2335),
            ) as mock_charge,
        ):
            await chat.send(user_id, MESSAGES, history_id=history_id)

        records = mock_charge.call_args.args[1]
        assert all(r.history_id == history_id for r in records)

    async def test_all_models_failed_charges_nothing(
        self, chat: ChatService, ai_client: AsyncMock
    ) -> None:
        """No reply, no charge."""
        ai_client.complete_with_fallback = AsyncMock(
            side_effect=AllModelsFailedError([DEFAULT_VISION_MODEL])
        )

        with (
            patch.object(
                chat.subscriptions,
                "has_active_subscription",
                new_callable=AsyncMock,
                return_value=True,
            ),
            patch.object(
                chat.ledger,
                "get_balances",
                new_callable=AsyncMock,
                return_value=BalanceSnapshot(addons_token=5000),
            ),
            patch.object(chat.ledger, "charge_usage", new_callable=AsyncMock) as mock_charge,
            pytest.raises(AllModelsFailedError),
        ):
            await chat.send(uuid4(), MESSAGES)

        mock_charge.assert_not_awaited()
