"""
Tests for the AI educator flow.
"""

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import DataError

from tests.conftest import added_objects, create_mock_user, create_result
from tokenledger.db.models import History, KnowledgeBase, TokenUsage
from tokenledger.exceptions import AIProviderError, AllModelsFailedError, InsufficientTokensError
from tokenledger.models.api import AnalysisType, TokenBucket
from tokenledger.models.domain import (
    BalanceSnapshot,
    Completion,
    UsageChargeResult,
    UsageSlice,
)
from tokenledger.services.educator import (
    TITLE_MAX_LENGTH,
    EducatorService,
    educator_history,
    extract_keywords,
)
from tokenledger.services.pricing import EDUCATOR_MODELS


def _charge_result(user_id, cost: int) -> UsageChargeResult:
    return UsageChargeResult(
        user_id=user_id,
        cost=cost,
        slices=(
            UsageSlice(
                bucket=TokenBucket.SUBSCRIPTION, cost=cost, input_tokens=1, output_tokens=1
            ),
        ),
        usage_ids=(uuid4(),),
        balances_after=BalanceSnapshot(subscription_token=500 - cost),
    )


@pytest.fixture
def ai_client() -> AsyncMock:
    """OpenRouter client mock."""
    return AsyncMock()


@pytest.fixture
def educator(db_session: AsyncMock, ai_client: AsyncMock) -> EducatorService:
    """EducatorService with mocked session and AI client."""
    return EducatorService(db_session, ai_client)


class TestExtractKeywords:
    """Tests for parsing the keyword reply."""

    def test_plain_json(self) -> None:
        """Well-formed reply."""
        assert extract_keywords('{"keywords": ["pip", "spread"]}') == ["pip", "spread"]

    def test_json_wrapped_in_prose(self) -> None:
        """Models often talk around the JSON."""
        reply = 'Sure! Here you go:\n```json\n{"keywords": ["leverage"]}\n```'
        assert extract_keywords(reply) == ["leverage"]

    @pytest.mark.parametrize(
        "reply",
        ["no json here", '{"keywords": "pip"}', "{not json}", '{"other": ["x"]}', '{"keywords": [" "]}'],
    )
    def test_unusable_reply(self, reply: str) -> None:
        """Anything without a keyword list yields nothing."""
        assert extract_keywords(reply) == []


class TestAsk:
    """Tests for answering a question."""

    async def test_insufficient_tokens_before_any_ai_call(
        self, educator: EducatorService, ai_client: AsyncMock
    ) -> None:
        """Users below the estimate are refused without touching the provider."""
        with patch.object(
            educator.ledger,
            "get_balances",
            new_callable=AsyncMock,
            return_value=BalanceSnapshot(free_token=100),
        ):
            with pytest.raises(InsufficientTokensError) as exc_info:
                await educator.ask(uuid4(), "What is a pip?")

        assert exc_info.value.required == 101
        ai_client.complete_with_fallback.assert_not_awaited()

    async def test_answer_without_knowledge_base_entry(
        self, db_session: AsyncMock, educator: EducatorService, ai_client: AsyncMock
    ) -> None:
        """Free-form answers are charged, saved to history and added to the knowledge base."""
        user_id = uuid4()
        model = EDUCATOR_MODELS[1]
        ai_client.complete_with_fallback = AsyncMock(
            side_effect=[
                Completion(model=EDUCATOR_MODELS[0], content='{"keywords": ["pip"]}'),
                Completion(
                    model=model,
                    content="A pip is the smallest price move.",
                    prompt_tokens=150,
                    completion_tokens=300,
                ),
            ]
        )
        db_session.execute = AsyncMock(return_value=create_result(scalar=None))

        with (
            patch.object(
                educator.ledger,
                "get_balances",
                new_callable=AsyncMock,
                return_value=BalanceSnapshot(subscription_token=500),
            ),
            patch.object(
                educator.ledger,
                "charge_usage",
                new_callable=AsyncMock,
                return_value=_charge_result(user_id, 101),
            ) as mock_charge,
        ):
            answer = await educator.ask(user_id, "What is a pip?", last_message="Hello!")

        assert answer.answer == "A pip is the smallest price move."
        assert answer.model == model
        assert answer.keywords == ("pip",)
        assert answer.knowledge_base_used is False
        assert answer.tokens_charged == 101
        assert answer.balances_after.subscription_token == 399

        charge = mock_charge.call_args.args[0]
        assert charge.feature == "ai_educator"
        assert charge.model == model
        assert charge.analysis_type == AnalysisType.TEXT
        assert charge.input_tokens == 150
        assert charge.output_tokens == 300

        records = mock_charge.call_args.args[1]
        history = next(r for r in records if isinstance(r, History))
        assert history.title == "What is a pip?"
        assert history.type == "ai_educator"
        assert history.content == "A pip is the smallest price move."

        entry = next(r for r in records if isinstance(r, KnowledgeBase))
        assert entry.title == "Pip"
        assert entry.related_keywords == ["pip"]
        # Nothing is written outside the charge transaction
        db_session.add.assert_not_called()
        db_session.commit.assert_not_awaited()

        keyword_prompt = ai_client.complete_with_fallback.call_args_list[0].args[0][0]["content"]
        assert "Last reply: Hello!" in keyword_prompt

    async def test_grounded_answer_uses_entry(
        self, db_session: AsyncMock, educator: EducatorService, ai_client: AsyncMock
    ) -> None:
        """Matching entries are quoted in the prompt and not duplicated."""
        entry = MagicMock(spec=KnowledgeBase)
        entry.content = "Leverage multiplies exposure."
        ai_client.complete_with_fallback = AsyncMock(
            side_effect=[
                Completion(model=EDUCATOR_MODELS[0], content='{"keywords": ["leverage"]}'),
                Completion(model=EDUCATOR_MODELS[0], content="Leverage lets you trade bigger."),
            ]
        )
        db_session.execute = AsyncMock(return_value=create_result(scalar=entry))
        user_id = uuid4()

        with (
            patch.object(
                educator.ledger,
                "get_balances",
                new_callable=AsyncMock,
                return_value=BalanceSnapshot(addons_token=1000),
            ),
            patch.object(
                educator.ledger,
                "charge_usage",
                new_callable=AsyncMock,
                return_value=_charge_result(user_id, 101),
            ) as mock_charge,
        ):
            answer = await educator.ask(user_id, "What is leverage?")

        assert answer.knowledge_base_used is True
        answer_prompt = ai_client.complete_with_fallback.call_args_list[1].args[0][0]["content"]
        assert "Leverage multiplies exposure." in answer_prompt
        records = mock_charge.call_args.args[1]
        assert [type(r) for r in records] == [History]

        # No usage counts from the provider: fall back to the estimate
        charge = mock_charge.call_args.args[0]
        assert charge.input_tokens == 1000
        assert charge.output_tokens == 2000

    async def test_long_keyword_title_truncated(
        self, db_session: AsyncMock, educator: EducatorService, ai_client: AsyncMock
    ) -> None:
        """New knowledge base titles fit the column."""
        user_id = uuid4()
        keyword = "carry trade " * 30
        ai_client.complete_with_fallback = AsyncMock(
            side_effect=[
                Completion(
                    model=EDUCATOR_MODELS[0], content=json.dumps({"keywords": [keyword]})
                ),
                Completion(model=EDUCATOR_MODELS[0], content="A carry trade earns the spread."),
            ]
        )
        db_session.execute = AsyncMock(return_value=create_result(scalar=None))

        with (
            patch.object(
                educator.ledger,
                "get_balances",
                new_callable=AsyncMock,
                return_value=BalanceSnapshot(subscription_token=500),
            ),
            patch.object(
                educator.ledger,
                "charge_usage",
                new_callable=AsyncMock,
                return_value=_charge_result(user_id, 101),
            ) as mock_charge,
        ):
            await educator.ask(user_id, "What is a carry trade?")

        entry = next(r for r in mock_charge.call_args.args[1] if isinstance(r, KnowledgeBase))
        assert len(entry.title) == TITLE_MAX_LENGTH
        assert len(entry.topic) == TITLE_MAX_LENGTH
        assert entry.title.startswith("Carry trade")

    async def test_failed_persistence_charges_nothing(
        self, db_session: AsyncMock, educator: EducatorService, ai_client: AsyncMock
    ) -> None:
        """History, entry and debit share one commit; when it fails all are rolled back."""
        user = create_mock_user(subscription_token=500)
        ai_client.complete_with_fallback = AsyncMock(
            side_effect=[
                Completion(model=EDUCATOR_MODELS[0], content='{"keywords": ["pip"]}'),
                Completion(model=EDUCATOR_MODELS[0], content="A pip is the smallest price move."),
            ]
        )
        db_session.execute = AsyncMock(return_value=create_result(scalar=None))
        db_session.get = AsyncMock(return_value=user)
        added_at_commit: list = []

        async def failing_commit() -> None:
            added_at_commit.extend(added_objects(db_session))
            raise DataError("INSERT", {}, Exception("value too long"))

        db_session.commit = AsyncMock(side_effect=failing_commit)

        with (
            patch.object(
                educator.ledger,
                "get_balances",
                new_callable=AsyncMock,
                return_value=BalanceSnapshot(subscription_token=500),
            ),
            patch.object(
                educator.ledger,
                "_lock_user_for_update",
                new_callable=AsyncMock,
                return_value=user,
            ),
        ):
            with pytest.raises(DataError):
                await educator.ask(user.id, "What is a pip?")

        answer_rows = [obj for obj in added_at_commit if isinstance(obj, (History, KnowledgeBase))]
        assert [type(obj) for obj in answer_rows] == [History, KnowledgeBase]
        assert any(isinstance(obj, TokenUsage) for obj in added_at_commit)
        db_session.commit.assert_awaited_once()
        db_session.rollback.assert_awaited_once()

    async def test_no_keywords(self, educator: EducatorService, ai_client: AsyncMock) -> None:
        """Unparseable keyword replies fail before charging."""
        ai_client.complete_with_fallback = AsyncMock(
            return_value=Completion(model=EDUCATOR_MODELS[0], content="I cannot help with that")
        )

        with (
            patch.object(
                educator.ledger,
                "get_balances",
                new_callable=AsyncMock,
                return_value=BalanceSnapshot(addons_token=1000),
            ),
            patch.object(educator.ledger, "charge_usage", new_callable=AsyncMock) as mock_charge,
        ):
            with pytest.raises(AIProviderError):
                await educator.ask(uuid4(), "???")

        mock_charge.assert_not_awaited()

    async def test_all_models_failed_charges_nothing(
        self, db_session: AsyncMock, educator: EducatorService, ai_client: AsyncMock
    ) -> None:
        """Provider outages are not billed."""
        ai_client.complete_with_fallback = AsyncMock(
            side_effect=AllModelsFailedError(list(EDUCATOR_MODELS))
        )

        with (
            patch.object(
                educator.ledger,
                "get_balances",
                new_callable=AsyncMock,
                return_value=BalanceSnapshot(addons_token=1000),
            ),
            patch.object(educator.ledger, "charge_usage", new_callable=AsyncMock) as mock_charge,
        ):
            with pytest.raises(AllModelsFailedError):
                await educator.ask(uuid4(), "What is a pip?")

        mock_charge.assert_not_awaited()
        db_session.commit.assert_not_awaited()


class TestHistory:
    """Tests for the educator conversation history."""

    async def test_alternating_turns(self, db_session: AsyncMock) -> None:
        """Each record becomes a user turn then an ai turn, ids from 2."""
        records = []
        for question, reply in [("What is a pip?", "A price unit."), ("And a lot?", "A size.")]:
            record = MagicMock(spec=History)
            record.title = question
            record.content = reply
            record.timestamp = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
            records.append(record)
        db_session.execute = AsyncMock(return_value=create_result(scalars_list=records))

        turns = await educator_history(db_session, uuid4())

        assert [turn.id for turn in turns] == ["2", "3", "4", "5"]
        assert [turn.sender for turn in turns] == ["user", "ai", "user", "ai"]
        assert turns[2].content == "And a lot?"

    async def test_empty(self, db_session: AsyncMock) -> None:
        """No history, no turns."""
        assert await educator_history(db_session, uuid4()) == []
