"""
AI Educator - Forex Q&A grounded in the knowledge base, billed per answer.

Flow for one question:
1. Pre-flight balance check against the estimated cost
2. Keyword extraction prompt
3. Knowledge base lookup on the keywords
4. Answer prompt (grounded in the entry, or free-form)
5. Charge the user, committing the exchange (and the answer as a new entry
   when nothing matched) in the same transaction
"""

import json
import re
from uuid import UUID, uuid4

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.db.models import History, KnowledgeBase
from tokenledger.exceptions import AIProviderError, InsufficientTokensError
from tokenledger.models.api import AnalysisType, HistoryType
from tokenledger.models.domain import EducatorAnswer, EducatorTurn, UsageCharge
from tokenledger.observability import get_logger
from tokenledger.services.ledger import TokenLedgerService
from tokenledger.services.openrouter import OpenRouterClient
from tokenledger.services.pricing import ANALYSIS_ESTIMATE, EDUCATOR_MODELS, EDUCATOR_RATES, token_cost

logger = get_logger(__name__)

EDUCATOR_FEATURE = "ai_educator"

# knowledge_bases.title and topic are VARCHAR(255)
TITLE_MAX_LENGTH = 255

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

KEYWORD_PROMPT = (
    "You are a forex keyword extractor. Given the user's question, return ONLY the most "
    'relevant topic/keyword(s) in JSON format: {{"keywords": ["keyword1", "keyword2"]}}.'
    "\n\nLast reply: {last_message}\nUser Question: {question}"
)

GROUNDED_ANSWER_PROMPT = (
    "You are a forex educator. Answer the user's question using ONLY this knowledge base "
    "entry:\n\n{entry}\n\nUser Question: {question}\n\nYour reply should be friendly, "
    "human-like, and end with a follow-up question to encourage learning."
)

FREE_ANSWER_PROMPT = (
    "You are a forex educator. The database does not contain the answer, so use your own "
    "knowledge to answer.\n\nUser Question: {question}\n\nProvide a complete, clear, and "
    "educational answer with a follow-up question."
)


def extract_keywords(text: str) -> list[str]:
    """Keywords from the first JSON object in a model reply; [] when unparseable."""
    match = _JSON_OBJECT.search(text)
    if match is None:
        return []
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, dict):
        return []
    keywords = parsed.get("keywords")
    if not isinstance(keywords, list):
        return []
    return [str(keyword).strip() for keyword in keywords if str(keyword).strip()]


async def educator_history(session: AsyncSession, user_id: UUID) -> list[EducatorTurn]:
    """Past educator exchanges as alternating user and ai messages."""
    result = await session.execute(
        select(History)
        .where(History.user_id == user_id, History.type == HistoryType.AI_EDUCATOR.value)
        .order_by(History.timestamp)
    )

    turns: list[EducatorTurn] = []
    # Ids start at 2; the client renders its own greeting as message 1
    next_id = 2
    for record in result.scalars().all():
        turns.append(
            EducatorTurn(
                id=str(next_id), content=record.title, sender="user", timestamp=record.timestamp
            )
        )
        turns.append(
            EducatorTurn(
                id=str(next_id + 1),
                content=record.content,
                sender="ai",
                timestamp=record.timestamp,
            )
        )
        next_id += 2
    return turns


class EducatorService:
    """Answers forex questions and bills them through the ledger."""

    def __init__(self, session: AsyncSession, client: OpenRouterClient) -> None:
        self.session = session
        self.client = client
        self.ledger = TokenLedgerService(session)

    async def ask(
        self, user_id: UUID, question: str, last_message: str | None = None
    ) -> EducatorAnswer:
        """
        Answer one question.

        Raises:
            InsufficientTokensError: balances below the estimated cost (no AI call made)
            AIProviderError: keyword extraction produced nothing usable
            AllModelsFailedError: no model could answer
        """
        estimated_cost = token_cost(
            EDUCATOR_RATES,
            EDUCATOR_MODELS[0],
            ANALYSIS_ESTIMATE.input_tokens,
            ANALYSIS_ESTIMATE.output_tokens,
        )
        balances = await self.ledger.get_balances(user_id)
        if balances.total < estimated_cost:
            logger.warning(
                "educator_insufficient_tokens",
                user_id=str(user_id),
                available=balances.total,
                required=estimated_cost,
            )
            raise InsufficientTokensError(balances.total, estimated_cost)

        keyword_completion = await self.client.complete_with_fallback(
            [
                {
                    "role": "user",
                    "content": KEYWORD_PROMPT.format(
                        last_message=last_message or "", question=question
                    ),
                }
            ],
            EDUCATOR_MODELS,
        )
        keywords = extract_keywords(keyword_completion.content)
        if not keywords:
            logger.warning("educator_no_keywords", reply=keyword_completion.content[:200])
            raise AIProviderError("No keywords extracted")

        entry = await self._find_entry(keywords)
        if entry is not None:
            prompt = GROUNDED_ANSWER_PROMPT.format(entry=entry.content, question=question)
        else:
            prompt = FREE_ANSWER_PROMPT.format(question=question)

        answer = await self.client.complete_with_fallback(
            [{"role": "user", "content": prompt}], EDUCATOR_MODELS
        )

        records: list[object] = [
            History(
                id=uuid4(),
                user_id=user_id,
                title=question,
                type=HistoryType.AI_EDUCATOR.value,
                model=answer.model,
                content=answer.content,
                chart_urls=[],
            )
        ]
        if entry is None:
            title = keywords[0].capitalize()[:TITLE_MAX_LENGTH]
            records.append(
                KnowledgeBase(
                    id=uuid4(),
                    source=EDUCATOR_FEATURE,
                    topic=title,
                    title=title,
                    related_keywords=keywords,
                    content=answer.content,
                )
            )

        cost = token_cost(
            EDUCATOR_RATES,
            answer.model,
            ANALYSIS_ESTIMATE.input_tokens,
            ANALYSIS_ESTIMATE.output_tokens,
        )
        charge = await self.ledger.charge_usage(
            UsageCharge(
                user_id=user_id,
                cost=cost,
                feature=EDUCATOR_FEATURE,
                model=answer.model,
                analysis_type=AnalysisType.TEXT,
                input_tokens=(
                    answer.prompt_tokens
                    if answer.prompt_tokens is not None
                    else ANALYSIS_ESTIMATE.input_tokens
                ),
                output_tokens=(
                    answer.completion_tokens
                    if answer.completion_tokens is not None
                    else ANALYSIS_ESTIMATE.output_tokens
                ),
            ),
            records,
        )

        logger.info(
            "educator_answered",
            user_id=str(user_id),
            model=answer.model,
            keywords=keywords,
            knowledge_base_used=entry is not None,
            tokens_charged=cost,
        )

        return EducatorAnswer(
            answer=answer.content,
            model=answer.model,
            keywords=tuple(keywords),
            knowledge_base_used=entry is not None,
            tokens_charged=cost,
            balances_after=charge.balances_after,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_entry(self, keywords: list[str]) -> KnowledgeBase | None:
        """First entry whose title or content mentions any keyword."""
        conditions = []
        for keyword in keywords:
            pattern = f"%{keyword}%"
            conditions.append(KnowledgeBase.title.ilike(pattern))
            conditions.append(KnowledgeBase.content.ilike(pattern))

        result = await self.session.execute(
            select(KnowledgeBase).where(or_(*conditions)).order_by(KnowledgeBase.created_at).limit(1)
        )
        return result.scalar_one_or_none()
