"""
Chart Analysis - Vision model trade analysis of chart images, billed per analysis.

Flow for one analysis:
1. Pre-flight balance check (previews carry a usage surcharge)
2. Vision completion with the chart images, falling back through backup models
3. Parse the model's JSON analysis; unparseable replies are not billed
4. Re-price on the provider's reported usage
5. Charge, committing the analysis history in the same transaction
"""

import json
import re
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.config import settings
from tokenledger.db.models import History
from tokenledger.exceptions import AIProviderError, InsufficientTokensError
from tokenledger.models.api import AnalysisType, HistoryType
from tokenledger.models.domain import ChartAnalysis, UsageCharge
from tokenledger.observability import get_logger
from tokenledger.services.ledger import TokenLedgerService
from tokenledger.services.openrouter import OpenRouterClient
from tokenledger.services.pricing import (
    ANALYSIS_ESTIMATE,
    CHART_ANALYSIS_RATES,
    reprice,
    token_cost,
)

logger = get_logger(__name__)

ANALYSIS_FEATURE = "image_analysis"
ANALYSIS_MAX_TOKENS = 4000

# Tried in order when the requested model fails or is not a plausible model id
ANALYSIS_FALLBACK_MODELS: tuple[str, ...] = (
    "google/gemini-2.5-flash",
    "anthropic/claude-sonnet-4",
    "openai/gpt-5",
)

VALID_MODEL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern)
    for pattern in (
        r"^openai/[a-z0-9-]+$",
        r"^anthropic/[a-z0-9-]+(-[0-9]+)?$",
        r"^google/[a-z0-9.-]+$",
        r"^meta-llama/[a-z0-9-]+$",
        r"^qwen/[a-z0-9.:-]+$",
        r"^mistral/[a-z0-9.-]+$",
        r"^nvidia/[a-z0-9.-]+$",
        r"^deepseek/[a-z0-9:-]+$",
        r"^[a-zA-Z0-9-]+$",
    )
)

_CODE_FENCE = re.compile(r"```(?:json)?\s*|```\s*$")
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

SYSTEM_PROMPT = """You are a professional financial chart analyst. Analyze the trading charts and
return ONLY a valid JSON object, with no text around it, using exactly these keys:

{
    "Symbol": "string_or_null",
    "Timeframe": "string_or_null",
    "Current_Price": float_or_null,
    "Key_Price_Levels": {"Support_Levels": [float], "Resistance_Levels": [float]},
    "Market_Structure": "string_or_null",
    "Volatility_Conditions": "string_or_null",
    "Chart_Patterns": "string_or_null",
    "INDICATORS": {
        "RSI_Indicator": {"Current_Values": "string", "Signal": "string", "Analysis": "string"},
        "MACD_Indicator": {"Current_Values": "string", "Signal": "string", "Analysis": "string"},
        "Other_Indicator": "string_or_null"
    },
    "Action": "BUY | SELL | BUY LIMIT | SELL LIMIT",
    "Entry_Price": float_or_null,
    "Stop_Loss": float_or_null,
    "Take_Profit": float_or_null,
    "Risk_Ratio": "string_or_null",
    "Hold_Reason": "string_or_null",
    "Technical_Justification": "string_or_null",
    "Analysis_Confidence": {"Confidence_Level_Percent": integer_0_to_100_or_null},
    "Summary": "string_or_null"
}

Rules:
- Symbol and Timeframe exactly as shown on the chart, or "Not Visible".
- BUY/SELL enter at the current price. Use BUY LIMIT below or SELL LIMIT above the current
  price when the current price does not offer at least 1.5 risk/reward, and give Hold_Reason.
- Risk_Ratio: BUY (TP - Entry) / (Entry - SL), SELL (Entry - TP) / (SL - Entry), 2 decimals.
"""

USER_PROMPT = (
    "Please analyze this market chart and provide a comprehensive trading strategy analysis. "
    "Focus on price action, technical indicators, and potential trading opportunities. If any "
    'indicator is not clearly visible, mark it as "Not Visible".'
)


def is_valid_model_id(model: str) -> bool:
    """Whether model looks like an OpenRouter model id."""
    return any(pattern.match(model) for pattern in VALID_MODEL_PATTERNS)


def analysis_models(model: str) -> list[str]:
    """Requested model first when it is plausible, then the fallbacks, without repeats."""
    models = [model] if is_valid_model_id(model) else []
    models.extend(m for m in ANALYSIS_FALLBACK_MODELS if m not in models)
    return models


def parse_analysis(text: str) -> dict[str, Any] | None:
    """The JSON object in a model reply, tolerating code fences and prose; None if absent."""
    for candidate in (text, _CODE_FENCE.sub("", text)):
        match = _JSON_OBJECT.search(candidate)
        if match is None:
            continue
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def analysis_title(analysis: dict[str, Any]) -> str:
    """History title such as 'EURUSD 4H Analysis'."""
    symbol = analysis.get("Symbol") or analysis.get("symbol") or "Unknown"
    timeframe = analysis.get("Timeframe") or analysis.get("timeframe") or "Chart"
    return f"{symbol} {timeframe} Analysis"


class ChartAnalysisService:
    """Analyzes chart images with a vision model and bills the analysis."""

    def __init__(self, session: AsyncSession, client: OpenRouterClient) -> None:
        self.session = session
        self.client = client
        self.ledger = TokenLedgerService(session)

    async def analyze(
        self, user_id: UUID, images: list[str], model: str, preview: bool = False
    ) -> ChartAnalysis:
        """
        Analyze one set of chart images.

        Raises:
            InsufficientTokensError: balances below the estimated cost (no AI call made)
            AllModelsFailedError: no model could answer
            AIProviderError: the reply held no JSON analysis (not billed)
        """
        multiplier = settings.chart_preview_multiplier if preview else 1
        estimated_cost = token_cost(
            CHART_ANALYSIS_RATES,
            model,
            ANALYSIS_ESTIMATE.input_tokens,
            ANALYSIS_ESTIMATE.output_tokens,
            usage_multiplier=multiplier,
        )
        balances = await self.ledger.get_balances(user_id)
        if balances.total < estimated_cost:
            logger.warning(
                "analysis_insufficient_tokens",
                user_id=str(user_id),
                available=balances.total,
                required=estimated_cost,
            )
            raise InsufficientTokensError(balances.total, estimated_cost)

        content: list[dict[str, Any]] = [{"type": "text", "text": USER_PROMPT}]
        content.extend({"type": "image_url", "image_url": {"url": image}} for image in images)
        completion = await self.client.complete_with_fallback(
            [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            analysis_models(model),
            max_tokens=ANALYSIS_MAX_TOKENS,
        )

        analysis = parse_analysis(completion.content)
        if analysis is None:
            logger.error(
                "analysis_unparseable",
                user_id=str(user_id),
                model=completion.model,
                reply=completion.content[:500],
            )
            raise AIProviderError("Unable to parse AI response")

        cost = reprice(
            CHART_ANALYSIS_RATES,
            completion.model,
            estimated_cost,
            completion.prompt_tokens,
            completion.completion_tokens,
            usage_multiplier=multiplier,
        )
        history = History(
            id=uuid4(),
            user_id=user_id,
            title=analysis_title(analysis),
            type=HistoryType.CHART_ANALYSIS.value,
            model=completion.model,
            content=json.dumps(analysis),
            # Inline data URIs are not kept; only linkable images are
            chart_urls=[image for image in images if image.startswith(("https://", "http://"))],
        )
        charge = await self.ledger.charge_usage(
            UsageCharge(
                user_id=user_id,
                cost=cost,
                feature=ANALYSIS_FEATURE,
                model=completion.model,
                analysis_type=AnalysisType.VISION,
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
            [history],
        )

        logger.info(
            "chart_analyzed",
            user_id=str(user_id),
            model=completion.model,
            preview=preview,
            images=len(images),
            tokens_charged=cost,
        )

        return ChartAnalysis(
            analysis=analysis,
            model=completion.model,
            history_id=history.id,
            tokens_charged=cost,
            balances_after=charge.balances_after,
        )
