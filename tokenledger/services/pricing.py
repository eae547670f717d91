"""
Pricing - Per-model cost tables and the formulas that turn AI usage into credits.

Rates are USD per 1,000 tokens except the Gemini table, which is per token.
All arithmetic is Decimal so that ceil() never rounds up float noise.
"""

import math
from decimal import ROUND_HALF_UP, Decimal

from structlog import get_logger

from tokenledger.config import settings
from tokenledger.exceptions import UnknownModelError
from tokenledger.models.domain import CostBreakdown, ModelRate, TokenEstimate

logger = get_logger(__name__)

_SIX_PLACES = Decimal("0.000001")
_PER_THOUSAND = Decimal(1000)


def _rate(input_per_k: str, output_per_k: str) -> ModelRate:
    return ModelRate(input=Decimal(input_per_k), output=Decimal(output_per_k))


# Vision models used for chart analysis
CHART_ANALYSIS_RATES: dict[str, ModelRate] = {
    "gpt-4o": _rate("0.005", "0.015"),
    "gpt-4o-mini": _rate("0.0025", "0.0075"),
    "o4-mini": _rate("0.0025", "0.0075"),
    "gpt-4-turbo": _rate("0.003", "0.01"),
    "gpt-4-vision-preview": _rate("0.005", "0.015"),
    "gpt-3.5-turbo": _rate("0.0005", "0.0015"),
}

# Free-tier OpenRouter models, in the order the educator falls back through them
EDUCATOR_MODELS: tuple[str, ...] = (
    "openai/gpt-oss-20b:free",
    "deepseek/deepseek-r1-0528:free",
    "qwen/qwen2.5-vl-72b-instruct:free",
    "mistralai/mistral-small-3.2-24b-instruct-2506:free",
    "meta-llama/llama-4-maverick:free",
    "nvidia/llama-3.3-nemotron-super-49b-v1:free",
    "qwen/qwen3-235b-a22b:free",
    "google/gemma-3-12b-it:free",
    "qwen/qwen3-30b-a3b:free",
)
EDUCATOR_RATES: dict[str, ModelRate] = {model: _rate("0.005", "0.005") for model in EDUCATOR_MODELS}

# Model picker catalog
CATALOG_FALLBACK_MODEL = "openai/gpt-4o-mini"
CATALOG_RATES: dict[str, ModelRate] = {
    "openai/gpt-4o-2024-11-20": _rate("0.005", "0.015"),
    "google/gemini-2.0-flash-001": _rate("0.00035", "0.00105"),
    "anthropic/claude-3.7-sonnet": _rate("0.003", "0.015"),
    "google/gemini-2.5-pro-preview-05-06": _rate("0.0004", "0.0012"),
    "meta-llama/llama-4-scout": _rate("0.0008", "0.003"),
    "qwen/qwen-vl-plus": _rate("0.0001", "0.0003"),
    CATALOG_FALLBACK_MODEL: _rate("0.0025", "0.0075"),
    "meta-llama/llama-3.3-70b-instruct:free": _rate("0.0025", "0.0075"),
    "mistralai/mistral-small-3.2-24b-instruct:free": _rate("0.0025", "0.0075"),
    "deepseek/deepseek-r1-0528:free": _rate("0.0025", "0.0075"),
}

# Per token, not per 1k
GEMINI_RATES: dict[str, ModelRate] = {
    "gemini-1.5-pro": _rate("0.0025", "0.0075"),
    "gemini-1.5-flash": _rate("0.0010", "0.0030"),
    "gemini-pro": _rate("0.0005", "0.0015"),
}

# Per token; charged when a model has no price
DEFAULT_RATE = _rate("0.0005", "0.0015")

ANALYSIS_ESTIMATE = TokenEstimate(input_tokens=1000, output_tokens=2000)
CATALOG_ANALYSIS_ESTIMATE = TokenEstimate(input_tokens=2000, output_tokens=1000)
CATALOG_CHAT_ESTIMATE = TokenEstimate(input_tokens=800, output_tokens=400)

# Re-price on reported usage only when it moves the charge by more than this
REPRICE_TOLERANCE = 5


def _round6(value: Decimal) -> Decimal:
    return value.quantize(_SIX_PLACES, rounding=ROUND_HALF_UP)


def _to_tokens(usd: Decimal) -> int:
    return math.ceil(usd * settings.tokens_per_dollar)


def calculate_cost(
    rates: dict[str, ModelRate],
    model: str,
    input_tokens: int,
    output_tokens: int,
    usage_multiplier: Decimal | float | int = 1,
    profit_multiplier: int | None = None,
) -> CostBreakdown:
    """
    Price a call against a per-1k rate table.

    total = (input_rate * in/1000 + output_rate * out/1000) * profit * usage

    Raises:
        UnknownModelError: model has no entry in rates
    """
    rate = rates.get(model)
    if rate is None:
        raise UnknownModelError(model)

    profit = Decimal(settings.profit_multiplier if profit_multiplier is None else profit_multiplier)
    usage = Decimal(str(usage_multiplier))

    input_cost = rate.input * (Decimal(input_tokens) / _PER_THOUSAND)
    output_cost = rate.output * (Decimal(output_tokens) / _PER_THOUSAND)
    raw_cost = input_cost + output_cost
    total_cost = raw_cost * profit * usage

    return CostBreakdown(
        model=model,
        input_cost=_round6(input_cost),
        output_cost=_round6(output_cost),
        raw_cost=_round6(raw_cost),
        total_cost=_round6(total_cost),
    )


def calculate_gemini_cost(model: str, input_tokens: int, output_tokens: int) -> CostBreakdown:
    """
    Price a Gemini call: flat per-token rates, no profit or usage multiplier.

    Raises:
        UnknownModelError: model is not a known Gemini model
    """
    rate = GEMINI_RATES.get(model)
    if rate is None:
        raise UnknownModelError(model)

    input_cost = rate.input * input_tokens
    output_cost = rate.output * output_tokens
    raw_cost = input_cost + output_cost

    return CostBreakdown(
        model=model,
        input_cost=_round6(input_cost),
        output_cost=_round6(output_cost),
        raw_cost=_round6(raw_cost),
        total_cost=_round6(raw_cost),
    )


def token_cost(
    rates: dict[str, ModelRate],
    model: str,
    input_tokens: int,
    output_tokens: int,
    usage_multiplier: Decimal | float | int = 1,
) -> int:
    """
    Credits to charge for a call: ceil(total_cost * tokens_per_dollar).

    Unknown models are charged at DEFAULT_RATE applied per token (no profit
    multiplier) instead of failing the request after the AI already answered.
    """
    try:
        breakdown = calculate_cost(rates, model, input_tokens, output_tokens, usage_multiplier)
    except UnknownModelError:
        fallback_usd = DEFAULT_RATE.input * input_tokens + DEFAULT_RATE.output * output_tokens
        logger.warning(
            "unknown_model_default_pricing",
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
        return _to_tokens(fallback_usd)

    return _to_tokens(breakdown.total_cost)


def catalog_token_cost(model: str, is_analysis: bool = False) -> int:
    """
    Credits shown in the model picker for one chat message or one analysis.

    Uses raw provider cost (no profit multiplier); unknown models are priced
    like the fallback catalog model.
    """
    rate = CATALOG_RATES.get(model, CATALOG_RATES[CATALOG_FALLBACK_MODEL])
    estimate = CATALOG_ANALYSIS_ESTIMATE if is_analysis else CATALOG_CHAT_ESTIMATE

    usd = (Decimal(estimate.input_tokens) / _PER_THOUSAND) * rate.input + (
        Decimal(estimate.output_tokens) / _PER_THOUSAND
    ) * rate.output
    return _to_tokens(usd)


def chart_preview_cost(model: str) -> int:
    """Credits for an on-demand chart analysis, which carries a usage surcharge."""
    return token_cost(
        CHART_ANALYSIS_RATES,
        model,
        ANALYSIS_ESTIMATE.input_tokens,
        ANALYSIS_ESTIMATE.output_tokens,
        usage_multiplier=settings.chart_preview_multiplier,
    )


def reprice(
    rates: dict[str, ModelRate],
    model: str,
    estimated_cost: int,
    prompt_tokens: int | None,
    completion_tokens: int | None,
    usage_multiplier: Decimal | float | int = 1,
) -> int:
    """
    Final charge for a call that was pre-flighted at estimated_cost.

    The provider's reported token counts replace the estimate when the model
    is priced in rates and the difference exceeds REPRICE_TOLERANCE credits.
    """
    if prompt_tokens is None or completion_tokens is None or model not in rates:
        return estimated_cost

    actual_cost = token_cost(rates, model, prompt_tokens, completion_tokens, usage_multiplier)
    if abs(actual_cost - estimated_cost) <= REPRICE_TOLERANCE:
        return estimated_cost

    logger.info(
        "cost_repriced_on_usage",
        model=model,
        estimated_cost=estimated_cost,
        actual_cost=actual_cost,
        difference=actual_cost - estimated_cost,
    )
    return actual_cost
