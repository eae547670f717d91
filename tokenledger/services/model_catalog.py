"""
Model Catalog - Models offered in the model picker and who may use them.
"""

from tokenledger.models.domain import CatalogModel
from tokenledger.services.pricing import catalog_token_cost

CATALOG_MODELS: tuple[CatalogModel, ...] = (
    CatalogModel(
        id="mistralai/mistral-small-3.2-24b-instruct:free",
        name="Mistral Small 3.2 24B",
        description="Updated 24B parameter Mistral model optimized for instruction following",
        premium=False,
        beta=False,
        has_vision=False,
        structured_output=True,
    ),
    CatalogModel(
        id="deepseek/deepseek-r1-0528:free",
        name="DeepSeek: R1 0528",
        description="Updated DeepSeek R1 reasoning model",
        premium=False,
        beta=False,
        has_vision=False,
        structured_output=True,
    ),
    CatalogModel(
        id="meta-llama/llama-3.3-70b-instruct:free",
        name="Meta LLama 3.3",
        description="Reads texts, charts, icons and layouts within images",
        premium=False,
        beta=False,
        has_vision=True,
        structured_output=True,
    ),
    CatalogModel(
        id="openai/gpt-4o-2024-11-20",
        name="GPT-4o",
        description="Fast and efficient analysis",
        premium=True,
        beta=False,
        has_vision=True,
        structured_output=True,
    ),
    CatalogModel(
        id="google/gemini-2.0-flash-001",
        name="Gemini 2.0 Flash",
        description="Rapid data processing capabilities",
        premium=True,
        beta=False,
        has_vision=True,
        structured_output=True,
    ),
    CatalogModel(
        id="anthropic/claude-3.7-sonnet",
        name="Claude 3.7 Sonnet",
        description="Advanced reasoning and analysis",
        premium=True,
        beta=False,
        has_vision=True,
        structured_output=True,
    ),
    CatalogModel(
        id="google/gemini-2.5-pro-preview-05-06",
        name="Gemini 2.5 Pro",
        description="Enhanced reasoning capabilities",
        premium=True,
        beta=True,
        has_vision=True,
        structured_output=True,
    ),
    CatalogModel(
        id="meta-llama/llama-4-scout",
        name="Llama 4 Scout",
        description="Fast and efficient reasoning model",
        premium=False,
        beta=False,
        has_vision=True,
        structured_output=True,
    ),
    CatalogModel(
        id="qwen/qwen-vl-plus",
        name="Qwen VL Plus",
        description="Vision language model with strong multimodal capabilities",
        premium=False,
        beta=False,
        has_vision=True,
        structured_output=True,
    ),
)


def available_models(premium_access: bool) -> list[CatalogModel]:
    """Models the user may pick; premium models are hidden without premium access."""
    return [model for model in CATALOG_MODELS if premium_access or not model.premium]


def image_compatible_models(premium_access: bool) -> list[CatalogModel]:
    """Pickable models that can both read a chart image and return structured output."""
    return [
        model
        for model in available_models(premium_access)
        if model.has_vision and model.structured_output
    ]


def credit_cost(model: CatalogModel) -> int:
    """Credits shown next to a model for a single chat message."""
    return catalog_token_cost(model.id, is_analysis=False)
