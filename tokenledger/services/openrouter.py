"""
OpenRouter client for chat completions with model fallback.
"""

from typing import Any

import httpx
from structlog import get_logger

from tokenledger.exceptions import AIProviderError, AllModelsFailedError
from tokenledger.models.domain import Completion
from tokenledger.observability import metrics

logger = get_logger(__name__)


def _extract_error_message(response: httpx.Response) -> str:
    """Pull the provider's error text out of error.message, message or error."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if body.get("message"):
            return str(body["message"])
        if error:
            return str(error)
    return f"HTTP {response.status_code}"


def _extract_content(data: dict[str, Any]) -> str | None:
    """Reply text from choices[0].message.content, or choices[0].text."""
    choices = data.get("choices") or []
    if not choices:
        return None
    first = choices[0]
    message = first.get("message")
    if isinstance(message, dict) and message.get("content"):
        return str(message["content"])
    if first.get("text"):
        return str(first["text"])
    return None


class OpenRouterClient:
    """OpenRouter chat completions client."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 60.0,
        app_title: str | None = None,
        referer: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.app_title = app_title
        self.referer = referer
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.app_title:
            headers["X-Title"] = self.app_title
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        return headers

    async def chat_completion(
        self,
        model: str,
        messages: list[dict[str, Any]],
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> Completion:
        """
        Run one chat completion.

        Raises:
            AIProviderError: non-2xx response, unreadable body or empty reply
        """
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        response = await self.http_client.post(
            f"{self.base_url}/chat/completions", json=payload, headers=self._headers()
        )

        if response.status_code >= 400:
            message = _extract_error_message(response)
            logger.warning(
                "openrouter_request_failed",
                model=model,
                status=response.status_code,
                error=message,
            )
            raise AIProviderError(message, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise AIProviderError("Invalid JSON in provider response") from exc

        content = _extract_content(data)
        if not content:
            raise AIProviderError(f"Empty response from {model}")

        usage = data.get("usage") or {}
        return Completion(
            model=model,
            content=content,
            prompt_tokens=usage.get("prompt_tokens"),
            completion_tokens=usage.get("completion_tokens"),
        )

    async def complete_with_fallback(
        self,
        messages: list[dict[str, Any]],
        models: tuple[str, ...] | list[str],
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> Completion:
        """
        Try each model in order until one answers.

        Raises:
            AllModelsFailedError: every model failed
        """
        attempted: list[str] = []
        for model in models:
            attempted.append(model)
            try:
                completion = await self.chat_completion(model, messages, temperature, max_tokens)
            except (AIProviderError, httpx.HTTPError) as exc:
                logger.warning("model_failed_trying_next", model=model, error=str(exc))
                metrics.record_ai_request(model, "error")
                if len(attempted) < len(models):
                    metrics.record_ai_fallback()
                continue

            metrics.record_ai_request(model, "success")
            if len(attempted) > 1:
                logger.info("fallback_model_succeeded", model=model, attempts=len(attempted))
            return completion

        logger.error("all_models_failed", attempted=attempted)
        raise AllModelsFailedError(attempted)

    async def check_api_key(self) -> bool:
        """True when the provider accepts our key on GET /models."""
        try:
            response = await self.http_client.get(
                f"{self.base_url}/models", headers=self._headers(), timeout=10.0
            )
        except httpx.HTTPError as exc:
            logger.warning("openrouter_key_check_failed", error=str(exc))
            return False
        return response.status_code == 200

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
