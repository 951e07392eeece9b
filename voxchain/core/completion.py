"""
Completion service access for prompt units.

This module provides the async chat-completion client used by the pipeline
executor, with reasoning-model parameter fallback, uniform error reporting
and a per-provider registry (OpenAI and Open WebUI).
"""

import logging
from typing import Any, Dict, Optional, Protocol

import openai

from .config import ConfigurationError, config, get_async_client
from .types import Provider

logger = logging.getLogger(__name__)


class ExternalCallError(Exception):
    """Raised when the completion service returns a non-success status or the transport fails."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"Completion API error {status}: {message}")


class CompletionService(Protocol):
    async def complete(self, system_prompt: str, user_prompt: str, model: str) -> str: ...


def is_reasoning_model_error(exception: Exception) -> bool:
    """
    Check if the exception indicates the target model is a reasoning model.

    Detects a 400 invalid_request_error whose code is unsupported_value or
    unsupported_parameter for ``temperature`` or ``max_tokens``.
    """
    if not isinstance(exception, openai.BadRequestError):
        return False

    body = exception.body if isinstance(exception.body, dict) else {}
    error_info = body.get("error", body)
    if not isinstance(error_info, dict):
        return False

    error_type = str(error_info.get("type") or "").lower()
    error_code = str(error_info.get("code") or "").lower()
    error_param = str(error_info.get("param") or "").lower()

    return (
        error_type == "invalid_request_error"
        and error_code in ("unsupported_value", "unsupported_parameter")
        and error_param in ("temperature", "max_tokens")
    )


def adjust_params_for_reasoning_model(original_params: Dict[str, Any]) -> Dict[str, Any]:
    """Drop parameters reasoning models reject and move max_tokens to max_completion_tokens."""
    adjusted_params = original_params.copy()
    adjusted_params.pop("temperature", None)
    if "max_tokens" in adjusted_params:
        adjusted_params["max_completion_tokens"] = adjusted_params.pop("max_tokens")

    logger.info(f"Adjusted parameters for reasoning model: {sorted(adjusted_params)}")
    return adjusted_params


def _to_external_error(exception: Exception) -> ExternalCallError:
    if isinstance(exception, openai.APIStatusError):
        return ExternalCallError(exception.status_code, exception.message)
    if isinstance(exception, openai.APIConnectionError):
        return ExternalCallError(0, f"Transport failure: {exception}")
    return ExternalCallError(0, str(exception))


class OpenAICompletionClient:
    """
    Chat-completion client for an OpenAI-compatible endpoint.

    Standard models get temperature and max_tokens; reasoning models get
    max_completion_tokens only. If IS_REASONING_MODEL is wrong the request is
    retried once with adjusted parameters.
    """

    def __init__(self, client: Any, reasoning: Optional[bool] = None):
        self.client = client
        self.reasoning = config.is_reasoning_model if reasoning is None else reasoning

    def _build_params(self, system_prompt: str, user_prompt: str, model: str) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": "system", "content": system_prompt}, {"role": "user", "content": user_prompt}],
        }
        if self.reasoning:
            params["max_completion_tokens"] = config.max_tokens
        else:
            params["temperature"] = config.model_temperature
            params["max_tokens"] = config.max_tokens
        return params

    async def _create(self, params: Dict[str, Any]) -> Any:
        try:
            return await self.client.chat.completions.create(**params)
        except openai.OpenAIError as e:
            if not is_reasoning_model_error(e):
                raise _to_external_error(e) from e
            logger.info("Detected reasoning model error, retrying with adjusted parameters")

        try:
            return await self.client.chat.completions.create(**adjust_params_for_reasoning_model(params))
        except openai.OpenAIError as retry_error:
            raise _to_external_error(retry_error) from retry_error

    async def complete(self, system_prompt: str, user_prompt: str, model: str) -> str:
        """
        Run one chat completion.

        Returns:
            The first choice's message content

        Raises:
            ExternalCallError: On non-success status, transport failure or an empty response
        """
        logger.info(f"Sending chat completion request (model: {model})")
        response = await self._create(self._build_params(system_prompt, user_prompt, model))

        if not response.choices:
            raise ExternalCallError(500, "No response from API")
        content = response.choices[0].message.content
        if content is None:
            raise ExternalCallError(500, "Empty message content in API response")
        return content


class CompletionRegistry:
    """
    Lazily builds one completion service per provider from configuration.

    Services may also be injected directly, which is how tests supply fakes.
    """

    def __init__(self, services: Optional[Dict[Provider, CompletionService]] = None):
        self._services: Dict[Provider, CompletionService] = dict(services or {})

    def register(self, provider: Provider, service: CompletionService) -> None:
        self._services[provider] = service

    def get(self, provider: Provider) -> CompletionService:
        """
        Return the service for ``provider``, creating it on first use.

        Raises:
            ConfigurationError: If the provider's settings are missing
        """
        if provider not in self._services:
            self._services[provider] = self._build(provider)
        return self._services[provider]

    def _build(self, provider: Provider) -> CompletionService:
        if provider == Provider.OPENAI:
            return OpenAICompletionClient(get_async_client())
        if provider == Provider.OPEN_WEBUI:
            base_url = config.openwebui_base_url
            if not base_url:
                raise ConfigurationError("OPENWEBUI_BASE_URL is not configured; cannot run Open WebUI prompt units.")
            return OpenAICompletionClient(get_async_client(base_url=base_url, api_key=config.openwebui_api_key))
        raise ConfigurationError(f"Unsupported provider: {provider}")
