"""Model router: unified LLM interface via LiteLLM.

Supports cloud providers (OpenAI, Anthropic, ...) and local models (Ollama)
through one chat-completion call, streaming or not. Non-streaming calls walk
a fallback chain.
"""

from __future__ import annotations

from typing import Any, AsyncIterator

import litellm
import structlog

from turnwise.config import TurnwiseConfig
from turnwise.core.types import ModelResponse

logger = structlog.get_logger()

# Suppress LiteLLM's verbose logging
litellm.suppress_debug_info = True


class ModelRouter:
    """Routes LLM requests through LiteLLM with fallback support."""

    def __init__(self, config: TurnwiseConfig) -> None:
        self.config = config

    @property
    def default_model(self) -> str:
        return self.config.models.default.model

    def _request_kwargs(
        self,
        model_name: str,
        messages: list[dict[str, Any]],
        temperature: float | None,
        max_tokens: int | None,
        api_key: str | None,
        stream: bool,
    ) -> dict[str, Any]:
        defaults = self.config.models.default
        kwargs: dict[str, Any] = {
            "model": model_name,
            "messages": messages,
            "temperature": temperature if temperature is not None else defaults.temperature,
            "stream": stream,
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens

        provider_cfg = self.config.models.provider_for(model_name)
        if provider_cfg and provider_cfg.base_url:
            kwargs["api_base"] = provider_cfg.base_url

        key = api_key or (provider_cfg.get_api_key() if provider_cfg else None)
        if key:
            kwargs["api_key"] = key
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        api_key: str | None = None,
    ) -> ModelResponse:
        """Send a non-streaming completion request.

        Tries the specified model first, then falls back through the chain.
        """
        target_model = model or self.default_model

        models_to_try = [target_model]
        for fallback in self.config.models.fallback_chain:
            if fallback not in models_to_try:
                models_to_try.append(fallback)

        last_error: Exception | None = None

        for model_name in models_to_try:
            try:
                kwargs = self._request_kwargs(
                    model_name, messages, temperature, max_tokens, api_key, stream=False
                )
                logger.debug("model_request", model=model_name, messages=len(messages))
                response = await litellm.acompletion(**kwargs)
                return self._parse_response(response, model_name)
            except Exception as e:
                last_error = e
                logger.warning("model_fallback", model=model_name, error=str(e))
                continue

        raise RuntimeError(
            f"All models failed. Last error: {last_error}"
        ) from last_error

    async def stream(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        api_key: str | None = None,
    ) -> AsyncIterator[str]:
        """Stream a completion response, yielding text deltas."""
        target_model = model or self.default_model
        kwargs = self._request_kwargs(
            target_model, messages, temperature, max_tokens, api_key, stream=True
        )

        logger.debug("model_stream_request", model=target_model, messages=len(messages))
        response = await litellm.acompletion(**kwargs)

        async for chunk in response:
            delta = chunk.choices[0].delta if chunk.choices else None
            if delta and delta.content:
                yield delta.content

    def _parse_response(self, response: Any, model_name: str) -> ModelResponse:
        """Parse LiteLLM response into ModelResponse."""
        choice = response.choices[0] if response.choices else None
        if not choice:
            return ModelResponse(model=model_name)

        usage = {}
        if hasattr(response, "usage") and response.usage:
            usage = {
                "prompt_tokens": getattr(response.usage, "prompt_tokens", 0),
                "completion_tokens": getattr(response.usage, "completion_tokens", 0),
                "total_tokens": getattr(response.usage, "total_tokens", 0),
            }

        return ModelResponse(
            content=choice.message.content,
            model=model_name,
            usage=usage,
            finish_reason=getattr(choice, "finish_reason", "") or "",
        )
