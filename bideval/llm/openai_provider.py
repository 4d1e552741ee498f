#!/usr/bin/env python3
# CUI // SP-PROPIN
"""OpenAI-compatible LLM provider.

Supports any OpenAI-compatible API: OpenAI, Ollama, vLLM, LM Studio, etc.
JSON mode (``response_format={"type": "json_object"}``) is requested for
hosted OpenAI; local servers get the plain chat call.
"""

import logging
import time

import openai
from openai import OpenAI

from bideval.evaluation.errors import (
    MalformedProviderOutput, ProviderConfigurationError, ProviderHTTPError,
    ProviderTimeout,
)
from bideval.llm.provider import LLMProvider, LLMRequest, LLMResponse

logger = logging.getLogger("bideval.llm.openai")


class OpenAICompatibleProvider(LLMProvider):
    """Provider for OpenAI-compatible REST APIs (OpenAI, Ollama, vLLM, etc.)."""

    def __init__(self, model_id: str, api_key: str = "ollama",
                 base_url: str = "http://localhost:11434/v1",
                 provider_label: str = "openai_compatible",
                 json_mode: bool = False, max_tokens: int = 8192,
                 temperature: float = 0.0, client=None):
        super().__init__(model_id, max_tokens=max_tokens, temperature=temperature)
        self._label = provider_label
        self._json_mode = json_mode
        # max_retries=0: retry policy belongs to the caller
        self._client = client or OpenAI(
            api_key=api_key, base_url=base_url.rstrip("/"), max_retries=0,
        )

    @property
    def provider_name(self) -> str:
        return self._label

    def invoke(self, request: LLMRequest) -> LLMResponse:
        start = time.time()
        messages = [
            {"role": "system", "content": request.system_prompt},
            {"role": "user", "content": request.payload},
        ]
        kwargs = {
            "model": self._model_id,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "timeout": request.timeout,
        }
        if self._json_mode and request.json_output:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            resp = self._client.chat.completions.create(**kwargs)
        except openai.APITimeoutError as exc:
            raise ProviderTimeout(f"{self._label} request timed out") from exc
        except openai.AuthenticationError as exc:
            raise ProviderConfigurationError(
                f"{self._label} rejected the configured API key"
            ) from exc
        except openai.APIStatusError as exc:
            raise ProviderHTTPError(
                f"AI API error: {exc.status_code}", status_code=exc.status_code,
            ) from exc
        except openai.APIError as exc:
            raise ProviderHTTPError(f"AI API error: {exc}") from exc

        if not resp.choices:
            raise MalformedProviderOutput("No content in provider response")
        content = resp.choices[0].message.content or ""
        duration_ms = int((time.time() - start) * 1000)
        usage = resp.usage
        logger.info("%s %s completed in %dms", self._label, self._model_id, duration_ms)

        return LLMResponse(
            content=content,
            model_id=self._model_id,
            provider=self._label,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            duration_ms=duration_ms,
            stop_reason=str(resp.choices[0].finish_reason),
            classification=request.classification,
        )

    def check_availability(self) -> bool:
        try:
            models = self._client.models.list()
        except openai.OpenAIError as exc:
            logger.debug("%s availability probe failed: %s", self._label, exc)
            return False
        return self._model_id in [m.id for m in models.data]
