#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Google AI Studio (Gemini) provider over the generateContent REST API."""

import logging
import time

import requests

from bideval.evaluation.errors import (
    MalformedProviderOutput, ProviderConfigurationError, ProviderHTTPError,
    ProviderTimeout,
)
from bideval.llm.provider import LLMProvider, LLMRequest, LLMResponse

logger = logging.getLogger("bideval.llm.google")


class GoogleAIProvider(LLMProvider):
    """Gemini models via generativelanguage.googleapis.com."""

    def __init__(self, model_id: str, api_key: str,
                 base_url: str = "https://generativelanguage.googleapis.com",
                 api_version: str = "v1beta", max_tokens: int = 8192,
                 temperature: float = 0.0, session: requests.Session = None):
        super().__init__(model_id, max_tokens=max_tokens, temperature=temperature)
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._api_version = api_version
        self._session = session or requests.Session()

    @property
    def provider_name(self) -> str:
        return "google"

    def _url(self, suffix: str) -> str:
        return f"{self._base_url}/{self._api_version}/models/{self._model_id}{suffix}"

    def invoke(self, request: LLMRequest) -> LLMResponse:
        start = time.time()
        generation_config = {
            "temperature": request.temperature,
            "topK": 1,
            "topP": 0.95,
            "maxOutputTokens": request.max_tokens,
        }
        if request.json_output and self._api_version != "v1":
            generation_config["responseMimeType"] = "application/json"
        body = {
            "systemInstruction": {"parts": [{"text": request.system_prompt}]},
            "contents": [{"role": "user", "parts": [{"text": request.payload}]}],
            "generationConfig": generation_config,
        }

        try:
            resp = self._session.post(
                self._url(":generateContent"),
                headers={"Content-Type": "application/json", "x-goog-api-key": self._api_key},
                json=body,
                timeout=request.timeout,
            )
        except requests.Timeout as exc:
            raise ProviderTimeout("Google AI request timed out") from exc
        except requests.RequestException as exc:
            raise ProviderHTTPError(f"AI API error: {exc}") from exc

        if resp.status_code in (401, 403):
            raise ProviderConfigurationError(
                f"Google AI rejected the configured API key ({resp.status_code})"
            )
        if not resp.ok:
            raise ProviderHTTPError(
                f"AI API error: {resp.status_code}", status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderHTTPError("AI API returned a non-JSON envelope") from exc

        candidates = data.get("candidates") or []
        parts = (candidates[0].get("content") or {}).get("parts") or [] if candidates else []
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        if not text:
            raise MalformedProviderOutput("No content in provider response")

        usage = data.get("usageMetadata") or {}
        duration_ms = int((time.time() - start) * 1000)
        logger.info("google %s completed in %dms", self._model_id, duration_ms)

        return LLMResponse(
            content=text,
            model_id=self._model_id,
            provider="google",
            input_tokens=usage.get("promptTokenCount", 0),
            output_tokens=usage.get("candidatesTokenCount", 0),
            duration_ms=duration_ms,
            stop_reason=str(candidates[0].get("finishReason", "")),
            classification=request.classification,
        )

    def check_availability(self) -> bool:
        try:
            resp = self._session.get(
                self._url(""), headers={"x-goog-api-key": self._api_key}, timeout=10,
            )
        except requests.RequestException as exc:
            logger.debug("Google AI availability probe failed: %s", exc)
            return False
        return resp.ok
