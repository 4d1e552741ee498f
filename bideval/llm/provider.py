#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: BidEval
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: BidEval System Administrator
"""Vendor-agnostic LLM provider base class and data types.

Defines the universal request/response format and the one capability the
evaluation engine relies on: ``submit(system_prompt, payload) -> text``.
Adapters implement ``invoke``; everything above them is provider-neutral.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

from bideval.evaluation.errors import MalformedProviderOutput

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


@dataclass
class LLMRequest:
    """Vendor-agnostic LLM invocation request."""
    system_prompt: str = ""
    payload: str = ""
    max_tokens: int = 8192
    temperature: float = 0.0
    json_output: bool = True
    timeout: float = 120.0
    classification: str = "CUI // SP-PROPIN"


@dataclass
class LLMResponse:
    """Vendor-agnostic LLM invocation response."""
    content: str = ""
    model_id: str = ""
    provider: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0
    stop_reason: str = ""
    classification: str = "CUI // SP-PROPIN"


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    An adapter is bound to one model at construction time. It must raise the
    typed errors from ``bideval.evaluation.errors``: ProviderTimeout for
    client timeouts, ProviderHTTPError for transport/API failures and
    ProviderConfigurationError for credential problems.
    """

    def __init__(self, model_id: str, max_tokens: int = 8192, temperature: float = 0.0):
        self._model_id = model_id
        self._max_tokens = max_tokens
        self._temperature = temperature

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider identifier."""

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def temperature(self) -> float:
        return self._temperature

    @abstractmethod
    def invoke(self, request: LLMRequest) -> LLMResponse:
        """Invoke the LLM synchronously."""

    @abstractmethod
    def check_availability(self) -> bool:
        """Check if the bound model is reachable."""

    def build_request(self, system_prompt: str, payload: str,
                      timeout: float = 120.0) -> LLMRequest:
        return LLMRequest(
            system_prompt=system_prompt,
            payload=payload,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
            timeout=timeout,
        )

    def submit(self, system_prompt: str, payload: str, timeout: float = 120.0) -> str:
        """Send one instruction + payload pair and return the raw text."""
        return self.invoke(self.build_request(system_prompt, payload, timeout)).content

    def submit_structured(self, system_prompt: str, payload: str,
                          timeout: float = 120.0) -> dict:
        """Like submit(), but strip code fences and parse the text as a JSON object."""
        return parse_json_output(self.submit(system_prompt, payload, timeout))


def strip_code_fences(text: str) -> str:
    """Remove a ```json ... ``` (or bare ```) wrapper if present."""
    stripped = (text or "").strip()
    if stripped.startswith("```"):
        stripped = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", stripped, count=1))
    return stripped.strip()


def parse_json_output(text: str) -> dict:
    """Parse provider text into a JSON object or raise MalformedProviderOutput."""
    cleaned = strip_code_fences(text)
    if not cleaned:
        raise MalformedProviderOutput("No content in provider response")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise MalformedProviderOutput(f"Provider returned invalid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise MalformedProviderOutput(
            "Provider output must be a JSON object",
            code="VALIDATION_ERROR",
        )
    return data
