#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: BidEval
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: BidEval System Administrator
"""Config-driven LLM provider selection for BidEval.

Reads args/llm_config.yaml once into an immutable LLMConfig and builds the
single provider adapter the evaluation engine uses. Provider types form a
closed table; an unknown type, unknown model or missing credential is a
ProviderConfigurationError raised before any provider call.

Usage:
    python -m bideval.llm.router [--config PATH] [--probe] [--json]
"""

import json
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

import yaml

from bideval.evaluation.errors import ProviderConfigurationError
from bideval.llm.provider import LLMProvider

logger = logging.getLogger("bideval.llm.router")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR / "args" / "llm_config.yaml"
EVALUATION_FUNCTION = "proposal_evaluation"


def _expand_env(value):
    """Expand ${VAR:-default} patterns in string values."""
    if not isinstance(value, str):
        return value
    pattern = r'\$\{([^}]+)\}'

    def replacer(match):
        expr = match.group(1)
        if ":-" in expr:
            var, default = expr.split(":-", 1)
            return os.environ.get(var, default)
        return os.environ.get(expr, match.group(0))
    return re.sub(pattern, replacer, value)


@dataclass(frozen=True)
class ProviderSettings:
    name: str
    type: str
    api_key: str = ""
    api_key_env: tuple = ()
    base_url: str = ""
    region: str = ""
    api_version: str = ""


@dataclass(frozen=True)
class ModelSettings:
    name: str
    provider: str
    model_id: str


@dataclass(frozen=True)
class EvaluationSettings:
    deadline_seconds: float = 120.0
    temperature: float = 0.0
    max_tokens: int = 8192


@dataclass(frozen=True)
class LLMConfig:
    """Immutable provider/model selection, passed to the evaluator at construction."""
    providers: Mapping = field(default_factory=lambda: MappingProxyType({}))
    models: Mapping = field(default_factory=lambda: MappingProxyType({}))
    evaluation_model: str = ""
    settings: EvaluationSettings = field(default_factory=EvaluationSettings)

    @classmethod
    def from_dict(cls, raw: dict) -> "LLMConfig":
        raw = raw or {}
        providers = {}
        for name, cfg in (raw.get("providers") or {}).items():
            cfg = cfg or {}
            key_env = cfg.get("api_key_env") or ()
            if isinstance(key_env, str):
                key_env = (key_env,)
            providers[name] = ProviderSettings(
                name=name,
                type=str(cfg.get("type", "")),
                api_key=_expand_env(cfg.get("api_key", "")) or "",
                api_key_env=tuple(key_env),
                base_url=_expand_env(cfg.get("base_url", "")) or "",
                region=_expand_env(cfg.get("region", "")) or "",
                api_version=_expand_env(cfg.get("api_version", "")) or "",
            )

        models = {}
        for name, cfg in (raw.get("models") or {}).items():
            cfg = cfg or {}
            models[name] = ModelSettings(
                name=name,
                provider=str(cfg.get("provider", "")),
                model_id=_expand_env(cfg.get("model_id", "")) or "",
            )

        route = (raw.get("routing") or {}).get(EVALUATION_FUNCTION) or {}
        settings = raw.get("settings") or {}
        return cls(
            providers=MappingProxyType(providers),
            models=MappingProxyType(models),
            evaluation_model=_expand_env(route.get("model", "")) or "",
            settings=EvaluationSettings(
                deadline_seconds=float(settings.get("deadline_seconds", 120)),
                temperature=float(settings.get("temperature", 0.0)),
                max_tokens=int(settings.get("max_tokens", 8192)),
            ),
        )


def load_llm_config(config_path=None) -> LLMConfig:
    """Load and parse llm_config.yaml. A missing file yields an empty config."""
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    if not path.exists():
        logger.warning("LLM config not found at %s; using empty config", path)
        return LLMConfig()
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ProviderConfigurationError(f"Invalid LLM config {path}: {exc}") from exc
    return LLMConfig.from_dict(raw)


def _resolve_api_key(provider: ProviderSettings) -> str:
    if provider.api_key:
        return provider.api_key
    for env_name in provider.api_key_env:
        value = os.environ.get(env_name, "").strip()
        if value:
            return value
    names = " or ".join(provider.api_key_env) or "api_key"
    raise ProviderConfigurationError(f"{names} required for provider '{provider.name}'")


# ---------------------------------------------------------------------------
# Closed adapter table
# ---------------------------------------------------------------------------

def _build_openai(provider, model, settings):
    from bideval.llm.openai_provider import OpenAICompatibleProvider
    return OpenAICompatibleProvider(
        model_id=model.model_id,
        api_key=_resolve_api_key(provider),
        base_url=provider.base_url or "https://api.openai.com/v1",
        provider_label=provider.name,
        json_mode=True,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
    )


def _build_openai_compatible(provider, model, settings):
    from bideval.llm.openai_provider import OpenAICompatibleProvider
    api_key = provider.api_key
    if not api_key and provider.api_key_env:
        api_key = _resolve_api_key(provider)
    return OpenAICompatibleProvider(
        model_id=model.model_id,
        api_key=api_key or "none",
        base_url=provider.base_url or "http://localhost:8000/v1",
        provider_label=provider.name,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
    )


def _build_ollama(provider, model, settings):
    from bideval.llm.openai_provider import OpenAICompatibleProvider
    return OpenAICompatibleProvider(
        model_id=model.model_id,
        api_key="ollama",
        base_url=provider.base_url or "http://localhost:11434/v1",
        provider_label="ollama",
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
    )


def _build_google(provider, model, settings):
    from bideval.llm.google_provider import GoogleAIProvider
    return GoogleAIProvider(
        model_id=model.model_id,
        api_key=_resolve_api_key(provider),
        base_url=provider.base_url or "https://generativelanguage.googleapis.com",
        api_version=provider.api_version or "v1beta",
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
    )


def _build_bedrock(provider, model, settings):
    from bideval.llm.bedrock_provider import BedrockLLMProvider
    return BedrockLLMProvider(
        model_id=model.model_id,
        region=provider.region or "us-east-1",
        timeout=settings.deadline_seconds,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
    )


PROVIDER_BUILDERS = MappingProxyType({
    "openai": _build_openai,
    "openai_compatible": _build_openai_compatible,
    "ollama": _build_ollama,
    "google": _build_google,
    "bedrock": _build_bedrock,
})


def build_provider(config: LLMConfig, model_name: Optional[str] = None) -> LLMProvider:
    """Build the adapter for model_name (default: the proposal_evaluation route)."""
    name = model_name or config.evaluation_model
    if not name:
        raise ProviderConfigurationError("No model configured for proposal evaluation")
    model = config.models.get(name)
    if model is None:
        raise ProviderConfigurationError(f"Unknown model '{name}' in LLM config")
    if not model.model_id:
        raise ProviderConfigurationError(f"Model '{name}' has no model_id")
    provider = config.providers.get(model.provider)
    if provider is None:
        raise ProviderConfigurationError(
            f"Model '{name}' references unknown provider '{model.provider}'"
        )
    builder = PROVIDER_BUILDERS.get(provider.type)
    if builder is None:
        raise ProviderConfigurationError(
            f"Unsupported provider type '{provider.type}' for provider '{provider.name}'"
        )
    instance = builder(provider, model, config.settings)
    logger.info("Selected provider=%s model=%s", instance.provider_name, instance.model_id)
    return instance


def main():
    import argparse

    from bideval.evaluation.errors import EvaluationError

    parser = argparse.ArgumentParser(description="Show (and optionally probe) the configured evaluation model")
    parser.add_argument("--config", help="Path to llm_config.yaml")
    parser.add_argument("--model", help="Model name to resolve instead of the routed one")
    parser.add_argument("--probe", action="store_true", help="Check the model is reachable")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    try:
        config = load_llm_config(args.config)
        provider = build_provider(config, args.model)
    except EvaluationError as exc:
        print(json.dumps(exc.to_dict(), indent=2) if args.json else f"ERROR [{exc.code}]: {exc.message}")
        sys.exit(1)

    result = {
        "provider": provider.provider_name,
        "model_id": provider.model_id,
        "temperature": provider.temperature,
        "deadline_seconds": config.settings.deadline_seconds,
    }
    if args.probe:
        result["available"] = provider.check_availability()

    if args.json:
        print(json.dumps(result, indent=2))
    else:
        for key, value in result.items():
            print(f"  {key:17s} {value}")


if __name__ == "__main__":
    main()
