#!/usr/bin/env python3
# CUI // SP-PROPIN
"""LLM config, provider routing and adapter error-mapping tests.

Adapters are exercised with mock SDK clients; nothing touches the network.

Usage:
    pytest tests/test_llm.py -v --tb=short
"""

import io
import json
import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import openai
import pytest
import requests
from botocore.exceptions import ClientError, NoCredentialsError, ReadTimeoutError

BASE_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BASE_DIR))

from bideval.evaluation.errors import (  # noqa: E402
    MalformedProviderOutput, ProviderConfigurationError, ProviderHTTPError, ProviderTimeout,
)
from bideval.llm.bedrock_provider import BedrockLLMProvider  # noqa: E402
from bideval.llm.google_provider import GoogleAIProvider  # noqa: E402
from bideval.llm.openai_provider import OpenAICompatibleProvider  # noqa: E402
from bideval.llm.provider import (  # noqa: E402
    LLMRequest, parse_json_output, strip_code_fences,
)
from bideval.llm.router import (  # noqa: E402
    LLMConfig, build_provider, load_llm_config,
)

REQUEST = LLMRequest(system_prompt="Be strict.", payload='{"proposals": []}', timeout=30)

CONFIG = {
    "providers": {
        "openai": {"type": "openai", "api_key_env": ["TEST_OPENAI_KEY"]},
        "google": {"type": "google", "api_key_env": "TEST_GOOGLE_KEY", "api_version": "v1beta"},
        "bedrock": {"type": "bedrock", "region": "${TEST_REGION:-eu-west-1}"},
        "local": {"type": "ollama", "base_url": "http://gpu-box:11434/v1"},
        "vllm": {"type": "openai_compatible", "base_url": "http://vllm:8000/v1"},
        "mystery": {"type": "carrier-pigeon"},
    },
    "models": {
        "gpt": {"provider": "openai", "model_id": "${TEST_MODEL:-gpt-4o}"},
        "gemini": {"provider": "google", "model_id": "gemini-2.0-flash"},
        "claude": {"provider": "bedrock", "model_id": "anthropic.claude-3-5-sonnet"},
        "qwen": {"provider": "local", "model_id": "qwen3:8b"},
        "llama": {"provider": "vllm", "model_id": "llama-3-70b"},
        "bird": {"provider": "mystery", "model_id": "coo"},
        "orphan": {"provider": "nowhere", "model_id": "x"},
        "blank": {"provider": "openai", "model_id": ""},
    },
    "routing": {"proposal_evaluation": {"model": "gpt"}},
    "settings": {"deadline_seconds": 45, "temperature": 0.0, "max_tokens": 4096},
}


# =========================================================================
# OUTPUT PARSING
# =========================================================================
class TestOutputParsing:
    """Fence stripping and JSON-object parsing."""

    def test_strip_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences('```\n{"a": 1}```') == '{"a": 1}'
        assert strip_code_fences(' {"a": 1} ') == '{"a": 1}'

    def test_parse_object(self):
        assert parse_json_output('```json\n{"ranked_proposals": []}\n```') == {"ranked_proposals": []}

    def test_parse_rejects_garbage(self):
        with pytest.raises(MalformedProviderOutput) as exc:
            parse_json_output("Sure! Here is the JSON you asked for")
        assert exc.value.code == "INVALID_JSON"
        assert exc.value.status == 502


# =========================================================================
# CONFIG & ROUTING
# =========================================================================
class TestConfig:
    """llm_config.yaml loading and provider selection."""

    def test_from_dict(self, monkeypatch):
        monkeypatch.delenv("TEST_MODEL", raising=False)
        monkeypatch.delenv("TEST_REGION", raising=False)
        config = LLMConfig.from_dict(CONFIG)
        assert config.evaluation_model == "gpt"
        assert config.models["gpt"].model_id == "gpt-4o"
        assert config.providers["google"].api_key_env == ("TEST_GOOGLE_KEY",)
        assert config.providers["bedrock"].region == "eu-west-1"
        assert config.settings.deadline_seconds == 45.0
        assert config.settings.max_tokens == 4096

    def test_env_expansion(self, monkeypatch):
        monkeypatch.setenv("TEST_MODEL", "gpt-4.1")
        config = LLMConfig.from_dict(CONFIG)
        assert config.models["gpt"].model_id == "gpt-4.1"

    def test_config_is_immutable(self):
        config = LLMConfig.from_dict(CONFIG)
        with pytest.raises(TypeError):
            config.models["new"] = None

    def test_load_yaml(self, tmp_path):
        import yaml
        path = tmp_path / "llm_config.yaml"
        path.write_text(yaml.safe_dump(CONFIG))
        config = load_llm_config(path)
        assert set(config.models) == set(CONFIG["models"])

    def test_missing_file_is_empty(self, tmp_path):
        config = load_llm_config(tmp_path / "absent.yaml")
        assert config.evaluation_model == ""
        assert len(config.models) == 0

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "llm_config.yaml"
        path.write_text("providers: [unclosed\n")
        with pytest.raises(ProviderConfigurationError):
            load_llm_config(path)

    def test_shipped_config_routes_to_a_model(self, monkeypatch):
        monkeypatch.delenv("EVALUATION_MODEL", raising=False)
        config = load_llm_config()
        assert config.evaluation_model in config.models


class TestBuildProvider:
    """Closed adapter table."""

    def test_openai(self, monkeypatch):
        monkeypatch.setenv("TEST_OPENAI_KEY", "sk-test")
        provider = build_provider(LLMConfig.from_dict(CONFIG))
        assert isinstance(provider, OpenAICompatibleProvider)
        assert provider.provider_name == "openai"
        assert provider.model_id == "gpt-4o"

    def test_openai_missing_key(self, monkeypatch):
        monkeypatch.delenv("TEST_OPENAI_KEY", raising=False)
        with pytest.raises(ProviderConfigurationError) as exc:
            build_provider(LLMConfig.from_dict(CONFIG))
        assert "TEST_OPENAI_KEY" in exc.value.message

    def test_google(self, monkeypatch):
        monkeypatch.setenv("TEST_GOOGLE_KEY", "g-test")
        provider = build_provider(LLMConfig.from_dict(CONFIG), "gemini")
        assert isinstance(provider, GoogleAIProvider)
        assert provider.provider_name == "google"

    def test_bedrock(self):
        provider = build_provider(LLMConfig.from_dict(CONFIG), "claude")
        assert isinstance(provider, BedrockLLMProvider)
        assert provider.provider_name == "bedrock"

    def test_ollama_and_compatible(self):
        config = LLMConfig.from_dict(CONFIG)
        assert build_provider(config, "qwen").provider_name == "ollama"
        assert build_provider(config, "llama").provider_name == "vllm"

    @pytest.mark.parametrize("model_name", ["bird", "orphan", "blank", "unknown"])
    def test_configuration_errors(self, model_name):
        with pytest.raises(ProviderConfigurationError) as exc:
            build_provider(LLMConfig.from_dict(CONFIG), model_name)
        assert exc.value.code == "CONFIGURATION_ERROR"

    def test_no_route(self):
        with pytest.raises(ProviderConfigurationError):
            build_provider(LLMConfig())


# =========================================================================
# ADAPTERS
# =========================================================================
def _openai_completion(content):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=120, completion_tokens=40),
    )


def _httpx_response(status):
    return httpx.Response(status, request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))


class TestOpenAIAdapter:
    """OpenAI-compatible adapter over a mock client."""

    def test_invoke(self):
        client = MagicMock()
        client.chat.completions.create.return_value = _openai_completion('{"ok": true}')
        provider = OpenAICompatibleProvider("gpt-4o", provider_label="openai",
                                            json_mode=True, client=client)
        response = provider.invoke(REQUEST)

        assert response.content == '{"ok": true}'
        assert response.input_tokens == 120
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["timeout"] == 30
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0] == {"role": "system", "content": "Be strict."}

    def test_local_server_no_json_mode(self):
        client = MagicMock()
        client.chat.completions.create.return_value = _openai_completion("{}")
        OpenAICompatibleProvider("qwen3:8b", client=client).invoke(REQUEST)
        assert "response_format" not in client.chat.completions.create.call_args.kwargs

    def test_submit_returns_text(self):
        client = MagicMock()
        client.chat.completions.create.return_value = _openai_completion('{"a": 1}')
        provider = OpenAICompatibleProvider("gpt-4o", client=client)
        assert provider.submit("sys", "payload") == '{"a": 1}'
        assert provider.submit_structured("sys", "payload") == {"a": 1}

    def test_timeout(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = openai.APITimeoutError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"),
        )
        with pytest.raises(ProviderTimeout):
            OpenAICompatibleProvider("gpt-4o", client=client).invoke(REQUEST)

    def test_auth_error(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = openai.AuthenticationError(
            "bad key", response=_httpx_response(401), body=None,
        )
        with pytest.raises(ProviderConfigurationError):
            OpenAICompatibleProvider("gpt-4o", client=client).invoke(REQUEST)

    def test_status_error(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = openai.APIStatusError(
            "overloaded", response=_httpx_response(503), body=None,
        )
        with pytest.raises(ProviderHTTPError) as exc:
            OpenAICompatibleProvider("gpt-4o", client=client).invoke(REQUEST)
        assert exc.value.status_code == 503
        assert exc.value.code == "AI_API_ERROR"

    def test_no_choices(self):
        client = MagicMock()
        client.chat.completions.create.return_value = SimpleNamespace(choices=[], usage=None)
        with pytest.raises(MalformedProviderOutput):
            OpenAICompatibleProvider("gpt-4o", client=client).invoke(REQUEST)

    def test_availability(self):
        client = MagicMock()
        client.models.list.return_value = SimpleNamespace(data=[SimpleNamespace(id="gpt-4o")])
        assert OpenAICompatibleProvider("gpt-4o", client=client).check_availability() is True
        assert OpenAICompatibleProvider("o3", client=client).check_availability() is False


def _google_response(status=200, payload=None):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.json.return_value = payload or {}
    return resp


class TestGoogleAdapter:
    """Gemini generateContent adapter over a mock session."""

    def test_invoke(self):
        session = MagicMock()
        session.post.return_value = _google_response(payload={
            "candidates": [{"content": {"parts": [{"text": '{"ok": '}, {"text": "true}"}]},
                            "finishReason": "STOP"}],
            "usageMetadata": {"promptTokenCount": 50, "candidatesTokenCount": 9},
        })
        provider = GoogleAIProvider("gemini-2.0-flash", api_key="g-key", session=session)
        response = provider.invoke(REQUEST)

        assert response.content == '{"ok": true}'
        assert response.output_tokens == 9
        args, kwargs = session.post.call_args
        assert args[0].endswith("/v1beta/models/gemini-2.0-flash:generateContent")
        assert kwargs["headers"]["x-goog-api-key"] == "g-key"
        assert kwargs["timeout"] == 30
        assert kwargs["json"]["generationConfig"]["responseMimeType"] == "application/json"
        assert kwargs["json"]["systemInstruction"]["parts"][0]["text"] == "Be strict."

    def test_v1_has_no_json_mime(self):
        session = MagicMock()
        session.post.return_value = _google_response(payload={
            "candidates": [{"content": {"parts": [{"text": "{}"}]}}],
        })
        GoogleAIProvider("gemini-pro", api_key="k", api_version="v1", session=session).invoke(REQUEST)
        assert "responseMimeType" not in session.post.call_args.kwargs["json"]["generationConfig"]

    def test_timeout(self):
        session = MagicMock()
        session.post.side_effect = requests.Timeout("read timed out")
        with pytest.raises(ProviderTimeout):
            GoogleAIProvider("gemini", api_key="k", session=session).invoke(REQUEST)

    def test_connection_error(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(ProviderHTTPError):
            GoogleAIProvider("gemini", api_key="k", session=session).invoke(REQUEST)

    def test_rejected_key(self):
        session = MagicMock()
        session.post.return_value = _google_response(status=403)
        with pytest.raises(ProviderConfigurationError):
            GoogleAIProvider("gemini", api_key="k", session=session).invoke(REQUEST)

    def test_server_error(self):
        session = MagicMock()
        session.post.return_value = _google_response(status=500)
        with pytest.raises(ProviderHTTPError) as exc:
            GoogleAIProvider("gemini", api_key="k", session=session).invoke(REQUEST)
        assert exc.value.status_code == 500

    def test_empty_candidates(self):
        session = MagicMock()
        session.post.return_value = _google_response(payload={"candidates": []})
        with pytest.raises(MalformedProviderOutput):
            GoogleAIProvider("gemini", api_key="k", session=session).invoke(REQUEST)


class TestBedrockAdapter:
    """Bedrock adapter over a mock bedrock-runtime client."""

    def test_invoke(self):
        client = MagicMock()
        client.invoke_model.return_value = {"body": io.BytesIO(json.dumps({
            "content": [{"type": "text", "text": '{"ok": true}'}],
            "usage": {"input_tokens": 10, "output_tokens": 5},
            "stop_reason": "end_turn",
        }).encode())}
        provider = BedrockLLMProvider("anthropic.claude-3-5-sonnet", client=client)
        response = provider.invoke(REQUEST)

        assert response.content == '{"ok": true}'
        assert response.stop_reason == "end_turn"
        body = json.loads(client.invoke_model.call_args.kwargs["body"])
        assert body["system"] == "Be strict."
        assert body["anthropic_version"] == "bedrock-2023-05-31"

    def test_read_timeout(self):
        client = MagicMock()
        client.invoke_model.side_effect = ReadTimeoutError(endpoint_url="https://bedrock")
        with pytest.raises(ProviderTimeout):
            BedrockLLMProvider("m", client=client).invoke(REQUEST)

    def test_throttled(self):
        client = MagicMock()
        client.invoke_model.side_effect = ClientError(
            {"Error": {"Code": "ThrottlingException", "Message": "slow down"},
             "ResponseMetadata": {"HTTPStatusCode": 429}},
            "InvokeModel",
        )
        with pytest.raises(ProviderHTTPError) as exc:
            BedrockLLMProvider("m", client=client).invoke(REQUEST)
        assert exc.value.status_code == 429

    def test_no_credentials(self):
        client = MagicMock()
        client.invoke_model.side_effect = NoCredentialsError()
        with pytest.raises(ProviderConfigurationError):
            BedrockLLMProvider("m", client=client).invoke(REQUEST)

    def test_empty_content(self):
        client = MagicMock()
        client.invoke_model.return_value = {"body": io.BytesIO(b'{"content": []}')}
        with pytest.raises(MalformedProviderOutput):
            BedrockLLMProvider("m", client=client).invoke(REQUEST)
