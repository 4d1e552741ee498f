#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: BidEval
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: BidEval System Administrator
"""Bedrock LLM provider: Anthropic models on AWS Bedrock."""

import json
import logging
import time

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError, ClientError, ConnectTimeoutError, NoCredentialsError,
    ReadTimeoutError,
)

from bideval.evaluation.errors import (
    MalformedProviderOutput, ProviderConfigurationError, ProviderHTTPError,
    ProviderTimeout,
)
from bideval.llm.provider import LLMProvider, LLMRequest, LLMResponse

logger = logging.getLogger("bideval.llm.bedrock")


class BedrockLLMProvider(LLMProvider):
    """AWS Bedrock LLM provider (Anthropic messages API)."""

    def __init__(self, model_id: str, region: str = "us-east-1",
                 timeout: float = 120.0, max_tokens: int = 8192,
                 temperature: float = 0.0, client=None):
        super().__init__(model_id, max_tokens=max_tokens, temperature=temperature)
        self._region = region
        self._timeout = timeout
        self._client = client

    @property
    def provider_name(self) -> str:
        return "bedrock"

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client(
                "bedrock-runtime",
                region_name=self._region,
                config=Config(
                    read_timeout=self._timeout,
                    connect_timeout=min(10.0, self._timeout),
                    retries={"max_attempts": 0},
                ),
            )
        return self._client

    def invoke(self, request: LLMRequest) -> LLMResponse:
        """Invoke Bedrock model."""
        client = self._get_client()
        start = time.time()

        body = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "system": request.system_prompt,
            "messages": [{
                "role": "user",
                "content": [{"type": "text", "text": request.payload}],
            }],
        }

        try:
            response = client.invoke_model(
                modelId=self._model_id,
                contentType="application/json",
                accept="application/json",
                body=json.dumps(body),
            )
            result = json.loads(response["body"].read())
        except (ReadTimeoutError, ConnectTimeoutError) as exc:
            raise ProviderTimeout("Bedrock request timed out") from exc
        except NoCredentialsError as exc:
            raise ProviderConfigurationError("No AWS credentials available for Bedrock") from exc
        except ClientError as exc:
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            raise ProviderHTTPError(f"AI API error: {status or exc}", status_code=status) from exc
        except BotoCoreError as exc:
            raise ProviderHTTPError(f"AI API error: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ProviderHTTPError("Bedrock returned a non-JSON envelope") from exc

        elapsed_ms = int((time.time() - start) * 1000)

        content_text = ""
        for block in result.get("content", []):
            if block.get("type") == "text":
                content_text += block.get("text", "")
        if not content_text:
            raise MalformedProviderOutput("No content in provider response")

        usage = result.get("usage", {})
        logger.info("bedrock %s completed in %dms", self._model_id, elapsed_ms)

        return LLMResponse(
            content=content_text,
            model_id=self._model_id,
            provider="bedrock",
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            duration_ms=elapsed_ms,
            stop_reason=result.get("stop_reason", ""),
            classification=request.classification,
        )

    def check_availability(self) -> bool:
        """Bedrock has no cheap per-model probe; a client that builds is treated as available."""
        try:
            self._get_client()
            return True
        except (BotoCoreError, ClientError) as exc:
            logger.debug("Bedrock client unavailable: %s", exc)
            return False
