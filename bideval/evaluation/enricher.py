#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: BidEval
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: BidEval System Administrator
"""Narrative enrichment: one deadline-bound provider call per evaluation run.

The provider call runs in a single-worker thread pool. The caller waits on
the future until the deadline (or an optional cancel event) and then
abandons it: the future is cancelled, the pool is shut down without
waiting, and ProviderTimeout / EvaluationCancelled is raised. Adapters are
also given the deadline as their HTTP timeout, so an abandoned call
releases its connection on its own.

There is no retry here; the caller owns retry policy.
"""

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

from bideval.evaluation.errors import (
    EvaluationCancelled, EvaluationError, ProviderHTTPError, ProviderTimeout,
)
from bideval.evaluation.models import AggregatedBatch
from bideval.evaluation.prompts import build_payload, build_system_prompt
from bideval.evaluation.schema import NarrativeOutput, parse_narrative
from bideval.llm.provider import LLMProvider, LLMResponse, parse_json_output
from bideval.llm.router import EvaluationSettings

logger = logging.getLogger("bideval.evaluation.enricher")

POLL_INTERVAL_SECONDS = 0.25


@dataclass(frozen=True)
class Enrichment:
    narrative: NarrativeOutput
    response: LLMResponse
    system_prompt: str
    payload: str
    latency_ms: int


class NarrativeEnricher:
    """Builds the constrained prompt, calls the provider, validates the narrative."""

    def __init__(self, provider: LLMProvider, settings: EvaluationSettings = None):
        self._provider = provider
        self._settings = settings or EvaluationSettings()

    @property
    def provider(self) -> LLMProvider:
        return self._provider

    def enrich(self, batch: AggregatedBatch, scores: list,
               cancel_event: Optional[threading.Event] = None) -> Enrichment:
        system_prompt = build_system_prompt(batch.mode)
        payload = build_payload(batch, scores)
        request = self._provider.build_request(
            system_prompt, payload, timeout=self._settings.deadline_seconds,
        )

        logger.info(
            "Requesting %s narrative for %d proposal(s) from %s/%s (deadline %.0fs)",
            batch.mode, len(batch.inputs), self._provider.provider_name,
            self._provider.model_id, self._settings.deadline_seconds,
        )
        start = time.monotonic()
        response = self._invoke_with_deadline(request, cancel_event)
        latency_ms = int((time.monotonic() - start) * 1000)

        data = parse_json_output(response.content)
        narrative = parse_narrative(data)
        self._log_coverage(batch, narrative)

        return Enrichment(
            narrative=narrative,
            response=response,
            system_prompt=system_prompt,
            payload=payload,
            latency_ms=latency_ms,
        )

    def _invoke_with_deadline(self, request, cancel_event) -> LLMResponse:
        deadline = time.monotonic() + self._settings.deadline_seconds
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="bideval-enrich",
        )
        try:
            future = executor.submit(self._provider.invoke, request)
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    future.cancel()
                    raise EvaluationCancelled("Evaluation cancelled by caller")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    future.cancel()
                    logger.error(
                        "Provider %s exceeded %.0fs deadline",
                        self._provider.provider_name, self._settings.deadline_seconds,
                    )
                    raise ProviderTimeout(
                        f"Evaluation timeout after {self._settings.deadline_seconds:g}s"
                    )
                try:
                    return future.result(timeout=min(remaining, POLL_INTERVAL_SECONDS))
                except concurrent.futures.TimeoutError as exc:
                    # the poll expired, unless the provider itself raised a timeout
                    if future.done() and isinstance(
                        future.exception(), (TimeoutError, concurrent.futures.TimeoutError)
                    ):
                        raise ProviderTimeout(
                            f"{self._provider.provider_name} request timed out"
                        ) from exc
                    continue
                except TimeoutError as exc:
                    raise ProviderTimeout(
                        f"{self._provider.provider_name} request timed out"
                    ) from exc
                except EvaluationError:
                    raise
                except Exception as exc:
                    logger.error("Provider %s failed: %s",
                                 self._provider.provider_name, exc, exc_info=True)
                    raise ProviderHTTPError(f"AI API error: {exc}") from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _log_coverage(batch, narrative: NarrativeOutput) -> None:
        expected = set(batch.proposal_ids)
        returned = set(narrative.by_proposal_id())
        missing = sorted(expected - returned)
        if missing:
            logger.warning("Narrative missing for proposal(s) %s; placeholders will be used",
                           ", ".join(missing))
        unknown = sorted(returned - expected)
        if unknown:
            logger.warning("Ignoring narrative for unknown proposal(s) %s", ", ".join(unknown))
