#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Merge locked deterministic scores with validated narrative output.

Locked fields (final score, rank, completeness, knockout flag,
recommendation level) are copied from the DeterministicScore verbatim;
the generator only contributes narrative text. Omitted narrative strings
become "Not provided", omitted lists become [], and missing requirements
fall back to the deterministic list of missing mandatory items.
"""

import logging
from typing import Optional

from bideval.evaluation.models import COMPARE, AggregatedBatch
from bideval.evaluation.precheck import resolve_vendor_name
from bideval.evaluation.prompts import PLACEHOLDER
from bideval.evaluation.schema import (
    NarrativeAnalysis, NarrativeFlags, NarrativeOutput, validate_result,
)
from bideval.evaluation.scoring import to_number

logger = logging.getLogger("bideval.evaluation.merger")

UNKNOWN_VENDOR = "Unknown Vendor"

_TEXT_FIELDS = (
    "requirements_alignment",
    "timeline_assessment",
    "experience_assessment",
    "scope_quality",
)
_OPTIONAL_TEXT_FIELDS = ("fee_structure_assessment", "payment_terms_assessment")
_LIST_FIELDS = ("strengths", "weaknesses", "extra_offerings")


def _dedupe(items) -> list:
    seen, out = set(), []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def _text_or_placeholder(value: Optional[str]) -> str:
    return value if value is not None and value.strip() else PLACEHOLDER


def price_benchmark(batch: AggregatedBatch) -> Optional[float]:
    """Mean of positive prices in a COMPARE batch; None for SINGLE or no prices."""
    if batch.mode != COMPARE:
        return None
    prices = [to_number(inp.proposal.price) for inp in batch.inputs]
    prices = [p for p in prices if p is not None and p > 0]
    if not prices:
        return None
    mean = sum(prices) / len(prices)
    # sub-cent batches keep the exact mean rather than rounding to zero
    return round(mean, 2) if mean >= 0.01 else mean


def _knockout_reason(score, flags: NarrativeFlags) -> Optional[str]:
    if not score.knockout_triggered:
        return None
    generated = flags.knockout_reason
    contradicts = flags.knockout_triggered is False
    if generated and generated.strip() and not contradicts:
        return generated
    return score.knockout_reason_hint


def _analysis(mode: str, score, analysis: NarrativeAnalysis) -> dict:
    out = {name: _text_or_placeholder(getattr(analysis, name)) for name in _TEXT_FIELDS}
    if mode == COMPARE:
        out["price_assessment"] = _text_or_placeholder(analysis.price_assessment)
    for name in _OPTIONAL_TEXT_FIELDS:
        out[name] = getattr(analysis, name)
    for name in _LIST_FIELDS:
        out[name] = list(getattr(analysis, name) or [])
    if analysis.missing_requirements is not None:
        out["missing_requirements"] = list(analysis.missing_requirements)
    else:
        out["missing_requirements"] = list(score.missing_fee_items) + list(score.missing_scope_items)
    return out


def merge_results(batch: AggregatedBatch, scores: list,
                  narrative: NarrativeOutput) -> dict:
    """Build and validate the final SINGLE/COMPARE result; ranked_proposals in rank order."""
    mode = batch.mode
    inputs = {inp.proposal_id: inp for inp in batch.inputs}
    generated = narrative.by_proposal_id()

    ranked = []
    for score in sorted(scores, key=lambda s: (s.rank, s.proposal_id)):
        entry = generated.get(score.proposal_id)
        analysis = (entry.individual_analysis if entry else None) or NarrativeAnalysis()
        flags = (entry.flags if entry else None) or NarrativeFlags()

        red_flags = _dedupe(
            list(score.policy_red_flags)
            + list(score.vendor_completeness_flags)
            + list(flags.red_flags or [])
        )
        comparative_notes = None
        if mode == COMPARE and entry is not None:
            comparative_notes = entry.comparative_notes

        ranked.append({
            "proposal_id": score.proposal_id,
            "vendor_name": resolve_vendor_name(inputs[score.proposal_id]) or UNKNOWN_VENDOR,
            "final_score": score.final_score,
            "rank": score.rank,
            "data_completeness": score.data_completeness,
            "recommendation_level": score.recommendation_level,
            "individual_analysis": _analysis(mode, score, analysis),
            "flags": {
                "red_flags": red_flags,
                "green_flags": list(flags.green_flags or []),
                "knockout_triggered": score.knockout_triggered,
                "knockout_reason": _knockout_reason(score, flags),
            },
            "comparative_notes": comparative_notes,
            "score_breakdown": {
                "coverage_score": score.coverage_score,
                "price_score": score.price_score,
            },
        })

    market_context = None
    if narrative.batch_summary is not None:
        market_context = narrative.batch_summary.market_context

    result = {
        "batch_summary": {
            "total_proposals": len(batch.inputs),
            "evaluation_mode": mode,
            "project_type_detected": "LARGE_SCALE" if batch.project.is_large_scale else "STANDARD",
            "price_benchmark_used": price_benchmark(batch),
            "market_context": market_context,
        },
        "ranked_proposals": ranked,
    }
    logger.debug("Merged %s result for %d proposal(s)", mode, len(ranked))
    return validate_result(mode, result)
