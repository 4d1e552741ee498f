#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: BidEval
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: BidEval System Administrator
"""Deterministic proposal scoring.

Produces the locked envelope for every input of a batch. No I/O; the same
inputs always yield the same scores.

Scoring rules:
  coverage      100 * covered / total mandatory items (100 when none)
  price         COMPARE only: cheapest 100, priciest 0, all 100 if equal;
                proposals without a positive price get no price score
  completeness  weighted presence checks, rounded to two decimals
  knockout      > 50% of mandatory items missing, or a CURRENCY /
                PAYMENT_TERMS policy violation
  final         SINGLE: coverage; COMPARE: 0.7 * coverage + 0.3 * price;
                0 on knockout
  rank          final score desc, proposal id asc, dense 1..N
"""

import math
import re
from dataclasses import dataclass
from typing import Optional

from bideval.evaluation.models import (
    COMPARE, HIGHLY_RECOMMENDED, NOT_RECOMMENDED, RECOMMENDED,
    REVIEW_REQUIRED, SINGLE, DeterministicScore, Proposal, RequirementSet,
)

COVERAGE_WEIGHT = 0.7
PRICE_WEIGHT = 0.3
KNOCKOUT_MISSING_RATIO = 0.5
MIN_SCOPE_TEXT_CHARS = 50

COMPLETENESS_WEIGHTS = {
    "price": 0.18,
    "timeline": 0.08,
    "scope_text": 0.20,
    "terms": 0.08,
    "fee_line_items": 0.22,
    "selected_services": 0.12,
    "milestone_adjustments": 0.12,
}

COVERAGE_KNOCKOUT_HINT = "More than 50% of the mandatory requirement items are missing"
POLICY_KNOCKOUT_HINT = "Organization policy violation"


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (banker's rounding would not)."""
    return int(math.floor(value + 0.5))


def clamp_int(value: float, low: int = 0, high: int = 100) -> int:
    return max(low, min(high, round_half_up(value)))


def normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip().lower())


def to_number(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


# ---------------------------------------------------------------------------
# Coverage
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CoverageResult:
    score: int
    total_mandatory: int
    covered_mandatory: int
    missing_fee_items: tuple
    missing_scope_items: tuple

    @property
    def missing_ratio(self) -> float:
        if self.total_mandatory == 0:
            return 0.0
        return (self.total_mandatory - self.covered_mandatory) / self.total_mandatory


def _declared_fee_lines(proposal: Proposal):
    """(ids, normalized descriptions) declared by the proposal's fee lines."""
    ids, descriptions = set(), set()
    for line in proposal.fee_line_items:
        if not isinstance(line, dict):
            continue
        item_id = line.get("item_id") if isinstance(line.get("item_id"), str) else line.get("id")
        if isinstance(item_id, str) and item_id:
            ids.add(item_id)
        desc = line.get("description") if isinstance(line.get("description"), str) else line.get("name")
        if isinstance(desc, str) and desc.strip():
            descriptions.add(normalize_text(desc))
    return ids, descriptions


def compute_coverage(requirements: RequirementSet, proposal: Proposal) -> CoverageResult:
    mandatory_fee = requirements.mandatory_fee_items
    mandatory_scope = requirements.mandatory_scope_items

    fee_ids, fee_descriptions = _declared_fee_lines(proposal)
    selected = {s for s in proposal.selected_services if isinstance(s, str)}

    missing_fee = tuple(
        item for item in mandatory_fee
        if item.id not in fee_ids and normalize_text(item.description) not in fee_descriptions
    )
    missing_scope = tuple(item for item in mandatory_scope if item.id not in selected)

    total = len(mandatory_fee) + len(mandatory_scope)
    covered = max(0, total - len(missing_fee) - len(missing_scope))
    score = 100 if total == 0 else clamp_int(covered / total * 100)

    return CoverageResult(
        score=score,
        total_mandatory=total,
        covered_mandatory=covered,
        missing_fee_items=missing_fee,
        missing_scope_items=missing_scope,
    )


# ---------------------------------------------------------------------------
# Price, completeness, recommendation
# ---------------------------------------------------------------------------

def compute_price_scores(proposals) -> dict:
    """Linear min-max price score per proposal id; non-positive prices excluded."""
    prices = {}
    for p in proposals:
        price = to_number(p.price)
        if price is not None and price > 0:
            prices[p.id] = price
    if not prices:
        return {}

    low, high = min(prices.values()), max(prices.values())
    if low == high:
        return {pid: 100 for pid in prices}
    return {
        pid: clamp_int((high - price) / (high - low) * 100)
        for pid, price in prices.items()
    }


def compute_data_completeness(proposal: Proposal) -> float:
    scope_text = (proposal.extracted_text or proposal.scope_text or "").strip()
    checks = {
        "price": (to_number(proposal.price) or 0) > 0,
        "timeline": (to_number(proposal.timeline_days) or 0) > 0,
        "scope_text": len(scope_text) > MIN_SCOPE_TEXT_CHARS,
        "terms": bool((proposal.terms or "").strip()),
        "fee_line_items": bool(proposal.fee_line_items),
        "selected_services": bool(proposal.selected_services),
        "milestone_adjustments": bool(proposal.milestone_adjustments),
    }
    score = sum(COMPLETENESS_WEIGHTS[name] for name, present in checks.items() if present)
    return max(0.0, min(1.0, round_half_up(score * 100) / 100))


def recommendation_for(score: int) -> str:
    if score >= 80:
        return HIGHLY_RECOMMENDED
    if score >= 60:
        return RECOMMENDED
    if score >= 40:
        return REVIEW_REQUIRED
    return NOT_RECOMMENDED


def assign_ranks(final_scores: dict) -> dict:
    """Dense 1..N ranks: final score desc, proposal id asc."""
    ordered = sorted(final_scores, key=lambda pid: (-final_scores[pid], pid))
    return {pid: position for position, pid in enumerate(ordered, start=1)}


# ---------------------------------------------------------------------------
# Batch scoring
# ---------------------------------------------------------------------------

def score_batch(batch, violations: dict = None) -> list:
    """Score every input of an AggregatedBatch; returns locked scores in rank order."""
    violations = violations or {}
    mode = batch.mode
    proposals = [inp.proposal for inp in batch.inputs]
    price_scores = compute_price_scores(proposals) if mode == COMPARE else {}

    interim = {}
    for proposal in proposals:
        coverage = compute_coverage(batch.requirement_set, proposal)
        found = violations.get(proposal.id, [])
        policy_knockouts = [v for v in found if v.is_knockout]
        coverage_knockout = (
            coverage.total_mandatory > 0 and coverage.missing_ratio > KNOCKOUT_MISSING_RATIO
        )
        knockout = bool(policy_knockouts) or coverage_knockout

        if policy_knockouts:
            hint = policy_knockouts[0].message or POLICY_KNOCKOUT_HINT
        elif coverage_knockout:
            hint = COVERAGE_KNOCKOUT_HINT
        else:
            hint = None

        price_score = price_scores.get(proposal.id) if mode == COMPARE else None
        if mode == SINGLE:
            raw = coverage.score
        else:
            raw = coverage.score * COVERAGE_WEIGHT + (price_score or 0) * PRICE_WEIGHT
        final = 0 if knockout else clamp_int(raw)

        interim[proposal.id] = {
            "coverage": coverage,
            "price_score": price_score,
            "final": final,
            "knockout": knockout,
            "hint": hint,
            "completeness": compute_data_completeness(proposal),
            "policy_flags": tuple(v.message for v in found if v.type != "VENDOR_INCOMPLETE"),
            "vendor_flags": tuple(v.message for v in found if v.type == "VENDOR_INCOMPLETE"),
        }

    ranks = assign_ranks({pid: v["final"] for pid, v in interim.items()})

    scores = [
        DeterministicScore(
            proposal_id=pid,
            coverage_score=v["coverage"].score,
            price_score=v["price_score"],
            data_completeness=v["completeness"],
            final_score=v["final"],
            rank=ranks[pid],
            knockout_triggered=v["knockout"],
            knockout_reason_hint=v["hint"],
            recommendation_level=recommendation_for(v["final"]),
            missing_fee_items=tuple(i.description for i in v["coverage"].missing_fee_items),
            missing_scope_items=tuple(i.task_name for i in v["coverage"].missing_scope_items),
            policy_red_flags=v["policy_flags"],
            vendor_completeness_flags=v["vendor_flags"],
        )
        for pid, v in interim.items()
    ]
    return sorted(scores, key=lambda s: s.rank)
