#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Organization policy pre-check.

Pure checks run on every input before scoring. CURRENCY and PAYMENT_TERMS
violations knock the proposal out; VENDOR_INCOMPLETE is a red flag only.
"""

import logging
from typing import Optional

from bideval.evaluation.models import (
    EvaluationInput, OrganizationPolicies, PolicyViolation, Proposal,
)

logger = logging.getLogger("bideval.evaluation.precheck")

# Milestone "when" text that marks a payment due before work starts
UPFRONT_MARKERS = ("upfront", "up-front", "advance", "deposit", "on signing", "signing")


def _to_number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def resolve_vendor_name(inp: EvaluationInput) -> str:
    """Supplier name on the proposal, else the advisor's company name, else ''."""
    return (inp.proposal.supplier_name or "").strip() or (inp.advisor.company_name or "").strip()


def check_currency(proposal: Proposal,
                   policies: Optional[OrganizationPolicies]) -> Optional[PolicyViolation]:
    if policies is None or not policies.allowed_currencies:
        return None
    currency = (proposal.currency or "").strip().upper()
    if not currency:
        return None
    allowed = {c.upper() for c in policies.allowed_currencies}
    if currency in allowed:
        return None
    return PolicyViolation(
        proposal_id=proposal.id,
        type="CURRENCY",
        message=(
            f"Proposal currency ({currency}) not allowed. "
            f"Allowed: {', '.join(policies.allowed_currencies)}"
        ),
    )


def upfront_percent(proposal: Proposal) -> float:
    """Sum of milestone percentages due upfront."""
    total = 0.0
    for milestone in proposal.milestone_adjustments:
        if not isinstance(milestone, dict):
            continue
        pct = _to_number(milestone.get("percentage"))
        when = str(milestone.get("when") or "").lower()
        if pct is not None and any(marker in when for marker in UPFRONT_MARKERS):
            total += pct
    return total


def check_payment_terms(proposal: Proposal,
                        policies: Optional[OrganizationPolicies]) -> Optional[PolicyViolation]:
    if policies is None or not isinstance(policies.payment_terms_policy, dict):
        return None
    max_upfront = _to_number(policies.payment_terms_policy.get("max_upfront_percent"))
    if max_upfront is None:
        return None
    total = upfront_percent(proposal)
    if total <= max_upfront:
        return None
    return PolicyViolation(
        proposal_id=proposal.id,
        type="PAYMENT_TERMS",
        message=(
            f"Payment terms violate organization policy: upfront {total:g}% "
            f"exceeds max allowed ({max_upfront:g}%)"
        ),
    )


def check_vendor_completeness(inp: EvaluationInput) -> Optional[PolicyViolation]:
    if resolve_vendor_name(inp):
        return None
    return PolicyViolation(
        proposal_id=inp.proposal_id,
        type="VENDOR_INCOMPLETE",
        message="Vendor profile incomplete: missing vendor/company name",
    )


def run_precheck(inputs, policies: Optional[OrganizationPolicies]) -> dict:
    """Return {proposal_id: [PolicyViolation, ...]} for every input."""
    violations = {}
    for inp in inputs:
        found = [
            v for v in (
                check_currency(inp.proposal, policies),
                check_payment_terms(inp.proposal, policies),
                check_vendor_completeness(inp),
            )
            if v is not None
        ]
        for v in found:
            logger.info("Policy violation %s on proposal %s", v.type, v.proposal_id)
        violations[inp.proposal_id] = found
    return violations
