#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Instruction templates and the whitelisted payload for narrative enrichment.

The payload is built field by field from an explicit whitelist so nothing
outside project metadata, the organization frame, the requirement set,
declared proposal content, advisor profile and the locked scores ever
reaches the provider.
"""

import json

from bideval.evaluation.models import COMPARE, AggregatedBatch
from bideval.evaluation.precheck import resolve_vendor_name

PLACEHOLDER = "Not provided"

ALLOWED_FIELDS = (
    "organization_evaluation_frame",
    "project_metadata",
    "rfp_requirements",
    "proposals[] (declared content, vendor_profile, advisor_profile)",
    "deterministic_scores[] (locked)",
)

_BASE_INSTRUCTION = """You are a strict procurement evaluator reviewing advisor proposals for a project.
Output valid JSON only. No markdown, no code fences, no commentary.

Rules:
- Write all narrative text in English. If a value is missing, write "{placeholder}".
  When a missing-items list is ["None"], nothing is missing (full coverage).
- The fields ending in _locked inside deterministic_scores are final. Do NOT
  recompute or contradict final_score, rank, data_completeness,
  recommendation_level or knockout_triggered; explain them.
- Evaluate three dimensions: vendor identity, organization constraints,
  alignment with the RFP request (request_title, request_content, fee and scope items).
- Explain how missing data or policy violations affected the score.
- Include every policy_red_flags and vendor_completeness_flags entry in flags.red_flags.
- Use only the data provided. Do not invent facts about the vendor.

## AllowedFields
{allowed}

## Output shape
{{
  "batch_summary": {{"market_context": "String"}},
  "ranked_proposals": [
    {{
      "proposal_id": "String (copy from input)",
      "individual_analysis": {{
        "requirements_alignment": "String",
{price_line}        "timeline_assessment": "String",
        "experience_assessment": "String",
        "scope_quality": "String",
        "fee_structure_assessment": "String",
        "payment_terms_assessment": "String",
        "strengths": ["String"],
        "weaknesses": ["String"],
        "missing_requirements": ["String"],
        "extra_offerings": ["String"]
      }},
      "flags": {{
        "red_flags": ["String"],
        "green_flags": ["String"],
        "knockout_reason": "String or null"
      }},
      "comparative_notes": {notes_shape}
    }}
  ]
}}
"""

_SINGLE_RULES = """
SINGLE mode: one proposal is evaluated on its own merit.
- Do NOT include price_assessment.
- Do NOT comment on price level, market rates or external benchmarks.
- comparative_notes must be null.
"""

_COMPARE_RULES = """
COMPARE mode: the proposals answer the same RFP and are compared with each other.
- Check each proposal against organization_evaluation_frame first.
- Include price_assessment for every proposal. Price commentary must be
  strictly relative to the other submitted proposals in this batch;
  never cite market rates or external benchmarks.
- comparative_notes: how this proposal compares to the others.
"""


def build_system_prompt(mode: str) -> str:
    base = _BASE_INSTRUCTION.format(
        placeholder=PLACEHOLDER,
        allowed="\n".join(f"- {f}" for f in ALLOWED_FIELDS),
        price_line='        "price_assessment": "String",\n' if mode == COMPARE else "",
        notes_shape='"String"' if mode == COMPARE else "null",
    )
    return base + (_COMPARE_RULES if mode == COMPARE else _SINGLE_RULES)


def _or_placeholder(value):
    if value is None or (isinstance(value, str) and not value.strip()):
        return PLACEHOLDER
    return value


def _proposal_payload(inp) -> dict:
    p, a = inp.proposal, inp.advisor
    vendor_name = resolve_vendor_name(inp)
    return {
        "proposal_id": p.id,
        "vendor_name": vendor_name or PLACEHOLDER,
        "vendor_profile": {
            "name": vendor_name or PLACEHOLDER,
            "registration_number": _or_placeholder(a.registration_number),
            "email": _or_placeholder(a.email),
            "phone": _or_placeholder(a.phone),
            "completeness": "complete" if vendor_name else "partial",
        },
        "advisor_profile": {
            "years_experience": a.years_experience(),
            "rating": a.rating,
            "expertise": list(a.expertise),
            "certifications": list(a.certifications),
        },
        "price": p.price,
        "currency": p.currency or None,
        "timeline_days": p.timeline_days,
        "scope_text": p.scope_text or None,
        "extracted_text": p.extracted_text or None,
        "terms": p.terms or None,
        "conditions": p.conditions,
        "fee_line_items": p.fee_line_items,
        "selected_services": p.selected_services,
        "milestone_adjustments": p.milestone_adjustments,
        "consultant_request_notes": p.consultant_notes or None,
    }


def build_payload(batch: AggregatedBatch, scores: list) -> str:
    """Serialize the whitelisted evaluation context as the user message."""
    project, rfp, policies = batch.project, batch.requirement_set, batch.policies
    org_frame = None
    if policies is not None:
        org_frame = {
            "default_currency": policies.default_currency,
            "allowed_currencies": list(policies.allowed_currencies),
            "payment_terms_policy": policies.payment_terms_policy,
        }

    payload = {
        "evaluation_mode": batch.mode,
        "organization_evaluation_frame": org_frame,
        "project_metadata": {
            "id": project.id,
            "name": project.name,
            "type": project.type,
            "location": project.location,
            "budget": project.budget,
            "advisors_budget": project.advisors_budget,
            "units": project.units,
            "description": project.description,
            "phase": project.phase,
            "is_large_scale": project.is_large_scale,
        },
        "rfp_requirements": {
            "rfp_id": rfp.rfp_id,
            "rfp_invite_id": rfp.invite_id,
            "advisor_type": rfp.advisor_type,
            "request_title": rfp.request_title,
            "request_content": rfp.request_content,
            "service_details_text": rfp.service_details_text,
            "payment_terms": rfp.payment_terms,
            "fee_items": [
                {"id": i.id, "description": i.description, "unit": i.unit,
                 "quantity": i.quantity, "is_optional": i.is_optional,
                 "charge_type": i.charge_type}
                for i in rfp.fee_items
            ],
            "service_scope_items": [
                {"id": i.id, "task_name": i.task_name, "is_optional": i.is_optional,
                 "fee_category": i.fee_category}
                for i in rfp.scope_items
            ],
        },
        "proposals": [_proposal_payload(inp) for inp in batch.inputs],
        "deterministic_scores": [s.to_payload() for s in scores],
    }
    return json.dumps(payload, indent=2, default=str)
