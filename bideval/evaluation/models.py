#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Immutable records the evaluation pipeline operates on.

Everything here is a frozen dataclass: a project, requirement set or
proposal does not change while an evaluation runs, and the locked
DeterministicScore is never mutated after the scorer creates it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

SINGLE = "SINGLE"
COMPARE = "COMPARE"

HIGHLY_RECOMMENDED = "Highly Recommended"
RECOMMENDED = "Recommended"
REVIEW_REQUIRED = "Review Required"
NOT_RECOMMENDED = "Not Recommended"


@dataclass(frozen=True)
class Project:
    id: str
    name: str = ""
    type: str = ""
    location: str = ""
    budget: Optional[float] = None
    advisors_budget: Optional[float] = None
    units: Optional[int] = None
    description: str = ""
    phase: str = ""
    is_large_scale: bool = False
    organization_id: Optional[str] = None


@dataclass(frozen=True)
class FeeItem:
    id: str
    description: str
    unit: str = ""
    quantity: Optional[float] = None
    is_optional: bool = False
    charge_type: str = ""
    display_order: int = 0


@dataclass(frozen=True)
class ScopeItem:
    id: str
    task_name: str
    is_optional: bool = False
    fee_category: str = ""
    display_order: int = 0


@dataclass(frozen=True)
class RequirementSet:
    """Fee and scope items of one invite, shared by every compared proposal."""
    rfp_id: str
    invite_id: str
    advisor_type: str = ""
    request_title: str = ""
    request_content: str = ""
    service_details_text: str = ""
    payment_terms: Any = None
    fee_items: tuple = ()
    scope_items: tuple = ()

    @property
    def mandatory_fee_items(self) -> list:
        return [i for i in self.fee_items if not i.is_optional]

    @property
    def mandatory_scope_items(self) -> list:
        return [i for i in self.scope_items if not i.is_optional]


@dataclass(frozen=True)
class Advisor:
    id: str
    company_name: str = ""
    registration_number: str = ""
    email: str = ""
    phone: str = ""
    rating: Optional[float] = None
    expertise: tuple = ()
    certifications: tuple = ()
    founding_year: Optional[int] = None

    def years_experience(self, today: datetime = None) -> int:
        if not self.founding_year:
            return 0
        year = (today or datetime.now(timezone.utc)).year
        return max(0, year - self.founding_year)


@dataclass(frozen=True)
class InviteRef:
    id: str
    rfp_id: str
    advisor_id: Optional[str] = None
    advisor_type: str = ""
    status: str = "sent"
    request_title: str = ""
    request_content: str = ""
    payment_terms: Any = None
    service_details_text: str = ""


@dataclass(frozen=True)
class Proposal:
    id: str
    project_id: str
    advisor_id: Optional[str] = None
    invite_id: Optional[str] = None
    supplier_name: str = ""
    price: Optional[float] = None
    currency: str = ""
    timeline_days: Optional[int] = None
    scope_text: str = ""
    extracted_text: str = ""
    terms: str = ""
    conditions: dict = field(default_factory=dict)
    fee_line_items: list = field(default_factory=list)
    selected_services: list = field(default_factory=list)
    milestone_adjustments: list = field(default_factory=list)
    consultant_notes: str = ""
    status: str = "submitted"
    submitted_at: Optional[str] = None
    version: int = 1


@dataclass(frozen=True)
class EvaluationInput:
    """(Proposal, Advisor, InviteRef) bundle; the unit the scorer works on."""
    proposal: Proposal
    advisor: Advisor
    invite: InviteRef

    @property
    def proposal_id(self) -> str:
        return self.proposal.id


@dataclass(frozen=True)
class OrganizationPolicies:
    organization_id: str
    default_currency: str = ""
    allowed_currencies: tuple = ()
    payment_terms_policy: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PolicyViolation:
    proposal_id: str
    type: str  # CURRENCY | PAYMENT_TERMS | VENDOR_INCOMPLETE
    message: str

    @property
    def is_knockout(self) -> bool:
        return self.type in ("CURRENCY", "PAYMENT_TERMS")


@dataclass(frozen=True)
class AggregatedBatch:
    project: Project
    inputs: tuple
    requirement_set: RequirementSet
    policies: Optional[OrganizationPolicies] = None

    @property
    def mode(self) -> str:
        return SINGLE if len(self.inputs) == 1 else COMPARE

    @property
    def proposal_ids(self) -> list:
        return [i.proposal_id for i in self.inputs]


@dataclass(frozen=True)
class DeterministicScore:
    """The locked envelope. Narrative output can explain it, never change it."""
    proposal_id: str
    coverage_score: int
    price_score: Optional[int]
    data_completeness: float
    final_score: int
    rank: int
    knockout_triggered: bool
    knockout_reason_hint: Optional[str]
    recommendation_level: str
    missing_fee_items: tuple = ()
    missing_scope_items: tuple = ()
    policy_red_flags: tuple = ()
    vendor_completeness_flags: tuple = ()

    def to_payload(self) -> dict:
        """Locked fields as shown to the narrative generator."""
        return {
            "proposal_id": self.proposal_id,
            "requirement_coverage_score": self.coverage_score,
            "compare_price_score": self.price_score,
            "final_score_locked": self.final_score,
            "rank_locked": self.rank,
            "data_completeness_locked": self.data_completeness,
            "knockout_triggered_locked": self.knockout_triggered,
            "knockout_reason_hint": self.knockout_reason_hint,
            "recommendation_level_locked": self.recommendation_level,
            "missing_mandatory_fee_items": list(self.missing_fee_items) or ["None"],
            "missing_mandatory_scope_items": list(self.missing_scope_items) or ["None"],
            "policy_red_flags": list(self.policy_red_flags),
            "vendor_completeness_flags": list(self.vendor_completeness_flags),
        }
