#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Pydantic models for generator output and final evaluation results.

Two families:

  Narrative*  what the text generator may return. Every narrative field is
              optional (omissions become placeholders in the merger) but
              types are enforced. Unknown keys, including any locked
              numbers the generator echoes back, are ignored.

  *Result     the merged SINGLE / COMPARE result. Closed shapes
              (extra="forbid"), validated before anything is persisted.
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bideval.evaluation.errors import MalformedProviderOutput
from bideval.evaluation.models import COMPARE, SINGLE

RecommendationLevel = Literal[
    "Highly Recommended", "Recommended", "Review Required", "Not Recommended",
]
ProjectTypeDetected = Literal["STANDARD", "LARGE_SCALE"]


# ---------------------------------------------------------------------------
# Generator output
# ---------------------------------------------------------------------------

class NarrativeFlags(BaseModel):
    model_config = ConfigDict(extra="ignore")

    red_flags: Optional[List[str]] = None
    green_flags: Optional[List[str]] = None
    knockout_triggered: Optional[bool] = None
    knockout_reason: Optional[str] = None


class NarrativeAnalysis(BaseModel):
    model_config = ConfigDict(extra="ignore")

    requirements_alignment: Optional[str] = None
    price_assessment: Optional[str] = None
    timeline_assessment: Optional[str] = None
    experience_assessment: Optional[str] = None
    scope_quality: Optional[str] = None
    fee_structure_assessment: Optional[str] = None
    payment_terms_assessment: Optional[str] = None
    strengths: Optional[List[str]] = None
    weaknesses: Optional[List[str]] = None
    missing_requirements: Optional[List[str]] = None
    extra_offerings: Optional[List[str]] = None


class NarrativeProposal(BaseModel):
    model_config = ConfigDict(extra="ignore")

    proposal_id: str
    individual_analysis: Optional[NarrativeAnalysis] = None
    flags: Optional[NarrativeFlags] = None
    comparative_notes: Optional[str] = None


class NarrativeBatchSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    market_context: Optional[str] = None


class NarrativeOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    batch_summary: Optional[NarrativeBatchSummary] = None
    ranked_proposals: List[NarrativeProposal]

    def by_proposal_id(self) -> dict:
        return {p.proposal_id: p for p in self.ranked_proposals}


def parse_narrative(data: dict) -> NarrativeOutput:
    try:
        return NarrativeOutput.model_validate(data)
    except ValidationError as exc:
        raise MalformedProviderOutput(
            f"Provider output failed schema validation: {exc.error_count()} error(s)",
            code="VALIDATION_ERROR",
            details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        ) from exc


# ---------------------------------------------------------------------------
# Final results
# ---------------------------------------------------------------------------

class Flags(BaseModel):
    model_config = ConfigDict(extra="forbid")

    red_flags: List[str]
    green_flags: List[str]
    knockout_triggered: bool
    knockout_reason: Optional[str]


class IndividualAnalysis(BaseModel):
    model_config = ConfigDict(extra="forbid")

    requirements_alignment: str
    timeline_assessment: str
    experience_assessment: str
    scope_quality: str
    fee_structure_assessment: Optional[str] = None
    payment_terms_assessment: Optional[str] = None
    strengths: List[str]
    weaknesses: List[str]
    missing_requirements: List[str]
    extra_offerings: List[str]


class CompareIndividualAnalysis(IndividualAnalysis):
    price_assessment: str


class ScoreBreakdown(BaseModel):
    model_config = ConfigDict(extra="forbid")

    coverage_score: int = Field(ge=0, le=100)
    price_score: Optional[int] = Field(default=None, ge=0, le=100)


class RankedProposalBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    proposal_id: str = Field(min_length=1)
    vendor_name: str = Field(min_length=1)
    final_score: int = Field(ge=0, le=100)
    rank: int = Field(ge=1)
    data_completeness: float = Field(ge=0, le=1)
    recommendation_level: RecommendationLevel
    flags: Flags
    score_breakdown: ScoreBreakdown


class SingleRankedProposal(RankedProposalBase):
    individual_analysis: IndividualAnalysis
    comparative_notes: None = None


class CompareRankedProposal(RankedProposalBase):
    individual_analysis: CompareIndividualAnalysis
    comparative_notes: Optional[str] = None


class SingleBatchSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_proposals: int = Field(ge=1)
    evaluation_mode: Literal["SINGLE"]
    project_type_detected: ProjectTypeDetected
    price_benchmark_used: None = None
    market_context: Optional[str] = None


class CompareBatchSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_proposals: int = Field(ge=1)
    evaluation_mode: Literal["COMPARE"]
    project_type_detected: ProjectTypeDetected
    price_benchmark_used: Optional[float] = Field(default=None, gt=0)
    market_context: Optional[str] = None


class SingleEvaluationResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    batch_summary: SingleBatchSummary
    ranked_proposals: List[SingleRankedProposal] = Field(min_length=1)


class CompareEvaluationResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    batch_summary: CompareBatchSummary
    ranked_proposals: List[CompareRankedProposal] = Field(min_length=1)


RESULT_MODELS = {
    SINGLE: SingleEvaluationResult,
    COMPARE: CompareEvaluationResult,
}


def validate_result(mode: str, data: dict) -> dict:
    """Validate a merged result against its mode's closed shape; return plain JSON data."""
    model = RESULT_MODELS[mode]
    try:
        return model.model_validate(data).model_dump(mode="json")
    except ValidationError as exc:
        raise MalformedProviderOutput(
            f"Merged {mode} result failed validation: {exc.error_count()} error(s)",
            code="VALIDATION_ERROR",
            details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        ) from exc
