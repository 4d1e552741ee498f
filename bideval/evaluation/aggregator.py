#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: BidEval
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: BidEval System Administrator
"""Requirement aggregation and proposal deduplication.

Loads everything one evaluation request needs from the database and
normalizes it into immutable records:

  1. the project (NotFound if missing)
  2. proposals in an evaluable status, optionally narrowed to given ids
  3. each proposal's advisor and originating invite; proposals without
     either, or whose invite was declined/expired, are dropped
  4. one canonical proposal per invite (highest version, then latest
     submission, then smallest id)
  5. batch homogeneity for COMPARE: one RFP, one advisor type
  6. the requirement set of the first surviving invite, and the owning
     organization's policies

Read-only; every failure is raised before any provider call.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Optional

from bideval.evaluation.errors import (
    InvalidRequest, NoEligibleInputs, NotFound, ScopeMismatch,
)
from bideval.evaluation.models import (
    Advisor, AggregatedBatch, EvaluationInput, FeeItem, InviteRef,
    OrganizationPolicies, Project, Proposal, RequirementSet, ScopeItem,
)

logger = logging.getLogger("bideval.evaluation.aggregator")

EVALUABLE_STATUSES = ("submitted", "resubmitted", "negotiation_requested")
INELIGIBLE_INVITE_STATUSES = ("declined", "expired")


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------

def _parse_json_field(value, default):
    """Parse a JSON column, returning default for NULL or invalid JSON."""
    if value is None or value == "":
        return default
    if isinstance(value, (list, dict)):
        return value
    try:
        parsed = json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default
    return parsed if isinstance(parsed, type(default)) else default


def _text(value) -> str:
    return value if isinstance(value, str) else ""


def _project_from_row(row) -> Project:
    return Project(
        id=row["id"],
        name=_text(row["name"]),
        type=_text(row["type"]),
        location=_text(row["location"]),
        budget=row["budget"],
        advisors_budget=row["advisors_budget"],
        units=row["units"],
        description=_text(row["description"]),
        phase=_text(row["phase"]),
        is_large_scale=bool(row["is_large_scale"]),
        organization_id=row["organization_id"],
    )


def _proposal_from_row(row) -> Proposal:
    return Proposal(
        id=row["id"],
        project_id=row["project_id"],
        advisor_id=row["advisor_id"],
        invite_id=row["rfp_invite_id"],
        supplier_name=_text(row["supplier_name"]),
        price=row["price"],
        currency=_text(row["currency"]),
        timeline_days=row["timeline_days"],
        scope_text=_text(row["scope_text"]),
        extracted_text=_text(row["extracted_text"]),
        terms=_text(row["terms"]),
        conditions=_parse_json_field(row["conditions_json"], {}),
        fee_line_items=_parse_json_field(row["fee_line_items"], []),
        selected_services=_parse_json_field(row["selected_services"], []),
        milestone_adjustments=_parse_json_field(row["milestone_adjustments"], []),
        consultant_notes=_text(row["consultant_request_notes"]),
        status=row["status"],
        submitted_at=row["submitted_at"],
        version=row["current_version"] or 1,
    )


def _advisor_from_row(row) -> Advisor:
    return Advisor(
        id=row["id"],
        company_name=_text(row["company_name"]),
        registration_number=_text(row["registration_number"]),
        email=_text(row["email"]),
        phone=_text(row["phone"]),
        rating=row["rating"],
        expertise=tuple(_parse_json_field(row["expertise"], [])),
        certifications=tuple(_parse_json_field(row["certifications"], [])),
        founding_year=row["founding_year"],
    )


def _payment_terms(value):
    """Payment terms may be stored as JSON or as free text."""
    if not value:
        return None
    if value.lstrip().startswith(("{", "[")):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            pass
    return value


def _invite_from_row(row) -> InviteRef:
    return InviteRef(
        id=row["id"],
        rfp_id=row["rfp_id"],
        advisor_id=row["advisor_id"],
        advisor_type=_text(row["advisor_type"]),
        status=row["status"],
        request_title=_text(row["request_title"]),
        request_content=_text(row["request_content"]),
        payment_terms=_payment_terms(row["payment_terms"]),
        service_details_text=_text(row["service_details_text"]),
    )


def _placeholders(values) -> str:
    return ",".join("?" for _ in values)


# ---------------------------------------------------------------------------
# Deduplication & scope validation
# ---------------------------------------------------------------------------

def _timestamp(value: Optional[str]) -> float:
    """Submission time as epoch seconds; missing or unparseable sorts last."""
    if not value:
        return float("-inf")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return float("-inf")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def dedupe_by_invite(inputs: list) -> list:
    """Keep one proposal per invite: version desc, submitted_at desc, id asc.

    Returns survivors in ascending proposal-id order.
    """
    groups: dict = {}
    for inp in inputs:
        groups.setdefault(inp.invite.id, []).append(inp)

    survivors = []
    for invite_id, group in groups.items():
        # Stable multi-pass sort, least significant key first
        ordered = sorted(group, key=lambda i: i.proposal.id)
        ordered.sort(key=lambda i: _timestamp(i.proposal.submitted_at), reverse=True)
        ordered.sort(key=lambda i: i.proposal.version, reverse=True)
        if len(ordered) > 1:
            logger.info(
                "Invite %s has %d proposals; keeping %s (v%d)",
                invite_id, len(ordered), ordered[0].proposal_id, ordered[0].proposal.version,
            )
        survivors.append(ordered[0])

    return sorted(survivors, key=lambda i: i.proposal_id)


def validate_batch_scope(inputs: list) -> None:
    """Raise ScopeMismatch unless every input shares one RFP and one advisor type."""
    if len(inputs) < 2:
        return
    rfp_ids = sorted({i.invite.rfp_id for i in inputs})
    if len(rfp_ids) > 1:
        raise ScopeMismatch(
            "Cannot compare proposals from different RFPs",
            details={"rfp_ids": rfp_ids},
        )
    advisor_types = sorted({i.invite.advisor_type for i in inputs})
    if len(advisor_types) > 1:
        raise ScopeMismatch(
            "Cannot compare proposals for different advisor types",
            details={"advisor_types": advisor_types},
        )


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

def load_requirement_set(conn: sqlite3.Connection, invite: InviteRef) -> RequirementSet:
    fee_rows = conn.execute(
        "SELECT * FROM rfp_fee_items WHERE rfp_invite_id = ? "
        "ORDER BY display_order, id",
        (invite.id,),
    ).fetchall()
    scope_rows = conn.execute(
        "SELECT * FROM rfp_scope_items WHERE rfp_invite_id = ? "
        "ORDER BY display_order, id",
        (invite.id,),
    ).fetchall()

    fee_items = tuple(
        FeeItem(
            id=r["id"],
            description=r["description"],
            unit=_text(r["unit"]),
            quantity=r["quantity"],
            is_optional=bool(r["is_optional"]),
            charge_type=_text(r["charge_type"]),
            display_order=r["display_order"],
        )
        for r in fee_rows
    )
    scope_items = tuple(
        ScopeItem(
            id=r["id"],
            task_name=r["task_name"],
            is_optional=bool(r["is_optional"]),
            fee_category=_text(r["fee_category"]),
            display_order=r["display_order"],
        )
        for r in scope_rows
    )
    return RequirementSet(
        rfp_id=invite.rfp_id,
        invite_id=invite.id,
        advisor_type=invite.advisor_type,
        request_title=invite.request_title,
        request_content=invite.request_content,
        service_details_text=invite.service_details_text,
        payment_terms=invite.payment_terms,
        fee_items=fee_items,
        scope_items=scope_items,
    )


def load_organization_policies(conn: sqlite3.Connection,
                               organization_id: Optional[str]) -> Optional[OrganizationPolicies]:
    if not organization_id:
        return None
    row = conn.execute(
        "SELECT * FROM organizations WHERE id = ?", (organization_id,)
    ).fetchone()
    if row is None:
        logger.warning("Organization %s not found; policy checks disabled", organization_id)
        return None

    default_currency = _text(row["default_currency"]).upper()
    allowed = [str(c).upper() for c in _parse_json_field(row["allowed_currencies"], [])]
    if not allowed and default_currency:
        allowed = [default_currency]
    return OrganizationPolicies(
        organization_id=row["id"],
        default_currency=default_currency,
        allowed_currencies=tuple(allowed),
        payment_terms_policy=_parse_json_field(row["payment_terms_policy"], {}),
    )


def fetch_evaluation_inputs(conn: sqlite3.Connection, project_id: str,
                            proposal_ids: Optional[list] = None) -> AggregatedBatch:
    """Load, filter, deduplicate and scope-check the proposals of one project."""
    if not project_id:
        raise InvalidRequest("project_id is required")

    project_row = conn.execute(
        "SELECT * FROM projects WHERE id = ?", (project_id,)
    ).fetchone()
    if project_row is None:
        raise NotFound(f"Project not found: {project_id}")
    project = _project_from_row(project_row)

    sql = (
        "SELECT * FROM proposals WHERE project_id = ? "
        f"AND status IN ({_placeholders(EVALUABLE_STATUSES)})"
    )
    params = [project_id, *EVALUABLE_STATUSES]
    if proposal_ids:
        sql += f" AND id IN ({_placeholders(proposal_ids)})"
        params.extend(proposal_ids)
    rows = conn.execute(sql + " ORDER BY id", params).fetchall()
    if not rows:
        raise NoEligibleInputs("No eligible proposals found for evaluation")

    proposals = [_proposal_from_row(r) for r in rows]

    advisor_ids = sorted({p.advisor_id for p in proposals if p.advisor_id})
    advisors = {}
    if advisor_ids:
        for r in conn.execute(
            f"SELECT * FROM advisors WHERE id IN ({_placeholders(advisor_ids)})",
            advisor_ids,
        ).fetchall():
            advisors[r["id"]] = _advisor_from_row(r)

    invite_ids = sorted({p.invite_id for p in proposals if p.invite_id})
    invites = {}
    if invite_ids:
        for r in conn.execute(
            f"SELECT * FROM rfp_invites WHERE id IN ({_placeholders(invite_ids)})",
            invite_ids,
        ).fetchall():
            invites[r["id"]] = _invite_from_row(r)

    inputs = []
    for proposal in proposals:
        advisor = advisors.get(proposal.advisor_id)
        invite = invites.get(proposal.invite_id)
        if advisor is None or invite is None:
            logger.warning("Skipping proposal %s: missing advisor or invite", proposal.id)
            continue
        if invite.status in INELIGIBLE_INVITE_STATUSES:
            logger.info("Skipping proposal %s: invite %s is %s",
                        proposal.id, invite.id, invite.status)
            continue
        inputs.append(EvaluationInput(proposal=proposal, advisor=advisor, invite=invite))

    if not inputs:
        raise NoEligibleInputs("No eligible proposals after filtering")

    inputs = dedupe_by_invite(inputs)
    validate_batch_scope(inputs)

    return AggregatedBatch(
        project=project,
        inputs=tuple(inputs),
        requirement_set=load_requirement_set(conn, inputs[0].invite),
        policies=load_organization_policies(conn, project.organization_id),
    )
