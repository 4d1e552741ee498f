#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Shared test fixtures for the BidEval test suite."""

import json
import os
import sqlite3
import sys
import threading
import time
from pathlib import Path

import pytest

# Add project root to path
BASE_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BASE_DIR))

from bideval.llm.provider import LLMProvider, LLMResponse  # noqa: E402

FULL_SCOPE_TEXT = (
    "Full structural design package including calculations, drawings and "
    "weekly site supervision through completion of the frame."
)


def _patch_db_path(db_path):
    """Patch DB_PATH in all modules that cache it at import time."""
    p = Path(db_path)
    modules_to_patch = [
        "bideval.db.init_db",
        "bideval.audit.audit_logger",
        "bideval.evaluation.orchestrator",
    ]
    for mod_name in modules_to_patch:
        if mod_name in sys.modules:
            mod = sys.modules[mod_name]
            if hasattr(mod, "DB_PATH"):
                mod.DB_PATH = p


@pytest.fixture
def tmp_db(tmp_path):
    """Create a temporary BidEval database with full schema."""
    db_path = tmp_path / "test_bideval.db"

    from bideval.db.init_db import init_db
    init_db(str(db_path))

    os.environ["BIDEVAL_DB_PATH"] = str(db_path)
    _patch_db_path(db_path)
    yield db_path
    if "BIDEVAL_DB_PATH" in os.environ:
        del os.environ["BIDEVAL_DB_PATH"]


@pytest.fixture
def db_conn(tmp_db):
    """Get a connection to the test database."""
    conn = sqlite3.connect(str(tmp_db))
    conn.row_factory = sqlite3.Row
    yield conn
    conn.close()


# =========================================================================
# SAMPLE DATA
# =========================================================================
@pytest.fixture
def sample_project(db_conn):
    """Organization (ILS only, max 20% upfront) and one standard project."""
    db_conn.execute(
        """INSERT INTO organizations
           (id, name, default_currency, allowed_currencies, payment_terms_policy)
           VALUES (?, ?, ?, ?, ?)""",
        ("ORG-001", "Harbor Developments", "ILS", '["ILS"]',
         '{"max_upfront_percent": 20}'),
    )
    db_conn.execute(
        """INSERT INTO projects
           (id, organization_id, name, type, location, budget, advisors_budget,
            units, description, phase, is_large_scale)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        ("PROJ-001", "ORG-001", "Harbor Tower", "residential", "Haifa",
         50000000, 2000000, 120, "Twelve storey residential tower", "design", 0),
    )
    db_conn.commit()
    return "PROJ-001"


@pytest.fixture
def sample_rfp(db_conn, sample_project):
    """Three advisors, one RFP, one structural invite per advisor.

    Requirement items hang off INV-001: two mandatory fee items, two
    mandatory scope items and one optional item of each kind.
    """
    advisors = [
        ("ADV-001", "Alpha Engineering", "512345678", "office@alpha.example",
         "03-5550101", 4.6, '["structural", "high-rise"]', '["ISO 9001"]', 2005),
        ("ADV-002", "Beta Consulting", "513456789", "info@beta.example",
         "03-5550102", 4.1, '["structural"]', "[]", 2015),
        ("ADV-003", "", "", "", "", None, "[]", "[]", None),
    ]
    for a in advisors:
        db_conn.execute(
            """INSERT INTO advisors
               (id, company_name, registration_number, email, phone, rating,
                expertise, certifications, founding_year)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            a,
        )
    db_conn.execute(
        "INSERT INTO rfps (id, project_id, title) VALUES (?, ?, ?)",
        ("RFP-001", sample_project, "Structural engineering services"),
    )
    for invite_id, advisor_id in (("INV-001", "ADV-001"), ("INV-002", "ADV-002"),
                                  ("INV-003", "ADV-003")):
        db_conn.execute(
            """INSERT INTO rfp_invites
               (id, rfp_id, advisor_id, advisor_type, status, request_title,
                request_content, payment_terms, service_details_text)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (invite_id, "RFP-001", advisor_id, "structural", "submitted",
             "Structural engineering", "Design and supervise the tower frame",
             '{"net_days": 30}', "Calculations, drawings, site visits"),
        )

    fee_items = [
        ("FEE-1", "Design fee", "lump sum", 1, 0, "fixed", 1),
        ("FEE-2", "Supervision fee", "month", 18, 0, "hourly", 2),
        ("FEE-3", "Travel", "trip", 10, 1, "reimbursable", 3),
    ]
    for f in fee_items:
        db_conn.execute(
            """INSERT INTO rfp_fee_items
               (id, rfp_invite_id, description, unit, quantity, is_optional,
                charge_type, display_order)
               VALUES (?, 'INV-001', ?, ?, ?, ?, ?, ?)""",
            f,
        )
    scope_items = [
        ("SCP-1", "Structural design", 0, "design", 1),
        ("SCP-2", "Site supervision", 0, "supervision", 2),
        ("SCP-3", "3D model", 1, "design", 3),
    ]
    for s in scope_items:
        db_conn.execute(
            """INSERT INTO rfp_scope_items
               (id, rfp_invite_id, task_name, is_optional, fee_category, display_order)
               VALUES (?, 'INV-001', ?, ?, ?, ?)""",
            s,
        )
    db_conn.commit()
    return "RFP-001"


@pytest.fixture
def add_proposal(db_conn, sample_rfp):
    """Factory: insert a fully-covering proposal, with overrides, and return its ID."""

    def _add(proposal_id, advisor_id="ADV-001", invite_id="INV-001", **overrides):
        row = {
            "id": proposal_id,
            "project_id": "PROJ-001",
            "advisor_id": advisor_id,
            "rfp_invite_id": invite_id,
            "supplier_name": None,
            "price": 100000,
            "currency": "ILS",
            "timeline_days": 90,
            "scope_text": FULL_SCOPE_TEXT,
            "extracted_text": None,
            "terms": "Net 30 from approved invoice",
            "conditions_json": "{}",
            "fee_line_items": json.dumps([
                {"item_id": "FEE-1", "description": "Design fee", "amount": 60000},
                {"item_id": "FEE-2", "description": "Supervision fee", "amount": 40000},
            ]),
            "selected_services": json.dumps(["SCP-1", "SCP-2"]),
            "milestone_adjustments": json.dumps([
                {"when": "on signing", "percentage": 10},
                {"when": "on completion", "percentage": 90},
            ]),
            "consultant_request_notes": None,
            "status": "submitted",
            "submitted_at": "2026-03-01T10:00:00Z",
            "current_version": 1,
        }
        for key, value in overrides.items():
            if isinstance(value, (list, dict)):
                value = json.dumps(value)
            row[key] = value
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        db_conn.execute(
            f"INSERT INTO proposals ({columns}) VALUES ({placeholders})",
            list(row.values()),
        )
        db_conn.commit()
        return proposal_id

    return _add


# =========================================================================
# PROVIDER DOUBLES
# =========================================================================
class FakeProvider(LLMProvider):
    """Scripted provider: returns queued responses, counts calls."""

    def __init__(self, responses=None, delay=0.0, model_id="fake-model-1"):
        super().__init__(model_id=model_id, max_tokens=1024, temperature=0.0)
        self._responses = list(responses or [])
        self._delay = delay
        self.calls = 0
        self.requests = []
        self._lock = threading.Lock()

    @property
    def provider_name(self) -> str:
        return "fake"

    def invoke(self, request):
        with self._lock:
            self.calls += 1
            self.requests.append(request)
            response = self._responses.pop(0) if self._responses else "{}"
        if self._delay:
            time.sleep(self._delay)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(request)
        if not isinstance(response, str):
            response = json.dumps(response)
        return LLMResponse(
            content=response,
            model_id=self.model_id,
            provider=self.provider_name,
            input_tokens=len(request.payload) // 4,
            output_tokens=len(response) // 4,
        )

    def check_availability(self) -> bool:
        return True


def echo_narrative(request):
    """Well-formed narrative for every proposal in the request payload."""
    payload = json.loads(request.payload)
    compare = payload["evaluation_mode"] == "COMPARE"
    ranked = []
    for proposal in payload["proposals"]:
        analysis = {
            "requirements_alignment": f"{proposal['proposal_id']} covers the request",
            "timeline_assessment": "Timeline is realistic",
            "experience_assessment": "Relevant structural experience",
            "scope_quality": "Clear scope",
            "strengths": ["Complete fee breakdown"],
            "weaknesses": [],
            "extra_offerings": [],
        }
        if compare:
            analysis["price_assessment"] = "Priced relative to the other offers"
        ranked.append({
            "proposal_id": proposal["proposal_id"],
            "individual_analysis": analysis,
            "flags": {"red_flags": [], "green_flags": ["Responsive"], "knockout_reason": None},
            "comparative_notes": "Compared with the batch" if compare else None,
        })
    return {
        "batch_summary": {"market_context": "Batch of structural offers"},
        "ranked_proposals": ranked,
    }


@pytest.fixture
def fake_provider():
    """Factory for scripted providers."""

    def _make(responses=None, delay=0.0):
        return FakeProvider(responses=responses, delay=delay)

    return _make


@pytest.fixture
def echo_provider():
    """Provider that answers every call with a well-formed narrative."""
    return FakeProvider(responses=[echo_narrative] * 10)


@pytest.fixture
def evaluator_factory(tmp_db):
    """Build a ProposalEvaluator over the temp database with an injected provider."""
    from bideval.evaluation.orchestrator import ProposalEvaluator
    from bideval.llm.router import EvaluationSettings, LLMConfig

    def _make(provider, deadline_seconds=5.0, text_extractor=None):
        config = LLMConfig(settings=EvaluationSettings(deadline_seconds=deadline_seconds))
        return ProposalEvaluator(
            config=config,
            provider=provider,
            db_path=tmp_db,
            text_extractor=text_extractor or (lambda proposal_id: ""),
        )

    return _make
