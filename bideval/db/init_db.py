#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: BidEval
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: BidEval System Administrator
"""Initialize the BidEval database with all required tables.

Creates tables for:
  - Organizations (procurement policies: currencies, payment terms)
  - Projects (the procurement being staffed)
  - Advisors (vendor profiles: company, rating, expertise, certifications)
  - RFPs & Invites (requirement sets sent to advisors, fee and scope items)
  - Proposals (submitted offers plus persisted evaluation results)
  - Proposal Files (uploaded documents used for text extraction)
  - System (audit trail, AI telemetry)

Usage:
    python -m bideval.db.init_db [--db-path PATH] [--json]
"""

import json
import os
import sqlite3
import sys
from datetime import datetime, timezone
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "BIDEVAL_DB_PATH", str(BASE_DIR / "data" / "bideval.db")
))


SCHEMA_SQL = """
-- ============================================================
-- ORGANIZATIONS & PROJECTS
-- ============================================================

-- Owning organization and its procurement policy frame
CREATE TABLE IF NOT EXISTS organizations (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    default_currency TEXT,
    allowed_currencies TEXT,           -- JSON array of ISO codes
    payment_terms_policy TEXT,         -- JSON object, e.g. {"max_upfront_percent": 20}
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Projects whose advisor proposals are evaluated
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    organization_id TEXT REFERENCES organizations(id),
    name TEXT NOT NULL,
    type TEXT,
    location TEXT,
    budget REAL,
    advisors_budget REAL,
    units INTEGER,
    description TEXT,
    phase TEXT,
    is_large_scale INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ============================================================
-- ADVISORS
-- ============================================================

CREATE TABLE IF NOT EXISTS advisors (
    id TEXT PRIMARY KEY,
    company_name TEXT,
    registration_number TEXT,
    email TEXT,
    phone TEXT,
    rating REAL,
    expertise TEXT,                    -- JSON array
    certifications TEXT,               -- JSON array
    founding_year INTEGER,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ============================================================
-- RFPS & INVITES
-- ============================================================

CREATE TABLE IF NOT EXISTS rfps (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    title TEXT,
    status TEXT NOT NULL DEFAULT 'sent',
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- One invite per advisor per RFP; proposals answer an invite
CREATE TABLE IF NOT EXISTS rfp_invites (
    id TEXT PRIMARY KEY,
    rfp_id TEXT NOT NULL REFERENCES rfps(id),
    advisor_id TEXT REFERENCES advisors(id),
    advisor_type TEXT,
    status TEXT NOT NULL DEFAULT 'sent' CHECK(status IN (
        'pending', 'sent', 'opened', 'in_progress',
        'submitted', 'declined', 'expired'
    )),
    request_title TEXT,
    request_content TEXT,
    payment_terms TEXT,                -- JSON object or free text
    service_details_text TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Requested fee lines (mandatory unless is_optional)
CREATE TABLE IF NOT EXISTS rfp_fee_items (
    id TEXT PRIMARY KEY,
    rfp_invite_id TEXT NOT NULL REFERENCES rfp_invites(id),
    description TEXT NOT NULL,
    unit TEXT,
    quantity REAL,
    is_optional INTEGER NOT NULL DEFAULT 0,
    charge_type TEXT,
    display_order INTEGER NOT NULL DEFAULT 0
);

-- Requested services (mandatory unless is_optional)
CREATE TABLE IF NOT EXISTS rfp_scope_items (
    id TEXT PRIMARY KEY,
    rfp_invite_id TEXT NOT NULL REFERENCES rfp_invites(id),
    task_name TEXT NOT NULL,
    is_optional INTEGER NOT NULL DEFAULT 0,
    fee_category TEXT,
    display_order INTEGER NOT NULL DEFAULT 0
);

-- ============================================================
-- PROPOSALS
-- ============================================================

CREATE TABLE IF NOT EXISTS proposals (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    advisor_id TEXT REFERENCES advisors(id),
    rfp_invite_id TEXT REFERENCES rfp_invites(id),
    supplier_name TEXT,
    price REAL,
    currency TEXT,
    timeline_days INTEGER,
    scope_text TEXT,
    extracted_text TEXT,
    terms TEXT,
    conditions_json TEXT,              -- JSON object
    fee_line_items TEXT,               -- JSON array
    selected_services TEXT,            -- JSON array of scope item ids
    milestone_adjustments TEXT,        -- JSON array
    consultant_request_notes TEXT,
    status TEXT NOT NULL DEFAULT 'draft' CHECK(status IN (
        'draft', 'submitted', 'under_review', 'accepted', 'rejected',
        'withdrawn', 'negotiation_requested', 'resubmitted'
    )),
    submitted_at TEXT,
    current_version INTEGER NOT NULL DEFAULT 1,
    -- evaluation results (written once per run, all rows in one transaction)
    evaluation_status TEXT NOT NULL DEFAULT 'pending' CHECK(evaluation_status IN (
        'pending', 'completed'
    )),
    evaluation_result TEXT,            -- JSON ranked proposal
    evaluation_batch TEXT,             -- JSON batch summary of the run
    evaluation_score INTEGER,
    evaluation_rank INTEGER,
    evaluation_run_id TEXT,
    evaluation_completed_at TEXT,
    evaluation_metadata TEXT,          -- JSON {provider_name, model_id, temperature, latency_ms}
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Uploaded documents attached to a proposal
CREATE TABLE IF NOT EXISTS proposal_files (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL REFERENCES proposals(id),
    file_name TEXT NOT NULL,
    file_path TEXT NOT NULL,
    mime_type TEXT,
    uploaded_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ============================================================
-- SYSTEM
-- ============================================================

-- Append-only audit trail
CREATE TABLE IF NOT EXISTS audit_trail (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    actor TEXT,
    action TEXT NOT NULL,
    entity_type TEXT,
    entity_id TEXT,
    details TEXT,
    session_id TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Provider call telemetry (prompt/response hashed, never stored raw)
CREATE TABLE IF NOT EXISTS ai_telemetry (
    id TEXT PRIMARY KEY,
    project_id TEXT,
    agent_id TEXT,
    model_id TEXT,
    provider TEXT,
    function TEXT,
    prompt_hash TEXT,
    response_hash TEXT,
    input_tokens INTEGER DEFAULT 0,
    output_tokens INTEGER DEFAULT 0,
    latency_ms INTEGER,
    classification TEXT DEFAULT 'CUI // SP-PROPIN',
    logged_at TEXT NOT NULL
);

-- ============================================================
-- INDEXES
-- ============================================================
CREATE INDEX IF NOT EXISTS idx_projects_org ON projects(organization_id);
CREATE INDEX IF NOT EXISTS idx_rfps_project ON rfps(project_id);
CREATE INDEX IF NOT EXISTS idx_invites_rfp ON rfp_invites(rfp_id);
CREATE INDEX IF NOT EXISTS idx_invites_advisor ON rfp_invites(advisor_id);
CREATE INDEX IF NOT EXISTS idx_fee_items_invite ON rfp_fee_items(rfp_invite_id);
CREATE INDEX IF NOT EXISTS idx_scope_items_invite ON rfp_scope_items(rfp_invite_id);
CREATE INDEX IF NOT EXISTS idx_proposals_project ON proposals(project_id);
CREATE INDEX IF NOT EXISTS idx_proposals_invite ON proposals(rfp_invite_id);
CREATE INDEX IF NOT EXISTS idx_proposals_status ON proposals(status);
CREATE INDEX IF NOT EXISTS idx_proposals_eval_status ON proposals(evaluation_status);
CREATE INDEX IF NOT EXISTS idx_proposal_files_proposal ON proposal_files(proposal_id);
CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_trail(entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_audit_event ON audit_trail(event_type);
CREATE INDEX IF NOT EXISTS idx_telemetry_project ON ai_telemetry(project_id);
"""


def init_db(db_path=None):
    """Initialize the BidEval database."""
    path = db_path or str(DB_PATH)
    db_dir = Path(path).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")

    conn.executescript(SCHEMA_SQL)
    conn.commit()

    cursor = conn.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type='table'"
    )
    table_count = cursor.fetchone()[0]

    cursor = conn.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type='index' "
        "AND name NOT LIKE 'sqlite_%'"
    )
    index_count = cursor.fetchone()[0]

    conn.close()

    return {
        "status": "initialized",
        "db_path": str(path),
        "tables": table_count,
        "indexes": index_count,
        "initialized_at": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Initialize BidEval database")
    parser.add_argument("--json", action="store_true", help="JSON output")
    parser.add_argument("--db-path", help="Override database path")
    args = parser.parse_args()

    try:
        result = init_db(db_path=args.db_path)
    except sqlite3.Error as exc:
        print(json.dumps({"error": str(exc)}) if args.json else f"ERROR: {exc}")
        sys.exit(1)

    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print("BidEval database initialized:")
        print(f"  Path:    {result['db_path']}")
        print(f"  Tables:  {result['tables']}")
        print(f"  Indexes: {result['indexes']}")
        print(f"  Time:    {result['initialized_at']}")
