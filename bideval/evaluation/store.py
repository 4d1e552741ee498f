#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: BidEval
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: BidEval System Administrator
"""Evaluation result cache and persistence.

Results are written once per run: every proposal row, the audit event and
the AI telemetry record go into a single sqlite transaction, so a failed
run leaves previously cached results untouched and concurrent readers never
see a half-written batch.

Prompts and responses are never stored; ai_telemetry keeps SHA-256 hashes.
"""

import hashlib
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Optional

from bideval.audit.audit_logger import log_event
from bideval.evaluation.errors import PersistenceError

logger = logging.getLogger("bideval.evaluation.store")

STATUS_COMPLETED = "completed"
TELEMETRY_AGENT = "bideval-evaluator"
TELEMETRY_FUNCTION = "proposal_evaluation"


def _now():
    """Return current UTC timestamp as ISO-8601 string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


def _placeholders(values) -> str:
    return ",".join("?" for _ in values)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

def load_cached_batch(conn: sqlite3.Connection, proposal_ids: list,
                      fallback_summary: dict) -> Optional[dict]:
    """Reassemble a completed batch, or None if any targeted proposal lacks a result.

    The stored batch summary is reused when every row comes from the same
    run and that run covered exactly these proposals; otherwise
    fallback_summary is returned with the cached rows.
    """
    ids = sorted(set(proposal_ids))
    if not ids:
        return None
    rows = conn.execute(
        "SELECT id, evaluation_status, evaluation_result, evaluation_batch, "
        "evaluation_score, evaluation_rank, evaluation_run_id, evaluation_metadata "
        f"FROM proposals WHERE id IN ({_placeholders(ids)})",
        ids,
    ).fetchall()
    if len(rows) != len(ids):
        return None
    if any(r["evaluation_status"] != STATUS_COMPLETED or not r["evaluation_result"] for r in rows):
        return None

    try:
        ranked = []
        for r in rows:
            entry = json.loads(r["evaluation_result"])
            entry["proposal_id"] = r["id"]
            entry["final_score"] = r["evaluation_score"]
            entry["rank"] = r["evaluation_rank"]
            ranked.append(entry)
        run_ids = {r["evaluation_run_id"] for r in rows}
        summary = json.loads(rows[0]["evaluation_batch"]) if rows[0]["evaluation_batch"] else None
        metadata = json.loads(rows[0]["evaluation_metadata"] or "{}")
    except (json.JSONDecodeError, TypeError) as exc:
        logger.warning("Cached evaluation for %s is unreadable (%s); re-evaluating",
                       ", ".join(ids), exc)
        return None

    ranked.sort(key=lambda e: (e.get("rank") or 0, e["proposal_id"]))
    same_run = len(run_ids) == 1 and None not in run_ids
    if not (same_run and summary and summary.get("total_proposals") == len(rows)):
        summary = fallback_summary
        metadata = {}

    logger.info("Cache hit for %d proposal(s)", len(rows))
    return {
        "batch_summary": summary,
        "ranked_proposals": ranked,
        "evaluation_metadata": {**metadata, "cached": True},
    }


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def _log_telemetry(conn: sqlite3.Connection, project_id: str, enrichment) -> None:
    """Write a telemetry record (prompt/response hashed, not stored raw)."""
    response = enrichment.response
    conn.execute(
        """INSERT INTO ai_telemetry
               (id, project_id, agent_id, model_id, provider, function,
                prompt_hash, response_hash, input_tokens, output_tokens,
                latency_ms, classification, logged_at)
           VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)""",
        (
            str(uuid.uuid4()), project_id, TELEMETRY_AGENT,
            response.model_id, response.provider, TELEMETRY_FUNCTION,
            _sha256(enrichment.system_prompt + "\n\n" + enrichment.payload),
            _sha256(response.content),
            response.input_tokens, response.output_tokens,
            enrichment.latency_ms, response.classification, _now(),
        ),
    )


def persist_results(conn: sqlite3.Connection, project_id: str, result: dict,
                    run_id: str, metadata: dict, enrichment=None) -> str:
    """Write every ranked proposal of one run in a single transaction.

    Returns the completion timestamp. Raises PersistenceError and writes
    nothing if any row cannot be updated.
    """
    completed_at = _now()
    batch_json = json.dumps(result["batch_summary"])
    metadata_json = json.dumps(metadata)
    ranked = result["ranked_proposals"]

    try:
        with conn:
            for entry in ranked:
                cursor = conn.execute(
                    """UPDATE proposals SET
                           evaluation_status = ?,
                           evaluation_result = ?,
                           evaluation_batch = ?,
                           evaluation_score = ?,
                           evaluation_rank = ?,
                           evaluation_run_id = ?,
                           evaluation_completed_at = ?,
                           evaluation_metadata = ?,
                           updated_at = ?
                       WHERE id = ?""",
                    (
                        STATUS_COMPLETED, json.dumps(entry), batch_json,
                        entry["final_score"], entry["rank"], run_id,
                        completed_at, metadata_json, completed_at,
                        entry["proposal_id"],
                    ),
                )
                if cursor.rowcount != 1:
                    raise PersistenceError(
                        f"Proposal {entry['proposal_id']} disappeared during evaluation"
                    )

            log_event(
                conn,
                event_type="evaluation.completed",
                action=f"Evaluated {len(ranked)} proposal(s) "
                       f"({result['batch_summary']['evaluation_mode']})",
                entity_type="project",
                entity_id=project_id,
                details={
                    "evaluation_run_id": run_id,
                    "proposal_ids": [e["proposal_id"] for e in ranked],
                    "ranks": {e["proposal_id"]: e["rank"] for e in ranked},
                    **metadata,
                },
            )
            if enrichment is not None:
                _log_telemetry(conn, project_id, enrichment)
    except sqlite3.Error as exc:
        logger.error("Persisting run %s failed: %s", run_id, exc, exc_info=True)
        raise PersistenceError(f"Failed to persist evaluation results: {exc}") from exc

    logger.info("Persisted run %s for %d proposal(s)", run_id, len(ranked))
    return completed_at
