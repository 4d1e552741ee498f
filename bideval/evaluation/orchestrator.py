#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: BidEval
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: BidEval System Administrator
"""Proposal evaluation orchestrator.

Runs one evaluation request end to end:

  aggregate -> cache check -> policy precheck -> text extraction
  -> deterministic scoring -> narrative enrichment -> merge -> persist

Aggregation and scope checks fail before any provider call. A request whose
proposals all carry a completed result is answered from the database with
no provider call at all (unless force_reevaluate). Nothing is written until
every stage has succeeded, and then every row is written in one transaction.

Usage:
    python -m bideval.evaluation.orchestrator --project-id PROJ-123 --json
    python -m bideval.evaluation.orchestrator --project-id PROJ-123 --proposal-ids P1,P2 --force
"""

import argparse
import dataclasses
import json
import logging
import os
import secrets
import sqlite3
import sys
import threading
from pathlib import Path
from typing import Callable, Optional

from bideval.evaluation.aggregator import fetch_evaluation_inputs
from bideval.evaluation.enricher import NarrativeEnricher
from bideval.evaluation.errors import (
    EvaluationError, InvalidRequest, NotFound, PersistenceError,
)
from bideval.evaluation.merger import merge_results
from bideval.evaluation.models import AggregatedBatch
from bideval.evaluation.precheck import run_precheck
from bideval.evaluation.scoring import MIN_SCOPE_TEXT_CHARS, score_batch
from bideval.evaluation.store import load_cached_batch, persist_results
from bideval.evaluation.text_extraction import FileTextExtractor
from bideval.llm.provider import LLMProvider
from bideval.llm.router import LLMConfig, build_provider, load_llm_config

logger = logging.getLogger("bideval.evaluation.orchestrator")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "BIDEVAL_DB_PATH", str(BASE_DIR / "data" / "bideval.db")
))


def _run_id():
    """Generate an evaluation run ID: EVAL- followed by 12 hex characters."""
    return "EVAL-" + secrets.token_hex(6)


def _read_failure(target, exc: sqlite3.Error) -> PersistenceError:
    logger.error("Reading %s failed: %s", target, exc, exc_info=True)
    return PersistenceError(f"Failed to read evaluation data: {exc}")


def _fallback_summary(batch: AggregatedBatch) -> dict:
    """Batch summary for cached rows that do not share one stored run."""
    return {
        "total_proposals": len(batch.inputs),
        "evaluation_mode": batch.mode,
        "project_type_detected": "LARGE_SCALE" if batch.project.is_large_scale else "STANDARD",
        "price_benchmark_used": None,
        "market_context": None,
    }


class ProposalEvaluator:
    """Hybrid proposal evaluator: locked deterministic scores, generated narrative.

    The LLM config is read once at construction. The provider adapter is
    built on first use, so cached answers need no credentials. A provider
    instance may be injected directly (tests, alternate routing).
    """

    def __init__(self, config: LLMConfig = None, provider: LLMProvider = None,
                 db_path=None, text_extractor: Callable[[str], str] = None):
        self._config = config if config is not None else load_llm_config()
        self._provider = provider
        self._db_path = str(db_path or DB_PATH)
        self._text_extractor = text_extractor or FileTextExtractor(self._db_path)
        self._provider_lock = threading.Lock()

    def _get_db(self):
        """Open a database connection with WAL mode and foreign keys enabled."""
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _open_db(self):
        try:
            return self._get_db()
        except sqlite3.Error as exc:
            raise _read_failure(self._db_path, exc) from exc

    def _get_provider(self) -> LLMProvider:
        with self._provider_lock:
            if self._provider is None:
                self._provider = build_provider(self._config)
            return self._provider

    # ------------------------------------------------------------------
    # Text extraction
    # ------------------------------------------------------------------

    def _ensure_text(self, batch: AggregatedBatch) -> AggregatedBatch:
        """Fill in extracted text for proposals that have (almost) none.

        Sequential and non-fatal: a failed or empty extraction falls back to
        the longer of the stored extracted text and the proposal's scope text.
        """
        inputs = []
        for inp in batch.inputs:
            proposal = inp.proposal
            if len(proposal.extracted_text.strip()) >= MIN_SCOPE_TEXT_CHARS:
                inputs.append(inp)
                continue
            text = ""
            try:
                text = (self._text_extractor(proposal.id) or "").strip()
            except Exception as exc:
                logger.warning("Text extraction failed for proposal %s: %s", proposal.id, exc)
            if not text:
                text = max(proposal.extracted_text, proposal.scope_text,
                           key=lambda t: len(t.strip()))
            inputs.append(dataclasses.replace(
                inp, proposal=dataclasses.replace(proposal, extracted_text=text),
            ))
        return dataclasses.replace(batch, inputs=tuple(inputs))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def evaluate(self, project_id: str, proposal_ids: Optional[list] = None,
                 force_reevaluate: bool = False,
                 cancel_event: Optional[threading.Event] = None) -> dict:
        """Evaluate the eligible proposals of a project.

        Returns {batch_summary, ranked_proposals, evaluation_metadata}.
        Raises an EvaluationError subclass on any failure; nothing is
        persisted in that case.
        """
        if proposal_ids is not None and not isinstance(proposal_ids, (list, tuple)):
            raise InvalidRequest("proposal_ids must be a list of proposal ids")

        conn = self._open_db()
        try:
            try:
                batch = fetch_evaluation_inputs(conn, project_id, list(proposal_ids or []))
                logger.info("Project %s: %d proposal(s) in %s mode",
                            project_id, len(batch.inputs), batch.mode)

                if not force_reevaluate:
                    cached = load_cached_batch(conn, batch.proposal_ids,
                                               _fallback_summary(batch))
                    if cached is not None:
                        return cached
            except sqlite3.Error as exc:
                raise _read_failure(f"project {project_id}", exc) from exc

            provider = self._get_provider()
            violations = run_precheck(batch.inputs, batch.policies)
            batch = self._ensure_text(batch)
            scores = score_batch(batch, violations)

            enrichment = NarrativeEnricher(provider, self._config.settings).enrich(
                batch, scores, cancel_event=cancel_event,
            )
            result = merge_results(batch, scores, enrichment.narrative)

            run_id = _run_id()
            metadata = {
                "evaluation_run_id": run_id,
                "provider_name": provider.provider_name,
                "model_id": provider.model_id,
                "temperature": provider.temperature,
                "latency_ms": enrichment.latency_ms,
            }
            persist_results(conn, project_id, result, run_id, metadata, enrichment)
        finally:
            conn.close()

        logger.info("Run %s complete: %s", run_id, ", ".join(
            f"{p['proposal_id']}=#{p['rank']}({p['final_score']})"
            for p in result["ranked_proposals"]
        ))
        return {
            "batch_summary": result["batch_summary"],
            "ranked_proposals": result["ranked_proposals"],
            "evaluation_metadata": {**metadata, "cached": False},
        }

    def get_evaluation(self, proposal_id: str) -> dict:
        """Stored evaluation of one proposal (status pending when never evaluated)."""
        if not proposal_id:
            raise InvalidRequest("proposal_id is required")
        conn = self._open_db()
        try:
            row = conn.execute(
                "SELECT id, project_id, evaluation_status, evaluation_result, "
                "evaluation_score, evaluation_rank, evaluation_run_id, "
                "evaluation_completed_at, evaluation_metadata "
                "FROM proposals WHERE id = ?",
                (proposal_id,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise _read_failure(f"proposal {proposal_id}", exc) from exc
        finally:
            conn.close()
        if row is None:
            raise NotFound(f"Proposal not found: {proposal_id}")

        def _load(value):
            try:
                return json.loads(value) if value else None
            except json.JSONDecodeError:
                logger.warning("Stored evaluation for %s is unreadable", proposal_id)
                return None

        return {
            "proposal_id": row["id"],
            "project_id": row["project_id"],
            "evaluation_status": row["evaluation_status"],
            "final_score": row["evaluation_score"],
            "rank": row["evaluation_rank"],
            "evaluation_run_id": row["evaluation_run_id"],
            "evaluation_completed_at": row["evaluation_completed_at"],
            "evaluation_metadata": _load(row["evaluation_metadata"]),
            "result": _load(row["evaluation_result"]),
        }


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _print_human(result: dict) -> None:
    summary = result["batch_summary"]
    meta = result["evaluation_metadata"]
    print(f"{summary['evaluation_mode']} evaluation of {summary['total_proposals']} "
          f"proposal(s) [{summary['project_type_detected']}]"
          f"{' (cached)' if meta.get('cached') else ''}")
    if summary.get("price_benchmark_used") is not None:
        print(f"  Price benchmark: {summary['price_benchmark_used']:,.2f}")
    for p in result["ranked_proposals"]:
        knockout = "  KNOCKOUT" if p["flags"]["knockout_triggered"] else ""
        print(f"  #{p['rank']}  {p['final_score']:3d}  {p['recommendation_level']:<18s} "
              f"{p['vendor_name']} ({p['proposal_id']}){knockout}")
        for flag in p["flags"]["red_flags"]:
            print(f"        ! {flag}")


def main():
    parser = argparse.ArgumentParser(description="Evaluate submitted proposals for a project")
    parser.add_argument("--project-id", required=True, help="Project ID")
    parser.add_argument("--proposal-ids", help="Comma-separated proposal IDs to evaluate")
    parser.add_argument("--force", action="store_true", help="Ignore cached results")
    parser.add_argument("--config", help="Path to llm_config.yaml")
    parser.add_argument("--db-path", help="Override database path")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args()

    env_file = BASE_DIR / ".env"
    if env_file.exists():
        from dotenv import load_dotenv
        load_dotenv(env_file, override=False)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    proposal_ids = None
    if args.proposal_ids:
        proposal_ids = [p.strip() for p in args.proposal_ids.split(",") if p.strip()]

    try:
        evaluator = ProposalEvaluator(
            config=load_llm_config(args.config), db_path=args.db_path,
        )
        result = evaluator.evaluate(args.project_id, proposal_ids, force_reevaluate=args.force)
    except EvaluationError as exc:
        if args.json:
            print(json.dumps(exc.to_dict(), indent=2))
        else:
            print(f"ERROR [{exc.code}]: {exc.message}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(result, indent=2, default=str))
    else:
        _print_human(result)


if __name__ == "__main__":
    main()
