#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: BidEval
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: BidEval System Administrator
"""BidEval JSON API.

Endpoints:
    /api/health                          GET   service status
    /api/evaluations                     POST  run (or fetch cached) evaluation
    /api/proposals/<id>/evaluation       GET   stored result of one proposal

Failures return the EvaluationError envelope
{success: false, error, error_code[, details][, retry_after_seconds]}
with the error's HTTP status.

Usage:
    python -m bideval.api.app [--port 5050] [--debug]
"""

import argparse
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from flask import Flask, current_app, jsonify, request

from bideval.evaluation.errors import EvaluationError, InvalidRequest

logger = logging.getLogger("bideval.api")

BASE_DIR = Path(__file__).resolve().parent.parent.parent

app = Flask(__name__)


def _now():
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _get_evaluator():
    """The configured ProposalEvaluator, built on first request."""
    evaluator = current_app.config.get("EVALUATOR")
    if evaluator is None:
        from bideval.evaluation.orchestrator import ProposalEvaluator
        evaluator = ProposalEvaluator(db_path=current_app.config.get("DB_PATH"))
        current_app.config["EVALUATOR"] = evaluator
    return evaluator


@app.before_request
def _check_api_key():
    api_key = current_app.config.get("API_KEY", os.environ.get("BIDEVAL_API_KEY", "").strip())
    if api_key and request.path.startswith("/api/") and request.path != "/api/health":
        if request.headers.get("X-Api-Key", "") != api_key:
            return jsonify({
                "success": False,
                "error": "Unauthorized. Provide X-Api-Key header.",
                "error_code": "UNAUTHORIZED",
            }), 401
    return None


@app.errorhandler(EvaluationError)
def _evaluation_error(exc):
    if exc.status >= 500:
        logger.error("Evaluation failed [%s]: %s", exc.code, exc.message)
    else:
        logger.info("Evaluation rejected [%s]: %s", exc.code, exc.message)
    return jsonify(exc.to_dict()), exc.status


@app.route("/api/health")
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "bideval",
        "timestamp": _now(),
    })


@app.route("/api/evaluations", methods=["POST"])
def create_evaluation():
    """Evaluate proposals of a project.

    POST body (JSON):
        project_id        required
        proposal_ids      optional list of proposal ids
        force_reevaluate  optional bool, ignore cached results
    """
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")

    project_id = body.get("project_id")
    if not isinstance(project_id, str) or not project_id.strip():
        raise InvalidRequest("project_id is required")
    proposal_ids = body.get("proposal_ids")
    if proposal_ids is not None and (
        not isinstance(proposal_ids, list)
        or not all(isinstance(p, str) for p in proposal_ids)
    ):
        raise InvalidRequest("proposal_ids must be a list of strings")
    force = body.get("force_reevaluate", False)
    if not isinstance(force, bool):
        raise InvalidRequest("force_reevaluate must be a boolean")

    result = _get_evaluator().evaluate(
        project_id.strip(), proposal_ids, force_reevaluate=force,
    )
    return jsonify({"success": True, **result})


@app.route("/api/proposals/<proposal_id>/evaluation", methods=["GET"])
def get_proposal_evaluation(proposal_id):
    return jsonify({"success": True, **_get_evaluator().get_evaluation(proposal_id)})


def main():
    parser = argparse.ArgumentParser(description="BidEval JSON API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5050)
    parser.add_argument("--debug", action="store_true")
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
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
