# CUI // SP-PROPIN
"""Proposal evaluation engine: deterministic scoring plus narrative enrichment.

Modules:
    errors         typed failures with stable machine-readable codes
    models         immutable records (project, proposal, requirement set, locked score)
    aggregator     load, filter, deduplicate and scope-check evaluation inputs
    precheck       organization policy checks (currency, payment terms, vendor profile)
    scoring        coverage, price, completeness, knockout, final score, rank
    prompts        SINGLE/COMPARE instructions and the whitelisted payload
    schema         pydantic models for generator output and final results
    enricher       deadline-bound provider call, parse and validate narrative
    merger         locked fields + narrative fields into the final result
    text_extraction best-effort PDF/DOCX text extraction for proposal files
    store          cache lookup and single-transaction persistence
    orchestrator   ProposalEvaluator entry point and CLI
"""
