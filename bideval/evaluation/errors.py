#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Typed evaluation failures.

Every failure carries a stable ``code`` (what callers branch on) and an
HTTP-style ``status`` for transports that need one. ``to_dict()`` renders
the error envelope returned by the CLI and the JSON API.
"""


class EvaluationError(Exception):
    """Base class for all evaluation failures."""

    code = "EVALUATION_FAILED"
    status = 500

    def __init__(self, message: str, code: str = None, details: dict = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        out = {"success": False, "error": self.message, "error_code": self.code}
        if self.details:
            out["details"] = self.details
        return out


class InvalidRequest(EvaluationError):
    """Malformed request (e.g. missing project id)."""

    code = "VALIDATION_ERROR"
    status = 400


class NotFound(EvaluationError):
    code = "NOT_FOUND"
    status = 404


class NoEligibleInputs(EvaluationError):
    """No proposals left to evaluate after status/invite filtering."""

    code = "NO_ELIGIBLE_PROPOSALS"
    status = 400


class ScopeMismatch(EvaluationError):
    """Compared proposals answer different RFPs or advisor types."""

    code = "SCOPE_MISMATCH"
    status = 400


class ProviderConfigurationError(EvaluationError):
    code = "CONFIGURATION_ERROR"
    status = 500


class ProviderHTTPError(EvaluationError):
    """Provider transport or API failure. Not retried here."""

    code = "AI_API_ERROR"
    status = 502

    def __init__(self, message: str, status_code: int = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ProviderTimeout(EvaluationError):
    code = "TIMEOUT"
    status = 504
    retry_after_seconds = 60

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["retry_after_seconds"] = self.retry_after_seconds
        return out


class MalformedProviderOutput(EvaluationError):
    """Output that is not JSON (INVALID_JSON) or fails schema validation (VALIDATION_ERROR)."""

    code = "INVALID_JSON"
    status = 502


class EvaluationCancelled(EvaluationError):
    code = "CANCELLED"
    status = 499


class PersistenceError(EvaluationError):
    code = "PERSISTENCE_ERROR"
    status = 500
