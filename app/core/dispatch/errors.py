# app/core/dispatch/errors.py
"""
Typed domain errors for the dispatch core.

Each error maps to a specific HTTP status code.  The transport layer
converts ``DispatchError`` subtypes to JSON responses without embedding
business logic in the route handlers.

Mutating job/driver operations always raise ``InvalidTransitionError`` and
``ConflictError`` to the caller.  ``UpstreamUnavailable`` is only raised for
backend writes with no fallback; telemetry paths (location forwarding,
push delivery) log it instead.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(DispatchError):
    """Malformed input (400). Never retried."""

    status_code = 400


class ForbiddenError(DispatchError):
    """Actor's role does not allow the operation (403)."""

    status_code = 403


class NotFoundError(DispatchError):
    """Unknown job, driver or notification (404)."""

    status_code = 404


class InvalidTransitionError(DispatchError):
    """State-machine violation (409). Always rejected, never auto-corrected."""

    status_code = 409


class ConflictError(DispatchError):
    """Driver unavailable or double assignment (409)."""

    status_code = 409


class UpstreamUnavailable(DispatchError):
    """Backend, route or push collaborator unreachable (503)."""

    status_code = 503

    def __init__(self, detail: str = "Upstream unavailable", retryable: bool = True):
        self.retryable = retryable
        super().__init__(detail)
