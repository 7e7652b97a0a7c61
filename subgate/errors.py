"""Typed error hierarchy for the dispatch core.

Classify failures by type, not by string matching. The HTTP layer maps
each class to a status code via ``status_code``.
"""


class SubgateError(Exception):
    """Base class for all subgate errors."""
    status_code = 500


class ValidationError(SubgateError):
    """400 — bad input shape (identity, status, field names)."""
    status_code = 400


class ForbiddenError(SubgateError):
    """403 — entitlement denied or webhook key mismatch."""
    status_code = 403


class NotFoundError(SubgateError):
    """404 — unknown identity."""
    status_code = 404


class ConflictError(SubgateError):
    """409 — reserved for optimistic-concurrency conflicts."""
    status_code = 409


class ServiceUnavailableError(SubgateError):
    """503 — messaging network not ready, or send timed out."""
    status_code = 503


class NotConnectedError(ServiceUnavailableError):
    """Session is not in the connected state."""
    pass


class StorageError(SubgateError):
    """Backing store I/O failure. Callers retry once, then surface."""
    status_code = 503
