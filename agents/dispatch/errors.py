"""
errors.py
─────────
Exception taxonomy for the dispatch core.

Every error carries an HTTP-equivalent status code and the ids needed to
reconstruct the failure from the logs.
"""

from typing import Any, Dict, List, Optional


class DispatchError(Exception):
    """Base exception for dispatch errors."""

    status_code = 500
    error = "Internal Server Error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "message": self.message, **self.context}


class InvalidInput(DispatchError):
    """Raised when request input is malformed or incomplete."""
    status_code = 400
    error = "Bad Request"


class InvalidCoordinate(InvalidInput):
    """Raised for NaN, missing or out-of-range coordinates."""


class EmptyBatch(InvalidInput):
    """Raised when a batch has nothing left to route."""


class Forbidden(DispatchError):
    status_code = 403
    error = "Forbidden"


class NotFound(DispatchError):
    status_code = 404
    error = "Not Found"


class BatchNotFound(NotFound):
    """Raised when a batch is missing, not active, or owned by another driver."""


class Conflict(DispatchError):
    status_code = 409
    error = "Conflict"

    def __init__(self, message: str, ids: Optional[List[str]] = None, **context: Any):
        super().__init__(message, ids=list(ids) if ids else None, **context)
        self.ids = list(ids or [])


class CapacityExceeded(Conflict):
    def __init__(self, message: str, current_count: int, capacity: int, **context: Any):
        super().__init__(message, current_count=current_count, capacity=capacity, **context)
        self.current_count = current_count
        self.capacity = capacity


class InvalidTransition(DispatchError):
    status_code = 409
    error = "Invalid Transition"


class ExternalServiceDegraded(DispatchError):
    """
    Raised by the remote optimizer. Always caught by the route optimizer,
    which falls back to the local heuristic.
    """
    status_code = 502
    error = "Bad Gateway"
