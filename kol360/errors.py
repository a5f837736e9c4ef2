"""Domain errors raised by the resolver and scoring services.

Each error carries the HTTP status the API layer should answer with, so the
FastAPI app can translate every domain failure with one exception handler.
"""
from __future__ import annotations


class KolError(Exception):
    status_code = 500
    error = "Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message, "status_code": self.status_code}


class ValidationError(KolError, ValueError):
    """Malformed input. Raised before anything is mutated."""
    status_code = 400
    error = "Validation Error"


class NotFoundError(KolError):
    status_code = 404
    error = "Not Found"


class InvalidStateError(KolError):
    """Operation not allowed from the nomination's current status."""
    status_code = 409
    error = "Invalid State"


class ConflictError(KolError):
    """Duplicate NPI, or a concurrent publish collided with the current snapshot."""
    status_code = 409
    error = "Conflict"
